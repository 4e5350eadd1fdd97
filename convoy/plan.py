"""Diffing declared resources against stored state."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .contracts import (
    ChangeAction,
    ChangeOperation,
    ChangeSet,
    ResourceDefinition,
    ResourceStatus,
    StateRecord,
)
from .errors import PlanConflictError
from .graph import ResourceGraph, build_graph, topological_order, transitive_closure
from .state import StateStore

logger = logging.getLogger(__name__)


def diff_resource(
    definition: ResourceDefinition, record: Optional[StateRecord]
) -> Optional[ChangeAction]:
    """Return the action needed to bring ``record`` in line with ``definition``."""
    if (
        record is None
        or record.handle is None
        or record.status in (ResourceStatus.ABSENT, ResourceStatus.DELETING)
    ):
        return ChangeAction.CREATE
    if record.config_hash != definition.config_hash():
        return ChangeAction.UPDATE
    # never confirmed ready
    if record.status in (
        ResourceStatus.FAILED,
        ResourceStatus.CREATING,
        ResourceStatus.DEGRADED,
    ):
        return ChangeAction.UPDATE
    return None


class PlanEngine:
    """Produce change-sets from a resource graph and a state snapshot."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def _check_lock(self, run_id: Optional[str]) -> None:
        holder = await self._store.lock_holder()
        if holder is not None and holder != run_id:
            raise PlanConflictError(holder)

    async def plan(self, graph: ResourceGraph, run_id: Optional[str] = None) -> ChangeSet:
        """Diff ``graph`` against the current state snapshot.

        Raises:
            PlanConflictError: The state lock is held by another run.
        """
        await self._check_lock(run_id)
        snapshot = await self._store.get_snapshot()

        forward = self._plan_forward(graph, snapshot)
        deletes = self._plan_deletes(graph, snapshot)
        changeset = ChangeSet(operations=tuple(forward + deletes))
        logger.info(f"Planned change-set for run_id={run_id}: {changeset.summary()}")
        return changeset

    async def plan_destroy(self, run_id: Optional[str] = None) -> ChangeSet:
        """Plan the removal of every resource recorded in state."""
        return await self.plan(build_graph([]), run_id)

    def _plan_forward(
        self, graph: ResourceGraph, snapshot: Dict[str, StateRecord]
    ) -> List[ChangeOperation]:
        actions: Dict[str, ChangeAction] = {}
        for ident in graph.topological_order():
            action = diff_resource(graph.get(ident), snapshot.get(ident))
            if action is not None:
                actions[ident] = action

        changed = set(actions)
        ops = [
            ChangeOperation(
                action=action,
                identifier=ident,
                kind=graph.get(ident).kind,
                tier=graph.tier_of(ident),
                definition=graph.get(ident),
                prior=snapshot.get(ident),
                after=tuple(sorted(graph.ancestors(ident) & changed)),
            )
            for ident, action in actions.items()
        ]
        return sorted(ops, key=lambda op: (op.tier, op.identifier))

    def _plan_deletes(
        self, graph: ResourceGraph, snapshot: Dict[str, StateRecord]
    ) -> List[ChangeOperation]:
        doomed = {
            ident: record
            for ident, record in snapshot.items()
            if ident not in graph and record.status != ResourceStatus.ABSENT
        }
        if not doomed:
            return []

        edges = {
            ident: [d for d in record.dependencies if d in doomed]
            for ident, record in doomed.items()
        }
        dependents: Dict[str, List[str]] = {ident: [] for ident in doomed}
        for ident, deps in edges.items():
            for dep in deps:
                dependents[dep].append(ident)

        depth: Dict[str, int] = {}
        for ident in topological_order(edges):
            deps = edges[ident]
            depth[ident] = 1 + max(depth[d] for d in deps) if deps else 0
        deepest = max(depth.values())

        ops = [
            ChangeOperation(
                action=ChangeAction.DELETE,
                identifier=ident,
                kind=record.kind,
                tier=deepest - depth[ident],
                prior=record,
                after=tuple(sorted(transitive_closure(ident, dependents))),
            )
            for ident, record in doomed.items()
        ]
        return sorted(ops, key=lambda op: (op.tier, op.identifier))
