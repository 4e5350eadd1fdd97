"""Polling external systems until applied resources reach readiness."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from .contracts import (
    ChangeAction,
    ConvergenceReport,
    ConvergenceResult,
    ResourceKind,
    ResourceStatus,
    StateRecord,
)
from .errors import ApplyError, ConvergenceTimeoutError, StaleStateError, TransientApplyError
from .providers import OrchestratorAPI, ProvisioningAPI, StatusReport, WorkloadStatus
from .state import StateStore
from .utils.signals import AbortSignal

logger = logging.getLogger(__name__)

PENDING = "pending"
READY = "ready"
GONE = "gone"
BROKEN = "broken"


def provisioned_ready(
    kind: ResourceKind, config: Mapping[str, Any], report: StatusReport
) -> bool:
    """Kind-specific ready condition for provider-managed resources."""
    if report.state != "available":
        return False
    if kind == ResourceKind.COMPUTE_CLUSTER:
        return report.endpoint_reachable and report.nodes_active >= int(
            config.get("min_nodes", 1)
        )
    if kind == ResourceKind.NODE_GROUP:
        return report.nodes_active >= int(config.get("min_size", 1))
    return True


def workload_ready(config: Mapping[str, Any], status: WorkloadStatus) -> bool:
    """A workload is ready once enough replicas run and its health check passes."""
    if not status.found or not status.healthy:
        return False
    minimum = int(config.get("min_replicas", max(status.replicas_desired, 1)))
    return status.replicas_ready >= minimum


class ConvergenceWatcher:
    """Run one polling task per resource until it converges or times out.

    A resource's watch does not start polling until every identifier in its
    ``after`` list has converged, so readiness propagates in the same
    topological order used for applying.
    """

    def __init__(
        self,
        provisioner: ProvisioningAPI,
        orchestrator: OrchestratorAPI,
        store: StateStore,
        poll_interval: float,
        timeout: float,
        signal: Optional[AbortSignal] = None,
    ) -> None:
        self._provisioner = provisioner
        self._orchestrator = orchestrator
        self._store = store
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._signal = signal
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(
        self,
        action: ChangeAction,
        record: StateRecord,
        config: Optional[Mapping[str, Any]] = None,
        after: Iterable[str] = (),
    ) -> asyncio.Task:
        """Begin watching ``record``; returns the watch task."""
        task = asyncio.create_task(
            self._watch(action, record, dict(config or {}), tuple(after)),
            name=f"converge-{record.identifier}",
        )
        self._tasks[record.identifier] = task
        return task

    def is_watching(self, identifier: str) -> bool:
        return identifier in self._tasks

    async def wait_for(self, identifier: str) -> Optional[ConvergenceResult]:
        task = self._tasks.get(identifier)
        if task is None:
            return None
        return await task

    async def wait_all(self) -> ConvergenceReport:
        results = await asyncio.gather(*self._tasks.values())
        return ConvergenceReport(results=list(results))

    # ------------------------------------------------------------------
    async def _probe(
        self, action: ChangeAction, record: StateRecord, config: Dict[str, Any]
    ) -> str:
        try:
            if record.kind == ResourceKind.WORKLOAD:
                status = await self._orchestrator.workload_status(record.identifier)
                if action == ChangeAction.DELETE:
                    return GONE if not status.found else PENDING
                return READY if workload_ready(config, status) else PENDING

            report = await self._provisioner.status(record.handle)
        except TransientApplyError as exc:
            logger.warning(f"Status check for {record.identifier} failed transiently: {exc}")
            return PENDING
        except ApplyError as exc:
            logger.error(f"Status check for {record.identifier} failed: {exc}")
            return BROKEN
        except Exception:
            logger.exception(f"Unexpected error checking status of {record.identifier}")
            return BROKEN

        if action == ChangeAction.DELETE:
            return GONE if report.state == "deleted" else PENDING
        if report.state == "failed":
            return BROKEN
        return READY if provisioned_ready(record.kind, config, report) else PENDING

    async def _settle(
        self,
        record: StateRecord,
        status: ResourceStatus,
        polls: int,
        error: Optional[str] = None,
    ) -> ConvergenceResult:
        try:
            await self._store.commit(
                record.model_copy(update={"status": status}),
                expected_version=record.version,
            )
        except StaleStateError as exc:
            logger.error(f"Could not record {status.value} for {record.identifier}: {exc}")
            error = error or str(exc)
        return ConvergenceResult(
            identifier=record.identifier, status=status, error=error, polls=polls
        )

    async def _watch(
        self,
        action: ChangeAction,
        record: StateRecord,
        config: Dict[str, Any],
        after: tuple,
    ) -> ConvergenceResult:
        ident = record.identifier
        for dep in after:
            dep_result = await self.wait_for(dep)
            if dep_result is not None and not dep_result.converged:
                logger.info(f"Not watching {ident}: dependency {dep} did not converge")
                return ConvergenceResult(
                    identifier=ident,
                    status=record.status,
                    error=f"dependency '{dep}' did not converge",
                )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        polls = 0
        while True:
            if self._signal is not None and self._signal.aborted:
                return ConvergenceResult(
                    identifier=ident, status=record.status, error="aborted", polls=polls
                )

            polls += 1
            observed = await self._probe(action, record, config)
            if observed == READY:
                logger.info(f"Resource {ident} is ready after {polls} polls")
                return await self._settle(record, ResourceStatus.READY, polls)
            if observed == GONE:
                logger.info(f"Resource {ident} is deleted after {polls} polls")
                return await self._settle(record, ResourceStatus.ABSENT, polls)
            if observed == BROKEN:
                return await self._settle(
                    record, ResourceStatus.DEGRADED, polls, "provider reported failure"
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.error(f"Resource {ident} did not converge within {self._timeout}s")
                return await self._settle(
                    record,
                    ResourceStatus.DEGRADED,
                    polls,
                    str(ConvergenceTimeoutError([ident])),
                )
            await asyncio.sleep(min(self._poll_interval, remaining))
