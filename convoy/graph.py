"""Dependency graph construction for resource definitions."""

from __future__ import annotations

import heapq
import logging
from typing import Dict, Iterable, List, Optional, Set

from .contracts import ResourceDefinition
from .errors import CycleError, DanglingReferenceError, DuplicateResourceError

logger = logging.getLogger(__name__)


def find_cycle(edges: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one cycle of ``edges`` (node -> dependencies) or ``None``.

    Depth-first search with an explicit recursion stack. Nodes are visited
    in lexical order so the reported cycle is deterministic.
    """

    visited: Set[str] = set()
    on_stack: Dict[str, int] = {}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        visited.add(node)
        on_stack[node] = len(path)
        path.append(node)
        for dep in sorted(edges.get(node, ())):
            if dep in on_stack:
                return path[on_stack[dep]:]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        path.pop()
        del on_stack[node]
        return None

    for node in sorted(edges):
        if node not in visited:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def topological_order(edges: Dict[str, List[str]]) -> List[str]:
    """Kahn's algorithm; ties are broken by lexical identifier order."""

    remaining = {node: len(set(deps)) for node, deps in edges.items()}
    dependents: Dict[str, List[str]] = {node: [] for node in edges}
    for node, deps in edges.items():
        for dep in set(deps):
            dependents[dep].append(node)

    ready = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(edges):
        raise CycleError(find_cycle(edges) or sorted(set(edges) - set(order)))
    return order


class ResourceGraph:
    """Validated, acyclic set of resource definitions."""

    def __init__(self, definitions: Dict[str, ResourceDefinition]) -> None:
        self._definitions = definitions
        self._edges = {
            ident: list(dict.fromkeys(d.depends_on))
            for ident, d in definitions.items()
        }
        self._dependents: Dict[str, List[str]] = {ident: [] for ident in definitions}
        for ident, deps in self._edges.items():
            for dep in deps:
                self._dependents[dep].append(ident)
        self._order = topological_order(self._edges)
        self._depth: Dict[str, int] = {}
        for ident in self._order:
            deps = self._edges[ident]
            self._depth[ident] = 1 + max(self._depth[d] for d in deps) if deps else 0

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def get(self, identifier: str) -> ResourceDefinition:
        return self._definitions[identifier]

    @property
    def definitions(self) -> List[ResourceDefinition]:
        return [self._definitions[i] for i in self._order]

    def topological_order(self) -> List[str]:
        return list(self._order)

    def tier_of(self, identifier: str) -> int:
        return self._depth[identifier]

    def tiers(self) -> List[List[str]]:
        """Identifiers grouped by topological depth."""
        grouped: Dict[int, List[str]] = {}
        for ident in self._order:
            grouped.setdefault(self._depth[ident], []).append(ident)
        return [sorted(grouped[depth]) for depth in sorted(grouped)]

    def dependencies_of(self, identifier: str) -> List[str]:
        return list(self._edges[identifier])

    def dependents_of(self, identifier: str) -> List[str]:
        return sorted(self._dependents[identifier])

    def ancestors(self, identifier: str) -> Set[str]:
        """All transitive dependencies of ``identifier``."""
        return transitive_closure(identifier, self._edges)

    def descendants(self, identifier: str) -> Set[str]:
        """All transitive dependents of ``identifier``."""
        return transitive_closure(identifier, self._dependents)


def transitive_closure(start: str, edges: Dict[str, List[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(edges.get(start, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, ()))
    return seen


def build_graph(definitions: Iterable[ResourceDefinition]) -> ResourceGraph:
    """Validate ``definitions`` and build the dependency graph.

    Raises:
        DuplicateResourceError: An identifier is defined twice.
        DanglingReferenceError: A dependency names an undefined resource.
        CycleError: The dependency relation is cyclic.
    """

    by_id: Dict[str, ResourceDefinition] = {}
    for definition in definitions:
        if definition.identifier in by_id:
            raise DuplicateResourceError(definition.identifier)
        by_id[definition.identifier] = definition

    for ident in sorted(by_id):
        for dep in by_id[ident].depends_on:
            if dep not in by_id:
                raise DanglingReferenceError(ident, dep)

    cycle = find_cycle({i: list(d.depends_on) for i, d in by_id.items()})
    if cycle:
        raise CycleError(cycle)

    graph = ResourceGraph(by_id)
    logger.debug(f"Built resource graph with {len(graph)} nodes, tiers={graph.tiers()}")
    return graph
