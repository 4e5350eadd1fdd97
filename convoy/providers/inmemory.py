"""In-process collaborators for tests and local dry runs."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from ..contracts import ResourceKind
from ..errors import PermanentApplyError
from .base import OrchestratorAPI, ProvisioningAPI, StatusReport, WorkloadStatus


class _FailureScript:
    """Queue of errors to raise on successive calls per resource name."""

    def __init__(self) -> None:
        self._errors: Dict[str, Deque[Exception]] = defaultdict(deque)

    def add(self, name: str, errors: Tuple[Exception, ...]) -> None:
        self._errors[name].extend(errors)

    def raise_next(self, name: str) -> None:
        queue = self._errors.get(name)
        if queue:
            raise queue.popleft()


class InMemoryProvisioner(ProvisioningAPI):
    """Simulated cloud provider.

    Resources become ``available`` after ``ready_after`` status polls.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._latency = latency
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._script = _FailureScript()
        self._ready_after: Dict[str, int] = {}
        self._never_ready: Set[str] = set()
        self._broken: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    # ------------------------------------------------------------------
    # Scripting helpers
    def fail(self, name: str, *errors: Exception) -> None:
        """Raise ``errors`` in order on the next calls touching ``name``."""
        self._script.add(name, errors)

    def ready_after(self, name: str, polls: int) -> None:
        self._ready_after[name] = polls

    def never_ready(self, name: str) -> None:
        self._never_ready.add(name)

    def break_resource(self, name: str) -> None:
        """Make status polls for ``name`` report ``failed``."""
        self._broken.add(name)

    def handle_for(self, name: str) -> Optional[str]:
        for handle, res in self._resources.items():
            if res["name"] == name and res["state"] != "deleted":
                return handle
        return None

    def resource(self, name: str) -> Optional[Dict[str, Any]]:
        handle = self.handle_for(name)
        return self._resources[handle] if handle else None

    # ------------------------------------------------------------------
    async def _call(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self._latency:
                await asyncio.sleep(self._latency)
            self._script.raise_next(name)
        finally:
            self._in_flight -= 1

    def _lookup(self, handle: str) -> Dict[str, Any]:
        try:
            return self._resources[handle]
        except KeyError:
            raise PermanentApplyError(f"Unknown resource handle '{handle}'") from None

    async def create(self, kind: ResourceKind, config: Dict[str, Any], name: str) -> str:
        await self._call("create", name)
        handle = f"{ResourceKind(kind).value}-{uuid.uuid4().hex[:8]}"
        self._resources[handle] = {
            "name": name,
            "kind": ResourceKind(kind),
            "config": dict(config),
            "state": "pending",
            "polls": 0,
        }
        return handle

    async def update(self, handle: str, config: Dict[str, Any]) -> None:
        res = self._lookup(handle)
        await self._call("update", res["name"])
        res.update(config=dict(config), state="pending", polls=0)

    async def delete(self, handle: str) -> None:
        res = self._lookup(handle)
        await self._call("delete", res["name"])
        res["state"] = "deleted"

    async def status(self, handle: str) -> StatusReport:
        res = self._resources.get(handle)
        if res is None or res["state"] == "deleted":
            return StatusReport(state="deleted")
        name = res["name"]
        if name in self._broken:
            return StatusReport(state="failed", detail="resource reported failure")
        res["polls"] += 1
        if name in self._never_ready or res["polls"] < self._ready_after.get(name, 0):
            return StatusReport(state="pending")
        res["state"] = "available"
        config = res["config"]
        nodes = config.get("min_nodes") or config.get("desired_size") or config.get("min_size") or 1
        return StatusReport(
            state="available", endpoint_reachable=True, nodes_active=int(nodes)
        )


class InMemoryOrchestrator(OrchestratorAPI):
    """Simulated container orchestrator."""

    def __init__(self, latency: float = 0.0) -> None:
        self._latency = latency
        self.workloads: Dict[str, Dict[str, Any]] = {}
        self._polls: Dict[str, int] = defaultdict(int)
        self._script = _FailureScript()
        self._ready_after: Dict[str, int] = {}
        self._unhealthy: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []

    def fail(self, name: str, *errors: Exception) -> None:
        self._script.add(name, errors)

    def ready_after(self, name: str, polls: int) -> None:
        self._ready_after[name] = polls

    def mark_unhealthy(self, name: str) -> None:
        self._unhealthy.add(name)

    async def _call(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        if self._latency:
            await asyncio.sleep(self._latency)
        self._script.raise_next(name)

    async def apply_workload(self, name: str, manifest: Dict[str, Any]) -> None:
        await self._call("apply", name)
        self.workloads[name] = dict(manifest)
        self._polls[name] = 0

    async def delete_workload(self, name: str) -> None:
        await self._call("delete", name)
        self.workloads.pop(name, None)

    async def workload_status(self, name: str) -> WorkloadStatus:
        manifest = self.workloads.get(name)
        if manifest is None:
            return WorkloadStatus(found=False)
        self._polls[name] += 1
        desired = int(manifest.get("replicas", 1))
        ready = desired if self._polls[name] >= self._ready_after.get(name, 0) else 0
        return WorkloadStatus(
            replicas_ready=ready,
            replicas_desired=desired,
            healthy=name not in self._unhealthy,
        )
