"""Capability interfaces for external provisioning and orchestration."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..contracts import ResourceKind


class StatusReport(BaseModel):
    """Observed state of a provisioned resource.

    ``state`` is one of ``pending``, ``available``, ``failed`` or
    ``deleted``.
    """

    state: str = "pending"
    endpoint_reachable: bool = False
    nodes_active: int = 0
    detail: Optional[str] = None


class WorkloadStatus(BaseModel):
    replicas_ready: int = 0
    replicas_desired: int = 0
    healthy: bool = True
    found: bool = True


class ProvisioningAPI(metaclass=abc.ABCMeta):
    """Cloud resource API (networks, clusters, node groups).

    Implementations signal failures by raising ``TransientApplyError`` or
    ``PermanentApplyError``.
    """

    @abc.abstractmethod
    async def create(self, kind: ResourceKind, config: Dict[str, Any], name: str) -> str:
        """Create a resource and return its provider handle."""
        raise NotImplementedError

    @abc.abstractmethod
    async def update(self, handle: str, config: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, handle: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def status(self, handle: str) -> StatusReport:
        raise NotImplementedError


class OrchestratorAPI(metaclass=abc.ABCMeta):
    """Container orchestrator API; manifests are opaque payloads."""

    @abc.abstractmethod
    async def apply_workload(self, name: str, manifest: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_workload(self, name: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def workload_status(self, name: str) -> WorkloadStatus:
        raise NotImplementedError
