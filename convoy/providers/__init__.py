"""Provider factory and initialization."""

from __future__ import annotations

import importlib
import os
from typing import Optional, Tuple

from ..config import ConvoyConfig, load_config
from .base import OrchestratorAPI, ProvisioningAPI, StatusReport, WorkloadStatus
from .inmemory import InMemoryOrchestrator, InMemoryProvisioner


def get_providers(
    backend: Optional[str] = None, config: Optional[ConvoyConfig] = None
) -> Tuple[ProvisioningAPI, OrchestratorAPI]:
    """Factory function returning the configured collaborators.

    ``backend`` is ``inmemory`` or a ``module:factory`` import path; the
    factory is called with the loaded configuration.
    """

    config = config or load_config()
    backend = backend or os.getenv("CONVOY_PROVIDER") or config.provider.backend

    if backend.lower() == "inmemory":
        return InMemoryProvisioner(), InMemoryOrchestrator()

    module_name, sep, attr = backend.partition(":")
    if not sep or not attr:
        raise ValueError(f"Unsupported provider backend: {backend}")
    factory = getattr(importlib.import_module(module_name), attr)
    provisioner, orchestrator = factory(config)
    return provisioner, orchestrator


__all__ = [
    "ProvisioningAPI",
    "OrchestratorAPI",
    "StatusReport",
    "WorkloadStatus",
    "InMemoryProvisioner",
    "InMemoryOrchestrator",
    "get_providers",
]
