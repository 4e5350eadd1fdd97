"""Convoy: dependency-ordered infrastructure provisioning and deployment."""

from .config import ConvoyConfig, load_config
from .contracts import (
    ApplyReport,
    ChangeAction,
    ChangeOperation,
    ChangeSet,
    OperationOutcome,
    PipelineRun,
    PipelineState,
    ResourceDefinition,
    ResourceKind,
    ResourceStatus,
    StateRecord,
)
from .converge import ConvergenceWatcher
from .definitions import load_definitions, parse_definitions
from .execute import ApplyExecutor
from .graph import ResourceGraph, build_graph
from .pipeline import PipelineCoordinator
from .plan import PlanEngine
from .providers import get_providers
from .state import get_state_store

__version__ = "0.1.0"
__all__ = [
    "ApplyExecutor",
    "ApplyReport",
    "ChangeAction",
    "ChangeOperation",
    "ChangeSet",
    "ConvergenceWatcher",
    "ConvoyConfig",
    "OperationOutcome",
    "PipelineCoordinator",
    "PipelineRun",
    "PipelineState",
    "PlanEngine",
    "ResourceDefinition",
    "ResourceGraph",
    "ResourceKind",
    "ResourceStatus",
    "StateRecord",
    "build_graph",
    "get_providers",
    "get_state_store",
    "load_config",
    "load_definitions",
    "parse_definitions",
]
