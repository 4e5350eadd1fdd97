"""Core data contracts for the convoy orchestrator."""

from __future__ import annotations

import hashlib
import json
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConvergenceTimeoutError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    NETWORK = "network"
    COMPUTE_CLUSTER = "compute-cluster"
    NODE_GROUP = "node-group"
    WORKLOAD = "workload"


class ResourceStatus(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    DEGRADED = "degraded"
    DELETING = "deleting"
    FAILED = "failed"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationOutcome(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class PipelineState(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    CONVERGING = "converging"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset(
    {PipelineState.SUCCEEDED, PipelineState.FAILED, PipelineState.ABORTED}
)


class ResourceDefinition(BaseModel):
    """Declared intent for one resource."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    kind: ResourceKind
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    def config_hash(self) -> str:
        """Stable digest of the declared kind and configuration."""
        canonical = json.dumps(
            {"kind": self.kind.value, "config": self.config},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StateRecord(BaseModel):
    """Last-known-applied state of one resource."""

    identifier: str
    kind: ResourceKind
    config_hash: Optional[str] = None
    handle: Optional[str] = None
    status: ResourceStatus = ResourceStatus.ABSENT
    dependencies: List[str] = Field(default_factory=list)
    version: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


class ChangeOperation(BaseModel):
    """One create/update/delete step of a change-set."""

    model_config = ConfigDict(frozen=True)

    action: ChangeAction
    identifier: str
    kind: ResourceKind
    tier: int = 0
    definition: Optional[ResourceDefinition] = None
    prior: Optional[StateRecord] = None
    after: Tuple[str, ...] = ()

    @property
    def config(self) -> Dict[str, Any]:
        return dict(self.definition.config) if self.definition else {}


class ChangeSet(BaseModel):
    """Ordered, immutable list of operations produced by one plan cycle."""

    model_config = ConfigDict(frozen=True)

    operations: Tuple[ChangeOperation, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def get(self, identifier: str) -> Optional[ChangeOperation]:
        for op in self.operations:
            if op.identifier == identifier:
                return op
        return None

    def tiers(self) -> List[List[ChangeOperation]]:
        """Group operations into tiers in execution order.

        Forward operations come first, grouped by tier in ascending order,
        followed by deletes grouped by their (already reversed) tier order.
        """
        forward: "OrderedDict[int, List[ChangeOperation]]" = OrderedDict()
        deletes: "OrderedDict[int, List[ChangeOperation]]" = OrderedDict()
        for op in self.operations:
            bucket = deletes if op.action == ChangeAction.DELETE else forward
            bucket.setdefault(op.tier, []).append(op)
        return list(forward.values()) + list(deletes.values())

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts


class OperationResult(BaseModel):
    identifier: str
    action: ChangeAction
    outcome: OperationOutcome
    error: Optional[str] = None
    attempts: int = 0


class ApplyReport(BaseModel):
    """Per-operation results of one executor pass."""

    results: List[OperationResult] = Field(default_factory=list)

    def _with(self, outcome: OperationOutcome) -> List[str]:
        return [r.identifier for r in self.results if r.outcome == outcome]

    @property
    def applied(self) -> List[str]:
        return self._with(OperationOutcome.APPLIED)

    @property
    def failed(self) -> List[str]:
        return self._with(OperationOutcome.FAILED)

    @property
    def blocked(self) -> List[str]:
        return self._with(OperationOutcome.BLOCKED)

    @property
    def skipped(self) -> List[str]:
        return self._with(OperationOutcome.SKIPPED)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def get(self, identifier: str) -> Optional[OperationResult]:
        return next((r for r in self.results if r.identifier == identifier), None)


class ConvergenceResult(BaseModel):
    identifier: str
    status: ResourceStatus
    error: Optional[str] = None
    polls: int = 0

    @property
    def converged(self) -> bool:
        return self.status in (ResourceStatus.READY, ResourceStatus.ABSENT)


class ConvergenceReport(BaseModel):
    results: List[ConvergenceResult] = Field(default_factory=list)

    @property
    def degraded(self) -> List[str]:
        return sorted(
            r.identifier for r in self.results if r.status == ResourceStatus.DEGRADED
        )

    @property
    def unconverged(self) -> List[str]:
        return sorted(r.identifier for r in self.results if not r.converged)

    def get(self, identifier: str) -> Optional[ConvergenceResult]:
        return next((r for r in self.results if r.identifier == identifier), None)

    def raise_for_degraded(self) -> None:
        if self.degraded:
            raise ConvergenceTimeoutError(self.degraded)


class StageResult(BaseModel):
    name: str
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    outcome: Optional[str] = None
    detail: Optional[str] = None


class PipelineRun(BaseModel):
    """Audit record and state machine snapshot of one pipeline run."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    state: PipelineState = PipelineState.PENDING
    stages: List[StageResult] = Field(default_factory=list)
    current_stage: Optional[str] = None
    definitions: List[ResourceDefinition] = Field(default_factory=list)
    require_approval: bool = False
    operations: List[OperationResult] = Field(default_factory=list)
    degraded: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    origin: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def stage(self, name: str) -> Optional[StageResult]:
        return next((s for s in reversed(self.stages) if s.name == name), None)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "PipelineRun":
        return cls.model_validate_json(data)
