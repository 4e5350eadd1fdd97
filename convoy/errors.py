"""Exception taxonomy for convoy."""

from __future__ import annotations

from typing import Iterable, List, Optional


class ConvoyError(Exception):
    """Base class for all convoy errors."""


class DefinitionError(ConvoyError):
    """Raised when resource definitions cannot be parsed."""


class GraphError(ConvoyError):
    """Raised when definitions do not form a valid dependency graph."""


class DuplicateResourceError(GraphError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"Resource '{identifier}' is defined more than once")
        self.identifier = identifier


class DanglingReferenceError(GraphError):
    """A resource depends on an identifier that is not defined."""

    def __init__(self, resource: str, missing: str) -> None:
        super().__init__(
            f"Resource '{resource}' depends on undefined resource '{missing}'"
        )
        self.resource = resource
        self.missing = missing


class CycleError(GraphError):
    """The dependency relation contains a cycle.

    ``cycle`` lists every node of the cycle in dependency order, starting
    from the node where the cycle was detected.
    """

    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle: List[str] = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class PlanConflictError(ConvoyError):
    """The state lock is held by another run."""

    def __init__(self, holder: Optional[str]) -> None:
        super().__init__(f"State is locked by run '{holder}'")
        self.holder = holder


class StaleStateError(ConvoyError):
    """A state write was based on an outdated record version."""

    def __init__(self, identifier: str, expected: int, actual: int) -> None:
        super().__init__(
            f"State record '{identifier}' is at version {actual}, expected {expected}"
        )
        self.identifier = identifier
        self.expected = expected
        self.actual = actual


class ApplyError(ConvoyError):
    """Failure reported by an external collaborator while applying a change."""


class TransientApplyError(ApplyError):
    """Retryable failure (timeout, rate limiting)."""


class PermanentApplyError(ApplyError):
    """Non-retryable failure (validation rejected, conflict)."""


class ConvergenceTimeoutError(ConvoyError):
    """One or more resources never reached their ready condition."""

    def __init__(self, identifiers: Iterable[str]) -> None:
        self.identifiers: List[str] = sorted(identifiers)
        super().__init__(
            "Resources did not converge: " + ", ".join(self.identifiers)
        )


class VerificationFailedError(ConvoyError):
    """Post-deploy workload health check failed."""
