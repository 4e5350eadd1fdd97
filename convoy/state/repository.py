"""Store abstraction for last-known-applied state."""

from __future__ import annotations

from typing import Dict, Optional, Protocol

from ..contracts import PipelineRun, StateRecord


class StateStore(Protocol):
    """Protocol for state persistence backends.

    Only the store creates StateRecords with new versions; callers read
    snapshots and hand records back through ``commit``.
    """

    async def get_snapshot(self) -> Dict[str, StateRecord]:
        """Return all records keyed by identifier."""

    async def get_record(self, identifier: str) -> StateRecord | None:
        """Return one record or ``None``."""

    async def try_lock(self, run_id: str) -> bool:
        """Take the exclusive lock; ``False`` if already held by anyone."""

    async def unlock(self, run_id: str) -> bool:
        """Release the lock if ``run_id`` holds it."""

    async def force_unlock(self) -> Optional[str]:
        """Release the lock regardless of holder, returning the old holder."""

    async def lock_holder(self) -> Optional[str]:
        """Return the run id holding the lock, if any."""

    async def commit(
        self, record: StateRecord, expected_version: int | None = None
    ) -> StateRecord:
        """Atomically write ``record`` and return it with its new version.

        Raises:
            StaleStateError: ``expected_version`` does not match the stored
                version (a missing record has version 0).
        """

    async def save_run(self, run: PipelineRun) -> None:
        """Persist a pipeline run for audit."""

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Retrieve a pipeline run by id."""

    async def list_runs(self) -> list[PipelineRun]:
        """Return all archived pipeline runs, oldest first."""
