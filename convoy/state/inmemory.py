"""In-memory implementation of the state store."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import DefaultDict, Dict, Optional

from ..contracts import PipelineRun, StateRecord
from ..errors import StaleStateError
from .repository import StateStore


class InMemoryStateStore(StateStore):
    """Keep state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, StateRecord] = {}
        self._runs: Dict[str, PipelineRun] = {}
        self._holder: Optional[str] = None
        self._write_locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    async def get_snapshot(self) -> Dict[str, StateRecord]:
        return {k: v.model_copy() for k, v in self._records.items()}

    async def get_record(self, identifier: str) -> StateRecord | None:
        record = self._records.get(identifier)
        return record.model_copy() if record else None

    async def try_lock(self, run_id: str) -> bool:
        if self._holder is not None:
            return False
        self._holder = run_id
        return True

    async def unlock(self, run_id: str) -> bool:
        if self._holder != run_id:
            return False
        self._holder = None
        return True

    async def force_unlock(self) -> Optional[str]:
        holder, self._holder = self._holder, None
        return holder

    async def lock_holder(self) -> Optional[str]:
        return self._holder

    async def commit(
        self, record: StateRecord, expected_version: int | None = None
    ) -> StateRecord:
        async with self._write_locks[record.identifier]:
            current = self._records.get(record.identifier)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise StaleStateError(
                    record.identifier, expected_version, current_version
                )
            stored = record.model_copy(
                update={
                    "version": current_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._records[record.identifier] = stored
            return stored.model_copy()

    async def save_run(self, run: PipelineRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> PipelineRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self) -> list[PipelineRun]:
        return sorted(
            (r.model_copy(deep=True) for r in self._runs.values()),
            key=lambda r: r.created_at,
        )
