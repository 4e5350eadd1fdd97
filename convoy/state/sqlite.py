"""SQLite implementation of the state store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import STATE_LOCK_NAME
from ..contracts import PipelineRun, StateRecord
from ..errors import StaleStateError
from .repository import StateStore


class SQLiteStateStore(StateStore):
    """Persist state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS resource_state (
                identifier TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                config_hash TEXT,
                handle TEXT,
                status TEXT NOT NULL,
                dependencies TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS state_lock (
                name TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                acquired_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _commit_record(
        self, record: StateRecord, expected_version: int | None
    ) -> StateRecord:
        with self._mutex:
            cur = self._conn.cursor()
            row = cur.execute(
                "SELECT version FROM resource_state WHERE identifier = ?",
                (record.identifier,),
            ).fetchone()
            current_version = row["version"] if row else 0
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
            cur.execute(
                """
                INSERT INTO resource_state
                    (identifier, kind, config_hash, handle, status, dependencies, version, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identifier) DO UPDATE SET
                    kind = excluded.kind,
                    config_hash = excluded.config_hash,
                    handle = excluded.handle,
                    status = excluded.status,
                    dependencies = excluded.dependencies,
                    version = excluded.version,
                    updated_at = excluded.updated_at
                """,
                (
                    stored.identifier,
                    stored.kind.value,
                    stored.config_hash,
                    stored.handle,
                    stored.status.value,
                    json.dumps(stored.dependencies),
                    stored.version,
                    stored.updated_at.isoformat(),
                ),
            )
            self._conn.commit()
            return stored

    @staticmethod
    def _to_record(row: sqlite3.Row) -> StateRecord:
        return StateRecord(
            identifier=row["identifier"],
            kind=row["kind"],
            config_hash=row["config_hash"],
            handle=row["handle"],
            status=row["status"],
            dependencies=json.loads(row["dependencies"]),
            version=row["version"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Store API
    async def get_snapshot(self) -> Dict[str, StateRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM resource_state ORDER BY identifier"
        )
        return {row["identifier"]: self._to_record(row) for row in rows}

    async def get_record(self, identifier: str) -> StateRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM resource_state WHERE identifier = ?",
            identifier,
        )
        return self._to_record(row) if row else None

    async def try_lock(self, run_id: str) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO state_lock (name, run_id, acquired_at) VALUES (?, ?, ?)",
            STATE_LOCK_NAME,
            run_id,
            datetime.now(timezone.utc).isoformat(),
        )
        return inserted == 1

    async def unlock(self, run_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM state_lock WHERE name = ? AND run_id = ?",
            STATE_LOCK_NAME,
            run_id,
        )
        return deleted == 1

    def _release_lock(self) -> Optional[str]:
        with self._mutex:
            cur = self._conn.cursor()
            row = cur.execute(
                "SELECT run_id FROM state_lock WHERE name = ?", (STATE_LOCK_NAME,)
            ).fetchone()
            cur.execute("DELETE FROM state_lock WHERE name = ?", (STATE_LOCK_NAME,))
            self._conn.commit()
            return row["run_id"] if row else None

    async def force_unlock(self) -> Optional[str]:
        return await asyncio.to_thread(self._release_lock)

    async def lock_holder(self) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT run_id FROM state_lock WHERE name = ?",
            STATE_LOCK_NAME,
        )
        return row["run_id"] if row else None

    async def commit(
        self, record: StateRecord, expected_version: int | None = None
    ) -> StateRecord:
        return await asyncio.to_thread(self._commit_record, record, expected_version)

    async def save_run(self, run: PipelineRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO pipeline_runs (run_id, state, created_at, body) VALUES (?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET state = excluded.state, body = excluded.body
            """,
            run.run_id,
            run.state.value,
            run.created_at.isoformat(),
            run.to_json(),
        )

    async def get_run(self, run_id: str) -> PipelineRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM pipeline_runs WHERE run_id = ?", run_id
        )
        return PipelineRun.from_json(row["body"]) if row else None

    async def list_runs(self) -> list[PipelineRun]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM pipeline_runs ORDER BY created_at"
        )
        return [PipelineRun.from_json(row["body"]) for row in rows]
