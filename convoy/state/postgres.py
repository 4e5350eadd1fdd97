"""PostgreSQL implementation of the state store."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Optional

import asyncpg

from ..constants import STATE_LOCK_NAME
from ..contracts import PipelineRun, StateRecord
from ..errors import StaleStateError
from .repository import StateStore


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "INSERT 0 1" or "DELETE 1"
    return int(status.rsplit(" ", 1)[-1])


class PostgresStateStore(StateStore):
    """Persist state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS resource_state (
                identifier TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                config_hash TEXT,
                handle TEXT,
                status TEXT NOT NULL,
                dependencies JSONB NOT NULL,
                version INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS state_lock (
                name TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                acquired_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _to_record(row: asyncpg.Record) -> StateRecord:
        dependencies = row["dependencies"]
        if isinstance(dependencies, str):
            dependencies = json.loads(dependencies)
        return StateRecord(
            identifier=row["identifier"],
            kind=row["kind"],
            config_hash=row["config_hash"],
            handle=row["handle"],
            status=row["status"],
            dependencies=dependencies,
            version=row["version"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_run(body: str | dict) -> PipelineRun:
        if isinstance(body, str):
            return PipelineRun.from_json(body)
        return PipelineRun.model_validate(body)

    # ------------------------------------------------------------------
    async def get_snapshot(self) -> Dict[str, StateRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM resource_state ORDER BY identifier")
        finally:
            await conn.close()
        return {r["identifier"]: self._to_record(r) for r in rows}

    async def get_record(self, identifier: str) -> StateRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM resource_state WHERE identifier = $1", identifier
            )
        finally:
            await conn.close()
        return self._to_record(row) if row else None

    async def try_lock(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "INSERT INTO state_lock (name, run_id, acquired_at) VALUES ($1, $2, $3) ON CONFLICT (name) DO NOTHING",
                STATE_LOCK_NAME,
                run_id,
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def unlock(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM state_lock WHERE name = $1 AND run_id = $2",
                STATE_LOCK_NAME,
                run_id,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def force_unlock(self) -> Optional[str]:
        conn = await self._connect()
        try:
            holder = await conn.fetchval(
                "DELETE FROM state_lock WHERE name = $1 RETURNING run_id",
                STATE_LOCK_NAME,
            )
        finally:
            await conn.close()
        return holder

    async def lock_holder(self) -> Optional[str]:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT run_id FROM state_lock WHERE name = $1", STATE_LOCK_NAME
            )
        finally:
            await conn.close()

    async def commit(
        self, record: StateRecord, expected_version: int | None = None
    ) -> StateRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                current_version = await conn.fetchval(
                    "SELECT version FROM resource_state WHERE identifier = $1 FOR UPDATE",
                    record.identifier,
                )
                current_version = current_version or 0
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
                await conn.execute(
                    """
                    INSERT INTO resource_state
                        (identifier, kind, config_hash, handle, status, dependencies, version, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (identifier) DO UPDATE SET
                        kind = EXCLUDED.kind,
                        config_hash = EXCLUDED.config_hash,
                        handle = EXCLUDED.handle,
                        status = EXCLUDED.status,
                        dependencies = EXCLUDED.dependencies,
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                    """,
                    stored.identifier,
                    stored.kind.value,
                    stored.config_hash,
                    stored.handle,
                    stored.status.value,
                    json.dumps(stored.dependencies),
                    stored.version,
                    stored.updated_at,
                )
        finally:
            await conn.close()
        return stored

    async def save_run(self, run: PipelineRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO pipeline_runs (run_id, state, created_at, body) VALUES ($1, $2, $3, $4)
                ON CONFLICT (run_id) DO UPDATE SET state = EXCLUDED.state, body = EXCLUDED.body
                """,
                run.run_id,
                run.state.value,
                run.created_at,
                run.to_json(),
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body FROM pipeline_runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        return self._to_run(body) if body is not None else None

    async def list_runs(self) -> list[PipelineRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM pipeline_runs ORDER BY created_at"
            )
        finally:
            await conn.close()
        return [self._to_run(r["body"]) for r in rows]
