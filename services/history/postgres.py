"""
PostgreSQL history store.

Persists one row per generation unit in ``generation_history``. Rows are
upserted on every status change, so the table always holds each unit's
latest attempt.
"""

import logging
from typing import Any, Optional

import asyncpg

from core.config import DatabaseConfig

from .store import PATCHABLE_FIELDS, HistoryEntry

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS generation_history (
    unit_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    project_id TEXT,
    sequence_number INTEGER NOT NULL,
    prompt TEXT NOT NULL,
    title TEXT,
    aspect_ratio TEXT NOT NULL,
    status TEXT NOT NULL,
    artifact_url TEXT,
    error TEXT,
    error_code TEXT,
    credential_id TEXT,
    operation_handle TEXT,
    attempt INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS generation_history_job_idx ON generation_history (job_id);
"""


class PostgresHistoryStore:
    """
    Usage:
        pool = await PostgresHistoryStore.create_pool(config.database)
        store = PostgresHistoryStore(pool)
        await store.ensure_schema()
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @staticmethod
    async def create_pool(config: DatabaseConfig) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            config.url,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
        )

    async def ensure_schema(self):
        async with self.db_pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("History schema ready")

    async def upsert(self, entry: HistoryEntry) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO generation_history (
                    unit_id,
                    job_id,
                    project_id,
                    sequence_number,
                    prompt,
                    title,
                    aspect_ratio,
                    status,
                    artifact_url,
                    error,
                    error_code,
                    credential_id,
                    operation_handle,
                    attempt,
                    created_at,
                    updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16
                )
                ON CONFLICT (unit_id) DO UPDATE SET
                    prompt = EXCLUDED.prompt,
                    title = EXCLUDED.title,
                    aspect_ratio = EXCLUDED.aspect_ratio,
                    status = EXCLUDED.status,
                    artifact_url = EXCLUDED.artifact_url,
                    error = EXCLUDED.error,
                    error_code = EXCLUDED.error_code,
                    credential_id = EXCLUDED.credential_id,
                    operation_handle = EXCLUDED.operation_handle,
                    attempt = EXCLUDED.attempt,
                    updated_at = EXCLUDED.updated_at
                """,
                entry.unit_id,
                entry.job_id,
                entry.project_id,
                entry.sequence_number,
                entry.prompt,
                entry.title,
                entry.aspect_ratio,
                entry.status,
                entry.artifact_url,
                entry.error,
                entry.error_code,
                entry.credential_id,
                entry.operation_handle,
                entry.attempt,
                entry.created_at,
                entry.updated_at,
            )

        logger.debug(f"Mirrored unit {entry.unit_id} as {entry.status}")

    async def patch(self, unit_id: str, **changes: Any) -> bool:
        unknown = set(changes) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot patch history fields: {sorted(unknown)}")
        if not changes:
            return False

        columns = list(changes)
        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(columns, start=1))
        unit_param = len(columns) + 1

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE generation_history SET
                    {assignments},
                    updated_at = NOW()
                WHERE unit_id = ${unit_param}
                """,
                *[changes[name] for name in columns],
                unit_id,
            )

        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.endswith(" 1")

    async def get(self, unit_id: str) -> Optional[HistoryEntry]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM generation_history WHERE unit_id = $1",
                unit_id,
            )
        return HistoryEntry.from_row(row) if row else None

    async def list_entries(
        self, job_id: Optional[str] = None, limit: int = 200
    ) -> list[HistoryEntry]:
        async with self.db_pool.acquire() as conn:
            if job_id:
                rows = await conn.fetch(
                    """
                    SELECT * FROM generation_history
                    WHERE job_id = $1
                    ORDER BY sequence_number
                    LIMIT $2
                    """,
                    job_id,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM generation_history
                    ORDER BY created_at DESC, sequence_number DESC
                    LIMIT $1
                    """,
                    limit,
                )
        return [HistoryEntry.from_row(row) for row in rows]
