"""
History mirror - best-effort, ordered writes of unit state.

Writes are queued and applied by one background writer, so two quick
transitions of a unit reach the store in the order they happened. Any store
failure is logged as a HistorySyncError and dropped; the generation pipeline
never waits on or fails because of history.
"""

import asyncio
import logging
from typing import Optional

from core.errors import HistorySyncError
from services.generation import GenerationJob, GenerationUnit, UnitStatus

from .store import HistoryEntry, HistoryStore

logger = logging.getLogger(__name__)


class HistoryMirror:
    def __init__(self, store: HistoryStore):
        self.store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def _ensure_writer(self):
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self):
        while True:
            entry = await self._queue.get()
            try:
                await self.store.upsert(entry)
            except Exception as e:
                error = HistorySyncError(f"Failed to mirror unit {entry.unit_id}: {e}")
                logger.warning(str(error))
            finally:
                self._queue.task_done()

    def record_unit(self, job: GenerationJob, unit: GenerationUnit):
        """Queue the unit's current state for the store."""
        self._queue.put_nowait(HistoryEntry.from_unit(job, unit))
        self._ensure_writer()

    def record_job(self, job: GenerationJob):
        for unit in job.units:
            self.record_unit(job, unit)

    def watch(self, job: GenerationJob):
        """Mirror every status change of the job's units."""
        job.on_transition(self._on_transition)

    def _on_transition(self, job: GenerationJob, unit: GenerationUnit, previous: UnitStatus):
        self.record_unit(job, unit)

    async def fetch(self, unit_id: str) -> Optional[HistoryEntry]:
        try:
            return await self.store.get(unit_id)
        except Exception as e:
            logger.warning(str(HistorySyncError(f"Failed to read history for {unit_id}: {e}")))
            return None

    async def list_entries(
        self, job_id: Optional[str] = None, limit: int = 200
    ) -> list[HistoryEntry]:
        try:
            return await self.store.list_entries(job_id=job_id, limit=limit)
        except Exception as e:
            logger.warning(str(HistorySyncError(f"Failed to list history: {e}")))
            return []

    async def drain(self):
        """Wait until every queued write has been attempted."""
        if self._writer is not None:
            await self._queue.join()

    async def close(self):
        if self._writer is not None:
            await self.drain()
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
