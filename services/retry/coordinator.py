"""
Retry Coordinator - per-unit retry, bulk retry of failed units, and cancel.

At most one retry runs per unit. A unit is claimed synchronously (no await
between the check and the claim), so concurrent ``retry_one`` calls for the
same unit coalesce into one attempt; the others return False.
"""

import asyncio
import logging
from typing import Optional

from core.errors import CredentialExhaustionError, JobNotFoundError
from services.credentials import CredentialPool
from services.generation import Attempt, GenerationJob, UnitRunner, UnitStatus

logger = logging.getLogger(__name__)

CANCELLED_ERROR_CODE = "CANCELLED"


class RetryCoordinator:
    def __init__(self, pool: CredentialPool, runner: UnitRunner):
        self.pool = pool
        self.runner = runner
        self._retrying: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()

    def is_retrying(self, job_id: str, unit_id: str) -> bool:
        return (job_id, unit_id) in self._retrying

    def _claim(self, job: GenerationJob, unit_id: str) -> Optional[Attempt]:
        if job.get_unit(unit_id) is None:
            raise JobNotFoundError(f"Unit {unit_id} not found in job {job.id}")

        key = (job.id, unit_id)
        if key in self._retrying:
            logger.info(f"Retry already in progress for unit {unit_id}; ignoring")
            return None

        self._retrying.add(key)
        return job.begin_attempt(unit_id)

    async def _drive(self, job: GenerationJob, attempt: Attempt):
        unit = job.get_unit(attempt.unit_id)
        try:
            try:
                credential = await self.pool.acquire(job.policy)
            except CredentialExhaustionError as e:
                logger.error(f"Retry of unit {unit.sequence_number} has no credential: {e}")
                self.runner.reject(job, attempt, e)
                return
            logger.info(f"Retrying unit {unit.sequence_number} (attempt {attempt.number})")
            await self.runner.run(job, attempt, credential)
        finally:
            self._retrying.discard((job.id, attempt.unit_id))

    async def retry_one(self, job: GenerationJob, unit_id: str) -> bool:
        """
        Start a new attempt for a unit and run it to a terminal state.

        Returns False without side effects when a retry is already running
        for the unit.
        """
        attempt = self._claim(job, unit_id)
        if attempt is None:
            return False
        await self._drive(job, attempt)
        return True

    def retry_one_nowait(self, job: GenerationJob, unit_id: str) -> Optional[asyncio.Task]:
        """
        Claim the unit now and run the retry in the background.

        Returns the background task, or None when the call was coalesced.
        """
        attempt = self._claim(job, unit_id)
        if attempt is None:
            return None
        task = asyncio.create_task(self._drive(job, attempt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def retry_all_failed(self, job: GenerationJob) -> list[str]:
        """
        Retry every unit that is failed right now, one after another.

        A unit that is no longer failed when its turn comes is skipped.
        Returns the ids of the units actually retried.
        """
        failed_ids = [unit.id for unit in job.failed_units()]
        logger.info(f"Retrying {len(failed_ids)} failed units in job {job.id}")

        retried = []
        for unit_id in failed_ids:
            if job.get_unit(unit_id).status != UnitStatus.FAILED:
                logger.info(f"Skipping unit {unit_id}: no longer failed")
                continue
            if await self.retry_one(job, unit_id):
                retried.append(unit_id)
        return retried

    def cancel(self, job: GenerationJob, unit_id: str) -> bool:
        """
        Invalidate the unit's current attempt.

        A unit that was still running becomes failed with error code
        CANCELLED, so it can be retried later. Returns True if the unit
        changed state.
        """
        unit = job.get_unit(unit_id)
        if unit is None:
            raise JobNotFoundError(f"Unit {unit_id} not found in job {job.id}")

        attempt = job.attempt(unit_id)
        changed = False
        if not unit.status.is_terminal:
            changed = job.transition(
                attempt,
                UnitStatus.FAILED,
                error="Cancelled",
                error_code=CANCELLED_ERROR_CODE,
            )
        attempt.token.cancel()

        if changed:
            logger.info(f"Cancelled unit {unit.sequence_number} in job {job.id}")
        return changed

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
