"""
Batch Scheduler - releases a job's units in throttled batches.

Units are split into consecutive batches of ``policy.units_per_batch``. Each
batch binds one credential per unit, starts all of its workers concurrently,
and the next batch is released only after ``policy.batch_delay_seconds``.
This caps the request rate against the provider no matter how quickly
individual operations finish. Outcomes are yielded as units finish.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from core.errors import CredentialExhaustionError, JobValidationError
from services.credentials import Credential, CredentialPool, RotationPolicy
from services.generation.runner import UnitOutcome

logger = logging.getLogger(__name__)


@dataclass
class BatchRecord:
    index: int
    unit_ids: list[str]
    issued_at: float


class UnitWorker(Protocol):
    async def run(self, unit: Any, credential: Credential) -> UnitOutcome:
        ...

    def reject(self, unit: Any, error: CredentialExhaustionError) -> UnitOutcome:
        ...


class _ReleaseFailed:
    def __init__(self, error: BaseException):
        self.error = error


class BatchScheduler:
    """
    Usage:
        scheduler = BatchScheduler(pool)
        async for outcome in scheduler.schedule(job.units, job.policy, worker):
            ...
    """

    def __init__(
        self,
        pool: CredentialPool,
        max_units: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        acquire_attempts: int = 3,
        acquire_wait_seconds: float = 2.0,
    ):
        self.pool = pool
        self.max_units = max_units
        self._sleep = sleep
        self._clock = clock
        self.acquire_attempts = acquire_attempts
        self.acquire_wait_seconds = acquire_wait_seconds

    def validate(self, count: int):
        if count < 1:
            raise JobValidationError("A job needs at least one prompt")
        if count > self.max_units:
            raise JobValidationError(
                f"A job may hold at most {self.max_units} prompts (got {count})"
            )

    @staticmethod
    def partition(units: Sequence[Any], size: int) -> list[list[Any]]:
        return [list(units[i:i + size]) for i in range(0, len(units), size)]

    async def _acquire(self, policy: RotationPolicy) -> Credential:
        """Acquire a credential, re-trying sequentially while the pool is exhausted."""
        credential = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.acquire_attempts),
            wait=wait_fixed(self.acquire_wait_seconds),
            retry=retry_if_exception_type(CredentialExhaustionError),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                credential = await self.pool.acquire(policy)
        return credential

    async def _run_unit(
        self,
        unit: Any,
        credential: Credential,
        worker: UnitWorker,
        queue: asyncio.Queue,
    ):
        try:
            outcome = await worker.run(unit, credential)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Worker crashed for unit {unit.sequence_number}")
            outcome = UnitOutcome(
                unit_id=unit.id,
                sequence_number=unit.sequence_number,
                status=unit.status,
                error=str(e),
                error_code="UNEXPECTED_ERROR",
            )
        queue.put_nowait(outcome)

    async def _release_batches(
        self,
        batches: list[list[Any]],
        policy: RotationPolicy,
        worker: UnitWorker,
        queue: asyncio.Queue,
        tasks: list[asyncio.Task],
        on_batch: Optional[Callable[[BatchRecord], Any]],
    ):
        try:
            for index, batch in enumerate(batches):
                if index:
                    await self._sleep(policy.batch_delay_seconds)

                bound = []
                for unit in batch:
                    try:
                        credential = await self._acquire(policy)
                    except CredentialExhaustionError as e:
                        logger.error(f"Unit {unit.sequence_number} has no credential: {e}")
                        queue.put_nowait(worker.reject(unit, e))
                        continue
                    bound.append((unit, credential))

                issued_at = self._clock()
                for unit, credential in bound:
                    tasks.append(asyncio.create_task(self._run_unit(unit, credential, worker, queue)))

                record = BatchRecord(index=index, unit_ids=[u.id for u, _ in bound], issued_at=issued_at)
                logger.info(
                    f"Released batch {index + 1}/{len(batches)} "
                    f"({len(bound)} of {len(batch)} units bound)"
                )
                if on_batch:
                    on_batch(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            queue.put_nowait(_ReleaseFailed(e))

    async def schedule(
        self,
        units: Sequence[Any],
        policy: RotationPolicy,
        worker: UnitWorker,
        on_batch: Optional[Callable[[BatchRecord], Any]] = None,
    ) -> AsyncIterator[UnitOutcome]:
        """Release ``units`` in batches and yield one outcome per unit."""
        units = list(units)
        self.validate(len(units))

        batches = self.partition(units, policy.units_per_batch)
        queue: asyncio.Queue = asyncio.Queue()
        tasks: list[asyncio.Task] = []
        releaser = asyncio.create_task(
            self._release_batches(batches, policy, worker, queue, tasks, on_batch)
        )

        try:
            for _ in range(len(units)):
                item = await queue.get()
                if isinstance(item, _ReleaseFailed):
                    raise item.error
                yield item
            await releaser
        finally:
            if not releaser.done():
                releaser.cancel()
            for task in tasks:
                if not task.done():
                    task.cancel()
