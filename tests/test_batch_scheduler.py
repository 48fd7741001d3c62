"""
Batch Scheduler Tests

Covers:
1. Batch partitioning and pacing
2. Job size validation
3. Units that cannot get a credential

Run with:
    python -m pytest tests/test_batch_scheduler.py -v
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.errors import JobValidationError
from fakes import FakeClock
from services.credentials import CredentialPool, ReleaseOutcome, RotationPolicy
from services.generation import GenerationRequest, GenerationUnit, UnitOutcome, UnitStatus
from services.scheduling import BatchScheduler


def make_units(count: int) -> list[GenerationUnit]:
    return [
        GenerationUnit(sequence_number=i, request=GenerationRequest(prompt=f"prompt {i}"))
        for i in range(1, count + 1)
    ]


class RecordingWorker:
    """Completes every unit and records when it started."""

    def __init__(self, pool: CredentialPool, clock: FakeClock):
        self.pool = pool
        self.clock = clock
        self.started: list[tuple[int, float]] = []
        self.rejected: list[int] = []

    async def run(self, unit, credential):
        self.started.append((unit.sequence_number, self.clock.now))
        await asyncio.sleep(0)
        await self.pool.release(credential.id, ReleaseOutcome.SUCCESS)
        return UnitOutcome(
            unit_id=unit.id, sequence_number=unit.sequence_number, status=UnitStatus.COMPLETED
        )

    def reject(self, unit, error):
        self.rejected.append(unit.sequence_number)
        return UnitOutcome(
            unit_id=unit.id,
            sequence_number=unit.sequence_number,
            status=UnitStatus.FAILED,
            error=str(error),
            error_code=error.error_code,
        )


class TestBatchPacing:
    """Units are released in batches separated by the policy delay."""

    @pytest.mark.asyncio
    async def test_twelve_units_in_batches_of_five(self):
        clock = FakeClock()
        pool = CredentialPool.from_secrets(["tok-a", "tok-b"])
        scheduler = BatchScheduler(pool, sleep=clock.sleep, clock=clock)
        worker = RecordingWorker(pool, clock)
        policy = RotationPolicy(units_per_batch=5, batch_delay_seconds=20)

        batches = []
        outcomes = [
            outcome
            async for outcome in scheduler.schedule(
                make_units(12), policy, worker, on_batch=batches.append
            )
        ]

        assert len(outcomes) == 12
        assert all(o.status == UnitStatus.COMPLETED for o in outcomes)
        assert [len(b.unit_ids) for b in batches] == [5, 5, 2]
        assert clock.sleeps == [20, 20]

        gaps = [b.issued_at - a.issued_at for a, b in zip(batches, batches[1:])]
        assert all(gap >= 20 for gap in gaps)

    @pytest.mark.asyncio
    async def test_batches_preserve_sequence_order(self):
        clock = FakeClock()
        pool = CredentialPool.from_secrets(["tok-a"])
        scheduler = BatchScheduler(pool, sleep=clock.sleep, clock=clock)
        worker = RecordingWorker(pool, clock)
        units = make_units(7)

        batches = []
        async for _ in scheduler.schedule(
            units, RotationPolicy(units_per_batch=3, batch_delay_seconds=10), worker, batches.append
        ):
            pass

        by_id = {u.id: u.sequence_number for u in units}
        assert [[by_id[i] for i in b.unit_ids] for b in batches] == [[1, 2, 3], [4, 5, 6], [7]]
        assert sorted(seq for seq, _ in worker.started) == list(range(1, 8))
        assert [b.issued_at for b in batches] == [1000.0, 1010.0, 1020.0]

    @pytest.mark.asyncio
    async def test_single_batch_has_no_delay(self):
        clock = FakeClock()
        pool = CredentialPool.from_secrets(["tok-a"])
        scheduler = BatchScheduler(pool, sleep=clock.sleep, clock=clock)

        outcomes = [
            o async for o in scheduler.schedule(
                make_units(5), RotationPolicy(units_per_batch=5), RecordingWorker(pool, clock)
            )
        ]

        assert len(outcomes) == 5
        assert clock.sleeps == []

    def test_partition(self):
        assert BatchScheduler.partition(list(range(7)), 3) == [[0, 1, 2], [3, 4, 5], [6]]


class TestValidation:
    """Job size bounds."""

    def test_rejects_empty_job(self):
        with pytest.raises(JobValidationError):
            BatchScheduler(CredentialPool()).validate(0)

    def test_rejects_oversized_job(self):
        scheduler = BatchScheduler(CredentialPool())
        scheduler.validate(200)
        with pytest.raises(JobValidationError):
            scheduler.validate(201)


class TestExhaustion:
    """Units that cannot bind a credential fail without blocking the rest."""

    @pytest.mark.asyncio
    async def test_units_over_cap_are_rejected(self):
        clock = FakeClock()
        pool = CredentialPool.from_secrets(["tok-a"])
        scheduler = BatchScheduler(
            pool, sleep=clock.sleep, clock=clock, acquire_attempts=3, acquire_wait_seconds=2.0
        )
        worker = RecordingWorker(pool, clock)
        policy = RotationPolicy(enabled=True, max_requests_per_credential=2, units_per_batch=5)

        outcomes = [o async for o in scheduler.schedule(make_units(5), policy, worker)]

        assert len(outcomes) == 5
        failed = [o for o in outcomes if o.status == UnitStatus.FAILED]
        assert sorted(o.sequence_number for o in failed) == [3, 4, 5]
        assert all(o.error_code == "CREDENTIALS_EXHAUSTED" for o in failed)
        assert sorted(worker.rejected) == [3, 4, 5]

        # Each rejected unit waited between its three acquisition attempts
        assert clock.sleeps == [2.0, 2.0] * 3
