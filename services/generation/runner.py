"""
Unit runner - one attempt from submission to terminal state.

The credential is released right after the provider answers the submission;
the reservation only guards the submission request itself. Polling keeps
using the same credential for authentication.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from core.errors import OrchestrationError, ProviderSubmissionError
from services.credentials import Credential, CredentialPool, ReleaseOutcome

from .models import Attempt, GenerationJob, GenerationUnit, JobKind, UnitStatus
from .poller import OperationPoller

logger = logging.getLogger(__name__)


@dataclass
class UnitOutcome:
    """Where a unit stood when its worker finished."""
    unit_id: str
    sequence_number: int
    status: UnitStatus
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def from_unit(cls, unit: GenerationUnit) -> "UnitOutcome":
        return cls(
            unit_id=unit.id,
            sequence_number=unit.sequence_number,
            status=unit.status,
            artifact_url=unit.artifact_url,
            error=unit.error,
            error_code=unit.error_code,
        )


class UnitRunner:
    """Runs attempts for any job, picking the poller by job kind."""

    def __init__(
        self,
        client,
        pool: CredentialPool,
        pollers: dict[JobKind, OperationPoller],
    ):
        self.client = client
        self.pool = pool
        self.pollers = pollers

    def poller_for(self, kind: JobKind) -> OperationPoller:
        return self.pollers.get(kind) or self.pollers[JobKind.BULK]

    async def run(self, job: GenerationJob, attempt: Attempt, credential: Credential) -> UnitOutcome:
        """Submit the unit with ``credential`` and poll it to a terminal state."""
        unit = job.get_unit(attempt.unit_id)

        if not job.is_current(attempt):
            await self.pool.release(credential.id, ReleaseOutcome.UNUSED)
            return UnitOutcome.from_unit(unit)

        try:
            submitted = await self.client.submit(unit.request, credential, scene_id=unit.id)
        except ProviderSubmissionError as e:
            await self.pool.release(credential.id, ReleaseOutcome.FAILURE, error=str(e))
            job.transition(
                attempt,
                UnitStatus.FAILED,
                error=str(e),
                error_code=e.error_code,
                credential_id=credential.id,
            )
            logger.error(f"Unit {unit.sequence_number} submission failed: {e}")
            return UnitOutcome.from_unit(unit)
        except asyncio.CancelledError:
            await asyncio.shield(self.pool.release(credential.id, ReleaseOutcome.UNUSED))
            raise

        await self.pool.release(credential.id, ReleaseOutcome.SUCCESS)

        bound = job.transition(
            attempt,
            UnitStatus.STARTING,
            operation_handle=submitted.operation_handle,
            credential_id=credential.id,
        )
        if not bound:
            logger.info(f"Unit {unit.sequence_number} attempt {attempt.number} superseded after submission")
            return UnitOutcome.from_unit(unit)

        await self.poller_for(job.kind).poll(job, attempt, credential)
        return UnitOutcome.from_unit(unit)

    async def resume(self, job: GenerationJob, attempt: Attempt, credential: Credential) -> UnitOutcome:
        """Continue polling an operation that was already accepted."""
        unit = job.get_unit(attempt.unit_id)
        logger.info(f"Resuming polling for unit {unit.sequence_number} ({unit.operation_handle})")
        await self.poller_for(job.kind).poll(job, attempt, credential)
        return UnitOutcome.from_unit(unit)

    def reject(self, job: GenerationJob, attempt: Attempt, error: OrchestrationError) -> UnitOutcome:
        """Fail a unit that never reached the provider."""
        unit = job.get_unit(attempt.unit_id)
        job.transition(attempt, UnitStatus.FAILED, error=str(error), error_code=error.error_code)
        return UnitOutcome.from_unit(unit)
