"""
Operation Poller - drives one submitted unit to a terminal state.

Provider status strings are normalized through explicit tables. A string in
none of the tables is logged and treated as still in progress; it is never
guessed to be terminal. Polling is bounded by ``max_polls`` and stops as soon
as the attempt is cancelled or superseded.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.config import PollingConfig
from core.errors import (
    PollTimeoutError,
    ProviderGenerationError,
    StatusCheckError,
)
from services.credentials import Credential

from .models import Attempt, GenerationJob, JobKind, UnitStatus

logger = logging.getLogger(__name__)


class ProviderOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    UNKNOWN = "unknown"


SUCCESS_STATUSES = frozenset({
    "COMPLETED",
    "MEDIA_GENERATION_STATUS_COMPLETE",
    "MEDIA_GENERATION_STATUS_SUCCESSFUL",
})

FAILURE_STATUSES = frozenset({
    "FAILED",
    "MEDIA_GENERATION_STATUS_FAILED",
})

IN_PROGRESS_STATUSES = frozenset({
    "PENDING",
    "QUEUED",
    "PROCESSING",
    "RUNNING",
    "IN_PROGRESS",
    "GENERATING",
    "MEDIA_GENERATION_STATUS_PENDING",
    "MEDIA_GENERATION_STATUS_ACTIVE",
    "MEDIA_GENERATION_STATUS_PROCESSING",
})


def normalize_status(raw: Optional[str]) -> ProviderOutcome:
    """Map a raw provider status string onto a ProviderOutcome."""
    if not raw:
        return ProviderOutcome.UNKNOWN
    key = raw.strip().upper()
    if key in SUCCESS_STATUSES:
        return ProviderOutcome.SUCCEEDED
    if key in FAILURE_STATUSES:
        return ProviderOutcome.FAILED
    if key in IN_PROGRESS_STATUSES:
        return ProviderOutcome.IN_PROGRESS
    return ProviderOutcome.UNKNOWN


@dataclass(frozen=True)
class PollingProfile:
    interval_seconds: float
    max_polls: int


def profile_for(kind: JobKind, config: PollingConfig) -> PollingProfile:
    if kind == JobKind.SINGLE:
        return PollingProfile(config.single_interval_seconds, config.single_max_polls)
    return PollingProfile(config.batch_interval_seconds, config.batch_max_polls)


class OperationPoller:
    """
    Polls one operation per call to ``poll``. Safe to share across units.

    Usage:
        poller = OperationPoller(client, interval_seconds=1.0, max_polls=300)
        status = await poller.poll(job, attempt, credential)
    """

    def __init__(
        self,
        client,
        interval_seconds: float = 1.0,
        max_polls: int = 300,
        max_consecutive_errors: int = 10,
    ):
        self.client = client
        self.interval_seconds = interval_seconds
        self.max_polls = max_polls
        self.max_consecutive_errors = max_consecutive_errors

    @classmethod
    def from_profile(cls, client, profile: PollingProfile, max_consecutive_errors: int = 10):
        return cls(client, profile.interval_seconds, profile.max_polls, max_consecutive_errors)

    async def poll(self, job: GenerationJob, attempt: Attempt, credential: Credential) -> UnitStatus:
        """
        Poll until the attempt reaches a terminal state, is cancelled, or
        runs out of polls. Returns the unit's status when polling stops.
        """
        unit = job.get_unit(attempt.unit_id)
        handle = unit.operation_handle
        token = attempt.token
        consecutive_errors = 0

        for poll_number in range(1, self.max_polls + 1):
            if not await token.sleep(self.interval_seconds):
                logger.debug(f"Polling cancelled for unit {unit.id} (attempt {attempt.number})")
                return unit.status

            try:
                report = await self.client.check_status(handle, unit.id, credential)
            except StatusCheckError as e:
                if token.cancelled:
                    return unit.status
                consecutive_errors += 1
                logger.warning(
                    f"Status check failed for unit {unit.id} "
                    f"({consecutive_errors}/{self.max_consecutive_errors}): {e}"
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    job.transition(
                        attempt,
                        UnitStatus.FAILED,
                        error=f"Too many failed status checks: {e}",
                        error_code=e.error_code,
                    )
                    return unit.status
                continue

            # Response for a cancelled or superseded attempt
            if not job.is_current(attempt):
                logger.debug(f"Discarded late status {report.status!r} for unit {unit.id}")
                return unit.status

            consecutive_errors = 0
            job.transition(attempt, UnitStatus.GENERATING)

            outcome = normalize_status(report.status)

            if outcome == ProviderOutcome.SUCCEEDED:
                if report.artifact_url:
                    job.transition(attempt, UnitStatus.COMPLETED, artifact_url=report.artifact_url)
                    logger.info(f"Unit {unit.sequence_number} completed after {poll_number} polls")
                else:
                    error = ProviderGenerationError(
                        f"Provider reported {report.status} without a video URL",
                        error_code="NO_ARTIFACT",
                    )
                    job.transition(
                        attempt, UnitStatus.FAILED, error=str(error), error_code=error.error_code
                    )
                    logger.error(f"Unit {unit.sequence_number}: {error}")
                return unit.status

            if outcome == ProviderOutcome.FAILED:
                error = ProviderGenerationError(
                    report.error or f"Provider reported {report.status}"
                )
                job.transition(
                    attempt, UnitStatus.FAILED, error=str(error), error_code=error.error_code
                )
                logger.error(f"Unit {unit.sequence_number} failed: {error}")
                return unit.status

            if outcome == ProviderOutcome.UNKNOWN:
                logger.warning(
                    f"Unrecognized provider status {report.status!r} for unit {unit.id}; "
                    "treating as in progress"
                )

        error = PollTimeoutError(
            f"Generation did not finish within {self.max_polls} polls "
            f"({self.interval_seconds * self.max_polls:.0f}s)"
        )
        if job.transition(attempt, UnitStatus.FAILED, error=str(error), error_code=error.error_code):
            logger.error(f"Unit {unit.sequence_number} timed out")
        return unit.status
