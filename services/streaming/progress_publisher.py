"""
Progress Publisher for generation jobs

Turns unit state transitions into an ordered outward event stream and serves
point-in-time snapshots of the same state.

Push mode: every status change becomes a ``progress`` record, followed by
``video_complete`` or ``error`` for terminal changes. When every unit of a
job is terminal a single ``complete`` record carrying all unit records ends
the round. A retry reopens the job; its next full termination emits a new
``complete``.

Pull mode: ``snapshot`` returns the full current state using the same unit
records (identity and status vocabulary) as push mode and History.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Optional

from core.errors import JobNotFoundError
from services.generation import GenerationJob, GenerationUnit, UnitStatus

from .ndjson import encode_record

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROGRESS = "progress"
    VIDEO_COMPLETE = "video_complete"
    ERROR = "error"
    COMPLETE = "complete"


_STATUS_MESSAGES = {
    UnitStatus.PENDING: "Waiting for its batch",
    UnitStatus.STARTING: "Submitted to provider",
    UnitStatus.GENERATING: "Generating video",
    UnitStatus.COMPLETED: "Video ready",
    UnitStatus.FAILED: "Generation failed",
}

# Upper bound on records one attempt produces: a progress record per status
# plus the video_complete or error record
_EVENTS_PER_ATTEMPT = len(UnitStatus) + 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProgressEvent:
    """One outward record."""

    event_type: EventType
    job_id: str
    event_id: int = 0
    unit_id: Optional[str] = None
    sequence_number: Optional[int] = None
    status: Optional[str] = None
    message: str = ""
    attempt: Optional[int] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    units: list[dict] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_record(self) -> dict:
        record = {
            "type": self.event_type.value,
            "id": self.event_id,
            "jobId": self.job_id,
            "timestamp": self.timestamp.isoformat(),
        }

        if self.event_type == EventType.COMPLETE:
            record["units"] = self.units
            return record

        record["unitId"] = self.unit_id
        record["sequenceNumber"] = self.sequence_number

        if self.event_type == EventType.PROGRESS:
            record.update(status=self.status, message=self.message, attempt=self.attempt)
        elif self.event_type == EventType.VIDEO_COMPLETE:
            record["artifactUrl"] = self.artifact_url
        elif self.event_type == EventType.ERROR:
            record.update(error=self.error, errorCode=self.error_code)

        return record

    def to_ndjson(self) -> str:
        return encode_record(self.to_record())


class ProgressPublisher:
    """
    Usage:
        publisher = ProgressPublisher()
        publisher.attach(job)

        async for record in publisher.subscribe(job.id):
            ...

        state = publisher.snapshot(job)

    The replay buffer holds the current round. It grows with the job so a
    late subscriber sees every unit's first attempt; ``history_limit`` is the
    room left for retries on top of that. Once it overflows, the oldest
    records are dropped and ``snapshot`` remains the full view.
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self._jobs: dict[str, GenerationJob] = {}
        # Events of the current round (since the last complete)
        self._history: dict[str, list[ProgressEvent]] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._counters: dict[str, int] = {}

    def attach(self, job: GenerationJob):
        self._jobs[job.id] = job
        self._history.setdefault(job.id, [])
        self._counters.setdefault(job.id, 0)
        job.on_transition(self._on_transition)

    def detach(self, job_id: str):
        """Forget a job and end its open streams."""
        self._jobs.pop(job_id, None)
        self._history.pop(job_id, None)
        self._counters.pop(job_id, None)
        for queue in self._subscribers.pop(job_id, []):
            queue.put_nowait(None)

    def _next_id(self, job_id: str) -> int:
        self._counters[job_id] = self._counters.get(job_id, 0) + 1
        return self._counters[job_id]

    def _on_transition(self, job: GenerationJob, unit: GenerationUnit, previous: UnitStatus):
        self._publish(job.id, self._unit_event(job.id, EventType.PROGRESS, unit))

        if unit.status == UnitStatus.COMPLETED:
            self._publish(job.id, self._unit_event(job.id, EventType.VIDEO_COMPLETE, unit))
        elif unit.status == UnitStatus.FAILED:
            self._publish(job.id, self._unit_event(job.id, EventType.ERROR, unit))

        if job.is_terminal():
            self._publish(job.id, self._complete_event(job))

    def _unit_event(self, job_id: str, event_type: EventType, unit: GenerationUnit) -> ProgressEvent:
        return ProgressEvent(
            event_type=event_type,
            job_id=job_id,
            event_id=self._next_id(job_id),
            unit_id=unit.id,
            sequence_number=unit.sequence_number,
            status=unit.status.value,
            message=_STATUS_MESSAGES[unit.status],
            attempt=unit.attempt_number,
            artifact_url=unit.artifact_url,
            error=unit.error,
            error_code=unit.error_code,
        )

    def _complete_event(self, job: GenerationJob) -> ProgressEvent:
        return ProgressEvent(
            event_type=EventType.COMPLETE,
            job_id=job.id,
            event_id=self._next_id(job.id),
            units=[unit.to_record() for unit in job.units],
        )

    def _replay_limit(self, job_id: str) -> int:
        job = self._jobs.get(job_id)
        if job is None:
            return self.history_limit
        return self.history_limit + len(job.units) * _EVENTS_PER_ATTEMPT

    def _publish(self, job_id: str, event: ProgressEvent):
        history = self._history.setdefault(job_id, [])
        if event.event_type == EventType.COMPLETE:
            history.clear()
        else:
            history.append(event)
            limit = self._replay_limit(job_id)
            if len(history) > limit:
                del history[: len(history) - limit]

        for queue in self._subscribers.get(job_id, []):
            queue.put_nowait(event)

    async def subscribe(self, job_id: str) -> AsyncIterator[dict]:
        """
        Stream records for a job until its next ``complete``.

        Events of the current round are replayed first. A job that is already
        fully terminal yields one ``complete`` record and ends.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if job.is_terminal():
            yield self._complete_event(job).to_record()
            return

        queue: asyncio.Queue = asyncio.Queue()
        replay = list(self._history.get(job_id, []))
        self._subscribers.setdefault(job_id, []).append(queue)

        try:
            for event in replay:
                yield event.to_record()

            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event.to_record()
                if event.event_type == EventType.COMPLETE:
                    return
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def snapshot(self, job: GenerationJob) -> dict:
        return {
            "jobId": job.id,
            "kind": job.kind.value,
            "projectId": job.project_id,
            "units": [unit.to_record() for unit in job.units],
            "counts": job.counts(),
            "done": job.is_terminal(),
            "timestamp": _utcnow().isoformat(),
        }
