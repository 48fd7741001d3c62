"""
Generation units and jobs.

A GenerationJob owns its units and is the only place unit state changes.
Each unit has a current Attempt (attempt id + cancellation token); every
state change names the attempt it belongs to, and changes from a superseded
or cancelled attempt are dropped. Within one attempt status only moves
forward: pending -> starting -> generating -> completed | failed.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else _utcnow()


class UnitStatus(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.FAILED)


_STATUS_RANK = {
    UnitStatus.PENDING: 0,
    UnitStatus.STARTING: 1,
    UnitStatus.GENERATING: 2,
    UnitStatus.COMPLETED: 3,
    UnitStatus.FAILED: 3,
}


class AspectRatio(str, Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class JobKind(str, Enum):
    SINGLE = "single"
    BULK = "bulk"
    STORY = "story"


@dataclass
class GenerationRequest:
    """What one unit asks the provider for."""
    prompt: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    title: Optional[str] = None
    scene_number: Optional[int] = None

    # Story mode: [{"name": ..., "description": ...}]
    characters: list[dict] = field(default_factory=list)

    def render_prompt(self) -> str:
        """Prompt text sent to the provider, with story context appended."""
        if not self.characters:
            return self.prompt
        lines = []
        for character in self.characters:
            name = character.get("name") or "Character"
            description = character.get("description")
            lines.append(f"- {name}: {description}" if description else f"- {name}")
        return f"{self.prompt}\n\nCharacters:\n" + "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt,
            "aspectRatio": self.aspect_ratio.value,
            "title": self.title,
            "sceneNumber": self.scene_number,
            "characters": self.characters,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GenerationRequest":
        return cls(
            prompt=data["prompt"],
            aspect_ratio=AspectRatio(data.get("aspectRatio", AspectRatio.LANDSCAPE.value)),
            title=data.get("title"),
            scene_number=data.get("sceneNumber"),
            characters=list(data.get("characters") or []),
        )


class CancellationToken:
    """Cooperative cancellation, checked at every suspension point."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds. Returns False if cancelled first."""
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


@dataclass
class Attempt:
    """One submission-to-terminal cycle of a unit."""
    unit_id: str
    number: int
    attempt_id: str = field(default_factory=lambda: uuid4().hex)
    token: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class GenerationUnit:
    """One requested clip."""
    sequence_number: int
    request: GenerationRequest
    id: str = field(default_factory=lambda: uuid4().hex)
    status: UnitStatus = UnitStatus.PENDING
    operation_handle: Optional[str] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    credential_id: Optional[str] = None
    attempt_number: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_record(self) -> dict:
        return {
            "unitId": self.id,
            "sequenceNumber": self.sequence_number,
            "prompt": self.request.prompt,
            "title": self.request.title,
            "aspectRatio": self.request.aspect_ratio.value,
            "status": self.status.value,
            "operationHandle": self.operation_handle,
            "artifactUrl": self.artifact_url,
            "error": self.error,
            "errorCode": self.error_code,
            "credentialId": self.credential_id,
            "attempt": self.attempt_number,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def to_snapshot(self) -> dict:
        record = self.to_record()
        record["request"] = self.request.to_dict()
        return record

    @classmethod
    def from_snapshot(cls, data: dict) -> "GenerationUnit":
        return cls(
            id=data["unitId"],
            sequence_number=data["sequenceNumber"],
            request=GenerationRequest.from_dict(data["request"]),
            status=UnitStatus(data["status"]),
            operation_handle=data.get("operationHandle"),
            artifact_url=data.get("artifactUrl"),
            error=data.get("error"),
            error_code=data.get("errorCode"),
            credential_id=data.get("credentialId"),
            attempt_number=data.get("attempt", 1),
            created_at=_parse_time(data.get("createdAt")),
            updated_at=_parse_time(data.get("updatedAt")),
        )


# Fields a transition may set on a unit
_MUTABLE_FIELDS = frozenset(
    {"operation_handle", "artifact_url", "error", "error_code", "credential_id"}
)

TransitionListener = Callable[["GenerationJob", GenerationUnit, UnitStatus], Any]


class GenerationJob:
    """
    The ordered units of one submission.

    Listeners registered with ``on_transition`` are called synchronously with
    (job, unit, previous_status) whenever a unit's status changes, so no
    intermediate status is ever skipped.
    """

    def __init__(
        self,
        units: list[GenerationUnit],
        kind: JobKind = JobKind.BULK,
        policy: Any = None,
        project_id: Optional[str] = None,
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = job_id or uuid4().hex
        self.kind = kind
        self.policy = policy
        self.project_id = project_id
        self.created_at = created_at or _utcnow()
        self.units: list[GenerationUnit] = list(units)
        self._by_id = {unit.id: unit for unit in self.units}
        self._attempts = {
            unit.id: Attempt(unit_id=unit.id, number=unit.attempt_number)
            for unit in self.units
        }
        self._listeners: list[TransitionListener] = []
        self._settled = asyncio.Event()
        self._update_settled()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_unit(self, unit_id: str) -> Optional[GenerationUnit]:
        return self._by_id.get(unit_id)

    def attempt(self, unit_id: str) -> Attempt:
        return self._attempts[unit_id]

    def is_current(self, attempt: Attempt) -> bool:
        return self._attempts.get(attempt.unit_id) is attempt and not attempt.token.cancelled

    def failed_units(self) -> list[GenerationUnit]:
        return [u for u in self.units if u.status == UnitStatus.FAILED]

    def completed_units(self) -> list[GenerationUnit]:
        return [u for u in self.units if u.status == UnitStatus.COMPLETED]

    def is_terminal(self) -> bool:
        return all(u.status.is_terminal for u in self.units)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in UnitStatus}
        for unit in self.units:
            counts[unit.status.value] += 1
        counts["total"] = len(self.units)
        return counts

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def on_transition(self, listener: TransitionListener):
        self._listeners.append(listener)

    def _notify(self, unit: GenerationUnit, previous: UnitStatus):
        self._update_settled()
        for listener in self._listeners:
            try:
                listener(self, unit, previous)
            except Exception as e:
                logger.warning(f"Transition listener failed for unit {unit.id}: {e}")

    def _update_settled(self):
        if self.is_terminal():
            self._settled.set()
        else:
            self._settled.clear()

    def transition(self, attempt: Attempt, status: UnitStatus, **fields: Any) -> bool:
        """
        Apply a state change on behalf of ``attempt``.

        Returns False (and changes nothing) when the attempt is stale, the
        unit is already terminal, or the change would move status backwards.
        Re-applying the current non-terminal status only updates fields.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set unit fields: {sorted(unknown)}")

        unit = self._by_id[attempt.unit_id]
        if not self.is_current(attempt):
            logger.debug(
                f"Dropped stale {status.value} for unit {unit.id} (attempt {attempt.number})"
            )
            return False
        if unit.status.is_terminal:
            return False
        if _STATUS_RANK[status] < _STATUS_RANK[unit.status]:
            logger.debug(f"Dropped regression {unit.status.value} -> {status.value} for {unit.id}")
            return False

        previous = unit.status
        for name, value in fields.items():
            setattr(unit, name, value)
        unit.status = status
        unit.updated_at = _utcnow()

        if status != previous:
            self._notify(unit, previous)
        return True

    def begin_attempt(self, unit_id: str) -> Attempt:
        """
        Install a fresh attempt for a unit and reset it to starting.

        The previous attempt's token is cancelled, so its poller stops and any
        response still in flight is dropped on arrival.
        """
        unit = self._by_id[unit_id]
        self._attempts[unit_id].token.cancel()

        unit.attempt_number += 1
        attempt = Attempt(unit_id=unit_id, number=unit.attempt_number)
        self._attempts[unit_id] = attempt

        previous = unit.status
        unit.status = UnitStatus.STARTING
        unit.operation_handle = None
        unit.artifact_url = None
        unit.error = None
        unit.error_code = None
        unit.credential_id = None
        unit.updated_at = _utcnow()

        self._notify(unit, previous)
        return attempt

    def replace_request(self, unit_id: str, **changes: Any) -> GenerationUnit:
        """Edit a unit's request ahead of a regeneration."""
        unit = self._by_id[unit_id]
        unit.request = replace(unit.request, **changes)
        return unit

    def cancel_all(self):
        for attempt in self._attempts.values():
            attempt.token.cancel()

    async def wait_settled(self):
        """Wait until every unit is terminal."""
        await self._settled.wait()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> dict:
        return {
            "jobId": self.id,
            "kind": self.kind.value,
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "policy": self.policy.to_record() if self.policy is not None else None,
            "units": [unit.to_snapshot() for unit in self.units],
        }

    @classmethod
    def from_snapshot(cls, data: dict, policy: Any = None) -> "GenerationJob":
        return cls(
            units=[GenerationUnit.from_snapshot(item) for item in data["units"]],
            kind=JobKind(data.get("kind", JobKind.BULK.value)),
            policy=policy,
            project_id=data.get("projectId"),
            job_id=data["jobId"],
            created_at=_parse_time(data.get("createdAt")),
        )
