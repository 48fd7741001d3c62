"""
History entries and stores.

A HistoryEntry mirrors the public fields of one GenerationUnit, keyed by unit
id. It outlives the in-memory job and is the recovery source after a restart.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol

from services.generation import GenerationJob, GenerationUnit


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HistoryEntry:
    unit_id: str
    job_id: str
    sequence_number: int
    prompt: str
    aspect_ratio: str
    status: str
    title: Optional[str] = None
    project_id: Optional[str] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    credential_id: Optional[str] = None
    operation_handle: Optional[str] = None
    attempt: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_unit(cls, job: GenerationJob, unit: GenerationUnit) -> "HistoryEntry":
        return cls(
            unit_id=unit.id,
            job_id=job.id,
            project_id=job.project_id,
            sequence_number=unit.sequence_number,
            prompt=unit.request.prompt,
            title=unit.request.title,
            aspect_ratio=unit.request.aspect_ratio.value,
            status=unit.status.value,
            artifact_url=unit.artifact_url,
            error=unit.error,
            error_code=unit.error_code,
            credential_id=unit.credential_id,
            operation_handle=unit.operation_handle,
            attempt=unit.attempt_number,
            created_at=unit.created_at,
            updated_at=unit.updated_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "HistoryEntry":
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in dict(row).items() if key in names})

    def to_record(self) -> dict:
        return {
            "unitId": self.unit_id,
            "jobId": self.job_id,
            "projectId": self.project_id,
            "sequenceNumber": self.sequence_number,
            "prompt": self.prompt,
            "title": self.title,
            "aspectRatio": self.aspect_ratio,
            "status": self.status,
            "operationHandle": self.operation_handle,
            "artifactUrl": self.artifact_url,
            "error": self.error,
            "errorCode": self.error_code,
            "credentialId": self.credential_id,
            "attempt": self.attempt,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


# Columns a patch may touch
PATCHABLE_FIELDS = (
    "status",
    "artifact_url",
    "error",
    "error_code",
    "credential_id",
    "operation_handle",
    "attempt",
)


class HistoryStore(Protocol):
    async def upsert(self, entry: HistoryEntry) -> None:
        ...

    async def patch(self, unit_id: str, **changes: Any) -> bool:
        ...

    async def get(self, unit_id: str) -> Optional[HistoryEntry]:
        ...

    async def list_entries(
        self, job_id: Optional[str] = None, limit: int = 200
    ) -> list[HistoryEntry]:
        ...


class InMemoryHistoryStore:
    """History kept in process memory. Used when no database is configured."""

    def __init__(self):
        self._entries: dict[str, HistoryEntry] = {}

    async def upsert(self, entry: HistoryEntry) -> None:
        self._entries[entry.unit_id] = entry

    async def patch(self, unit_id: str, **changes: Any) -> bool:
        entry = self._entries.get(unit_id)
        if entry is None:
            return False
        for name, value in changes.items():
            if name not in PATCHABLE_FIELDS:
                raise ValueError(f"Cannot patch history field {name}")
            setattr(entry, name, value)
        entry.updated_at = _utcnow()
        return True

    async def get(self, unit_id: str) -> Optional[HistoryEntry]:
        return self._entries.get(unit_id)

    async def list_entries(
        self, job_id: Optional[str] = None, limit: int = 200
    ) -> list[HistoryEntry]:
        if job_id:
            entries = [e for e in self._entries.values() if e.job_id == job_id]
            entries.sort(key=lambda e: e.sequence_number)
        else:
            entries = list(self._entries.values())
            entries.sort(key=lambda e: (e.created_at, e.sequence_number), reverse=True)
        return entries[:limit]
