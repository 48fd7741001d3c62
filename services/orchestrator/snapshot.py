"""
Persisted job state and its reconciliation against History.

The snapshot file holds every live job as JSON. It is written through a
temporary file and renamed into place, so a crash mid-write leaves the
previous snapshot intact.

On load, each unit that was not terminal is cross-checked against its
History entry:
- History shows the same (or a later) attempt completed or failed: adopt it.
- The unit has an operation handle and its credential is still in the pool:
  resume polling.
- Otherwise the unit never reached the provider (or can no longer be
  polled): fail it with INTERRUPTED so it can be retried.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

import aiofiles

from services.credentials import CredentialPool, RotationPolicy
from services.generation import GenerationJob, UnitStatus
from services.history import HistoryMirror

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
INTERRUPTED_ERROR_CODE = "INTERRUPTED"


class JobSnapshotStore:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> list[GenerationJob]:
        if not self.path.exists():
            return []

        async with aiofiles.open(self.path, "r", encoding="utf-8") as fh:
            raw = await fh.read()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable job snapshot {self.path}: {e}")
            return []

        jobs = []
        for item in data.get("jobs", []):
            policy = RotationPolicy.from_record(item["policy"]) if item.get("policy") else None
            jobs.append(GenerationJob.from_snapshot(item, policy=policy))
        return jobs

    async def save(self, jobs: list[GenerationJob]):
        payload = json.dumps(
            {
                "version": SNAPSHOT_VERSION,
                "savedAt": datetime.now(timezone.utc).isoformat(),
                "jobs": [job.to_snapshot() for job in jobs],
            }
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
            await fh.write(payload)
        os.replace(tmp_path, self.path)

    async def clear(self):
        self.path.unlink(missing_ok=True)


async def reconcile(
    job: GenerationJob,
    mirror: HistoryMirror,
    pool: CredentialPool,
) -> list[str]:
    """Settle a restored job against History. Returns unit ids to resume polling."""
    resume = []

    for unit in job.units:
        if unit.status.is_terminal:
            continue

        attempt = job.attempt(unit.id)
        entry = await mirror.fetch(unit.id)

        if entry is not None and entry.attempt >= unit.attempt_number:
            if entry.status == UnitStatus.COMPLETED.value and entry.artifact_url:
                job.transition(
                    attempt,
                    UnitStatus.COMPLETED,
                    artifact_url=entry.artifact_url,
                    operation_handle=entry.operation_handle,
                    credential_id=entry.credential_id,
                )
                continue
            if entry.status == UnitStatus.FAILED.value:
                job.transition(
                    attempt,
                    UnitStatus.FAILED,
                    error=entry.error or "Generation failed",
                    error_code=entry.error_code,
                )
                continue
            if not unit.operation_handle and entry.operation_handle:
                job.transition(
                    attempt,
                    UnitStatus.STARTING,
                    operation_handle=entry.operation_handle,
                    credential_id=entry.credential_id,
                )

        if unit.operation_handle and unit.credential_id and pool.get(unit.credential_id):
            resume.append(unit.id)
            continue

        job.transition(
            attempt,
            UnitStatus.FAILED,
            error="Interrupted before the video finished; retry to run it again",
            error_code=INTERRUPTED_ERROR_CODE,
        )

    return resume
