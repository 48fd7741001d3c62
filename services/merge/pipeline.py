"""
Merge Pipeline - concatenate completed clips in sequence order.

Inputs are sorted by sequence number no matter how they arrive, so the same
set always produces the same concatenation. A merge is all-or-nothing: on
failure no output file is left behind and the input units are untouched. A
failed (or completed) merge can be re-run with the same ordered inputs.
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union
from uuid import uuid4

import aiofiles
import httpx

from core.config import MergeConfig, get_config
from core.errors import MergeError
from services.generation import GenerationUnit, UnitStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MergeStatus(str, Enum):
    PENDING = "pending"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class MergeInput:
    sequence_number: int
    artifact_url: str


@dataclass
class MergeJob:
    inputs: tuple[MergeInput, ...]
    merge_id: str = field(default_factory=lambda: uuid4().hex)
    project_id: Optional[str] = None
    status: MergeStatus = MergeStatus.PENDING
    output_url: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_record(self) -> dict:
        return {
            "mergeId": self.merge_id,
            "projectId": self.project_id,
            "status": self.status.value,
            "mergedVideoUrl": self.output_url,
            "error": self.error,
            "attempts": self.attempts,
            "videos": [
                {"sequenceNumber": i.sequence_number, "artifactUrl": i.artifact_url}
                for i in self.inputs
            ],
        }


class Concatenator(Protocol):
    async def concatenate(self, artifact_urls: list[str], merge_id: str) -> str:
        """Concatenate artifacts in the given order and return the output URL."""
        ...


class FfmpegConcatenator:
    """
    Concatenates clips with the ffmpeg concat demuxer (stream copy).

    Inputs are downloaded to a scratch directory, ffmpeg writes a partial
    file next to the final output, and the partial file is renamed into
    place only when ffmpeg succeeds.
    """

    def __init__(self, config: Optional[MergeConfig] = None):
        self.config = config or get_config().merge

    def _public_url(self, path: Path) -> str:
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{path.name}"
        return str(path.resolve())

    async def _download(self, client: httpx.AsyncClient, url: str, target: Path) -> Path:
        if not url.startswith(("http://", "https://")):
            local = Path(url[len("file://"):] if url.startswith("file://") else url)
            if not local.is_file():
                raise MergeError(f"Clip not found: {url}")
            return local

        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(target, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        await fh.write(chunk)
        except httpx.HTTPError as e:
            raise MergeError(f"Failed to download {url}: {type(e).__name__}: {e}")
        return target

    async def concatenate(self, artifact_urls: list[str], merge_id: str) -> str:
        output_dir = Path(self.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        final_path = output_dir / f"{merge_id}.mp4"
        partial_path = output_dir / f"{merge_id}.partial.mp4"

        try:
            with tempfile.TemporaryDirectory(prefix=f"merge-{merge_id}-") as workdir:
                scratch = Path(workdir)
                async with httpx.AsyncClient(timeout=self.config.download_timeout) as client:
                    clips = [
                        await self._download(client, url, scratch / f"{i:03d}.mp4")
                        for i, url in enumerate(artifact_urls)
                    ]

                list_file = scratch / "list.txt"
                list_file.write_text(
                    "".join(f"file '{clip.resolve()}'\n" for clip in clips),
                    encoding="utf-8",
                )

                cmd = [
                    self.config.ffmpeg_binary,
                    "-y",
                    "-hide_banner",
                    "-loglevel", "error",
                    "-f", "concat",
                    "-safe", "0",
                    "-i", str(list_file),
                    "-c", "copy",
                    str(partial_path),
                ]
                try:
                    process = await asyncio.create_subprocess_exec(
                        *cmd,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                    )
                except FileNotFoundError:
                    raise MergeError(f"ffmpeg not found: {self.config.ffmpeg_binary}")

                _, stderr = await process.communicate()
                if process.returncode != 0:
                    detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
                    raise MergeError(f"ffmpeg exited with {process.returncode}: {detail}")

            os.replace(partial_path, final_path)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

        logger.info(f"Merged {len(artifact_urls)} clips into {final_path}")
        return self._public_url(final_path)


MergeItem = Union[GenerationUnit, MergeInput]


class MergePipeline:
    """
    Usage:
        pipeline = MergePipeline(FfmpegConcatenator())
        merge = await pipeline.merge(job.completed_units(), project_id="p1")
        merge = await pipeline.retry(merge.merge_id)
    """

    def __init__(self, concatenator: Concatenator):
        self.concatenator = concatenator
        self._merges: dict[str, MergeJob] = {}

    @staticmethod
    def prepare_inputs(items: Iterable[MergeItem]) -> tuple[MergeInput, ...]:
        """Validate merge inputs and order them by sequence number."""
        inputs = []
        for item in items:
            if isinstance(item, GenerationUnit):
                if item.status != UnitStatus.COMPLETED or not item.artifact_url:
                    raise MergeError(
                        f"Unit {item.sequence_number} is not completed",
                        error_code="INVALID_INPUT",
                    )
                inputs.append(MergeInput(item.sequence_number, item.artifact_url))
            else:
                if not item.artifact_url:
                    raise MergeError(
                        f"Video {item.sequence_number} has no artifact URL",
                        error_code="INVALID_INPUT",
                    )
                inputs.append(item)

        if len(inputs) < 2:
            raise MergeError(
                "At least 2 completed videos are required to merge",
                error_code="NOT_ENOUGH_INPUTS",
            )

        sequence_numbers = [i.sequence_number for i in inputs]
        if len(set(sequence_numbers)) != len(sequence_numbers):
            raise MergeError("Duplicate sequence numbers in merge input", error_code="INVALID_INPUT")

        return tuple(sorted(inputs, key=lambda i: i.sequence_number))

    def get(self, merge_id: str) -> Optional[MergeJob]:
        return self._merges.get(merge_id)

    async def merge(self, items: Iterable[MergeItem], project_id: Optional[str] = None) -> MergeJob:
        inputs = self.prepare_inputs(items)
        merge = MergeJob(inputs=inputs, project_id=project_id)
        self._merges[merge.merge_id] = merge
        return await self._run(merge)

    async def retry(self, merge_id: str) -> MergeJob:
        merge = self._merges.get(merge_id)
        if merge is None:
            raise MergeError(f"Merge {merge_id} not found", error_code="NOT_FOUND", merge_id=merge_id)
        if merge.status == MergeStatus.MERGING:
            raise MergeError(
                f"Merge {merge_id} is already running", error_code="IN_PROGRESS", merge_id=merge_id
            )
        return await self._run(merge)

    async def _run(self, merge: MergeJob) -> MergeJob:
        merge.status = MergeStatus.MERGING
        merge.attempts += 1
        merge.output_url = None
        merge.error = None
        merge.updated_at = _utcnow()
        urls = [i.artifact_url for i in merge.inputs]

        logger.info(f"Merging {len(urls)} clips as {merge.merge_id} (attempt {merge.attempts})")
        try:
            output_url = await self.concatenator.concatenate(urls, merge.merge_id)
        except Exception as e:
            merge.status = MergeStatus.FAILED
            merge.error = str(e)
            merge.updated_at = _utcnow()
            logger.error(f"Merge {merge.merge_id} failed: {e}")
            raise MergeError(
                f"Merge failed: {e}", error_code="CONCATENATION_FAILED", merge_id=merge.merge_id
            ) from e

        merge.status = MergeStatus.COMPLETED
        merge.output_url = output_url
        merge.updated_at = _utcnow()
        return merge
