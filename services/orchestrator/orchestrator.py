"""
Job Orchestrator - runs generation jobs from submission to a final clip set.

Composes the credential pool, batch scheduler, unit runner, retry
coordinator, progress publisher, history mirror and merge pipeline. Each job
runs as one background task; retries and restored units run as their own
tasks, so no job blocks another or blocks cancellation requests.
"""

import asyncio
import logging
from dataclasses import asdict, replace
from typing import Any, Coroutine, Iterable, Optional, Union

from core.config import Config, get_config
from core.errors import (
    CredentialExhaustionError,
    JobNotFoundError,
    JobValidationError,
    MergeError,
)
from services.credentials import Credential, CredentialPool, ReleaseOutcome, RotationPolicy
from services.generation import (
    AspectRatio,
    GenerationJob,
    GenerationRequest,
    GenerationUnit,
    JobKind,
    OperationPoller,
    StatusReport,
    UnitOutcome,
    UnitRunner,
    UnitStatus,
    profile_for,
)
from services.history import HistoryEntry, HistoryMirror, InMemoryHistoryStore
from services.merge import FfmpegConcatenator, MergeInput, MergeJob, MergePipeline
from services.retry import RetryCoordinator
from services.scheduling import BatchScheduler
from services.streaming import ProgressPublisher

from .snapshot import JobSnapshotStore, reconcile

logger = logging.getLogger(__name__)


class _JobWorker:
    """Runs scheduled units of one job."""

    def __init__(self, runner: UnitRunner, job: GenerationJob):
        self.runner = runner
        self.job = job

    async def run(self, unit: GenerationUnit, credential: Credential) -> UnitOutcome:
        # Retried or cancelled before its batch came up
        if unit.status != UnitStatus.PENDING:
            await self.runner.pool.release(credential.id, ReleaseOutcome.UNUSED)
            return UnitOutcome.from_unit(unit)
        return await self.runner.run(self.job, self.job.attempt(unit.id), credential)

    def reject(self, unit: GenerationUnit, error: CredentialExhaustionError) -> UnitOutcome:
        return self.runner.reject(self.job, self.job.attempt(unit.id), error)


class JobOrchestrator:
    """
    Usage:
        orchestrator = JobOrchestrator(pool, ProviderClient())
        job = await orchestrator.submit_prompts(["a fox at dawn", "a city at night"])
        await orchestrator.wait(job.id)
        merge = await orchestrator.merge_job(job.id)
    """

    def __init__(
        self,
        pool: CredentialPool,
        client: Any,
        *,
        config: Optional[Config] = None,
        publisher: Optional[ProgressPublisher] = None,
        mirror: Optional[HistoryMirror] = None,
        merge_pipeline: Optional[MergePipeline] = None,
        snapshot_store: Optional[JobSnapshotStore] = None,
        scheduler: Optional[BatchScheduler] = None,
        policy: Optional[RotationPolicy] = None,
        pollers: Optional[dict[JobKind, OperationPoller]] = None,
    ):
        self.config = config or get_config()
        self.pool = pool
        self.client = client
        self.publisher = publisher or ProgressPublisher()
        self.mirror = mirror or HistoryMirror(InMemoryHistoryStore())
        self.merge_pipeline = merge_pipeline or MergePipeline(FfmpegConcatenator(self.config.merge))
        self.snapshots = snapshot_store

        limits = self.config.limits
        self.scheduler = scheduler or BatchScheduler(
            pool,
            max_units=limits.max_units_per_job,
            acquire_attempts=limits.acquire_attempts,
            acquire_wait_seconds=limits.acquire_wait_seconds,
        )
        self._policy = policy or RotationPolicy(**asdict(self.config.rotation))

        if pollers is None:
            polling = self.config.polling
            pollers = {
                kind: OperationPoller.from_profile(
                    client, profile_for(kind, polling), polling.max_consecutive_errors
                )
                for kind in JobKind
            }
        self.runner = UnitRunner(client, pool, pollers)
        self.retries = RetryCoordinator(pool, self.runner)

        self._jobs: dict[str, GenerationJob] = {}
        self._job_tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._persist_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @property
    def policy(self) -> RotationPolicy:
        return self._policy

    def update_policy(self, **changes: Any) -> RotationPolicy:
        """Replace the policy used by jobs submitted from now on."""
        self._policy = replace(self._policy, **changes)
        logger.info(f"Rotation policy updated: {self._policy.to_record()}")
        return self._policy

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> GenerationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self) -> list[GenerationJob]:
        return list(self._jobs.values())

    def _find_unit(self, unit_id: str) -> Optional[tuple[GenerationJob, GenerationUnit]]:
        for job in self._jobs.values():
            unit = job.get_unit(unit_id)
            if unit is not None:
                return job, unit
        return None

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _register(self, job: GenerationJob):
        self._jobs[job.id] = job
        self.publisher.attach(job)
        self.mirror.watch(job)

    async def submit(
        self,
        requests: Iterable[GenerationRequest],
        kind: JobKind = JobKind.BULK,
        project_id: Optional[str] = None,
    ) -> GenerationJob:
        """
        Create a job with one unit per request and start it in the background.

        Raises:
            JobValidationError: 0 or more than the allowed number of requests
            CredentialExhaustionError: the pool has no usable credential
        """
        requests = list(requests)
        self.scheduler.validate(len(requests))

        policy = self._policy
        if not self.pool.has_available(policy):
            raise CredentialExhaustionError(
                "No usable credential in the pool; add or enable a token first"
            )

        units = [
            GenerationUnit(sequence_number=number, request=request)
            for number, request in enumerate(requests, start=1)
        ]
        job = GenerationJob(units, kind=kind, policy=policy, project_id=project_id)
        self._register(job)
        self.mirror.record_job(job)
        self._job_tasks[job.id] = self._spawn(self._run_job(job))

        logger.info(
            f"Submitted {kind.value} job {job.id}: {len(units)} units, "
            f"{policy.units_per_batch} per batch, {policy.batch_delay_seconds}s apart"
        )
        return job

    async def submit_prompts(
        self,
        prompts: Iterable[str],
        aspect_ratio: Union[AspectRatio, str] = AspectRatio.LANDSCAPE,
        project_id: Optional[str] = None,
        kind: Optional[JobKind] = None,
    ) -> GenerationJob:
        """Submit one unit per non-blank prompt."""
        cleaned = [prompt.strip() for prompt in prompts if prompt and prompt.strip()]
        if kind is None:
            kind = JobKind.SINGLE if len(cleaned) == 1 else JobKind.BULK
        ratio = AspectRatio(aspect_ratio)
        requests = [GenerationRequest(prompt=prompt, aspect_ratio=ratio) for prompt in cleaned]
        return await self.submit(requests, kind=kind, project_id=project_id)

    async def submit_scenes(
        self,
        scenes: Iterable[dict],
        characters: Optional[list[dict]] = None,
        aspect_ratio: Union[AspectRatio, str] = AspectRatio.LANDSCAPE,
        project_id: Optional[str] = None,
    ) -> GenerationJob:
        """Submit a story breakdown, one unit per scene."""
        ratio = AspectRatio(aspect_ratio)
        requests = []
        for number, scene in enumerate(scenes, start=1):
            prompt = (scene.get("prompt") or scene.get("description") or "").strip()
            if not prompt:
                raise JobValidationError(f"Scene {number} has no description")
            requests.append(
                GenerationRequest(
                    prompt=prompt,
                    aspect_ratio=ratio,
                    title=scene.get("title"),
                    scene_number=scene.get("sceneNumber") or number,
                    characters=list(characters or []),
                )
            )
        return await self.submit(requests, kind=JobKind.STORY, project_id=project_id)

    async def _run_job(self, job: GenerationJob):
        worker = _JobWorker(self.runner, job)
        async for outcome in self.scheduler.schedule(job.units, job.policy, worker):
            logger.debug(f"Unit {outcome.sequence_number} of job {job.id}: {outcome.status.value}")
            await self._persist()

        counts = job.counts()
        logger.info(
            f"Job {job.id} finished its first pass: "
            f"{counts['completed']} completed, {counts['failed']} failed"
        )

    async def wait(self, job_id: str, timeout: Optional[float] = None):
        """Wait until every unit of the job is terminal."""
        job = self.get(job_id)
        await asyncio.wait_for(job.wait_settled(), timeout=timeout)

    def snapshot(self, job_id: str) -> dict:
        return self.publisher.snapshot(self.get(job_id))

    def events(self, job_id: str):
        self.get(job_id)
        return self.publisher.subscribe(job_id)

    async def discard(self, job_id: str):
        """Drop a job ("start new"). History entries are kept."""
        job = self._jobs.pop(job_id, None)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        job.cancel_all()
        task = self._job_tasks.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()
        self.publisher.detach(job_id)
        await self._persist()
        logger.info(f"Discarded job {job_id}")

    # ------------------------------------------------------------------
    # Retry and cancel
    # ------------------------------------------------------------------

    async def retry_one(self, job_id: str, unit_id: str) -> bool:
        job = self.get(job_id)
        retried = await self.retries.retry_one(job, unit_id)
        await self._persist()
        return retried

    def start_retry(self, job_id: str, unit_id: str) -> bool:
        """Start a retry in the background. False if one is already running."""
        job = self.get(job_id)
        task = self.retries.retry_one_nowait(job, unit_id)
        if task is None:
            return False
        task.add_done_callback(lambda _: self._spawn(self._persist()))
        return True

    async def retry_all_failed(self, job_id: str) -> list[str]:
        job = self.get(job_id)
        retried = await self.retries.retry_all_failed(job)
        await self._persist()
        return retried

    def start_retry_all(self, job_id: str) -> list[str]:
        """Retry all failed units in the background. Returns the ids queued."""
        job = self.get(job_id)
        queued = [unit.id for unit in job.failed_units()]
        self._spawn(self.retry_all_failed(job_id))
        return queued

    async def regenerate(
        self,
        job_id: str,
        unit_id: str,
        prompt: Optional[str] = None,
        aspect_ratio: Optional[Union[AspectRatio, str]] = None,
    ) -> bool:
        """Edit a unit's request and run it again."""
        job = self.get(job_id)
        if job.get_unit(unit_id) is None:
            raise JobNotFoundError(f"Unit {unit_id} not found in job {job_id}")
        if self.retries.is_retrying(job_id, unit_id):
            return False

        changes: dict[str, Any] = {}
        if prompt and prompt.strip():
            changes["prompt"] = prompt.strip()
        if aspect_ratio:
            changes["aspect_ratio"] = AspectRatio(aspect_ratio)
        if changes:
            job.replace_request(unit_id, **changes)
            self.mirror.record_unit(job, job.get_unit(unit_id))

        return self.start_retry(job_id, unit_id)

    async def cancel(self, job_id: str, unit_id: str) -> bool:
        job = self.get(job_id)
        changed = self.retries.cancel(job, unit_id)
        await self._persist()
        return changed

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    async def check_status(self, operation_handle: str, unit_id: str) -> StatusReport:
        """Ask the provider for the raw status of an operation."""
        found = self._find_unit(unit_id)
        credential = None
        if found is not None and found[1].credential_id:
            credential = self.pool.get(found[1].credential_id)

        if credential is None:
            credential = await self.pool.acquire(self._policy)
            await self.pool.release(credential.id, ReleaseOutcome.UNUSED)

        return await self.client.check_status(operation_handle, unit_id, credential)

    async def history(self, job_id: Optional[str] = None, limit: int = 200) -> list[HistoryEntry]:
        return await self.mirror.list_entries(job_id=job_id, limit=limit)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    async def merge_job(self, job_id: str, project_id: Optional[str] = None) -> MergeJob:
        """Merge the completed units of a job in sequence order."""
        job = self.get(job_id)
        return await self.merge_pipeline.merge(job.completed_units(), project_id or job.project_id)

    async def merge_videos(
        self, videos: Iterable[MergeInput], project_id: Optional[str] = None
    ) -> MergeJob:
        return await self.merge_pipeline.merge(videos, project_id)

    async def merge_selected(
        self, unit_ids: list[str], project_id: Optional[str] = None
    ) -> MergeJob:
        """
        Merge hand-picked units, possibly from different jobs.

        Units are ordered by creation time, then sequence number, and
        renumbered 1..n for the merge.
        """
        limit = self.config.limits.max_merge_selection
        if not 2 <= len(unit_ids) <= limit:
            raise MergeError(
                f"Select between 2 and {limit} videos to merge", error_code="INVALID_SELECTION"
            )

        selected = []
        for unit_id in unit_ids:
            found = self._find_unit(unit_id)
            if found is not None:
                job, unit = found
                key = (unit.created_at, job.id, unit.sequence_number)
                status, url = unit.status.value, unit.artifact_url
            else:
                entry = await self.mirror.fetch(unit_id)
                if entry is None:
                    raise MergeError(f"Video {unit_id} not found", error_code="NOT_FOUND")
                key = (entry.created_at, entry.job_id, entry.sequence_number)
                status, url = entry.status, entry.artifact_url

            if status != UnitStatus.COMPLETED.value or not url:
                raise MergeError(f"Video {unit_id} is not completed", error_code="INVALID_INPUT")
            selected.append((key, url))

        selected.sort(key=lambda item: item[0])
        inputs = [MergeInput(number, url) for number, (_, url) in enumerate(selected, start=1)]
        return await self.merge_pipeline.merge(inputs, project_id)

    async def retry_merge(self, merge_id: str) -> MergeJob:
        return await self.merge_pipeline.retry(merge_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start background maintenance (credential window rotation)."""
        self._spawn(self.pool.run_rotation(lambda: self._policy))

    async def _persist(self):
        if self.snapshots is None:
            return
        async with self._persist_lock:
            try:
                await self.snapshots.save(list(self._jobs.values()))
            except OSError as e:
                logger.warning(f"Failed to persist job snapshot: {e}")

    async def restore(self) -> int:
        """
        Load persisted jobs, reconcile them against History and resume
        polling where possible. Returns the number of jobs restored.
        """
        if self.snapshots is None:
            return 0

        restored = 0
        resumed = 0
        for job in await self.snapshots.load():
            if job.id in self._jobs:
                continue
            if job.policy is None:
                job.policy = self._policy

            self._register(job)
            unit_ids = await reconcile(job, self.mirror, self.pool)
            if unit_ids:
                self._job_tasks[job.id] = self._spawn(self._resume_job(job, unit_ids))
            restored += 1
            resumed += len(unit_ids)

        await self._persist()
        logger.info(f"Restored {restored} jobs; resumed polling for {resumed} units")
        return restored

    async def _resume_job(self, job: GenerationJob, unit_ids: list[str]):
        await asyncio.gather(*(self._resume_unit(job, unit_id) for unit_id in unit_ids))
        await self._persist()

    async def _resume_unit(self, job: GenerationJob, unit_id: str):
        unit = job.get_unit(unit_id)
        credential = self.pool.get(unit.credential_id)
        if credential is None:
            return
        await self.runner.resume(job, job.attempt(unit_id), credential)

    async def close(self):
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.retries.close()
        await self._persist()
        await self.mirror.close()
        await self.client.close()
