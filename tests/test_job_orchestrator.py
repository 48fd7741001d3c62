"""
Job Orchestrator Tests

End-to-end runs against a scripted provider:
1. Submission, numbering and validation
2. Retry, regenerate, cancel and discard
3. Merging job output and hand-picked units
4. Snapshot, reconciliation and resume after restart

Run with:
    python -m pytest tests/test_job_orchestrator.py -v
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config
from core.errors import (
    CredentialExhaustionError,
    JobNotFoundError,
    JobValidationError,
    MergeError,
)
from fakes import RecordingConcatenator, ScriptedProvider
from services.credentials import Credential, CredentialPool, RotationPolicy
from services.generation import (
    GenerationJob,
    GenerationRequest,
    GenerationUnit,
    JobKind,
    OperationPoller,
    UnitStatus,
)
from services.history import HistoryEntry, HistoryMirror, InMemoryHistoryStore
from services.merge import MergePipeline
from services.orchestrator import JobOrchestrator, JobSnapshotStore


def build(provider=None, pool=None, store=None, snapshot_store=None, concatenator=None):
    provider = provider or ScriptedProvider()
    pool = pool if pool is not None else CredentialPool.from_secrets(["tok-a", "tok-b"])
    concatenator = concatenator or RecordingConcatenator()
    orchestrator = JobOrchestrator(
        pool,
        provider,
        config=Config(),
        mirror=HistoryMirror(store or InMemoryHistoryStore()),
        merge_pipeline=MergePipeline(concatenator),
        snapshot_store=snapshot_store,
        policy=RotationPolicy(units_per_batch=10, batch_delay_seconds=10),
        pollers={
            kind: OperationPoller(provider, interval_seconds=0, max_polls=50)
            for kind in JobKind
        },
    )
    return orchestrator, provider, concatenator


class TestSubmission:
    """Creating and running jobs."""

    @pytest.mark.asyncio
    async def test_prompts_become_numbered_units(self):
        orchestrator, provider, _ = build()

        job = await orchestrator.submit_prompts(["a fox", "  ", "a city ", "a river"], project_id="p1")
        await orchestrator.wait(job.id, timeout=5)

        assert job.kind == JobKind.BULK
        assert [u.sequence_number for u in job.units] == [1, 2, 3]
        assert [u.request.prompt for u in job.units] == ["a fox", "a city", "a river"]
        assert all(u.status == UnitStatus.COMPLETED for u in job.units)
        assert len(provider.submissions) == 3

        await orchestrator.mirror.drain()
        entries = await orchestrator.history(job_id=job.id)
        assert [e.sequence_number for e in entries] == [1, 2, 3]
        assert all(e.status == "completed" for e in entries)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_single_prompt_is_single_job(self):
        orchestrator, _, _ = build()

        job = await orchestrator.submit_prompts(["just one"])
        await orchestrator.wait(job.id, timeout=5)

        assert job.kind == JobKind.SINGLE
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_scenes_carry_characters(self):
        orchestrator, provider, _ = build()

        job = await orchestrator.submit_scenes(
            [{"description": "Mira opens the door", "title": "Arrival"}, {"prompt": "Mira runs"}],
            characters=[{"name": "Mira", "description": "a tall courier"}],
            aspect_ratio="portrait",
        )
        await orchestrator.wait(job.id, timeout=5)

        assert job.kind == JobKind.STORY
        assert job.units[0].request.title == "Arrival"
        assert job.units[1].request.scene_number == 2
        assert job.units[0].request.aspect_ratio.value == "portrait"
        assert "Mira: a tall courier" in job.units[0].request.render_prompt()
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_empty_job_creates_nothing(self):
        orchestrator, provider, _ = build()

        with pytest.raises(JobValidationError):
            await orchestrator.submit_prompts(["", "   "])

        assert orchestrator.list_jobs() == []
        assert provider.submissions == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_oversized_job_creates_nothing(self):
        orchestrator, _, _ = build()

        with pytest.raises(JobValidationError):
            await orchestrator.submit_prompts([f"prompt {i}" for i in range(201)])

        assert orchestrator.list_jobs() == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        orchestrator, _, _ = build(pool=CredentialPool())

        with pytest.raises(CredentialExhaustionError):
            await orchestrator.submit_prompts(["a fox"])

        assert orchestrator.list_jobs() == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_policy_change_applies_to_later_jobs(self):
        orchestrator, _, _ = build()

        first = await orchestrator.submit_prompts(["a", "b"])
        orchestrator.update_policy(units_per_batch=3)
        second = await orchestrator.submit_prompts(["c", "d"])

        assert first.policy.units_per_batch == 10
        assert second.policy.units_per_batch == 3
        with pytest.raises(JobValidationError):
            orchestrator.update_policy(batch_delay_seconds=5)
        await orchestrator.wait(first.id, timeout=5)
        await orchestrator.wait(second.id, timeout=5)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        orchestrator, _, _ = build()

        with pytest.raises(JobNotFoundError):
            orchestrator.get("missing")
        with pytest.raises(JobNotFoundError):
            orchestrator.events("missing")
        await orchestrator.close()


class TestRecovery:
    """Retry, regenerate, cancel and discard through the orchestrator."""

    @pytest.mark.asyncio
    async def test_retry_failed_unit(self):
        provider = ScriptedProvider(scripts={"b": ["FAILED"]})
        orchestrator, _, _ = build(provider=provider)
        job = await orchestrator.submit_prompts(["a", "b", "c"])
        await orchestrator.wait(job.id, timeout=5)
        assert [u.sequence_number for u in job.failed_units()] == [2]

        provider.scripts["b"] = ["COMPLETED"]
        retried = await orchestrator.retry_all_failed(job.id)

        assert retried == [job.units[1].id]
        assert all(u.status == UnitStatus.COMPLETED for u in job.units)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_regenerate_with_new_prompt(self):
        provider = ScriptedProvider(scripts={"blurry": ["FAILED"]})
        orchestrator, _, _ = build(provider=provider)
        job = await orchestrator.submit_prompts(["sharp", "blurry"])
        await orchestrator.wait(job.id, timeout=5)
        unit = job.units[1]

        assert await orchestrator.regenerate(job.id, unit.id, prompt="crisp", aspect_ratio="portrait")
        await orchestrator.wait(job.id, timeout=5)

        assert unit.status == UnitStatus.COMPLETED
        assert unit.request.prompt == "crisp"
        assert unit.request.aspect_ratio.value == "portrait"
        assert provider.submissions[-1]["prompt"] == "crisp"
        assert unit.attempt_number == 2
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_cancel_running_unit(self):
        provider = ScriptedProvider(scripts={"slow": ["PROCESSING"]})
        orchestrator, _, _ = build(provider=provider)
        job = await orchestrator.submit_prompts(["slow", "fast"])
        unit = job.units[0]
        while not unit.operation_handle:
            await asyncio.sleep(0)

        assert await orchestrator.cancel(job.id, unit.id)
        await orchestrator.wait(job.id, timeout=5)

        assert unit.status == UnitStatus.FAILED
        assert unit.error_code == "CANCELLED"
        assert job.units[1].status == UnitStatus.COMPLETED
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_discard(self):
        provider = ScriptedProvider(scripts={"slow": ["PROCESSING"]})
        orchestrator, _, _ = build(provider=provider)
        job = await orchestrator.submit_prompts(["slow"])

        await orchestrator.discard(job.id)

        with pytest.raises(JobNotFoundError):
            orchestrator.get(job.id)
        with pytest.raises(JobNotFoundError):
            await orchestrator.discard(job.id)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_check_status_uses_bound_credential(self):
        orchestrator, provider, _ = build()
        job = await orchestrator.submit_prompts(["a"])
        await orchestrator.wait(job.id, timeout=5)
        unit = job.units[0]

        report = await orchestrator.check_status(unit.operation_handle, unit.id)

        assert report.status == "COMPLETED"
        assert report.to_record()["artifactUrl"] == unit.artifact_url
        assert all(c.in_flight == 0 for c in orchestrator.pool.list_credentials())
        await orchestrator.close()


class TestMerging:
    """Merging job output."""

    @pytest.mark.asyncio
    async def test_merge_job_in_sequence_order(self):
        provider = ScriptedProvider(scripts={"b": ["FAILED"]})
        orchestrator, _, concatenator = build(provider=provider)
        job = await orchestrator.submit_prompts(["a", "b", "c", "d"])
        await orchestrator.wait(job.id, timeout=5)

        merge = await orchestrator.merge_job(job.id)

        urls = [job.units[i].artifact_url for i in (0, 2, 3)]
        assert concatenator.calls == [urls]
        assert merge.output_url.endswith(f"{merge.merge_id}.mp4")
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_merge_selected_across_jobs(self):
        orchestrator, _, concatenator = build()
        first = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(first.id, timeout=5)
        second = await orchestrator.submit_prompts(["c"])
        await orchestrator.wait(second.id, timeout=5)

        selection = [second.units[0].id, first.units[1].id, first.units[0].id]
        merge = await orchestrator.merge_selected(selection)

        expected = [
            first.units[0].artifact_url,
            first.units[1].artifact_url,
            second.units[0].artifact_url,
        ]
        assert concatenator.calls == [expected]
        assert [v["sequenceNumber"] for v in merge.to_record()["videos"]] == [1, 2, 3]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_merge_selected_from_history(self):
        store = InMemoryHistoryStore()
        orchestrator, _, concatenator = build(store=store)
        job = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(job.id, timeout=5)
        await orchestrator.mirror.drain()
        await orchestrator.discard(job.id)

        await orchestrator.merge_selected([u.id for u in job.units])

        assert concatenator.calls == [[u.artifact_url for u in job.units]]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_merge_selected_bounds(self):
        orchestrator, _, concatenator = build()
        job = await orchestrator.submit_prompts(["a"])
        await orchestrator.wait(job.id, timeout=5)

        with pytest.raises(MergeError) as exc_info:
            await orchestrator.merge_selected([job.units[0].id])
        assert exc_info.value.error_code == "INVALID_SELECTION"

        with pytest.raises(MergeError):
            await orchestrator.merge_selected([f"u{i}" for i in range(20)])
        assert concatenator.calls == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_merge_selected_rejects_failed_unit(self):
        provider = ScriptedProvider(scripts={"b": ["FAILED"]})
        orchestrator, _, _ = build(provider=provider)
        job = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(job.id, timeout=5)

        with pytest.raises(MergeError) as exc_info:
            await orchestrator.merge_selected([u.id for u in job.units])
        assert exc_info.value.error_code == "INVALID_INPUT"
        await orchestrator.close()


class TestRestore:
    """Snapshot, reconcile and resume."""

    @pytest.mark.asyncio
    async def test_restore_reconciles_units(self, tmp_path):
        path = tmp_path / "jobs.json"
        credential = Credential(secret="tok-a", id="cred-1")

        def unit(seq, **fields):
            return GenerationUnit(
                sequence_number=seq, request=GenerationRequest(prompt=f"scene {seq}"), **fields
            )

        done = unit(1, status=UnitStatus.COMPLETED, artifact_url="https://cdn.test/done.mp4")
        polling = unit(2, status=UnitStatus.GENERATING, operation_handle="op-live", credential_id="cred-1")
        never_sent = unit(3, status=UnitStatus.PENDING)
        finished_offline = unit(
            4, status=UnitStatus.GENERATING, operation_handle="op-old", credential_id="cred-1"
        )
        orphaned = unit(5, status=UnitStatus.STARTING, operation_handle="op-x", credential_id="gone")
        saved = GenerationJob(
            [done, polling, never_sent, finished_offline, orphaned],
            kind=JobKind.BULK,
            policy=RotationPolicy(units_per_batch=5, batch_delay_seconds=15),
        )
        await JobSnapshotStore(path).save([saved])

        store = InMemoryHistoryStore()
        await store.upsert(HistoryEntry(
            unit_id=finished_offline.id,
            job_id=saved.id,
            sequence_number=4,
            prompt="scene 4",
            aspect_ratio="landscape",
            status="completed",
            artifact_url="https://cdn.test/offline.mp4",
            attempt=1,
        ))

        orchestrator, provider, _ = build(
            pool=CredentialPool([credential]),
            store=store,
            snapshot_store=JobSnapshotStore(path),
        )
        assert await orchestrator.restore() == 1

        job = orchestrator.get(saved.id)
        await orchestrator.wait(job.id, timeout=5)
        units = {u.sequence_number: u for u in job.units}

        assert job.policy.batch_delay_seconds == 15
        assert units[1].artifact_url == "https://cdn.test/done.mp4"
        assert units[2].status == UnitStatus.COMPLETED
        assert units[2].artifact_url == "https://cdn.test/op-live.mp4"
        assert units[3].status == UnitStatus.FAILED
        assert units[3].error_code == "INTERRUPTED"
        assert units[4].status == UnitStatus.COMPLETED
        assert units[4].artifact_url == "https://cdn.test/offline.mp4"
        assert units[5].error_code == "INTERRUPTED"
        assert provider.submissions == []
        assert provider.status_calls == ["op-live"]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_snapshot_written_after_run(self, tmp_path):
        path = tmp_path / "jobs.json"
        orchestrator, _, _ = build(snapshot_store=JobSnapshotStore(path))

        job = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(job.id, timeout=5)
        await orchestrator.close()

        loaded = await JobSnapshotStore(path).load()
        assert [j.id for j in loaded] == [job.id]
        assert all(u.status == UnitStatus.COMPLETED for u in loaded[0].units)

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_ignored(self, tmp_path):
        path = tmp_path / "jobs.json"
        path.write_text("{not json", encoding="utf-8")

        assert await JobSnapshotStore(path).load() == []

    @pytest.mark.asyncio
    async def test_resume_with_pool_rebuilt_from_same_tokens(self, tmp_path):
        path = tmp_path / "jobs.json"
        before = CredentialPool.from_secrets(["tok-a", "tok-b"])
        credential = before.list_credentials()[1]

        polling = GenerationUnit(
            sequence_number=1,
            request=GenerationRequest(prompt="scene 1"),
            status=UnitStatus.GENERATING,
            operation_handle="op-live",
            credential_id=credential.id,
        )
        saved = GenerationJob([polling], kind=JobKind.BULK)
        await JobSnapshotStore(path).save([saved])

        orchestrator, provider, _ = build(
            pool=CredentialPool.from_secrets(["tok-a", "tok-b"]),
            snapshot_store=JobSnapshotStore(path),
        )
        assert await orchestrator.restore() == 1

        job = orchestrator.get(saved.id)
        await orchestrator.wait(job.id, timeout=5)

        assert job.units[0].status == UnitStatus.COMPLETED
        assert job.units[0].artifact_url == "https://cdn.test/op-live.mp4"
        assert provider.status_calls == ["op-live"]
        assert provider.submissions == []
