"""
HTTP Server Tests

Exercises the FastAPI app in-process over httpx's ASGI transport with a
scripted provider behind the orchestrator.

Run with:
    python -m pytest tests/test_server.py -v
"""

import json
import os
import sys

import httpx
import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config
from core.errors import ConfigurationError
from fakes import RecordingConcatenator, ScriptedProvider
from services.credentials import CredentialPool, RotationPolicy
from services.generation import JobKind, OperationPoller
from services.history import HistoryMirror, InMemoryHistoryStore
from services.merge import MergePipeline
from services.orchestrator import JobOrchestrator, server


@pytest_asyncio.fixture
async def orchestrator():
    provider = ScriptedProvider(scripts={"broken": ["FAILED"]})
    instance = JobOrchestrator(
        CredentialPool.from_secrets(["ya29.first-token-abcd", "ya29.second-token-wxyz"]),
        provider,
        config=Config(),
        mirror=HistoryMirror(InMemoryHistoryStore()),
        merge_pipeline=MergePipeline(RecordingConcatenator()),
        policy=RotationPolicy(units_per_batch=10, batch_delay_seconds=10),
        pollers={
            kind: OperationPoller(provider, interval_seconds=0, max_polls=50)
            for kind in JobKind
        },
    )
    server._orchestrator = instance
    yield instance
    server._orchestrator = None
    await instance.close()


@pytest_asyncio.fixture
async def client(orchestrator):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def parse_ndjson(text: str) -> list[dict]:
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestJobs:
    """Job submission and inspection."""

    @pytest.mark.asyncio
    async def test_create_job(self, client, orchestrator):
        response = await client.post(
            "/api/jobs", json={"prompts": ["a fox", "a city"], "aspectRatio": "portrait"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "bulk"
        assert len(data["unitIds"]) == 2
        assert data["monitorUrl"] == f"/api/jobs/{data['jobId']}/events"

        await orchestrator.wait(data["jobId"], timeout=5)
        snapshot = (await client.get(f"/api/jobs/{data['jobId']}")).json()
        assert snapshot["done"] is True
        assert [u["aspectRatio"] for u in snapshot["units"]] == ["portrait", "portrait"]

    @pytest.mark.asyncio
    async def test_empty_job_is_rejected(self, client, orchestrator):
        response = await client.post("/api/jobs", json={"prompts": ["", "  "]})

        assert response.status_code == 400
        assert orchestrator.list_jobs() == []

    @pytest.mark.asyncio
    async def test_story_job(self, client, orchestrator):
        response = await client.post(
            "/api/jobs",
            json={
                "scenes": [{"description": "Mira arrives"}, {"description": "Mira leaves"}],
                "characters": [{"name": "Mira", "description": "a courier"}],
            },
        )

        assert response.status_code == 200
        assert response.json()["kind"] == "story"
        await orchestrator.wait(response.json()["jobId"], timeout=5)

    @pytest.mark.asyncio
    async def test_no_credentials(self, client, orchestrator):
        for credential in orchestrator.pool.list_credentials():
            await orchestrator.pool.set_active(credential.id, False)

        response = await client.post("/api/jobs", json={"prompts": ["a fox"]})

        assert response.status_code == 503
        assert response.json()["errorCode"] == "CREDENTIALS_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/api/jobs/missing")).status_code == 404
        assert (await client.get("/api/jobs/missing/events")).status_code == 404
        assert (await client.delete("/api/jobs/missing")).status_code == 404

    @pytest.mark.asyncio
    async def test_events_for_finished_job(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a fox", "broken"])
        await orchestrator.wait(job.id, timeout=5)

        response = await client.get(f"/api/jobs/{job.id}/events")

        assert response.headers["content-type"].startswith("application/x-ndjson")
        records = parse_ndjson(response.text)
        assert [r["type"] for r in records] == ["complete"]
        assert [u["status"] for u in records[0]["units"]] == ["completed", "failed"]

    @pytest.mark.asyncio
    async def test_generate_stream_ends_with_complete(self, client):
        response = await client.post("/api/generate-stream", json={"prompts": ["a fox", "broken"]})

        records = parse_ndjson(response.text)
        types = [r["type"] for r in records]
        assert types[-1] == "complete"
        assert types.count("complete") == 1
        assert [u["status"] for u in records[-1]["units"]] == ["completed", "failed"]
        assert records[-1]["units"][1]["error"] == "Content policy violation"

    @pytest.mark.asyncio
    async def test_retry_failed_units(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a fox", "broken"])
        await orchestrator.wait(job.id, timeout=5)
        orchestrator.client.scripts["broken"] = ["COMPLETED"]

        response = await client.post(f"/api/jobs/{job.id}/retry-failed")

        assert response.status_code == 202
        assert response.json()["unitIds"] == [job.units[1].id]
        await orchestrator.wait(job.id, timeout=5)
        assert job.units[1].status.value == "completed"

    @pytest.mark.asyncio
    async def test_discard(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a fox"])
        await orchestrator.wait(job.id, timeout=5)

        response = await client.delete(f"/api/jobs/{job.id}")

        assert response.json() == {"jobId": job.id, "discarded": True}
        assert (await client.get(f"/api/jobs/{job.id}")).status_code == 404


class TestMerge:
    """Merge endpoints."""

    @pytest.mark.asyncio
    async def test_merge_videos(self, client):
        videos = [
            {"sequenceNumber": 2, "artifactUrl": "https://cdn.test/2.mp4"},
            {"sequenceNumber": 1, "artifactUrl": "https://cdn.test/1.mp4"},
        ]

        response = await client.post("/api/merge-videos", json={"videos": videos})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert [v["artifactUrl"] for v in data["videos"]] == [
            "https://cdn.test/1.mp4",
            "https://cdn.test/2.mp4",
        ]

    @pytest.mark.asyncio
    async def test_single_video_is_rejected(self, client):
        videos = [{"sequenceNumber": 1, "artifactUrl": "https://cdn.test/1.mp4"}]

        response = await client.post("/api/merge-videos", json={"videos": videos})

        assert response.status_code == 400
        assert response.json()["errorCode"] == "NOT_ENOUGH_INPUTS"

    @pytest.mark.asyncio
    async def test_retry_unknown_merge(self, client):
        response = await client.post("/api/retry-merge/missing")

        assert response.status_code == 404
        assert response.json()["mergeId"] == "missing"

    @pytest.mark.asyncio
    async def test_merge_selected(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(job.id, timeout=5)

        response = await client.post(
            "/api/merge-selected-videos", json={"unitIds": [u.id for u in reversed(job.units)]}
        )

        assert response.status_code == 200
        assert [v["artifactUrl"] for v in response.json()["videos"]] == [
            u.artifact_url for u in job.units
        ]


class TestTokens:
    """Credential administration and rotation settings."""

    @pytest.mark.asyncio
    async def test_list_masks_secrets(self, client):
        data = (await client.get("/api/tokens")).json()

        assert len(data["tokens"]) == 2
        assert all("first-token" not in t["token"] for t in data["tokens"])
        assert data["summary"]["total"] == 2

    @pytest.mark.asyncio
    async def test_add_toggle_delete(self, client, orchestrator):
        created = await client.post("/api/tokens", json={"token": "ya29.third-token-1234", "label": "spare"})
        assert created.status_code == 201
        token_id = created.json()["id"]

        toggled = await client.patch(f"/api/tokens/{token_id}/toggle")
        assert toggled.json()["isActive"] is False

        assert (await client.delete(f"/api/tokens/{token_id}")).status_code == 200
        assert (await client.delete(f"/api/tokens/{token_id}")).status_code == 404
        assert (await client.patch(f"/api/tokens/{token_id}/toggle")).status_code == 404
        assert len(orchestrator.pool.list_credentials()) == 2

    @pytest.mark.asyncio
    async def test_bulk_replace(self, client, orchestrator):
        response = await client.post("/api/tokens/bulk-replace", json={"tokens": "tok-1\n\n tok-2 \n"})

        assert len(response.json()["tokens"]) == 2
        assert [c.secret for c in orchestrator.pool.list_credentials()] == ["tok-1", "tok-2"]

        empty = await client.post("/api/tokens/bulk-replace", json={"tokens": "  \n "})
        assert empty.status_code == 400

    @pytest.mark.asyncio
    async def test_token_settings(self, client, orchestrator):
        invalid = await client.put("/api/token-settings", json={"batchDelaySeconds": 5})
        assert invalid.status_code == 400
        assert orchestrator.policy.batch_delay_seconds == 10

        valid = await client.put(
            "/api/token-settings", json={"unitsPerBatch": 3, "rotationEnabled": True}
        )
        assert valid.status_code == 200
        assert orchestrator.policy.units_per_batch == 3
        assert orchestrator.policy.enabled is True
        assert (await client.get("/api/token-settings")).json() == valid.json()


class TestMisc:
    """Health, history and status checks."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        data = (await client.get("/health")).json()

        assert data["status"] == "healthy"
        assert data["provider"]["state"] == "closed"
        assert data["credentials"]["total"] == 2

    @pytest.mark.asyncio
    async def test_not_running(self, client):
        server._orchestrator = None

        response = await client.get("/health")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_history(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a", "b"])
        await orchestrator.wait(job.id, timeout=5)
        await orchestrator.mirror.drain()

        data = (await client.get("/api/video-history", params={"jobId": job.id})).json()

        assert [v["sequenceNumber"] for v in data["videos"]] == [1, 2]
        assert all(v["status"] == "completed" for v in data["videos"])

    @pytest.mark.asyncio
    async def test_check_status(self, client, orchestrator):
        job = await orchestrator.submit_prompts(["a"])
        await orchestrator.wait(job.id, timeout=5)
        unit = job.units[0]

        response = await client.post(
            "/api/check-video-status",
            json={"operationHandle": unit.operation_handle, "unitId": unit.id},
        )

        assert response.json()["status"] == "COMPLETED"


class TestStartup:
    """Wiring the orchestrator from configuration."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field, value", [("units_per_batch", 0), ("batch_delay_seconds", 5)]
    )
    async def test_bad_rotation_settings_fail_startup(self, field, value):
        config = Config()
        setattr(config.rotation, field, value)

        with pytest.raises(ConfigurationError) as exc_info:
            await server.build_orchestrator(config)

        assert exc_info.value.error_code == "INVALID_CONFIG"
        assert "rotation settings" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_builds_with_configured_policy(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        config = Config()
        config.snapshot.path = ""
        config.rotation.units_per_batch = 7
        config.rotation.batch_delay_seconds = 30

        instance = await server.build_orchestrator(config)

        assert instance.policy.units_per_batch == 7
        assert instance.policy.batch_delay_seconds == 30
        await instance.close()
