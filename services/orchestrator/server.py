"""
Generation Orchestrator HTTP Server

FastAPI server that provides:
- POST /api/jobs - Submit prompts or a story breakdown
- POST /api/generate-stream - Submit and stream progress as NDJSON
- GET /api/jobs/{job_id} - Pull-mode job snapshot
- GET /api/jobs/{job_id}/events - NDJSON progress stream
- Per-unit retry, regenerate and cancel, bulk retry of failed units
- Merge endpoints, credential administration, rotation settings, history
- GET /health - Health check

Usage:
    # Start server
    python -m uvicorn services.orchestrator.server:app --host 0.0.0.0 --port 8765

    # Or via main.py
    python main.py server
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from core.config import Config, get_config
from core.errors import (
    ConfigurationError,
    CredentialExhaustionError,
    JobNotFoundError,
    JobValidationError,
    MergeError,
    OrchestrationError,
    StatusCheckError,
)
from services.credentials import CredentialPool, RotationPolicy, parse_token_lines
from services.generation import AspectRatio, GenerationJob, ProviderClient
from services.history import HistoryMirror, InMemoryHistoryStore, PostgresHistoryStore
from services.merge import MergeInput
from services.streaming import CONTENT_TYPE, encode_record

from .orchestrator import JobOrchestrator
from .snapshot import JobSnapshotStore

logger = logging.getLogger(__name__)

# Global orchestrator instance (tests may set this before the app starts)
_orchestrator: Optional[JobOrchestrator] = None


async def build_orchestrator(config: Config) -> JobOrchestrator:
    """Wire an orchestrator from configuration."""
    try:
        policy = RotationPolicy(**asdict(config.rotation))
    except JobValidationError as e:
        raise ConfigurationError(f"Invalid rotation settings: {e.message}") from e

    pool = CredentialPool.from_secrets(config.provider.tokens)

    if config.database.url:
        db_pool = await PostgresHistoryStore.create_pool(config.database)
        store = PostgresHistoryStore(db_pool)
        await store.ensure_schema()
        logger.info("History mirrored to PostgreSQL")
    else:
        store = InMemoryHistoryStore()
        logger.info("DATABASE_URL not set; history kept in memory")

    snapshots = JobSnapshotStore(config.snapshot.path) if config.snapshot.path else None

    return JobOrchestrator(
        pool,
        ProviderClient(config.provider),
        config=config,
        policy=policy,
        mirror=HistoryMirror(store),
        snapshot_store=snapshots,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    global _orchestrator

    logger.info("Starting Generation Orchestrator server...")
    config = get_config()
    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    owned = _orchestrator is None
    if owned:
        try:
            _orchestrator = await build_orchestrator(config)
        except ConfigurationError as e:
            logger.error(f"Cannot start: {e.message}")
            raise
        restored = await _orchestrator.restore()
        if restored:
            logger.info(f"Recovered {restored} jobs from the last snapshot")
        _orchestrator.start()

    yield

    logger.info("Shutting down Generation Orchestrator server...")
    if owned and _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None


app = FastAPI(
    title="Generation Orchestrator API",
    description="Batched video generation with real-time progress streaming",
    version="1.0.0",
    lifespan=lifespan,
)


def get_orchestrator() -> JobOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not running")
    return _orchestrator


_MERGE_STATUS = {"CONCATENATION_FAILED": 502, "NOT_FOUND": 404, "IN_PROGRESS": 409}


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request, exc: OrchestrationError):
    if isinstance(exc, JobValidationError):
        status_code = 400
    elif isinstance(exc, JobNotFoundError):
        status_code = 404
    elif isinstance(exc, CredentialExhaustionError):
        status_code = 503
    elif isinstance(exc, MergeError):
        status_code = _MERGE_STATUS.get(exc.error_code, 400)
        return JSONResponse(
            status_code=status_code,
            content={"message": str(exc), "mergeId": exc.merge_id, "errorCode": exc.error_code},
        )
    elif isinstance(exc, StatusCheckError):
        status_code = 502
    else:
        status_code = 500
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "errorCode": exc.error_code},
    )


# Request/Response Models
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobRequest(_CamelModel):
    """Prompts for a bulk or single job, or scenes for a story job."""
    prompts: list[str] = []
    scenes: list[dict] = []
    characters: list[dict] = []
    aspect_ratio: AspectRatio = Field(AspectRatio.LANDSCAPE, alias="aspectRatio")
    project_id: Optional[str] = Field(None, alias="projectId")


class JobResponse(_CamelModel):
    job_id: str = Field(alias="jobId")
    kind: str
    unit_ids: list[str] = Field(alias="unitIds")
    monitor_url: str = Field(alias="monitorUrl")


class RegenerateRequest(_CamelModel):
    prompt: Optional[str] = None
    aspect_ratio: Optional[AspectRatio] = Field(None, alias="aspectRatio")


class StatusCheckRequest(_CamelModel):
    operation_handle: str = Field(alias="operationHandle")
    unit_id: str = Field(alias="unitId")


class MergeVideo(_CamelModel):
    sequence_number: int = Field(alias="sequenceNumber")
    artifact_url: str = Field(alias="artifactUrl")


class MergeVideosRequest(_CamelModel):
    videos: list[MergeVideo]
    project_id: Optional[str] = Field(None, alias="projectId")


class MergeSelectedRequest(_CamelModel):
    unit_ids: list[str] = Field(alias="unitIds")
    project_id: Optional[str] = Field(None, alias="projectId")


class TokenCreate(_CamelModel):
    token: str
    label: Optional[str] = None


class TokenBulkReplace(_CamelModel):
    tokens: str


class TokenSettings(_CamelModel):
    rotation_enabled: Optional[bool] = Field(None, alias="rotationEnabled")
    rotation_interval_minutes: Optional[int] = Field(None, alias="rotationIntervalMinutes")
    max_requests_per_token: Optional[int] = Field(None, alias="maxRequestsPerToken")
    units_per_batch: Optional[int] = Field(None, alias="unitsPerBatch")
    batch_delay_seconds: Optional[float] = Field(None, alias="batchDelaySeconds")


async def _submit(request: JobRequest) -> GenerationJob:
    orchestrator = get_orchestrator()
    if request.scenes:
        return await orchestrator.submit_scenes(
            request.scenes,
            characters=request.characters,
            aspect_ratio=request.aspect_ratio,
            project_id=request.project_id,
        )
    return await orchestrator.submit_prompts(
        request.prompts,
        aspect_ratio=request.aspect_ratio,
        project_id=request.project_id,
    )


def _ndjson_response(records: AsyncIterator[dict]) -> StreamingResponse:
    async def body():
        async for record in records:
            yield encode_record(record)

    return StreamingResponse(
        body(),
        media_type=CONTENT_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Generation Orchestrator",
        "version": "1.0.0",
        "endpoints": {
            "POST /api/jobs": "Submit a job",
            "POST /api/generate-stream": "Submit a job and stream its progress",
            "GET /api/jobs/{job_id}": "Job snapshot",
            "GET /api/jobs/{job_id}/events": "NDJSON progress stream",
            "POST /api/merge-videos": "Merge clips in sequence order",
            "GET /api/video-history": "Generation history",
            "GET /health": "Health check",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    orchestrator = get_orchestrator()
    return {
        "status": "healthy",
        "active_jobs": len(orchestrator.list_jobs()),
        "credentials": orchestrator.pool.summary(),
        "provider": orchestrator.client.get_circuit_breaker_status(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ============================================================================
# JOBS
# ============================================================================


@app.post("/api/jobs", response_model=JobResponse, response_model_by_alias=True)
async def create_job(request: JobRequest):
    """
    Submit a job. Returns immediately; use /api/jobs/{job_id}/events to
    follow progress.
    """
    job = await _submit(request)
    return JobResponse(
        job_id=job.id,
        kind=job.kind.value,
        unit_ids=[unit.id for unit in job.units],
        monitor_url=f"/api/jobs/{job.id}/events",
    )


@app.post("/api/generate-stream")
async def generate_stream(request: JobRequest):
    """Submit a job and stream its records until the job completes."""
    orchestrator = get_orchestrator()
    job = await _submit(request)
    return _ndjson_response(orchestrator.events(job.id))


@app.get("/api/jobs")
async def list_jobs():
    orchestrator = get_orchestrator()
    return {"jobs": [orchestrator.snapshot(job.id) for job in orchestrator.list_jobs()]}


@app.get("/api/jobs/{job_id}")
async def get_job(job_id: str):
    return get_orchestrator().snapshot(job_id)


@app.get("/api/jobs/{job_id}/events")
async def job_events(job_id: str):
    """
    NDJSON endpoint for real-time progress.

    Replays the current round of records, then streams until the job's
    complete record.

    Usage:
        curl -N http://localhost:8765/api/jobs/<job_id>/events
    """
    return _ndjson_response(get_orchestrator().events(job_id))


@app.delete("/api/jobs/{job_id}")
async def discard_job(job_id: str):
    await get_orchestrator().discard(job_id)
    return {"jobId": job_id, "discarded": True}


@app.post("/api/jobs/{job_id}/units/{unit_id}/retry", status_code=202)
async def retry_unit(job_id: str, unit_id: str):
    started = get_orchestrator().start_retry(job_id, unit_id)
    return {"jobId": job_id, "unitId": unit_id, "started": started}


@app.post("/api/jobs/{job_id}/units/{unit_id}/regenerate", status_code=202)
async def regenerate_unit(job_id: str, unit_id: str, request: RegenerateRequest):
    started = await get_orchestrator().regenerate(
        job_id, unit_id, prompt=request.prompt, aspect_ratio=request.aspect_ratio
    )
    return {"jobId": job_id, "unitId": unit_id, "started": started}


@app.post("/api/jobs/{job_id}/retry-failed", status_code=202)
async def retry_failed(job_id: str):
    unit_ids = get_orchestrator().start_retry_all(job_id)
    return {"jobId": job_id, "unitIds": unit_ids}


@app.post("/api/jobs/{job_id}/units/{unit_id}/cancel")
async def cancel_unit(job_id: str, unit_id: str):
    cancelled = await get_orchestrator().cancel(job_id, unit_id)
    return {"jobId": job_id, "unitId": unit_id, "cancelled": cancelled}


@app.post("/api/jobs/{job_id}/merge")
async def merge_job(job_id: str):
    merge = await get_orchestrator().merge_job(job_id)
    return merge.to_record()


@app.post("/api/check-video-status")
async def check_video_status(request: StatusCheckRequest):
    report = await get_orchestrator().check_status(request.operation_handle, request.unit_id)
    return report.to_record()


# ============================================================================
# MERGE
# ============================================================================


@app.post("/api/merge-videos")
async def merge_videos(request: MergeVideosRequest):
    inputs = [MergeInput(v.sequence_number, v.artifact_url) for v in request.videos]
    merge = await get_orchestrator().merge_videos(inputs, project_id=request.project_id)
    return merge.to_record()


@app.post("/api/merge-selected-videos")
async def merge_selected_videos(request: MergeSelectedRequest):
    merge = await get_orchestrator().merge_selected(request.unit_ids, project_id=request.project_id)
    return merge.to_record()


@app.post("/api/retry-merge/{merge_id}")
async def retry_merge(merge_id: str):
    merge = await get_orchestrator().retry_merge(merge_id)
    return merge.to_record()


# ============================================================================
# CREDENTIALS
# ============================================================================


@app.get("/api/tokens")
async def list_tokens():
    pool = get_orchestrator().pool
    return {"tokens": [c.to_public() for c in pool.list_credentials()], "summary": pool.summary()}


@app.post("/api/tokens", status_code=201)
async def add_token(request: TokenCreate):
    credential = await get_orchestrator().pool.add(request.token, label=request.label)
    return credential.to_public()


@app.delete("/api/tokens/{credential_id}")
async def delete_token(credential_id: str):
    if not await get_orchestrator().pool.remove(credential_id):
        raise HTTPException(status_code=404, detail="Token not found")
    return {"id": credential_id, "deleted": True}


@app.patch("/api/tokens/{credential_id}/toggle")
async def toggle_token(credential_id: str):
    pool = get_orchestrator().pool
    credential = pool.get(credential_id)
    if credential is None:
        raise HTTPException(status_code=404, detail="Token not found")
    credential = await pool.set_active(credential_id, not credential.is_active)
    return credential.to_public()


@app.post("/api/tokens/bulk-replace")
async def bulk_replace_tokens(request: TokenBulkReplace):
    secrets = parse_token_lines(request.tokens)
    if not secrets:
        raise HTTPException(status_code=400, detail="No tokens provided")
    credentials = await get_orchestrator().pool.replace_all(secrets)
    return {"tokens": [c.to_public() for c in credentials]}


@app.get("/api/token-settings")
async def get_token_settings():
    return get_orchestrator().policy.to_record()


@app.put("/api/token-settings")
async def update_token_settings(request: TokenSettings):
    fields = {
        "enabled": request.rotation_enabled,
        "interval_minutes": request.rotation_interval_minutes,
        "max_requests_per_credential": request.max_requests_per_token,
        "units_per_batch": request.units_per_batch,
        "batch_delay_seconds": request.batch_delay_seconds,
    }
    changes = {name: value for name, value in fields.items() if value is not None}
    policy = get_orchestrator().update_policy(**changes)
    return policy.to_record()


# ============================================================================
# HISTORY
# ============================================================================


@app.get("/api/video-history")
async def video_history(jobId: Optional[str] = None, limit: int = 200):
    entries = await get_orchestrator().history(job_id=jobId, limit=limit)
    return {"videos": [entry.to_record() for entry in entries]}


# Module-level run function for main.py
def run_server(host: str = "0.0.0.0", port: int = 8765):
    """Run the server using uvicorn."""
    import uvicorn
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
