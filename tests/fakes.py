"""
Test doubles shared by the orchestration tests.

ScriptedProvider stands in for ProviderClient: each prompt maps to a list of
status strings returned by successive status checks (the last one repeats).
"""

import asyncio
from typing import Optional

from core.errors import ProviderSubmissionError, StatusCheckError
from services.generation import ProviderOutcome, StatusReport, SubmitResult, normalize_status

DEFAULT_SCRIPT = ["PROCESSING", "COMPLETED"]


class ScriptedProvider:
    def __init__(
        self,
        scripts: Optional[dict] = None,
        fail_submit: Optional[set] = None,
        no_artifact: Optional[set] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.scripts = dict(scripts or {})
        self.fail_submit = set(fail_submit or ())
        self.no_artifact = set(no_artifact or ())
        self.gate = gate
        self.submissions: list[dict] = []
        self.status_calls: list[str] = []
        self.closed = False
        self._handles: dict[str, str] = {}
        self._progress: dict[str, int] = {}

    async def submit(self, request, credential, scene_id):
        await asyncio.sleep(0)
        self.submissions.append(
            {"prompt": request.prompt, "credential_id": credential.id, "scene_id": scene_id}
        )
        if request.prompt in self.fail_submit:
            raise ProviderSubmissionError("Provider rejected request: bad prompt", error_code="HTTP_400")

        handle = f"op-{len(self.submissions)}"
        self._handles[handle] = request.prompt
        return SubmitResult(operation_handle=handle, raw={"operationName": handle})

    async def check_status(self, operation_handle, scene_id, credential):
        self.status_calls.append(operation_handle)
        if self.gate is not None:
            await self.gate.wait()

        prompt = self._handles.get(operation_handle)
        script = self.scripts.get(prompt, ["COMPLETED"] if prompt is None else DEFAULT_SCRIPT)
        step = self._progress.get(operation_handle, 0)
        self._progress[operation_handle] = step + 1
        status = script[min(step, len(script) - 1)]

        if status == "ERROR":
            raise StatusCheckError("Status check failed: ConnectError", error_code="POLL_ERROR")
        if status == "FAILED":
            return StatusReport(status=status, error="Content policy violation")
        succeeded = normalize_status(status) == ProviderOutcome.SUCCEEDED
        if succeeded and prompt not in self.no_artifact:
            return StatusReport(status=status, artifact_url=f"https://cdn.test/{operation_handle}.mp4")
        return StatusReport(status=status)

    def get_circuit_breaker_status(self) -> dict:
        return {"service": "provider", "state": "closed", "failure_count": 0}

    async def close(self):
        self.closed = True


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float):
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class RecordingConcatenator:
    def __init__(self, fail_times: int = 0):
        self.calls: list[list[str]] = []
        self.fail_times = fail_times

    async def concatenate(self, artifact_urls, merge_id):
        self.calls.append(list(artifact_urls))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("ffmpeg exited with 1: invalid data")
        return f"https://cdn.test/merged/{merge_id}.mp4"
