"""
Provider client for asynchronous video generation.

Wire protocol:
- POST {api_base}{submit_path} {prompt, aspectRatio, sceneId} -> {operationName}
- POST {api_base}{status_path} {operationName, sceneId} -> {status, videoUrl?, error?}

Both calls authenticate with the credential bound to the unit. Submissions go
through the provider circuit breaker; status checks do not, since a slow
status endpoint should not block new work from being accepted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_provider_breaker
from core.config import ProviderConfig, get_config
from core.errors import ProviderSubmissionError, StatusCheckError
from services.credentials import Credential

from .models import GenerationRequest

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    operation_handle: str
    raw: dict = field(default_factory=dict)


@dataclass
class StatusReport:
    """Raw provider status. Normalization happens in the poller."""
    status: str
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def to_record(self) -> dict:
        return {"status": self.status, "artifactUrl": self.artifact_url, "error": self.error}


def _error_detail(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message") or str(error)
        return error or data.get("message")
    return None


def is_provider_fault(error: BaseException) -> bool:
    """Whether an error says something about the provider's health."""
    if isinstance(error, httpx.HTTPStatusError):
        # 4xx (bad prompt, rejected or rate-limited credential) is about the request
        return error.response.status_code >= 500
    return True


class ProviderClient:
    """
    HTTP client for the generation provider.

    Usage:
        client = ProviderClient()
        submitted = await client.submit(request, credential, scene_id=unit.id)
        report = await client.check_status(submitted.operation_handle, unit.id, credential)
        await client.close()
    """

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config().provider
        self._breaker = breaker or get_provider_breaker(
            "provider", self.config.request_timeout, is_failure=is_provider_fault
        )
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.api_base,
                timeout=self.config.request_timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def _headers(credential: Credential) -> dict:
        return {
            "Authorization": f"Bearer {credential.secret}",
            "Content-Type": "application/json",
        }

    @staticmethod
    async def _post_submission(
        client: httpx.AsyncClient, path: str, payload: dict, headers: dict
    ) -> httpx.Response:
        response = await client.post(path, json=payload, headers=headers)
        response.raise_for_status()
        return response

    async def submit(
        self,
        request: GenerationRequest,
        credential: Credential,
        scene_id: str,
    ) -> SubmitResult:
        """Submit one generation request. Raises ProviderSubmissionError."""
        client = await self._get_client()
        payload = {
            "prompt": request.render_prompt(),
            "aspectRatio": request.aspect_ratio.value,
            "sceneId": scene_id,
        }

        try:
            response = await self._breaker.call(
                self._post_submission,
                client,
                self.config.submit_path,
                payload,
                self._headers(credential),
            )
        except CircuitBreakerOpen as e:
            raise ProviderSubmissionError(str(e), error_code="CIRCUIT_BREAKER_OPEN")
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ProviderSubmissionError(
                f"Provider submission timed out: {type(e).__name__}",
                error_code="SUBMIT_TIMEOUT",
            )
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            try:
                detail = _error_detail(e.response.json())
            except ValueError:
                detail = None
            detail = detail or e.response.text[:200] or f"HTTP {status_code}"
            logger.error(f"Provider rejected submission for {scene_id}: {detail}")
            raise ProviderSubmissionError(
                f"Provider rejected request: {detail}",
                error_code=f"HTTP_{status_code}",
            )
        except httpx.RequestError as e:
            raise ProviderSubmissionError(
                f"Provider submission failed: {type(e).__name__}: {e}",
                error_code="REQUEST_ERROR",
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise ProviderSubmissionError(
                "Provider returned a non-JSON submission response",
                error_code="INVALID_RESPONSE",
            )

        handle = data.get("operationName")
        if not handle:
            raise ProviderSubmissionError(
                f"No operationName in provider response: {_error_detail(data) or data}",
                error_code="NO_OPERATION",
            )

        logger.info(f"Provider accepted {scene_id} as {handle} (credential {credential.label})")
        return SubmitResult(operation_handle=handle, raw=data)

    async def check_status(
        self,
        operation_handle: str,
        scene_id: str,
        credential: Credential,
    ) -> StatusReport:
        """Fetch the raw status of an operation. Raises StatusCheckError."""
        client = await self._get_client()
        payload = {"operationName": operation_handle, "sceneId": scene_id}

        try:
            response = await client.post(
                self.config.status_path,
                json=payload,
                headers=self._headers(credential),
            )
        except httpx.TimeoutException as e:
            raise StatusCheckError(
                f"Status check timed out: {type(e).__name__}", error_code="POLL_TIMEOUT"
            )
        except httpx.RequestError as e:
            raise StatusCheckError(
                f"Status check failed: {type(e).__name__}: {e}", error_code="POLL_ERROR"
            )

        if response.status_code >= 400:
            raise StatusCheckError(
                f"Status check returned {response.status_code}",
                error_code=f"HTTP_{response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            raise StatusCheckError("Status check returned invalid JSON", error_code="INVALID_RESPONSE")

        if not isinstance(data, dict) or not data.get("status"):
            raise StatusCheckError(
                f"Status check response has no status: {data}", error_code="INVALID_RESPONSE"
            )

        return StatusReport(
            status=str(data["status"]),
            artifact_url=data.get("videoUrl") or data.get("artifactUrl"),
            error=_error_detail(data),
            raw=data,
        )

    def get_circuit_breaker_status(self) -> dict:
        return self._breaker.get_status()
