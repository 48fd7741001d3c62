"""
Circuit Breaker for provider submissions

Stops hammering the generation provider when it is down or overloaded.
Which errors count is decided by a classifier: transport errors and 5xx
responses do, a provider rejecting one prompt does not.

States:
- CLOSED: submissions pass through
- OPEN: submissions are rejected until ``recovery_timeout`` has passed
- HALF_OPEN: a limited number of trial submissions decide whether to close
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 3
    success_threshold: int = 2  # Trial successes needed to close
    timeout: float = 60.0  # Per-call timeout in seconds


class CircuitBreakerOpen(Exception):
    """Raised when the breaker rejects a call without making it."""

    def __init__(self, service_name: str, retry_after: float):
        self.service_name = service_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit breaker is OPEN for {service_name}. "
            f"Retry after {self.retry_after:.1f} seconds."
        )


def counts_every_error(error: BaseException) -> bool:
    return True


class CircuitBreaker:
    """
    Usage:
        breaker = get_provider_breaker("provider")
        response = await breaker.call(post_submission, client, url, payload)
    """

    _registry: dict[str, "CircuitBreaker"] = {}

    def __init__(
        self,
        service_name: str,
        config: Optional[CircuitBreakerConfig] = None,
        is_failure: Callable[[BaseException], bool] = counts_every_error,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.is_failure = is_failure
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._opened_at = clock()
        self._consecutive_failures = 0
        self._trial_calls = 0
        self._trial_successes = 0
        self.total_calls = 0
        self.total_failures = 0
        self.rejected_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self._clock() - self._opened_at))

    def _move(self, new_state: CircuitState):
        logger.info(
            f"Circuit breaker [{self.service_name}]: {self._state.value} -> {new_state.value}"
        )
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        self._trial_calls = 0
        self._trial_successes = 0

    async def _admit(self):
        async with self._lock:
            if self._state == CircuitState.OPEN:
                wait = self.retry_after()
                if wait > 0:
                    self.rejected_calls += 1
                    raise CircuitBreakerOpen(self.service_name, wait)
                self._move(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    self.rejected_calls += 1
                    raise CircuitBreakerOpen(self.service_name, self.config.recovery_timeout)
                self._trial_calls += 1

            self.total_calls += 1

    async def _record_success(self):
        async with self._lock:
            self._consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    self._move(CircuitState.CLOSED)

    async def _record_failure(self, error: BaseException):
        async with self._lock:
            self._consecutive_failures += 1
            self.total_failures += 1
            logger.warning(
                f"Circuit breaker [{self.service_name}] failure "
                f"{self._consecutive_failures}/{self.config.failure_threshold}: "
                f"{type(error).__name__}: {error}"
            )
            if self._state == CircuitState.HALF_OPEN:
                self._move(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._move(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run ``func`` under breaker protection.

        Errors the classifier does not count still propagate, but the breaker
        records them as a healthy answer from the provider.

        Raises:
            CircuitBreakerOpen: If the circuit is open
            asyncio.TimeoutError: If the call exceeds ``config.timeout``
        """
        await self._admit()

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        except Exception as e:
            if self.is_failure(e):
                await self._record_failure(e)
            else:
                await self._record_success()
            raise

        await self._record_success()
        return result

    def get_status(self) -> dict:
        return {
            "service": self.service_name,
            "state": self._state.value,
            "failure_count": self._consecutive_failures,
            "retry_after": round(self.retry_after(), 1),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "rejected_calls": self.rejected_calls,
        }


def get_provider_breaker(
    provider: str = "provider",
    timeout: Optional[float] = None,
    is_failure: Callable[[BaseException], bool] = counts_every_error,
) -> CircuitBreaker:
    """
    Shared breaker for a generation provider.

    Submissions are short (the provider only acknowledges the request), so the
    per-call timeout is the HTTP request timeout rather than generation time.
    """
    breaker = CircuitBreaker._registry.get(provider)
    if breaker is None:
        config = CircuitBreakerConfig(timeout=timeout or 60.0)
        breaker = CircuitBreaker(provider, config, is_failure=is_failure)
        CircuitBreaker._registry[provider] = breaker
    return breaker
