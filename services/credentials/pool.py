"""
Credential Pool - rotating provider access tokens.

The pool is the only state mutated by concurrent unit workers, so every
operation runs under one asyncio lock. Units hold on to the Credential object
they were given; pool edits (toggle, remove, bulk replace) never reach back
into units that are already bound.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from core.errors import CredentialExhaustionError, JobValidationError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseOutcome(str, Enum):
    """How a reserved credential was used."""
    SUCCESS = "success"
    FAILURE = "failure"
    UNUSED = "unused"  # Reserved but never sent to the provider


@dataclass(frozen=True)
class RotationPolicy:
    """
    Rotation and throttling settings.

    A job snapshots the policy at submission; editing the policy only affects
    jobs submitted afterwards.
    """
    enabled: bool = False
    interval_minutes: int = 60
    max_requests_per_credential: int = 1000
    units_per_batch: int = 5
    batch_delay_seconds: float = 20

    def __post_init__(self):
        issues = self.validate()
        if issues:
            raise JobValidationError("; ".join(issues))

    def validate(self) -> list[str]:
        issues = []
        if not 1 <= self.units_per_batch <= 50:
            issues.append("unitsPerBatch must be between 1 and 50")
        if not 10 <= self.batch_delay_seconds <= 120:
            issues.append("batchDelaySeconds must be between 10 and 120")
        if self.interval_minutes < 1:
            issues.append("rotationIntervalMinutes must be at least 1")
        if self.max_requests_per_credential < 1:
            issues.append("maxRequestsPerToken must be at least 1")
        return issues

    @classmethod
    def from_record(cls, record: dict) -> "RotationPolicy":
        defaults = cls()
        return cls(
            enabled=record.get("rotationEnabled", defaults.enabled),
            interval_minutes=record.get("rotationIntervalMinutes", defaults.interval_minutes),
            max_requests_per_credential=record.get(
                "maxRequestsPerToken", defaults.max_requests_per_credential
            ),
            units_per_batch=record.get("unitsPerBatch", defaults.units_per_batch),
            batch_delay_seconds=record.get("batchDelaySeconds", defaults.batch_delay_seconds),
        )

    def to_record(self) -> dict:
        return {
            "rotationEnabled": self.enabled,
            "rotationIntervalMinutes": self.interval_minutes,
            "maxRequestsPerToken": self.max_requests_per_credential,
            "unitsPerBatch": self.units_per_batch,
            "batchDelaySeconds": self.batch_delay_seconds,
        }


def credential_id_for(secret: str) -> str:
    """
    Stable credential id. The pool is rebuilt from the same secrets on every
    start, so units restored from a snapshot find their credential again.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def _unique(secrets: list[str]) -> list[str]:
    return list(dict.fromkeys(secrets))


@dataclass
class Credential:
    """One provider access token in the rotation pool."""
    secret: str
    label: str = ""
    id: str = ""  # Derived from the secret when not given
    is_active: bool = True
    request_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    # Rotation window
    window_started_at: datetime = field(default_factory=_utcnow)
    window_requests: int = 0

    # Reserved by a batch but not yet released
    in_flight: int = 0

    failure_count: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = credential_id_for(self.secret)

    def masked_secret(self) -> str:
        if len(self.secret) <= 8:
            return "*" * len(self.secret)
        return f"{self.secret[:4]}...{self.secret[-4:]}"

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "token": self.masked_secret(),
            "isActive": self.is_active,
            "requestCount": self.request_count,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
            "createdAt": self.created_at.isoformat(),
            "failureCount": self.failure_count,
            "lastError": self.last_error,
        }


def parse_token_lines(text: str) -> list[str]:
    """One token per line; blank lines dropped."""
    return [line.strip() for line in text.splitlines() if line.strip()]


class CredentialPool:
    """
    Round-robin pool of provider credentials.

    Usage:
        pool = CredentialPool.from_secrets(["tok-a", "tok-b"])
        credential = await pool.acquire(policy)
        ...
        await pool.release(credential.id, ReleaseOutcome.SUCCESS)
    """

    def __init__(
        self,
        credentials: Optional[list[Credential]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._credentials: list[Credential] = list(credentials or [])
        self._cursor = 0
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_secrets(cls, secrets: list[str], **kwargs) -> "CredentialPool":
        credentials = [
            Credential(secret=secret, label=f"Token {i}")
            for i, secret in enumerate(_unique(secrets), start=1)
        ]
        return cls(credentials, **kwargs)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _roll_window(self, credential: Credential, policy: RotationPolicy, now: datetime) -> bool:
        if now - credential.window_started_at < timedelta(minutes=policy.interval_minutes):
            return False
        credential.window_started_at = now
        credential.window_requests = 0
        return True

    def _is_eligible(self, credential: Credential, policy: RotationPolicy, now: datetime) -> bool:
        if not credential.is_active:
            return False
        if not policy.enabled:
            return True
        self._roll_window(credential, policy, now)
        used = credential.window_requests + credential.in_flight
        return used < policy.max_requests_per_credential

    def has_available(self, policy: RotationPolicy) -> bool:
        now = self._clock()
        return any(self._is_eligible(c, policy, now) for c in self._credentials)

    async def try_acquire(self, policy: RotationPolicy) -> Optional[Credential]:
        """Reserve the next eligible credential, or None if none is eligible."""
        async with self._lock:
            count = len(self._credentials)
            now = self._clock()
            for offset in range(count):
                index = (self._cursor + offset) % count
                credential = self._credentials[index]
                if self._is_eligible(credential, policy, now):
                    self._cursor = index + 1
                    credential.in_flight += 1
                    return credential
            return None

    async def acquire(self, policy: RotationPolicy) -> Credential:
        credential = await self.try_acquire(policy)
        if credential is None:
            raise CredentialExhaustionError(
                "No active credential is available (all inactive or over their request cap)"
            )
        return credential

    async def release(
        self,
        credential_id: str,
        outcome: ReleaseOutcome,
        error: Optional[str] = None,
    ):
        """Return a reservation and record the request against the credential."""
        async with self._lock:
            credential = self._find(credential_id)
            if credential is None:
                logger.debug(f"Released credential {credential_id} is no longer in the pool")
                return

            credential.in_flight = max(0, credential.in_flight - 1)
            if outcome == ReleaseOutcome.UNUSED:
                return

            credential.request_count += 1
            credential.window_requests += 1
            credential.last_used_at = self._clock()
            if outcome == ReleaseOutcome.FAILURE:
                credential.failure_count += 1
                credential.last_error = error

    async def rotate(self, policy: RotationPolicy) -> int:
        """Start a fresh request window for credentials whose window expired."""
        async with self._lock:
            now = self._clock()
            rotated = sum(1 for c in self._credentials if self._roll_window(c, policy, now))
        if rotated:
            logger.info(f"Rotated request windows for {rotated} credentials")
        return rotated

    async def run_rotation(
        self,
        get_policy: Callable[[], RotationPolicy],
        tick_seconds: float = 60.0,
    ):
        """Background loop that rolls request windows on the interval timer."""
        while True:
            await asyncio.sleep(tick_seconds)
            policy = get_policy()
            if policy.enabled:
                await self.rotate(policy)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _find(self, credential_id: str) -> Optional[Credential]:
        for credential in self._credentials:
            if credential.id == credential_id:
                return credential
        return None

    def get(self, credential_id: str) -> Optional[Credential]:
        return self._find(credential_id)

    def list_credentials(self) -> list[Credential]:
        return list(self._credentials)

    async def add(self, secret: str, label: Optional[str] = None) -> Credential:
        secret = secret.strip()
        if not secret:
            raise JobValidationError("Token must not be empty")
        async with self._lock:
            if self._find(credential_id_for(secret)) is not None:
                raise JobValidationError("Token is already in the pool")
            credential = Credential(
                secret=secret,
                label=label or f"Token {len(self._credentials) + 1}",
            )
            self._credentials = self._credentials + [credential]
        logger.info(f"Added credential {credential.label}")
        return credential

    async def remove(self, credential_id: str) -> bool:
        async with self._lock:
            remaining = [c for c in self._credentials if c.id != credential_id]
            removed = len(remaining) != len(self._credentials)
            self._credentials = remaining
        if removed:
            logger.info(f"Removed credential {credential_id}")
        return removed

    async def set_active(self, credential_id: str, is_active: bool) -> Optional[Credential]:
        async with self._lock:
            credential = self._find(credential_id)
            if credential is not None:
                credential.is_active = is_active
        return credential

    async def replace_all(self, secrets: list[str]) -> list[Credential]:
        """Swap the whole pool for a fresh set of credentials."""
        fresh = [
            Credential(secret=secret, label=f"Token {i}")
            for i, secret in enumerate(_unique(secrets), start=1)
        ]
        async with self._lock:
            self._credentials = fresh
            self._cursor = 0
        logger.info(f"Replaced credential pool with {len(fresh)} credentials")
        return list(fresh)

    def summary(self) -> dict:
        return {
            "total": len(self._credentials),
            "active": sum(1 for c in self._credentials if c.is_active),
            "inFlight": sum(c.in_flight for c in self._credentials),
        }
