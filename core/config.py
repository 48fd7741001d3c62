"""
Configuration management for the clip batch orchestrator.

Centralizes all configuration including:
- Provider endpoint and seed credentials
- Polling profiles
- Default rotation policy
- History database, merge output and job snapshot locations
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def split_tokens(raw: str) -> list[str]:
    """Split a comma or newline separated token list, dropping blanks."""
    parts = raw.replace(",", "\n").splitlines()
    return [part.strip() for part in parts if part.strip()]


@dataclass
class ProviderConfig:
    """Video generation provider endpoint."""

    api_base: str = field(
        default_factory=lambda: os.getenv("VIDEO_API_BASE", "http://localhost:9000/api/v1")
    )
    submit_path: str = field(
        default_factory=lambda: os.getenv("VIDEO_API_SUBMIT_PATH", "/video:generate")
    )
    status_path: str = field(
        default_factory=lambda: os.getenv("VIDEO_API_STATUS_PATH", "/video:checkStatus")
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("VIDEO_API_TIMEOUT", "60"))
    )

    # Seed credentials for the rotation pool
    tokens: list[str] = field(
        default_factory=lambda: split_tokens(os.getenv("PROVIDER_TOKENS", ""))
    )


@dataclass
class PollingConfig:
    """Polling profiles for submitted operations."""

    # Bulk and story jobs
    batch_interval_seconds: float = 1.0
    batch_max_polls: int = 300

    # Single prompt jobs
    single_interval_seconds: float = 2.0
    single_max_polls: int = 120

    max_consecutive_errors: int = 10


@dataclass
class RotationDefaults:
    """Initial rotation policy. Edited at runtime through the token settings API."""

    enabled: bool = field(default_factory=lambda: _env_bool("ROTATION_ENABLED"))
    interval_minutes: int = field(
        default_factory=lambda: int(os.getenv("ROTATION_INTERVAL_MINUTES", "60"))
    )
    max_requests_per_credential: int = field(
        default_factory=lambda: int(os.getenv("MAX_REQUESTS_PER_TOKEN", "1000"))
    )
    units_per_batch: int = field(
        default_factory=lambda: int(os.getenv("UNITS_PER_BATCH", "5"))
    )
    batch_delay_seconds: float = field(
        default_factory=lambda: float(os.getenv("BATCH_DELAY_SECONDS", "20"))
    )


@dataclass
class LimitsConfig:
    """Job correctness bounds."""

    max_units_per_job: int = 200
    max_merge_selection: int = 19

    # Sequential re-acquisition when the pool is momentarily exhausted
    acquire_attempts: int = 3
    acquire_wait_seconds: float = 2.0


@dataclass
class DatabaseConfig:
    """History database. In-memory history is used when no URL is set."""

    url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = 2
    pool_max_size: int = 10


@dataclass
class MergeConfig:
    """Merge output configuration."""

    output_dir: str = field(
        default_factory=lambda: os.getenv("MERGE_OUTPUT_DIR", "./output/merged")
    )
    public_base_url: str = field(
        default_factory=lambda: os.getenv("MERGE_PUBLIC_BASE_URL", "")
    )
    ffmpeg_binary: str = field(default_factory=lambda: os.getenv("FFMPEG_BINARY", "ffmpeg"))
    download_timeout: float = 120.0


@dataclass
class SnapshotConfig:
    """Persisted job state. Disabled when the path is empty."""

    path: str = field(default_factory=lambda: os.getenv("JOB_SNAPSHOT_PATH", ""))


@dataclass
class ServerConfig:
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8765")))


@dataclass
class Config:
    """Main configuration class."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    rotation: RotationDefaults = field(default_factory=RotationDefaults)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.provider.tokens:
            issues.append("PROVIDER_TOKENS not configured (add tokens through /api/tokens)")

        if not 1 <= self.rotation.units_per_batch <= 50:
            issues.append("UNITS_PER_BATCH must be between 1 and 50")

        if not 10 <= self.rotation.batch_delay_seconds <= 120:
            issues.append("BATCH_DELAY_SECONDS must be between 10 and 120")

        if not self.database.url:
            issues.append("DATABASE_URL not configured (history kept in memory only)")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
