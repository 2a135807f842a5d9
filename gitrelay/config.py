"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENCRYPTION_KEY = "change-me-in-production"


class Settings(BaseSettings):
    """gitrelay application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/gitrelay.db"

    # Paths
    repos_base_path: Path = Path("./data/repos")

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    run_engine_in_app: bool = True

    # Scheduler
    scan_interval_seconds: float = Field(default=60.0, gt=0)
    rescan_interval_seconds: float = Field(default=300.0, gt=0)

    # Worker and retries
    scan_concurrency: int = Field(default=5, ge=1)
    job_poll_interval_seconds: float = Field(default=1.0, gt=0)
    max_retry_attempts: int = Field(default=5, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)

    # Circuit breaker
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_cooldown_seconds: float = Field(default=1800.0, gt=0)

    # Repository lock
    repo_lock_ttl_seconds: float = Field(default=120.0, gt=0)
    repo_lock_retry_count: int = Field(default=30, ge=0)
    repo_lock_retry_delay_seconds: float = Field(default=2.0, ge=0)
    repo_lock_retry_jitter_seconds: float = Field(default=0.4, ge=0)

    # Notifications
    binary_chunk_threshold_bytes: int = Field(default=1_048_576, ge=1)
    binary_chunk_size_bytes: int = Field(default=524_288, ge=1)
    notification_timeout_seconds: float = Field(default=30.0, gt=0)
    failure_notification_timeout_seconds: float = Field(default=10.0, gt=0)

    # Git
    git_timeout_seconds: float = Field(default=300.0, gt=0)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.encryption_key == DEFAULT_ENCRYPTION_KEY or len(self.encryption_key) < 32:
            violations.append(
                "ENCRYPTION_KEY must be overridden with a high-entropy value (>=32 chars)"
            )

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
