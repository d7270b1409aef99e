"""Application settings and environment configuration."""

from typing import Optional
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"

DEFAULT_BACKOFF_SECONDS = [60, 300, 900, 3600, 21600]  # 1m, 5m, 15m, 1h, 6h


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "Switchyard"
    debug: bool = False
    worker_mode: bool = False
    environment: str = "dev"  # 'dev', 'test' or 'prod'

    # Database
    database_url: str = "postgresql://localhost/switchyard"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_pool_pre_ping: bool = True
    db_connect_timeout: int = 10

    # Auth boundary (tokens are minted by the identity service)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"

    # Secret vault. Master keys themselves are read from SECRETS_MASTER_KEY_V<n>.
    # Only honoured outside production; lets local dev boot without keys.
    vault_allow_ephemeral_key: bool = False

    # Webhook ingress
    webhook_max_body_bytes: int = 1024 * 1024
    webhook_replay_window_seconds: int = 300
    webhook_replay_max_entries: int = 50000
    webhook_rate_limit: str = "100/minute"
    rate_limit_enabled: bool = True

    # Retry ladders. Max attempts is one past the ladder length so every rung is used.

    # Inbound events
    inbound_backoff_seconds: list[int] = list(DEFAULT_BACKOFF_SECONDS)
    inbound_max_attempts: int = 6

    # Outbound jobs
    outbound_backoff_seconds: list[int] = list(DEFAULT_BACKOFF_SECONDS)
    outbound_max_attempts: int = 6

    # Job ledger. Lock TTLs must outlive the slowest expected run of each type.
    job_lock_default_ttl_seconds: int = 24 * 60 * 60
    job_lock_ttl_seconds: dict[str, int] = {
        "INBOUND_PROCESS_EVENT": 60 * 60,
        "OUTBOUND_PROCESS_JOB": 60 * 60,
    }
    job_default_max_attempts: int = 3
    job_max_attempts: dict[str, int] = {}

    # Worker
    worker_poll_seconds: float = 2.0
    worker_sweep_seconds: float = 30.0
    worker_sweep_batch_size: int = 100
    # RECEIVED events / QUEUED jobs untouched this long get re-enqueued by the sweep
    sweep_stale_after_seconds: int = 300

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "dev"

    def lock_ttl_for(self, job_type: str) -> int:
        return int(self.job_lock_ttl_seconds.get(job_type) or self.job_lock_default_ttl_seconds)

    def max_attempts_for(self, job_type: str) -> int:
        return int(self.job_max_attempts.get(job_type) or self.job_default_max_attempts)


settings = Settings()
