"""
Configuration settings for the cache/broker layer.

All settings are loaded from environment variables with sensible defaults.
Use .env file for local development.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheTTL:
    """
    TTL defaults (seconds) per semantic key family.

    The CacheFacade is policy-free: callers pick one of these when writing.
    """

    DEFAULT = 3600
    USER_PROFILE = 900  # 15 minutes
    USER_MATCHES = 1800  # 30 minutes
    USER_SWIPES = 3600  # 1 hour
    DISCOVERY = 300  # 5 minutes
    RECOMMENDATIONS = 600  # 10 minutes
    OTP = 300  # 5 minutes
    SESSION = 86400  # 24 hours
    TRENDING = 1800  # 30 minutes


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Application ===
    APP_NAME: str = "kvbroker"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # === Remote store ===
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0
    REDIS_URL: Optional[str] = None  # Overrides host/port/password/db when set
    REDIS_MAX_CONNECTIONS: int = 50  # Connection pool size

    # === Connection supervision ===
    REDIS_CONNECT_TIMEOUT: float = 10.0  # seconds, socket connect and command
    REDIS_CONNECT_DEADLINE: float = 15.0  # overall ceiling for initialize()
    REDIS_MAX_CONNECT_RETRIES: int = 3
    REDIS_RETRY_DELAY_SECONDS: float = 1.0  # delay = min(attempt * this, max)
    REDIS_RETRY_DELAY_MAX_SECONDS: float = 5.0
    HEALTH_PROBE_INTERVAL: float = 60.0
    FALLBACK_SWEEP_INTERVAL: float = 60.0

    # === Queues ===
    QUEUE_DEFAULT_MAX_RETRIES: int = 3
    QUEUE_DEFAULT_TIMEOUT: float = 30.0  # seconds per job
    QUEUE_DEFAULT_CONCURRENCY: int = 1
    QUEUE_FAILED_LIST_MAX: int = 1000
    QUEUE_POLL_INTERVAL: float = 1.0  # long-poll timeout on the pending set
    QUEUE_CAPACITY_WAIT: float = 0.1
    QUEUE_ERROR_BACKOFF: float = 5.0
    QUEUE_REAP_ORPHANS: bool = True
    QUEUE_REAPER_INTERVAL: float = 30.0
    QUEUE_SHUTDOWN_GRACE: float = 5.0
    JOB_RETRY_BASE_SECONDS: float = 1.0  # delay = min(max, 2^attempts * base)
    JOB_RETRY_MAX_SECONDS: float = 30.0

    # === Temp storage ===
    TEMP_CLEANUP_INTERVAL: float = 1800.0  # 30 minutes

    # === Monitoring ===
    PROMETHEUS_ENABLED: bool = True


# Settings instance for the HTTP entry point; the core receives settings explicitly
settings = Settings()
