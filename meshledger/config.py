"""Application configuration using Pydantic Settings."""

from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    PROJECT_NAME: str = "Mesh Address Ledger"
    VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database Configuration
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # CORS Configuration
    BACKEND_CORS_ORIGINS: List[str] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, list):
            return v
        elif isinstance(v, str):
            import json

            return json.loads(v)
        raise ValueError(v)

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MINUTE: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or console

    # OpenTelemetry Configuration
    OTEL_SERVICE_NAME: str = "meshledger"
    OTEL_TRACE_SAMPLE_RATE: float = 1.0  # 1.0 = 100% sampling
    OTEL_EXPORT_CONSOLE: bool = False

    # Redis/Celery configuration
    REDIS_URL: str = "redis://localhost:6379"
    CELERY_QUEUE_NAME: str = "meshledger:queue"
    CELERY_TASK_SOFT_TIME_LIMIT: int = 120
    CELERY_TASK_HARD_TIME_LIMIT: int = 180

    # Alert events published to Redis for live consumers
    ALERT_EVENTS_ENABLED: bool = True

    # Ledger defaults for IP records created on first assignment
    DEFAULT_SUBNET: str = "192.168.1.0/24"
    DEFAULT_GATEWAY: str = "192.168.1.1"
    DEFAULT_DNS: str = "8.8.8.8,8.8.4.4"
    SYSTEM_ACTOR_ID: str = "system"

    # Liveness monitor
    MONITOR_ENABLED: bool = False
    MONITOR_INTERVAL_SECONDS: float = 30.0
    MONITOR_BATCH_SIZE: int = 10
    PROBE_TIMEOUT_SECONDS: float = 5.0
    PING_BINARY: str = "ping"

    # Mesh signal thresholds (percent)
    WEAK_SIGNAL_THRESHOLD: int = 50
    CRITICAL_SIGNAL_THRESHOLD: int = 30

    # Conflict health score weights
    CONFLICT_PENALTY: int = 30
    ORPHAN_PENALTY: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
