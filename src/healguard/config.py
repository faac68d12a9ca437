# src/healguard/config.py
"""
Application settings, loaded from the environment (and `.env` when present).

Numeric policy constants (severity tiers, decision policy, retry defaults) live here as
deployment-tunable defaults. The domain layer wraps them in immutable policy objects,
see `healguard.domain.value_objects`.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment / DB / cache
    ENV: str = Field(default="dev")
    LOG_LEVEL: str | None = None
    DATABASE_URL: str = Field(default="sqlite:///./dev.db")
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    CACHE_TTL_SECONDS: int = 30
    CACHE_PREFIX: str = "healguard"

    # API / Security
    API_KEY: str | None = None
    CORS_ORIGINS: str = "*"

    # Health aggregation
    HEALTH_WINDOW_SECONDS: int = Field(default=60, ge=60, le=300)

    # Anomaly detection
    ANOMALY_LOOKBACK_MINUTES: int = 15
    CLUSTER_WINDOW_MINUTES: int = 15
    CLUSTER_MIN_TYPES: int = 3
    SEVERITY_CRITICAL_DEVIATION: float = 0.30
    SEVERITY_HIGH_DEVIATION: float = 0.25
    SEVERITY_MODERATE_DEVIATION: float = 0.20
    SEVERITY_CRITICAL_PROBABILITY: float = 0.50
    SEVERITY_HIGH_PROBABILITY: float = 0.40
    SEVERITY_MODERATE_PROBABILITY: float = 0.30
    SEVERITY_CRITICAL_RATE_PER_HOUR: float = 150.0
    SEVERITY_HIGH_RATE_PER_HOUR: float = 120.0
    LATENCY_SPIKE_MS: float = 2000.0
    ERROR_RATE_SPIKE_PCT: float = 5.0
    CPU_EXHAUSTION_PCT: float = 80.0
    MEMORY_EXHAUSTION_PCT: float = 85.0
    BASELINE_SIGMA: float = 2.0

    # Decision engine
    DECISION_MIN_CONFIDENCE: float = 0.6
    DECISION_AUTO_APPROVE_THRESHOLD: float = 0.7
    DECISION_MAX_AUTO_RISK: str = "medium"

    # Recovery orchestration
    RECOVERY_TIMEOUT_SECONDS: int = 300
    RECOVERY_MAX_ATTEMPTS: int = 3
    RECOVERY_BACKOFF_SECONDS: int = 60
    RECOVERY_BACKOFF_CAP_SECONDS: int = 3600
    CONTROL_PLANE_URL: str | None = None

    # Notification channels
    SLACK_WEBHOOK_URL: str | None = None
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_ALERT_CHAT_ID: str | None = None
    NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # Scheduled triggers
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: int = 60
    SYSTEM_OWNER_ID: str = "system"

    # Self tests
    SELFTEST_FAILURE_ALERT_RATIO: float = 0.33

    # Observability
    METRICS_ENABLED: bool = True


settings = Settings()
