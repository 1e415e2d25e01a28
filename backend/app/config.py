"""
Application configuration loaded from environment variables via pydantic-settings.
All settings are validated at startup — bad values fail fast and loudly.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PHASE_NUMBERS = (1, 2, 3, 4, 5, 6)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Database ───────────────────────────────────────────────────────────
    database_url: str = Field(
        default="postgresql+asyncpg://research:password@db:5432/research",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")

    # ── Worker webhooks (one per phase) ────────────────────────────────────
    webhook_phase1_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE1_URL")
    webhook_phase2_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE2_URL")
    webhook_phase3_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE3_URL")
    webhook_phase4_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE4_URL")
    webhook_phase5_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE5_URL")
    webhook_phase6_url: str = Field(default="", alias="N8N_WEBHOOK_PHASE6_URL")

    # ── Worker timeouts (seconds) ──────────────────────────────────────────
    worker_timeout_phase1: float = Field(default=150.0, alias="WORKER_TIMEOUT_PHASE1")
    worker_timeout_phase2: float = Field(default=180.0, alias="WORKER_TIMEOUT_PHASE2")
    # PDF-heavy: large batches take many minutes on the worker side
    worker_timeout_phase3: float = Field(default=1200.0, alias="WORKER_TIMEOUT_PHASE3")
    worker_timeout_phase4: float = Field(default=300.0, alias="WORKER_TIMEOUT_PHASE4")
    worker_timeout_phase5: float = Field(default=300.0, alias="WORKER_TIMEOUT_PHASE5")
    worker_timeout_phase6: float = Field(default=300.0, alias="WORKER_TIMEOUT_PHASE6")
    worker_connect_timeout: float = Field(default=10.0, alias="WORKER_CONNECT_TIMEOUT")
    phase3_pool_connections: int = Field(default=10, alias="PHASE3_POOL_CONNECTIONS")
    phase3_pool_maxsize: int = Field(default=50, alias="PHASE3_POOL_MAXSIZE")

    # ── Research session rules ─────────────────────────────────────────────
    min_problem_words: int = Field(default=30, alias="MIN_PROBLEM_WORDS")
    stale_phase_minutes: int = Field(default=20, alias="STALE_PHASE_MINUTES")
    stale_sweep_interval_minutes: int = Field(default=5, alias="STALE_SWEEP_INTERVAL_MINUTES")

    # ── Notifications ──────────────────────────────────────────────────────
    apprise_urls: str = Field(default="", alias="APPRISE_URLS")

    # ── App config ─────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_allow_origins: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}")
        return upper

    @field_validator("min_problem_words", "stale_phase_minutes", "stale_sweep_interval_minutes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @property
    def webhook_urls(self) -> tuple[str, ...]:
        """Worker endpoints indexed by phase - 1."""
        return (
            self.webhook_phase1_url,
            self.webhook_phase2_url,
            self.webhook_phase3_url,
            self.webhook_phase4_url,
            self.webhook_phase5_url,
            self.webhook_phase6_url,
        )

    @property
    def worker_timeouts(self) -> tuple[float, ...]:
        """Read timeouts indexed by phase - 1."""
        return (
            self.worker_timeout_phase1,
            self.worker_timeout_phase2,
            self.worker_timeout_phase3,
            self.worker_timeout_phase4,
            self.worker_timeout_phase5,
            self.worker_timeout_phase6,
        )

    def webhook_url_for(self, phase: int) -> str:
        return self.webhook_urls[phase - 1].strip()

    def timeout_for(self, phase: int) -> float:
        return self.worker_timeouts[phase - 1]

    @property
    def apprise_url_list(self) -> list[str]:
        """Parse comma-separated APPRISE_URLS into a list."""
        if not self.apprise_urls:
            return []
        return [u.strip() for u in self.apprise_urls.split(",") if u.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()] or ["*"]

    def configured_webhooks(self) -> dict[str, bool]:
        """Return which phase endpoints are configured (for health checks)."""
        return {f"phase{n}": bool(self.webhook_url_for(n)) for n in PHASE_NUMBERS}


@lru_cache
def get_settings() -> Settings:
    return Settings()
