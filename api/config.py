"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: Literal["development", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 1
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database (async SQLAlchemy URL, e.g. postgresql+asyncpg://...)
    database_url: str

    # Redis (rq queue + scheduler)
    redis_url: str = "redis://localhost:6379/0"

    # Orchestration
    competitor_concurrency: int = 2
    max_competitors: int = 5
    refresh_cooldown_hours: float = 0.0  # 0 disables the refresh cooldown

    # Data collection
    collector_html_timeout_seconds: float = 30.0
    collector_render_timeout_seconds: float = 45.0
    collector_screenshot_timeout_seconds: float = 60.0
    collector_full_page_timeout_seconds: float = 90.0
    collector_web_vitals_timeout_seconds: float = 60.0
    collector_total_timeout_seconds: float = 120.0
    viewport_width: int = 1440
    viewport_height: int = 900
    user_agent: str = "EffectivenessBot/1.0 (+https://example.com/bot)"
    screenshot_dir: str = "screenshots"
    screenshot_base_url: str = "/screenshots"

    # Tier scoring
    neutral_score: float = 5.0
    tier2_timeout_seconds: float = 40.0
    insights_timeout_seconds: float = 30.0

    # Performance API (PageSpeed Insights)
    pagespeed_api_key: str | None = None
    pagespeed_strategy: Literal["desktop", "mobile"] = "desktop"
    pagespeed_attempt_timeout_seconds: float = 120.0
    pagespeed_max_attempts: int = 6
    pagespeed_base_delay_seconds: float = 1.0
    pagespeed_max_delay_seconds: float = 60.0
    pagespeed_jitter_factor: float = 0.3
    pagespeed_rate_limit_min_delay_seconds: float = 5.0
    pagespeed_rate_limit_max_delay_seconds: float = 300.0
    pagespeed_server_error_min_delay_seconds: float = 1.0
    pagespeed_server_error_max_delay_seconds: float = 180.0
    speed_fallback_score: float = 5.0

    # Circuit breaker
    circuit_failure_threshold: int = 3
    circuit_recovery_timeout_seconds: float = 30.0
    circuit_monitoring_window_seconds: float = 60.0

    # Progress registry
    progress_grace_seconds: float = 300.0
    progress_max_records: int = 1000
    heartbeat_interval_seconds: float = 15.0
    sse_max_connections_per_client: int = 20
    sse_max_connections: int = 500
    sse_max_connection_seconds: float = 600.0

    # Stale run reaper
    stale_run_hours: float = 2.0
    reaper_interval_seconds: int = 900
    reaper_enabled: bool = True

    # AI judge / insights (OpenAI chat completions)
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    openai_temperature: float = 0.1
    openai_timeout_seconds: float = 60.0

    # Sentry
    sentry_dsn: str | None = None

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.env == "test"

    @property
    def ai_enabled(self) -> bool:
        """Check if AI judgments are possible (API key configured)."""
        return bool(self.openai_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    try:
        return Settings()  # type: ignore[call-arg]
    except Exception as e:
        if "validation" in type(e).__name__.lower() or "required" in str(e).lower():
            raise RuntimeError(
                "Missing required environment variables. Set DATABASE_URL "
                "(and REDIS_URL for the scheduler worker)."
            ) from e
        raise
