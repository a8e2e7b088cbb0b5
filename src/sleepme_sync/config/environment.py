"""Environment configuration with validation."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sleepme_sync.lib.consts import LogLevel
from sleepme_sync.lib.types import WarmHugConfig


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    The rate window values were measured against the live API; they are
    policy inputs and can be overridden without code changes.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API configuration
    api_token: str | None = Field(
        default=None,
        description="Bearer token for the SleepMe developer API",
    )
    api_base_url: str = Field(
        default="https://api.developer.sleep.me/v1",
        description="SleepMe API base URL",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        description="Total timeout for a single API request",
    )

    # Rate window configuration (empirical)
    rate_window_ms: int = Field(
        default=60000,
        description="Discrete rate window length in milliseconds",
    )
    rate_requests_per_window: int = Field(
        default=3,
        description="Requests admitted per window",
    )
    rate_min_gap_ms: int = Field(
        default=15000,
        description="Minimum spacing between any two admitted requests",
    )
    rate_safety_margin: float = Field(
        default=0.1,
        description="Multiplicative widening applied to the window and the gap",
    )
    rate_allow_critical_bypass: bool = Field(
        default=True,
        description="Allow CRITICAL requests to bypass a full window or backoff",
    )
    rate_critical_bypass_limit: int = Field(
        default=2,
        description="Critical bypasses allowed per window",
    )
    rate_backoff_multiplier: float = Field(
        default=2.0,
        description="Backoff growth per consecutive rate limit response",
    )
    rate_max_backoff_ms: int = Field(
        default=300000,
        description="Upper bound for adaptive backoff in milliseconds",
    )

    # Polling configuration
    polling_interval_seconds: float = Field(
        default=120.0,
        description="Seconds between poll cycles",
    )
    polling_initial_delay_seconds: float = Field(
        default=5.0,
        description="Delay before the first poll cycle",
    )
    polling_device_spacing_seconds: float = Field(
        default=1.0,
        description="Pause between devices within a poll cycle",
    )
    polling_force_fresh_every: int = Field(
        default=5,
        description="Request non-cached status every Nth cycle (0 = never)",
    )

    # Schedule configuration
    schedule_check_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between schedule checks",
    )
    warm_hug_increment: float = Field(
        default=0.5,
        description="Warm Hug increment in degrees per minute (informational)",
    )
    warm_hug_duration_minutes: int = Field(
        default=15,
        description="Warm Hug ramp length in minutes",
    )
    warm_hug_step_seconds: float = Field(
        default=60.0,
        description="Seconds between Warm Hug ramp steps",
    )
    warm_hug_fallback_offset: float = Field(
        default=4.0,
        description="Degrees below target used when no temperature is known",
    )

    # Status cache configuration
    status_cache_ttl_ms: int = Field(
        default=180000,
        description="Device status cache validity in milliseconds",
    )

    # Write retry configuration
    max_write_retries: int = Field(
        default=3,
        description="Admission retries for a write before giving up",
    )
    max_write_wait_ms: int = Field(
        default=30000,
        description="Longest limiter wait a write is willing to sleep through",
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.NORMAL,
        description="Log verbosity: normal, debug or verbose",
    )

    @property
    def effective_window_ms(self) -> int:
        """Get the rate window widened by the safety margin."""
        return int(self.rate_window_ms * (1 + self.rate_safety_margin))

    @property
    def effective_min_gap_ms(self) -> int:
        """Get the minimum gap widened by the safety margin."""
        return int(self.rate_min_gap_ms * (1 + self.rate_safety_margin))

    @property
    def polling_interval_ms(self) -> int:
        """Get the polling interval in milliseconds."""
        return int(self.polling_interval_seconds * 1000)

    @property
    def warm_hug_config(self) -> WarmHugConfig:
        """Get the shared Warm Hug configuration."""
        return WarmHugConfig(
            increment=self.warm_hug_increment,
            duration=self.warm_hug_duration_minutes,
        )


settings = Settings()
