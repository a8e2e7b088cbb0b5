"""Type definitions for sleepme_sync."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sleepme_sync.lib.consts import (
    DecisionReason,
    PowerState,
    RequestPriority,
    ScheduleType,
    ThermalStatus,
)

# --- Rate limiting ---


@dataclass
class RateLimitDecision:
    """Outcome of an admission check."""

    allowed: bool
    wait_ms: int
    reason: DecisionReason


@dataclass
class RateLimiterState:
    """Mutable window and backoff state of the rate limiter."""

    current_window_start: int = 0
    requests_in_current_window: int = 0
    last_request_time: int | None = None
    consecutive_rate_limits: int = 0
    last_rate_limit_time: int = 0
    adaptive_backoff_until: int = 0
    critical_bypasses_used: int = 0
    critical_bypass_reset_time: int = 0


@dataclass
class RequestRecord:
    """A completed request as reported back to the limiter."""

    timestamp: int
    priority: RequestPriority
    allowed: bool
    rate_limited: bool


# --- Devices ---


@dataclass
class DeviceStatus:
    """Parsed device status.

    current_temperature is None when the payload carries no water temperature.
    """

    current_temperature: float | None
    target_temperature: float
    thermal_status: ThermalStatus = ThermalStatus.UNKNOWN
    power_state: PowerState = PowerState.UNKNOWN
    firmware_version: str | None = None
    connected: bool | None = None
    water_level: float | None = None
    is_water_low: bool | None = None
    raw_response: dict[str, Any] | None = None

    @property
    def is_active(self) -> bool:
        """Whether the device is powered and conditioning."""
        return self.power_state == PowerState.ON and self.thermal_status in ThermalStatus.running()


@dataclass
class CachedStatus:
    """Status cache entry."""

    status: DeviceStatus
    timestamp: int  # ms
    is_optimistic: bool = False


@dataclass
class PollableDevice:
    """A device registered for centralized polling."""

    device_id: str
    on_status_update: Callable[[DeviceStatus], None]
    on_error: Callable[[Exception], None]


@dataclass
class PollCycleSummary:
    """Counters for one completed poll cycle."""

    cycle: int
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    active_count: int = 0
    fresh_call_count: int = 0
    duration_ms: int = 0


# --- Schedules ---


@dataclass
class WarmHugConfig:
    """Warm Hug configuration shared by all ramp schedules."""

    increment: float  # degrees per minute, informational
    duration: int  # minutes


@dataclass
class TemperatureSchedule:
    """A recurring temperature rule."""

    type: ScheduleType | str
    time: str  # HH:MM, 24-hour
    temperature: float  # Celsius
    day: int | None = None
    is_warm_hug: bool = False
    next_execution_time: datetime | None = None
    last_execution_time: datetime | None = None


@dataclass
class WarmHugRun:
    """An in-progress Warm Hug ramp for one device."""

    device_id: str
    start_temperature: float
    target_temperature: float
    total_steps: int
    step_size: float = 0.0
    current_step: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    task: asyncio.Task[None] | None = None
