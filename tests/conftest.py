"""Pytest fixtures and configuration."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from sleepme_sync.lib.consts import PowerState, ThermalStatus
from sleepme_sync.lib.types import DeviceStatus

# Aligned to a 60s window boundary
WINDOW_ALIGNED_MS = 1_700_000_040_000


class FakeClock:
    """Millisecond clock driven by the test."""

    def __init__(self, now: int = WINDOW_ALIGNED_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeWallClock:
    """Local datetime clock driven by the test."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Create a millisecond clock at a window boundary."""
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    """Create a wall clock on Tuesday 2024-01-02 05:00."""
    return FakeWallClock(datetime(2024, 1, 2, 5, 0))


@pytest.fixture
def device_status() -> DeviceStatus:
    """Create an active device status."""
    return DeviceStatus(
        current_temperature=20.5,
        target_temperature=22.0,
        thermal_status=ThermalStatus.ACTIVE,
        power_state=PowerState.ON,
    )


@pytest.fixture
def mock_client(device_status: DeviceStatus) -> AsyncMock:
    """Create a mock device API client that accepts every call."""
    client = AsyncMock()
    client.get_status = AsyncMock(return_value=device_status)
    client.set_temperature = AsyncMock(return_value=True)
    client.turn_on_for_schedule = AsyncMock(return_value=True)
    return client
