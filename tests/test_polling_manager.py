"""Tests for the polling manager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from sleepme_sync.lib.consts import PowerState, ThermalStatus
from sleepme_sync.lib.types import DeviceStatus, PollableDevice
from sleepme_sync.services.device_client import SleepMeApiError
from sleepme_sync.services.polling_manager import PollingManager


def make_device(device_id: str) -> PollableDevice:
    """Create a pollable device with mock callbacks."""
    return PollableDevice(
        device_id=device_id,
        on_status_update=MagicMock(),
        on_error=MagicMock(),
    )


@pytest.fixture
def manager(mock_client) -> PollingManager:
    """Create a polling manager whose timed loop never fires during a test."""
    return PollingManager(
        mock_client,
        interval_seconds=3600,
        initial_delay_seconds=3600,
        device_spacing_seconds=0,
        force_fresh_every=5,
    )


class TestLifecycle:
    """Tests for starting and stopping the poll cycle."""

    @pytest.mark.asyncio
    async def test_first_registration_starts_polling(self, manager):
        """Test that registering a device starts the cycle task."""
        assert manager.get_stats()["is_active"] is False

        manager.register(make_device("dev-1"))

        assert manager.get_stats()["is_active"] is True
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_last_unregistration_stops_polling(self, manager):
        """Test that removing the last device stops the cycle task."""
        manager.register(make_device("dev-1"))
        manager.register(make_device("dev-2"))

        manager.unregister("dev-1")
        assert manager.get_stats()["is_active"] is True

        manager.unregister("dev-2")
        assert manager.get_stats()["is_active"] is False

    @pytest.mark.asyncio
    async def test_unregister_unknown_device_is_noop(self, manager):
        """Test that unregistering an unknown device changes nothing."""
        manager.register(make_device("dev-1"))
        manager.unregister("missing")

        assert manager.get_stats()["device_count"] == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_no_callbacks_after_unregister(self, manager, mock_client):
        """Test that an unregistered device is no longer polled."""
        device = make_device("dev-1")
        manager.register(device)
        manager.register(make_device("dev-2"))
        manager.unregister("dev-1")

        await manager.poll_all_devices()

        device.on_status_update.assert_not_called()
        mock_client.get_status.assert_awaited_once_with("dev-2", False)
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup(self, manager):
        """Test that cleanup drops devices and stops the task."""
        manager.register(make_device("dev-1"))

        await manager.cleanup()

        stats = manager.get_stats()
        assert stats["device_count"] == 0
        assert stats["is_active"] is False
        assert await manager.poll_all_devices() is None

    @pytest.mark.asyncio
    async def test_timed_loop_runs_cycles(self, mock_client):
        """Test that the background loop polls without being triggered."""
        manager = PollingManager(
            mock_client,
            interval_seconds=0.01,
            initial_delay_seconds=0,
            device_spacing_seconds=0,
        )
        device = make_device("dev-1")
        manager.register(device)

        await asyncio.sleep(0.05)
        await manager.cleanup()

        assert device.on_status_update.call_count >= 2


class TestPollCycle:
    """Tests for a single poll cycle."""

    @pytest.mark.asyncio
    async def test_poll_without_devices(self, manager):
        """Test that a cycle with no devices does nothing."""
        assert await manager.poll_all_devices() is None
        assert manager.get_stats()["cycle_count"] == 0

    @pytest.mark.asyncio
    async def test_devices_polled_in_registration_order(self, manager, mock_client):
        """Test that devices are visited in registration order."""
        for device_id in ("dev-b", "dev-a", "dev-c"):
            manager.register(make_device(device_id))

        await manager.poll_all_devices()

        assert mock_client.get_status.await_args_list == [
            call("dev-b", False),
            call("dev-a", False),
            call("dev-c", False),
        ]
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_error_isolated_to_one_device(self, manager, mock_client, device_status):
        """Test that one failing device does not stop the others."""
        error = SleepMeApiError("boom", status=500)
        mock_client.get_status = AsyncMock(side_effect=[device_status, error, device_status])
        devices = [make_device(f"dev-{i}") for i in range(3)]
        for device in devices:
            manager.register(device)

        with patch("sleepme_sync.services.polling_manager.logger") as mock_logger:
            summary = await manager.poll_all_devices()

        assert summary.success_count == 2
        assert summary.error_count == 1
        devices[0].on_status_update.assert_called_once_with(device_status)
        devices[1].on_error.assert_called_once_with(error)
        devices[1].on_status_update.assert_not_called()
        devices[2].on_status_update.assert_called_once_with(device_status)

        messages = [c.args[0] for c in mock_logger.info.call_args_list]
        assert any("2 success, 1 errors" in m for m in messages)
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_failing_status_handler_isolated(self, manager, mock_client, device_status):
        """Test that a raising status handler does not stop the cycle."""
        devices = [make_device(f"dev-{i}") for i in range(3)]
        devices[1].on_status_update.side_effect = ValueError("handler bug")
        for device in devices:
            manager.register(device)

        with patch("sleepme_sync.services.polling_manager.logger") as mock_logger:
            summary = await manager.poll_all_devices()

        assert summary.success_count == 2
        assert summary.error_count == 1
        devices[2].on_status_update.assert_called_once_with(device_status)
        assert mock_client.get_status.await_count == 3
        messages = [c.args[0] for c in mock_logger.info.call_args_list]
        assert any("2 success, 1 errors" in m for m in messages)
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_failing_error_handler_isolated(self, manager, mock_client, device_status):
        """Test that a raising error handler does not stop the cycle."""
        mock_client.get_status = AsyncMock(
            side_effect=[SleepMeApiError("boom", status=500), device_status]
        )
        first = make_device("dev-1")
        first.on_error.side_effect = RuntimeError("handler bug")
        second = make_device("dev-2")
        manager.register(first)
        manager.register(second)

        summary = await manager.poll_all_devices()

        assert summary.error_count == 1
        assert summary.success_count == 1
        second.on_status_update.assert_called_once_with(device_status)
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_denied_read_is_skipped(self, manager, mock_client):
        """Test that a None status counts as skipped, not as an error."""
        mock_client.get_status = AsyncMock(return_value=None)
        device = make_device("dev-1")
        manager.register(device)

        summary = await manager.poll_all_devices()

        assert summary.skipped_count == 1
        assert summary.success_count == 0
        assert summary.error_count == 0
        device.on_status_update.assert_not_called()
        device.on_error.assert_not_called()
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_active_devices_counted(self, manager, mock_client, device_status):
        """Test that only running devices are counted as active."""
        idle = DeviceStatus(
            current_temperature=20.0,
            target_temperature=20.0,
            thermal_status=ThermalStatus.STANDBY,
            power_state=PowerState.OFF,
        )
        mock_client.get_status = AsyncMock(side_effect=[device_status, idle])
        manager.register(make_device("dev-1"))
        manager.register(make_device("dev-2"))

        summary = await manager.poll_all_devices()

        assert summary.success_count == 2
        assert summary.active_count == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_force_fresh_every_nth_cycle(self, mock_client):
        """Test that every Nth cycle bypasses the status cache."""
        manager = PollingManager(
            mock_client,
            interval_seconds=3600,
            initial_delay_seconds=3600,
            device_spacing_seconds=0,
            force_fresh_every=3,
        )
        manager.register(make_device("dev-1"))

        summaries = [await manager.poll_all_devices() for _ in range(3)]

        assert [c.args[1] for c in mock_client.get_status.await_args_list] == [
            False,
            False,
            True,
        ]
        assert summaries[2].fresh_call_count == 1
        assert summaries[0].fresh_call_count == 0
        assert manager.get_stats()["cycle_count"] == 3
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_device_unregistered_mid_cycle(self, manager, mock_client):
        """Test that a device removed during a cycle is not polled."""
        first = make_device("dev-1")
        second = make_device("dev-2")
        first.on_status_update.side_effect = lambda _status: manager.unregister("dev-2")
        manager.register(first)
        manager.register(second)

        summary = await manager.poll_all_devices()

        mock_client.get_status.assert_awaited_once_with("dev-1", False)
        second.on_status_update.assert_not_called()
        assert summary.success_count == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_devices_spaced_within_cycle(self, mock_client):
        """Test that the cycle pauses between devices but not before the first."""
        manager = PollingManager(
            mock_client,
            interval_seconds=3600,
            initial_delay_seconds=3600,
            device_spacing_seconds=0.5,
        )
        for device_id in ("dev-1", "dev-2", "dev-3"):
            manager.register(make_device(device_id))
        # Park the timed loop on its initial delay before patching sleep
        await asyncio.sleep(0)

        with patch(
            "sleepme_sync.services.polling_manager.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await manager.poll_all_devices()

        assert mock_sleep.await_args_list == [call(0.5), call(0.5)]
        await manager.cleanup()


class TestImmediatePoll:
    """Tests for on-demand polling."""

    @pytest.mark.asyncio
    async def test_trigger_immediate_poll(self, manager, mock_client):
        """Test that an immediate poll runs a full cycle."""
        device = make_device("dev-1")
        manager.register(device)

        manager.trigger_immediate_poll()
        await asyncio.gather(*list(manager._immediate_tasks))

        device.on_status_update.assert_called_once()
        assert manager.get_stats()["cycle_count"] == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_trigger_without_devices(self, manager, mock_client):
        """Test that an immediate poll with no devices is ignored."""
        manager.trigger_immediate_poll()

        assert not manager._immediate_tasks
        mock_client.get_status.assert_not_called()
