"""Centralized status polling for all registered devices."""

import asyncio
import contextlib
import time
from typing import Any

from sleepme_sync.config import settings
from sleepme_sync.lib.logger import get_logger
from sleepme_sync.lib.types import PollableDevice, PollCycleSummary
from sleepme_sync.services.device_client import DeviceAPIClient

logger = get_logger(__name__)


class PollingManager:
    """Polls every registered device once per cycle.

    Devices are visited sequentially in registration order. The cycle task
    exists only while at least one device is registered.
    """

    def __init__(
        self,
        client: DeviceAPIClient,
        interval_seconds: float | None = None,
        initial_delay_seconds: float | None = None,
        device_spacing_seconds: float | None = None,
        force_fresh_every: int | None = None,
    ) -> None:
        """Initialize the polling manager.

        Args:
            client: Device API client
            interval_seconds: Period between cycle starts
            initial_delay_seconds: Delay before the first cycle
            device_spacing_seconds: Pause between devices within a cycle
            force_fresh_every: Force a non-cached read every Nth cycle
        """
        self._client = client
        self._interval = (
            settings.polling_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._initial_delay = (
            settings.polling_initial_delay_seconds
            if initial_delay_seconds is None
            else initial_delay_seconds
        )
        self._device_spacing = (
            settings.polling_device_spacing_seconds
            if device_spacing_seconds is None
            else device_spacing_seconds
        )
        self._force_fresh_every = (
            settings.polling_force_fresh_every if force_fresh_every is None else force_fresh_every
        )
        self._devices: dict[str, PollableDevice] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._immediate_tasks: set[asyncio.Task[PollCycleSummary | None]] = set()
        self._cycle_lock = asyncio.Lock()
        self._cycle_count = 0

    def register(self, device: PollableDevice) -> None:
        """Register a device; the first registration starts the cycle."""
        self._devices[device.device_id] = device
        logger.debug(f"Registered device {device.device_id} for polling")

        if self._poll_task is None:
            self._start()

    def unregister(self, device_id: str) -> None:
        """Unregister a device; removing the last one stops the cycle."""
        if self._devices.pop(device_id, None) is None:
            return
        logger.debug(f"Unregistered device {device_id} from polling")

        if not self._devices:
            self._stop()

    def _start(self) -> None:
        logger.info(
            f"Starting polling for {len(self._devices)} device(s) every {self._interval:g}s"
        )
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

        for task in self._immediate_tasks:
            task.cancel()
        self._immediate_tasks.clear()

        logger.info("Stopped polling")

    async def _poll_loop(self) -> None:
        """Run cycles at a fixed period after the initial delay."""
        loop = asyncio.get_running_loop()
        await asyncio.sleep(self._initial_delay)
        next_run = loop.time()

        while True:
            try:
                await self.poll_all_devices()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in poll cycle: {e}", exc_info=True)

            next_run += self._interval
            await asyncio.sleep(max(0.0, next_run - loop.time()))

    async def poll_all_devices(self) -> PollCycleSummary | None:
        """Run one poll cycle over all registered devices.

        Returns:
            Cycle summary, or None when no device is registered
        """
        async with self._cycle_lock:
            if not self._devices:
                return None

            self._cycle_count += 1
            summary = PollCycleSummary(cycle=self._cycle_count)
            force_fresh = self._force_fresh_every > 0 and (
                self._cycle_count % self._force_fresh_every == 0
            )
            started = time.monotonic()
            logger.debug(f"Starting poll cycle {summary.cycle} for {len(self._devices)} devices")

            device_ids = list(self._devices)
            for index, device_id in enumerate(device_ids):
                if index > 0 and self._device_spacing > 0:
                    await asyncio.sleep(self._device_spacing)

                await self._poll_device(device_id, force_fresh, summary)

            summary.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                f"Poll cycle {summary.cycle} completed: {summary.success_count} success, "
                f"{summary.error_count} errors ({summary.duration_ms}ms) "
                f"[{summary.active_count} active, {summary.fresh_call_count} fresh calls]"
            )
            return summary

    async def _poll_device(
        self, device_id: str, force_fresh: bool, summary: PollCycleSummary
    ) -> None:
        device = self._devices.get(device_id)
        if device is None:
            # Unregistered earlier in this cycle
            return

        try:
            status = await self._client.get_status(device_id, force_fresh)
        except Exception as e:
            summary.error_count += 1
            logger.error(f"Poll error for device {device_id}: {e}")
            if device_id in self._devices:
                self._notify_error(device, e)
            return

        if device_id not in self._devices:
            return

        if status is None:
            # Denied upstream (rate limit or backlog), try again next cycle
            summary.skipped_count += 1
            logger.debug(f"Skipped poll for device {device_id}")
            return

        try:
            device.on_status_update(status)
        except Exception as e:
            summary.error_count += 1
            logger.error(f"Status update handler failed for device {device_id}: {e}", exc_info=True)
            return

        summary.success_count += 1
        if status.is_active:
            summary.active_count += 1
        if force_fresh:
            summary.fresh_call_count += 1

    @staticmethod
    def _notify_error(device: PollableDevice, error: Exception) -> None:
        try:
            device.on_error(error)
        except Exception as e:
            logger.error(f"Error handler failed for device {device.device_id}: {e}", exc_info=True)

    def trigger_immediate_poll(self) -> None:
        """Run a poll cycle now, serialized with the timed cycles."""
        if not self._devices:
            return

        logger.debug("Triggering immediate poll for all devices")
        task = asyncio.create_task(self.poll_all_devices())
        self._immediate_tasks.add(task)
        task.add_done_callback(self._immediate_tasks.discard)

    def get_stats(self) -> dict[str, Any]:
        """Get polling statistics."""
        return {
            "device_count": len(self._devices),
            "cycle_count": self._cycle_count,
            "is_active": self._poll_task is not None,
        }

    async def cleanup(self) -> None:
        """Stop polling and drop every registration."""
        task = self._poll_task
        self._devices.clear()
        self._stop()

        if task:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info("Polling manager cleaned up")
