"""Recurring temperature schedules and Warm Hug ramps."""

import asyncio
import contextlib
import math
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from sleepme_sync.config import settings
from sleepme_sync.lib.consts import (
    LEGACY_WARM_HUG_TYPE,
    DayOfWeek,
    RequestPriority,
    ScheduleType,
    TemperatureUnit,
)
from sleepme_sync.lib.logger import get_logger
from sleepme_sync.lib.types import TemperatureSchedule, WarmHugConfig, WarmHugRun
from sleepme_sync.services.device_client import DeviceAPIClient
from sleepme_sync.utils.temperature import round_to_tenth, to_celsius

logger = get_logger(__name__)


def day_of_week(moment: datetime) -> DayOfWeek:
    """Day of week with Sunday as 0."""
    return DayOfWeek((moment.weekday() + 1) % 7)


def parse_time(value: str) -> tuple[int, int]:
    """Parse a 24-hour "HH:MM" string.

    Raises:
        ValueError: If the string is not a valid time of day
    """
    hours_str, sep, minutes_str = value.partition(":")
    if not sep:
        raise ValueError(f"Invalid schedule time: {value!r}")

    hours, minutes = int(hours_str), int(minutes_str)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid schedule time: {value!r}")
    return hours, minutes


def parse_schedule(
    entry: dict[str, Any],
    unit: TemperatureUnit = TemperatureUnit.CELSIUS,
) -> TemperatureSchedule | None:
    """Build a schedule from a configuration entry.

    Entries missing their time or temperature are rejected. An unknown type
    or a Specific Day entry without a day is kept; such a rule is never due.

    Args:
        entry: Configuration dict (type, day, time, temperature, isWarmHug)
        unit: Unit the temperature was authored in

    Returns:
        Parsed schedule, or None if the entry is unusable
    """
    time_value = entry.get("time")
    temperature = entry.get("temperature")
    if not isinstance(time_value, str) or temperature is None:
        logger.error(f"Schedule entry missing time or temperature: {entry}")
        return None

    try:
        temperature_c = to_celsius(float(temperature), unit)
    except (TypeError, ValueError):
        logger.error(f"Schedule entry has invalid temperature: {entry}")
        return None

    is_warm_hug = bool(entry.get("isWarmHug", entry.get("is_warm_hug", False)))
    raw_type = entry.get("type", ScheduleType.EVERYDAY)
    schedule_type: ScheduleType | str
    if raw_type == LEGACY_WARM_HUG_TYPE:
        schedule_type = ScheduleType.EVERYDAY
        is_warm_hug = True
    else:
        try:
            schedule_type = ScheduleType(raw_type)
        except ValueError:
            schedule_type = str(raw_type)

    day = entry.get("day")
    if day is not None:
        try:
            day = DayOfWeek(int(day))
        except (TypeError, ValueError):
            logger.error(f"Schedule entry has invalid day {day!r}: {entry}")
            day = None

    return TemperatureSchedule(
        type=schedule_type,
        time=time_value,
        temperature=temperature_c,
        day=day,
        is_warm_hug=is_warm_hug,
    )


def parse_schedules(
    entries: list[dict[str, Any]],
    unit: TemperatureUnit = TemperatureUnit.CELSIUS,
) -> list[TemperatureSchedule]:
    """Parse configuration entries, skipping unusable ones."""
    schedules = []
    for entry in entries:
        schedule = parse_schedule(entry, unit)
        if schedule is not None:
            schedules.append(schedule)
    return schedules


class ScheduleManager:
    """Fires per-device temperature schedules once per minute.

    A plain rule becomes one setpoint write. A Warm Hug rule starts a ramp
    that begins `duration` minutes early from the last known temperature and
    steps once per minute so the target is reached at the authored time.
    """

    def __init__(
        self,
        client: DeviceAPIClient,
        warm_hug_config: WarmHugConfig | None = None,
        check_interval_seconds: float | None = None,
        warm_hug_step_seconds: float | None = None,
        fallback_offset: float | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the schedule manager.

        Args:
            client: Device API client
            warm_hug_config: Shared ramp configuration
            check_interval_seconds: Period of the schedule check
            warm_hug_step_seconds: Time between ramp steps
            fallback_offset: Degrees below target used when no temperature is known
            clock: Local wall clock
        """
        self._client = client
        self._warm_hug_config = warm_hug_config or settings.warm_hug_config
        self._check_interval = (
            settings.schedule_check_interval_seconds
            if check_interval_seconds is None
            else check_interval_seconds
        )
        self._step_seconds = (
            settings.warm_hug_step_seconds if warm_hug_step_seconds is None else warm_hug_step_seconds
        )
        self._fallback_offset = (
            settings.warm_hug_fallback_offset if fallback_offset is None else fallback_offset
        )
        self._clock = clock

        self._schedules: dict[str, list[TemperatureSchedule]] = {}
        self._last_temperatures: dict[str, float] = {}
        self._warm_hug_runs: dict[str, WarmHugRun] = {}
        self._pending_writes: dict[str, set[asyncio.Task[None]]] = {}
        self._scheduler_task: asyncio.Task[None] | None = None
        self._schedule_action_callback: Callable[[str], None] | None = None

        logger.info(
            f"Schedule manager initialized (Warm Hug: {self._warm_hug_config.increment}C/min "
            f"for {self._warm_hug_config.duration} minutes)"
        )

    def set_schedule_action_callback(self, callback: Callable[[str], None] | None) -> None:
        """Set a hook called with the device id whenever a schedule fires."""
        self._schedule_action_callback = callback

    # ========== Schedule management ==========

    def set_schedules(self, device_id: str, schedules: list[TemperatureSchedule]) -> None:
        """Replace all schedules of a device.

        Args:
            device_id: Device identifier
            schedules: New schedule list
        """
        if not device_id:
            logger.error("Cannot set schedules without a device ID")
            return

        now = self._clock()
        self._schedules[device_id] = [
            replace(
                schedule,
                next_execution_time=self.calculate_next_execution_time(schedule, now),
                last_execution_time=None,
            )
            for schedule in schedules
        ]
        logger.info(f"Set {len(schedules)} schedules for device {device_id}")

        self._start_scheduler()

    def get_schedules(self, device_id: str) -> list[TemperatureSchedule]:
        """Get the schedules of a device."""
        return list(self._schedules.get(device_id, []))

    def remove_device(self, device_id: str) -> None:
        """Drop a device's schedules and cancel its ramp and pending writes."""
        self._schedules.pop(device_id, None)
        self._last_temperatures.pop(device_id, None)

        run = self._warm_hug_runs.pop(device_id, None)
        if run and run.task:
            run.task.cancel()
            logger.info(f"Cancelled Warm Hug for removed device {device_id}")

        for task in self._pending_writes.pop(device_id, set()):
            task.cancel()

        if not self._schedules:
            self._stop_scheduler()

    def update_device_temperature(self, device_id: str, temperature: float | None) -> None:
        """Remember the last observed temperature of a device.

        Used as the starting point of the next Warm Hug.
        """
        if not device_id or temperature is None or math.isnan(temperature):
            return
        self._last_temperatures[device_id] = temperature

    def get_next_scheduled_temperature(self, device_id: str) -> tuple[float, datetime] | None:
        """Get the temperature and time of the earliest upcoming rule.

        Returns:
            (temperature, next execution time) or None if nothing is scheduled
        """
        earliest: tuple[float, datetime] | None = None
        for schedule in self._schedules.get(device_id, []):
            next_time = schedule.next_execution_time
            if next_time is not None and (earliest is None or next_time < earliest[1]):
                earliest = (schedule.temperature, next_time)
        return earliest

    def is_warm_hug_active(self, device_id: str) -> bool:
        """Check whether a ramp is running for a device."""
        return device_id in self._warm_hug_runs

    # ========== Recurrence ==========

    def calculate_next_execution_time(
        self,
        schedule: TemperatureSchedule,
        now: datetime | None = None,
    ) -> datetime | None:
        """Calculate the next time a schedule should fire.

        Warm Hug rules are moved earlier by the ramp duration so the ramp
        finishes at the authored time.

        Args:
            schedule: Schedule to resolve
            now: Reference time (defaults to the clock)

        Returns:
            Next execution time, or None for a misconfigured rule
        """
        now = now or self._clock()

        try:
            hours, minutes = parse_time(schedule.time)
        except ValueError as e:
            logger.error(str(e))
            return None

        candidate = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if schedule.is_warm_hug:
            candidate -= timedelta(minutes=self._warm_hug_config.duration)

        if candidate <= now:
            candidate += timedelta(days=1)

        weekday = day_of_week(candidate)

        if schedule.type == ScheduleType.EVERYDAY:
            pass
        elif schedule.type == ScheduleType.WEEKDAYS:
            if weekday == DayOfWeek.SATURDAY:
                candidate += timedelta(days=2)
            elif weekday == DayOfWeek.SUNDAY:
                candidate += timedelta(days=1)
        elif schedule.type == ScheduleType.WEEKEND:
            if DayOfWeek.MONDAY <= weekday <= DayOfWeek.FRIDAY:
                candidate += timedelta(days=DayOfWeek.SATURDAY - weekday)
        elif schedule.type == ScheduleType.SPECIFIC_DAY:
            if schedule.day is None:
                logger.error(f"Specific Day schedule at {schedule.time} is missing its day")
                return None

            days_ahead = (schedule.day - weekday + 7) % 7
            if days_ahead == 0 and candidate <= now:
                days_ahead = 7
            candidate += timedelta(days=days_ahead)
        else:
            logger.error(f"Unknown schedule type: {schedule.type}")
            return None

        return candidate

    @staticmethod
    def applies_on(schedule: TemperatureSchedule, weekday: DayOfWeek) -> bool:
        """Check whether a schedule's day category includes `weekday`."""
        if schedule.type == ScheduleType.EVERYDAY:
            return True
        if schedule.type == ScheduleType.WEEKDAYS:
            return weekday not in DayOfWeek.weekend()
        if schedule.type == ScheduleType.WEEKEND:
            return weekday in DayOfWeek.weekend()
        if schedule.type == ScheduleType.SPECIFIC_DAY:
            return schedule.day == weekday
        return False

    # ========== Driver ==========

    def _start_scheduler(self) -> None:
        if self._scheduler_task is not None:
            return

        logger.info("Starting schedule checks")
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

    def _stop_scheduler(self) -> None:
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            self._scheduler_task = None
            logger.info("Stopped schedule checks")

    async def _scheduler_loop(self) -> None:
        while True:
            try:
                self.check_schedules()
            except Exception as e:
                logger.error(f"Error checking schedules: {e}", exc_info=True)
            await asyncio.sleep(self._check_interval)

    def check_schedules(self, now: datetime | None = None) -> None:
        """Fire every rule that is due and applies today.

        Every rule's next execution time is recalculated afterwards, fired or
        not. Must be called from a running event loop.
        """
        now = now or self._clock()
        today = day_of_week(now)

        for device_id, schedules in list(self._schedules.items()):
            for index, schedule in enumerate(schedules):
                if schedule.next_execution_time is None:
                    logger.debug(f"Schedule {index} for device {device_id} has no next time")
                    schedule.next_execution_time = self.calculate_next_execution_time(
                        schedule, now
                    )
                    continue

                if self.applies_on(schedule, today) and now >= schedule.next_execution_time:
                    logger.info(
                        f"Executing schedule {index} ({schedule.type}) at {schedule.time} "
                        f"for device {device_id}: {schedule.temperature}C"
                        + (" [Warm Hug]" if schedule.is_warm_hug else "")
                    )
                    try:
                        self._fire(device_id, schedule)
                    except Exception as e:
                        logger.error(
                            f"Error firing schedule {index} for device {device_id}: {e}",
                            exc_info=True,
                        )
                    schedule.last_execution_time = now

                schedule.next_execution_time = self.calculate_next_execution_time(schedule, now)

    def _fire(self, device_id: str, schedule: TemperatureSchedule) -> None:
        if self._schedule_action_callback:
            try:
                self._schedule_action_callback(device_id)
            except Exception as e:
                logger.error(
                    f"Schedule action handler failed for device {device_id}: {e}", exc_info=True
                )

        if schedule.is_warm_hug:
            self.start_warm_hug(device_id, schedule.temperature)
            return

        task = asyncio.create_task(self._execute_schedule(device_id, schedule.temperature))
        tasks = self._pending_writes.setdefault(device_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _execute_schedule(self, device_id: str, temperature: float) -> None:
        try:
            success = await self._client.turn_on_for_schedule(device_id, temperature)
        except Exception as e:
            logger.error(f"Error executing schedule for device {device_id}: {e}")
            return

        if not success:
            logger.error(f"Failed to execute schedule for device {device_id}")
            return

        logger.info(f"Schedule executed: device {device_id} set to {temperature}C")
        self._last_temperatures[device_id] = temperature

    # ========== Warm Hug ==========

    def start_warm_hug(self, device_id: str, target_temperature: float) -> bool:
        """Start a ramp towards `target_temperature`.

        Returns:
            False if a ramp is already running for the device
        """
        if device_id in self._warm_hug_runs:
            logger.debug(f"Warm Hug already active for device {device_id}, skipping")
            return False

        start_temperature = self._last_temperatures.get(
            device_id, target_temperature - self._fallback_offset
        )
        run = WarmHugRun(
            device_id=device_id,
            start_temperature=start_temperature,
            target_temperature=target_temperature,
            total_steps=self._warm_hug_config.duration,
            started_at=self._clock(),
        )
        self._warm_hug_runs[device_id] = run

        logger.info(
            f"Starting Warm Hug for device {device_id}: {start_temperature}C -> "
            f"{target_temperature}C over {run.total_steps} minutes"
        )
        run.task = asyncio.create_task(self._run_warm_hug(run))
        return True

    async def _run_warm_hug(self, run: WarmHugRun) -> None:
        device_id = run.device_id
        try:
            if not await self._write_ramp_temperature(run, run.start_temperature):
                logger.error(f"Failed to set initial Warm Hug temperature for device {device_id}")
                return

            if run.total_steps > 0:
                run.step_size = (run.target_temperature - run.start_temperature) / run.total_steps

            loop = asyncio.get_running_loop()
            next_step = loop.time()
            while run.current_step < run.total_steps:
                next_step += self._step_seconds
                await asyncio.sleep(max(0.0, next_step - loop.time()))

                run.current_step += 1
                temperature = round_to_tenth(
                    run.start_temperature + run.step_size * run.current_step
                )
                logger.debug(
                    f"Warm Hug step {run.current_step}/{run.total_steps} "
                    f"for device {device_id}: {temperature}C"
                )
                if not await self._write_ramp_temperature(run, temperature):
                    logger.warning(
                        f"Warm Hug step {run.current_step} failed for device {device_id}, continuing"
                    )

            logger.info(f"Warm Hug completed for device {device_id}")
        finally:
            if self._warm_hug_runs.get(device_id) is run:
                del self._warm_hug_runs[device_id]

    async def _write_ramp_temperature(self, run: WarmHugRun, temperature: float) -> bool:
        try:
            return await self._client.set_temperature(
                run.device_id, temperature, priority=RequestPriority.HIGH
            )
        except Exception as e:
            logger.error(f"Error during Warm Hug for device {run.device_id}: {e}")
            return False

    # ========== Teardown ==========

    async def cleanup(self) -> None:
        """Stop schedule checks and cancel every ramp and pending write."""
        tasks = [run.task for run in self._warm_hug_runs.values() if run.task]
        for writes in self._pending_writes.values():
            tasks.extend(writes)
        if self._scheduler_task:
            tasks.append(self._scheduler_task)

        self._scheduler_task = None
        self._warm_hug_runs.clear()
        self._pending_writes.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info("Schedule manager cleaned up")
