"""SleepMe REST client gated by the rate window limiter."""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from sleepme_sync.config import settings
from sleepme_sync.lib.consts import PowerState, RequestPriority, ThermalStatus
from sleepme_sync.lib.logger import VERBOSE, get_logger
from sleepme_sync.lib.types import CachedStatus, DeviceStatus
from sleepme_sync.services.rate_window_limiter import RateWindowLimiter, wall_clock_ms
from sleepme_sync.utils.status_parser import parse_device_status
from sleepme_sync.utils.temperature import clamp_temperature, to_api_fahrenheit

logger = get_logger(__name__)


class SleepMeApiError(Exception):
    """Raised when the API or the transport fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class RateLimitedError(SleepMeApiError):
    """Raised when the API answers 429."""


class DeviceAPIClient(Protocol):
    """Read/write capability consumed by the polling and schedule managers.

    get_status returns None when fresh data is not available right now
    (denied or rate limited) and raises SleepMeApiError on real failures.
    Writes return False for ordinary rejects.
    """

    async def get_status(self, device_id: str, force_fresh: bool = False) -> DeviceStatus | None: ...

    async def set_temperature(
        self,
        device_id: str,
        temperature: float,
        priority: RequestPriority = RequestPriority.CRITICAL,
    ) -> bool: ...

    async def turn_on_for_schedule(self, device_id: str, temperature: float) -> bool: ...


class SleepMeClient:
    """aiohttp client for the SleepMe developer API.

    Every request is admitted by the shared RateWindowLimiter and its
    outcome is reported back, so 429 responses feed the adaptive backoff.
    Reads are never delayed: a denied read returns None and the caller tries
    again next cycle. Writes wait out short denials and retry.
    """

    def __init__(
        self,
        limiter: RateWindowLimiter,
        api_token: str | None = None,
        base_url: str | None = None,
        cache_ttl_ms: int | None = None,
        max_write_retries: int | None = None,
        max_write_wait_ms: int | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            limiter: Shared rate limiter
            api_token: Bearer token (defaults to settings)
            base_url: API base URL (defaults to settings)
            cache_ttl_ms: Status cache validity
            max_write_retries: Admission retries for writes
            max_write_wait_ms: Longest limiter wait a write will sleep through
        """
        self._limiter = limiter
        self._api_token = api_token or settings.api_token
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._cache_ttl_ms = settings.status_cache_ttl_ms if cache_ttl_ms is None else cache_ttl_ms
        self._max_write_retries = (
            settings.max_write_retries if max_write_retries is None else max_write_retries
        )
        self._max_write_wait_ms = (
            settings.max_write_wait_ms if max_write_wait_ms is None else max_write_wait_ms
        )
        self._session: aiohttp.ClientSession | None = None
        self._cache: dict[str, CachedStatus] = {}
        self._stats: dict[str, Any] = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "rate_limited_requests": 0,
            "last_request": None,
            "last_error": None,
            "average_response_time_ms": 0.0,
        }

    async def initialize(self) -> None:
        """Open the HTTP session."""
        if not self._api_token:
            raise ValueError("SleepMe API token is not configured")

        self._session = aiohttp.ClientSession(
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Content-Type": "application/json",
            },
            timeout=aiohttp.ClientTimeout(total=settings.request_timeout_seconds),
        )
        logger.info("SleepMe client initialized")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
            logger.info("SleepMe client closed")

    # ========== Reads ==========

    async def get_status(self, device_id: str, force_fresh: bool = False) -> DeviceStatus | None:
        """Get device status, from cache when still valid.

        Args:
            device_id: Device identifier
            force_fresh: Skip the cache and read from the API

        Returns:
            Device status, or None when the read was denied or rate limited

        Raises:
            SleepMeApiError: On HTTP or transport failure
        """
        if not device_id:
            logger.error("Missing device ID in get_status")
            return None

        if not force_fresh:
            cached = self._get_cached(device_id)
            if cached:
                return cached

        priority = RequestPriority.HIGH if force_fresh else RequestPriority.NORMAL
        if not await self._admit(priority, retries=0):
            logger.debug(f"Status read for device {device_id} deferred by rate limiter")
            return None

        try:
            data = await self._send("GET", f"/devices/{device_id}", priority)
        except RateLimitedError:
            return None

        if not data:
            logger.warning(f"Empty status response for device {device_id}")
            return None

        status = parse_device_status(data)
        logger.debug(
            f"Device {device_id} status: temp={status.current_temperature}C, "
            f"target={status.target_temperature}C, status={status.thermal_status}, "
            f"power={status.power_state}"
        )
        self._cache[device_id] = CachedStatus(status=status, timestamp=wall_clock_ms())
        return status

    def _get_cached(self, device_id: str) -> DeviceStatus | None:
        entry = self._cache.get(device_id)
        if entry is None:
            return None

        ttl = self._cache_ttl_ms // 2 if entry.is_optimistic else self._cache_ttl_ms
        age = wall_clock_ms() - entry.timestamp
        if age >= ttl:
            return None

        logger.log(
            VERBOSE,
            f"Using cached status for device {device_id} ({age // 1000}s old"
            + (", optimistic)" if entry.is_optimistic else ")")
        )
        return entry.status

    # ========== Writes ==========

    async def set_temperature(
        self,
        device_id: str,
        temperature: float,
        priority: RequestPriority = RequestPriority.CRITICAL,
    ) -> bool:
        """Set the target temperature.

        Args:
            device_id: Device identifier
            temperature: Target temperature in Celsius
            priority: CRITICAL for user actions, HIGH for schedules

        Returns:
            True if the API accepted the change
        """
        temperature = clamp_temperature(temperature, device_id)
        logger.info(f"Setting device {device_id} temperature to {temperature}C")

        success = await self._update_device_settings(
            device_id, {"set_temperature_f": to_api_fahrenheit(temperature)}, priority
        )
        if success:
            self._update_cache_optimistically(device_id, target_temperature=temperature)
        return success

    async def turn_on_for_schedule(self, device_id: str, temperature: float) -> bool:
        """Turn the device on at a scheduled temperature."""
        temperature = clamp_temperature(temperature, device_id)
        logger.info(f"Turning device {device_id} ON for schedule at {temperature}C")

        success = await self._update_device_settings(
            device_id,
            {
                "set_temperature_f": to_api_fahrenheit(temperature),
                "thermal_control_status": ThermalStatus.ACTIVE.value,
            },
            RequestPriority.HIGH,
        )
        if success:
            self._update_cache_optimistically(
                device_id,
                target_temperature=temperature,
                power_state=PowerState.ON,
                thermal_status=ThermalStatus.ACTIVE,
            )
        return success

    async def turn_off(self, device_id: str) -> bool:
        """Put the device in standby."""
        logger.info(f"Turning device {device_id} OFF")

        success = await self._update_device_settings(
            device_id,
            {"thermal_control_status": ThermalStatus.STANDBY.value},
            RequestPriority.CRITICAL,
        )
        if success:
            self._update_cache_optimistically(
                device_id, power_state=PowerState.OFF, thermal_status=ThermalStatus.STANDBY
            )
        return success

    async def _update_device_settings(
        self,
        device_id: str,
        payload: dict[str, Any],
        priority: RequestPriority,
    ) -> bool:
        if not device_id:
            logger.error("Missing device ID in device update")
            return False

        if not await self._admit(priority, retries=self._max_write_retries):
            logger.warning(f"Update for device {device_id} not sent: rate limit wait too long")
            return False

        try:
            await self._send("PATCH", f"/devices/{device_id}", priority, payload)
        except SleepMeApiError as e:
            logger.error(f"Failed to update device {device_id}: {e.message}")
            return False

        logger.debug(f"Updated device {device_id} settings: {payload}")
        return True

    def _update_cache_optimistically(self, device_id: str, **updates: Any) -> None:
        entry = self._cache.get(device_id)
        if entry is None:
            return

        self._cache[device_id] = CachedStatus(
            status=replace(entry.status, **updates),
            timestamp=wall_clock_ms(),
            is_optimistic=True,
        )

    # ========== Transport ==========

    async def _admit(self, priority: RequestPriority, retries: int) -> bool:
        """Ask the limiter for a slot, sleeping through short denials."""
        for attempt in range(retries + 1):
            decision = self._limiter.decide(priority)
            if decision.allowed:
                return True

            if attempt == retries or decision.wait_ms > self._max_write_wait_ms:
                logger.debug(f"{priority} request denied: {decision.reason}")
                return False

            logger.debug(
                f"{priority} request waiting {decision.wait_ms}ms ({decision.reason}), "
                f"attempt {attempt + 1}/{retries}"
            )
            await asyncio.sleep(decision.wait_ms / 1000)

        return False

    async def _send(
        self,
        method: str,
        path: str,
        priority: RequestPriority,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Send an admitted request and report its outcome to the limiter.

        Raises:
            RateLimitedError: On HTTP 429
            SleepMeApiError: On any other HTTP or transport failure
        """
        if not self._session:
            raise RuntimeError("SleepMe client not initialized")

        url = f"{self._base_url}{path}"
        started = wall_clock_ms()
        self._stats["total_requests"] += 1
        self._stats["last_request"] = datetime.now()

        try:
            async with self._session.request(method, url, json=payload) as response:
                if response.status == 429:
                    self._limiter.record(priority, True, was_rate_limited=True)
                    self._record_failure("Rate limit exceeded (429)")
                    self._stats["rate_limited_requests"] += 1
                    raise RateLimitedError("Rate limit exceeded", status=429)

                if response.status >= 400:
                    self._limiter.record(priority, True)
                    text = await response.text()
                    self._record_failure(f"HTTP {response.status}: {text}")
                    raise SleepMeApiError(
                        f"{method} {path} failed with HTTP {response.status}",
                        status=response.status,
                    )

                try:
                    data: dict[str, Any] | None = await response.json(content_type=None)
                except ValueError as e:
                    self._limiter.record(priority, True)
                    self._record_failure(f"Invalid JSON response: {e}")
                    raise SleepMeApiError(
                        f"{method} {path} returned invalid JSON", status=response.status
                    ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Timeouts carry no message
            reason = str(e) or type(e).__name__
            self._limiter.record(priority, True)
            self._record_failure(reason)
            raise SleepMeApiError(f"{method} {path} failed: {reason}") from e

        self._limiter.record(priority, True)
        self._stats["successful_requests"] += 1
        self._update_average_response_time(wall_clock_ms() - started)
        return data

    def _record_failure(self, message: str) -> None:
        self._stats["failed_requests"] += 1
        self._stats["last_error"] = message
        logger.warning(f"SleepMe API request failed: {message}")

    def _update_average_response_time(self, elapsed_ms: int) -> None:
        count = self._stats["successful_requests"]
        average = self._stats["average_response_time_ms"]
        self._stats["average_response_time_ms"] = average + (elapsed_ms - average) / count

    def get_stats(self) -> dict[str, Any]:
        """Get request statistics."""
        return dict(self._stats)
