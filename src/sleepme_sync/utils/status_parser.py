"""Parse SleepMe device status payloads."""

from typing import Any

from sleepme_sync.lib.consts import DEFAULT_TEMPERATURE_C, PowerState, ThermalStatus
from sleepme_sync.lib.logger import get_logger
from sleepme_sync.lib.types import DeviceStatus

logger = get_logger(__name__)

CURRENT_TEMPERATURE_PATHS = [
    "status.water_temperature_c",
    "water_temperature_c",
    "control.current_temperature_c",
    "current_temperature_c",
]

TARGET_TEMPERATURE_PATHS = [
    "control.set_temperature_c",
    "set_temperature_c",
]


def extract_nested_value(data: dict[str, Any], path: str) -> Any:
    """Extract a value from nested dicts using a dot-separated path.

    Args:
        data: Payload to search
        path: Dot-notation path (e.g. "status.water_level")

    Returns:
        The value, or None if any segment is missing
    """
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def first_present(data: dict[str, Any], *paths: str) -> Any:
    """Return the first non-None value among `paths`."""
    for path in paths:
        value = extract_nested_value(data, path)
        if value is not None:
            return value
    return None


def extract_temperature(
    data: dict[str, Any],
    paths: list[str],
    default: float | None = None,
) -> float | None:
    """Extract the first numeric temperature found at `paths`, else `default`."""
    for path in paths:
        value = extract_nested_value(data, path)
        # bool is an int subclass
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return default


def extract_thermal_status(data: dict[str, Any]) -> ThermalStatus:
    """Extract the thermal control status."""
    raw = first_present(data, "control.thermal_control_status", "thermal_control_status")
    if not raw:
        return ThermalStatus.UNKNOWN

    try:
        return ThermalStatus(str(raw).lower())
    except ValueError:
        logger.warning(f"Unknown thermal status: {raw}")
        return ThermalStatus.UNKNOWN


def extract_power_state(data: dict[str, Any]) -> PowerState:
    """Infer power state from thermal status, falling back to connectivity."""
    thermal_status = extract_thermal_status(data)
    if thermal_status != ThermalStatus.UNKNOWN:
        if thermal_status in (ThermalStatus.OFF, ThermalStatus.STANDBY):
            return PowerState.OFF
        return PowerState.ON

    is_connected = first_present(data, "status.is_connected", "is_connected")
    if isinstance(is_connected, bool):
        return PowerState.ON if is_connected else PowerState.OFF

    return PowerState.UNKNOWN


def parse_device_status(data: dict[str, Any]) -> DeviceStatus:
    """Build a DeviceStatus from a raw API response.

    Args:
        data: Decoded JSON body of GET /devices/{id}

    Returns:
        Parsed device status
    """
    target = extract_temperature(data, TARGET_TEMPERATURE_PATHS)
    status = DeviceStatus(
        current_temperature=extract_temperature(data, CURRENT_TEMPERATURE_PATHS),
        target_temperature=DEFAULT_TEMPERATURE_C if target is None else target,
        thermal_status=extract_thermal_status(data),
        power_state=extract_power_state(data),
        raw_response=data,
    )

    firmware = first_present(data, "about.firmware_version", "firmware_version")
    if firmware:
        status.firmware_version = str(firmware)

    connected = first_present(data, "status.is_connected", "is_connected")
    if connected is not None:
        status.connected = bool(connected)

    water_level = first_present(data, "status.water_level", "water_level")
    if water_level is not None:
        status.water_level = float(water_level)

    is_water_low = first_present(data, "status.is_water_low", "is_water_low")
    if is_water_low is not None:
        status.is_water_low = bool(is_water_low)

    return status
