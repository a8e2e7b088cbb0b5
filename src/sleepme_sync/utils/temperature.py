"""Temperature conversion, rounding and range enforcement."""

import math

from sleepme_sync.lib.consts import MAX_TEMPERATURE_C, MIN_TEMPERATURE_C, TemperatureUnit
from sleepme_sync.lib.logger import get_logger

logger = get_logger(__name__)


def celsius_to_fahrenheit(celsius: float) -> float:
    """Convert Celsius to Fahrenheit.

    Args:
        celsius: Temperature in Celsius

    Returns:
        Temperature in Fahrenheit
    """
    return (celsius * 9 / 5) + 32


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    """Convert Fahrenheit to Celsius.

    Args:
        fahrenheit: Temperature in Fahrenheit

    Returns:
        Temperature in Celsius
    """
    return (fahrenheit - 32) * 5 / 9


def to_celsius(temperature: float, unit: TemperatureUnit) -> float:
    """Normalize a temperature authored in `unit` to Celsius."""
    if unit == TemperatureUnit.FAHRENHEIT:
        return fahrenheit_to_celsius(temperature)
    return temperature


def round_to_tenth(value: float) -> float:
    """Round half-up to one decimal place.

    Python's round() uses banker's rounding, which would make 19.25 -> 19.2.
    """
    return math.floor(value * 10 + 0.5) / 10


def clamp_temperature(temperature: float, device_id: str | None = None) -> float:
    """Clamp a Celsius temperature to the supported device range.

    Args:
        temperature: Temperature in Celsius
        device_id: Device identifier for logging

    Returns:
        Clamped temperature value
    """
    original = temperature

    if temperature < MIN_TEMPERATURE_C:
        temperature = MIN_TEMPERATURE_C
    elif temperature > MAX_TEMPERATURE_C:
        temperature = MAX_TEMPERATURE_C

    if temperature != original:
        logger.warning(
            f"Clamped temperature from {original:.1f}C to {temperature:.1f}C"
            + (f" for device {device_id}" if device_id else "")
        )

    return temperature


def to_api_fahrenheit(celsius: float) -> int:
    """Convert Celsius to the whole-degree Fahrenheit value the API expects."""
    return math.floor(celsius_to_fahrenheit(celsius) + 0.5)
