"""Global constants and enums."""

from enum import IntEnum, StrEnum

# --- Device limits ---

MIN_TEMPERATURE_C = 13.0  # ~55F
MAX_TEMPERATURE_C = 46.0  # ~115F
DEFAULT_TEMPERATURE_C = 21.0

# Request history retention for limiter statistics
REQUEST_HISTORY_MS = 600000


# --- Logging ---


class LogLevel(StrEnum):
    """Configured log verbosity."""

    NORMAL = "normal"
    DEBUG = "debug"
    VERBOSE = "verbose"  # Per-request admission and cache traces


# --- Rate limiting enums ---


class RequestPriority(StrEnum):
    """Importance tag carried by every outbound API call."""

    CRITICAL = "critical"  # User-initiated setpoint or power change
    HIGH = "high"  # Schedule-triggered change, fresh status read
    NORMAL = "normal"  # Routine status poll
    LOW = "low"  # Background housekeeping


class DecisionReason(StrEnum):
    """Why the rate limiter allowed or denied a request."""

    SLOT_RESERVED = "slot reserved"
    CRITICAL_BYPASS_BACKOFF = "critical bypass during adaptive backoff"
    CRITICAL_BYPASS_WINDOW_FULL = "critical bypass of full window"
    ADAPTIVE_BACKOFF = "adaptive backoff active"
    MIN_GAP = "minimum gap between requests"
    WINDOW_FULL = "rate window full"


# --- Schedule enums ---


class ScheduleType(StrEnum):
    """Recurrence categories for temperature schedules."""

    EVERYDAY = "Everyday"
    WEEKDAYS = "Weekdays"
    WEEKEND = "Weekend"
    SPECIFIC_DAY = "Specific Day"


# Older configurations used a dedicated type instead of the isWarmHug flag
LEGACY_WARM_HUG_TYPE = "Warm Hug"


class DayOfWeek(IntEnum):
    """Days of the week (0 = Sunday, 6 = Saturday)."""

    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def weekend(cls) -> list["DayOfWeek"]:
        """Return the weekend days."""
        return [cls.SATURDAY, cls.SUNDAY]


class TemperatureUnit(StrEnum):
    """Unit a schedule temperature was authored in."""

    CELSIUS = "C"
    FAHRENHEIT = "F"


# --- Device state enums ---


class ThermalStatus(StrEnum):
    """Thermal control states reported by the API."""

    OFF = "off"
    HEATING = "heating"
    COOLING = "cooling"
    ACTIVE = "active"
    STANDBY = "standby"
    UNKNOWN = "unknown"

    @classmethod
    def running(cls) -> list["ThermalStatus"]:
        """Return statuses meaning the device is actively conditioning."""
        return [cls.ACTIVE, cls.HEATING, cls.COOLING]


class PowerState(StrEnum):
    """Power state of the device."""

    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"
