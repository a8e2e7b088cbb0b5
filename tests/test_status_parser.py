"""Tests for device status parsing."""

from sleepme_sync.lib.consts import DEFAULT_TEMPERATURE_C, PowerState, ThermalStatus
from sleepme_sync.utils.status_parser import (
    CURRENT_TEMPERATURE_PATHS,
    extract_nested_value,
    extract_power_state,
    extract_temperature,
    extract_thermal_status,
    parse_device_status,
)


class TestExtractNestedValue:
    """Tests for extract_nested_value function."""

    def test_top_level(self):
        """Test extracting a top level key."""
        assert extract_nested_value({"a": 1}, "a") == 1

    def test_nested(self):
        """Test extracting a nested key."""
        assert extract_nested_value({"a": {"b": {"c": 3}}}, "a.b.c") == 3

    def test_missing_segment(self):
        """Test that a missing segment returns None."""
        assert extract_nested_value({"a": {}}, "a.b.c") is None

    def test_non_dict_segment(self):
        """Test that descending into a scalar returns None."""
        assert extract_nested_value({"a": 5}, "a.b") is None


class TestExtractTemperature:
    """Tests for extract_temperature function."""

    def test_first_path_wins(self):
        """Test that the nested status path is preferred."""
        data = {"status": {"water_temperature_c": 19.5}, "water_temperature_c": 25.0}
        assert extract_temperature(data, CURRENT_TEMPERATURE_PATHS) == 19.5

    def test_falls_back_to_later_path(self):
        """Test that a later path is used when earlier ones are missing."""
        data = {"current_temperature_c": 23}
        assert extract_temperature(data, CURRENT_TEMPERATURE_PATHS) == 23.0

    def test_non_numeric_is_skipped(self):
        """Test that non-numeric values are ignored."""
        data = {"status": {"water_temperature_c": "warm"}, "water_temperature_c": True}
        assert extract_temperature(data, CURRENT_TEMPERATURE_PATHS) is None

    def test_default(self):
        """Test the default when nothing is present."""
        assert extract_temperature({}, CURRENT_TEMPERATURE_PATHS) is None
        assert extract_temperature({}, CURRENT_TEMPERATURE_PATHS, default=18.0) == 18.0


class TestThermalAndPower:
    """Tests for thermal status and power state inference."""

    def test_thermal_status_is_case_insensitive(self):
        """Test that thermal status values are normalized."""
        data = {"control": {"thermal_control_status": "HEATING"}}
        assert extract_thermal_status(data) == ThermalStatus.HEATING

    def test_unknown_thermal_status(self):
        """Test that unrecognized values map to unknown."""
        assert extract_thermal_status({"thermal_control_status": "defrost"}) == (
            ThermalStatus.UNKNOWN
        )

    def test_standby_is_off(self):
        """Test that standby devices are reported off."""
        data = {"control": {"thermal_control_status": "standby"}}
        assert extract_power_state(data) == PowerState.OFF

    def test_cooling_is_on(self):
        """Test that conditioning devices are reported on."""
        data = {"control": {"thermal_control_status": "cooling"}}
        assert extract_power_state(data) == PowerState.ON

    def test_falls_back_to_connectivity(self):
        """Test that connectivity is used without a thermal status."""
        assert extract_power_state({"status": {"is_connected": False}}) == PowerState.OFF
        assert extract_power_state({"is_connected": True}) == PowerState.ON

    def test_nothing_known(self):
        """Test that an empty payload gives an unknown power state."""
        assert extract_power_state({}) == PowerState.UNKNOWN


class TestParseDeviceStatus:
    """Tests for parse_device_status function."""

    def test_full_payload(self):
        """Test parsing a complete payload."""
        data = {
            "about": {"firmware_version": "5.39"},
            "control": {"set_temperature_c": 21.5, "thermal_control_status": "active"},
            "status": {
                "water_temperature_c": 19.0,
                "is_connected": True,
                "water_level": 45,
                "is_water_low": True,
            },
        }

        status = parse_device_status(data)

        assert status.current_temperature == 19.0
        assert status.target_temperature == 21.5
        assert status.thermal_status == ThermalStatus.ACTIVE
        assert status.power_state == PowerState.ON
        assert status.is_active is True
        assert status.firmware_version == "5.39"
        assert status.connected is True
        assert status.water_level == 45.0
        assert status.is_water_low is True
        assert status.raw_response is data

    def test_flat_payload(self):
        """Test parsing a payload without nesting."""
        data = {
            "water_temperature_c": 24.0,
            "set_temperature_c": 26.0,
            "thermal_control_status": "standby",
        }

        status = parse_device_status(data)

        assert status.current_temperature == 24.0
        assert status.target_temperature == 26.0
        assert status.power_state == PowerState.OFF
        assert status.is_active is False

    def test_sparse_payload(self):
        """Test that optional fields stay unset."""
        status = parse_device_status({})

        assert status.current_temperature is None
        assert status.target_temperature == DEFAULT_TEMPERATURE_C
        assert status.thermal_status == ThermalStatus.UNKNOWN
        assert status.firmware_version is None
        assert status.connected is None
        assert status.water_level is None
