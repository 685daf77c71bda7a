"""Tests for setpoint strategies and the Home Assistant device layer."""

from unittest.mock import MagicMock

import pytest

from core.ventflow.devices import (
    HomeAssistantDeviceLayer,
    default_setpoint,
    is_fan_only,
    median_room_setpoint,
    resolve_global_setpoint,
    thermostat_setpoint,
)
from core.ventflow.exceptions import HAConnectionError, SensorError
from core.ventflow.models import VentInfo, VentReadings
from core.ventflow.settings import DabSettings
from core.ventflow.state_store import VENT_RATES_KEY


class TestSetpointStrategies:
    def test_thermostat_cooling_nudged_down(self, devices, settings):
        devices.setpoints = {"cooling": 25.0}
        assert thermostat_setpoint(devices, [], "cooling", settings) == pytest.approx(24.3)

    def test_thermostat_heating_nudged_up(self, devices, settings):
        devices.setpoints = {"heating": 20.0}
        assert thermostat_setpoint(devices, [], "heating", settings) == pytest.approx(20.7)

    def test_thermostat_fahrenheit(self, devices, settings):
        settings.thermostat_temp_unit = "F"
        devices.setpoints = {"cooling": 77.0}
        assert thermostat_setpoint(devices, [], "cooling", settings) == pytest.approx(24.3)

    def test_single_setpoint_without_offset(self, devices, settings):
        devices.setpoints = {"setpoint": 22.0}
        assert thermostat_setpoint(devices, [], "cooling", settings) == 22.0

    def test_no_thermostat(self, devices, settings):
        assert thermostat_setpoint(devices, [], "cooling", settings) is None

    def test_median_room_setpoint(self, devices, settings):
        readings = [VentReadings(f"v{i}", setpoint_c=sp) for i, sp in enumerate([21.0, 22.0, 23.0, 20.0])]
        assert median_room_setpoint(devices, readings, "heating", settings) == 22.0

    def test_default_setpoint(self, devices, settings):
        assert default_setpoint(devices, [], "cooling", settings) == 24.0
        assert default_setpoint(devices, [], "heating", settings) == 20.0


class TestResolveGlobalSetpoint:
    def test_thermostat_first(self, devices, settings):
        devices.setpoints = {"heating": 21.0}
        readings = [VentReadings("v1", setpoint_c=18.0)]
        assert resolve_global_setpoint(devices, readings, "heating", settings) == pytest.approx(21.7)

    def test_room_setpoints_next(self, devices, settings):
        readings = [VentReadings("v1", setpoint_c=18.0)]
        assert resolve_global_setpoint(devices, readings, "heating", settings) == 18.0

    def test_default_last(self, devices, settings):
        assert resolve_global_setpoint(devices, [], "cooling", settings) == 24.0

    def test_failing_strategy_is_skipped(self, devices, settings):
        def broken(*args):
            raise SensorError("thermostat offline")

        def fixed(*args):
            return 21

        assert resolve_global_setpoint(devices, [], "heating", settings, [broken, fixed]) == 21.0

    def test_nothing_available(self, devices, settings):
        assert resolve_global_setpoint(devices, [], "heating", settings, []) is None


def test_is_fan_only():
    assert is_fan_only("Fan Only")
    assert is_fan_only("fan")
    assert not is_fan_only("cooling")
    assert not is_fan_only(None)


@pytest.fixture
def ha_settings():
    return DabSettings.from_dict({
        "thermostatEntity": "climate.house",
        "vents": [{
            "id": "v1",
            "roomId": "living",
            "roomName": "Living Room",
            "coverEntity": "cover.v1",
            "ductTempSensor": "sensor.duct",
            "roomTempSensor": "sensor.room",
            "dedicatedTempSensor": "sensor.dedicated",
            "roomActiveEntity": "input_boolean.living",
            "setpointEntity": "input_number.living_setpoint",
            "weight": 2.0,
        }],
    })


@pytest.fixture
def ha_client():
    client = MagicMock()
    temps = {"sensor.duct": 30.0, "sensor.room": 21.0, "sensor.dedicated": 22.0}
    client.get_temperature.side_effect = lambda entity_id: temps[entity_id]
    client.get_cover_position.return_value = 40
    client.get_bool.return_value = False
    client.get_number.return_value = 21.5
    client.get_climate_state.return_value = {
        "hvac_action": "cooling",
        "target_temp_high": 25.0,
        "target_temp_low": 19.0,
        "target_temperature": None,
    }
    return client


@pytest.fixture
def layer(ha_client, ha_settings, state_store):
    return HomeAssistantDeviceLayer(ha_client, ha_settings, state_store)


class TestHomeAssistantDeviceLayer:
    def test_vents(self, layer):
        assert layer.vents() == [VentInfo("v1", "living", "Living Room", 2.0)]

    def test_read_vent(self, layer):
        assert layer.read_vent("v1") == VentReadings(
            "v1", duct_temp_c=30.0, room_temp_c=22.0, percent_open=40, room_active=False, setpoint_c=21.5
        )

    def test_room_temperature_falls_back_to_room_sensor(self, layer, ha_client):
        def temperature(entity_id):
            if entity_id == "sensor.dedicated":
                raise SensorError("unavailable")
            return 21.0

        ha_client.get_temperature.side_effect = temperature
        assert layer.read_vent("v1").room_temp_c == 21.0

    def test_dedicated_sensor_in_fahrenheit(self, layer, ha_client, ha_settings):
        ha_settings.thermostat_temp_unit = "F"
        ha_client.get_temperature.side_effect = lambda entity_id: 71.6
        assert layer.read_vent("v1").room_temp_c == pytest.approx(22.0)

    def test_unreadable_position_reads_closed(self, layer, ha_client):
        ha_client.get_cover_position.side_effect = HAConnectionError("timeout")
        assert layer.read_vent("v1").percent_open == 0

    def test_rates_persist_in_state_store(self, layer, state_store):
        layer.set_rate("v1", "cooling", 0.2)
        assert layer.get_rate("v1", "cooling") == 0.2
        assert layer.get_rate("v1", "heating") == 0.0
        assert state_store.get(VENT_RATES_KEY) == {"v1": {"cooling": 0.2}}

    def test_set_percent_open(self, layer, ha_client):
        layer.set_percent_open("v1", 55)
        ha_client.set_cover_position.assert_called_once_with("cover.v1", 55)

    def test_thermostat(self, layer):
        assert layer.operating_state() == "cooling"
        assert layer.thermostat_setpoints() == {"cooling": 25.0, "heating": 19.0, "setpoint": None}

    def test_without_thermostat(self, ha_client, ha_settings, state_store):
        ha_settings.thermostat_entity = None
        layer = HomeAssistantDeviceLayer(ha_client, ha_settings, state_store)
        assert layer.operating_state() is None
        assert layer.thermostat_setpoints() == {}
