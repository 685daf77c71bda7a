"""
Device Capability Layer

The engine talks to vents and the thermostat only through DeviceLayer.
Fallback chains (which sensor supplies a room temperature, where the global
setpoint comes from) are explicit ordered strategy lists so each link can
be exercised on its own.
"""

import logging
from typing import Callable, Optional, Protocol

from .dab_math import fahrenheit_to_celsius, upper_median
from .exceptions import HAConnectionError, SensorError
from .ha_client import HAClient
from .models import COOLING, VentInfo, VentReadings
from .settings import DabSettings, VentSettings
from .state_store import StateStore, VENT_RATES_KEY

logger = logging.getLogger(__name__)

FAN_ONLY_STATES = {"fan only", "fan", "fan_only"}


class DeviceLayer(Protocol):
    """Abstract capabilities the DAB engine consumes."""

    def vents(self) -> list[VentInfo]: ...

    def read_vent(self, vent_id: str) -> VentReadings: ...

    def get_rate(self, vent_id: str, mode: str) -> float: ...

    def set_rate(self, vent_id: str, mode: str, rate: float) -> None: ...

    def set_percent_open(self, vent_id: str, percent: int) -> None: ...

    def operating_state(self) -> Optional[str]: ...

    def thermostat_setpoints(self) -> dict[str, Optional[float]]: ...


# Global setpoint strategies: (device_layer, readings, mode, settings) -> °C or None

SetpointStrategy = Callable[[DeviceLayer, list[VentReadings], str, DabSettings], Optional[float]]


def thermostat_setpoint(
    devices: DeviceLayer,
    readings: list[VentReadings],
    mode: str,
    settings: DabSettings
) -> Optional[float]:
    """Mode setpoint from the thermostat, nudged by setpoint_offset toward the room."""
    setpoints = devices.thermostat_setpoints() or {}
    if mode == COOLING:
        value = setpoints.get("cooling")
        offset = -settings.setpoint_offset
    else:
        value = setpoints.get("heating")
        offset = settings.setpoint_offset
    if value is None:
        value = setpoints.get("setpoint")
        offset = 0.0
    if value is None:
        return None
    if settings.thermostat_temp_unit == "F":
        return fahrenheit_to_celsius(value) + offset
    return value + offset


def median_room_setpoint(
    devices: DeviceLayer,
    readings: list[VentReadings],
    mode: str,
    settings: DabSettings
) -> Optional[float]:
    return upper_median(r.setpoint_c for r in readings if r.setpoint_c is not None)


def default_setpoint(
    devices: DeviceLayer,
    readings: list[VentReadings],
    mode: str,
    settings: DabSettings
) -> Optional[float]:
    if mode == COOLING:
        return settings.default_cooling_setpoint_c
    return settings.default_heating_setpoint_c


SETPOINT_STRATEGIES: list[SetpointStrategy] = [
    thermostat_setpoint,
    median_room_setpoint,
    default_setpoint,
]


def resolve_global_setpoint(
    devices: DeviceLayer,
    readings: list[VentReadings],
    mode: str,
    settings: DabSettings,
    strategies: Optional[list[SetpointStrategy]] = None
) -> Optional[float]:
    """First setpoint produced by the ordered strategies."""
    for strategy in strategies if strategies is not None else SETPOINT_STRATEGIES:
        try:
            value = strategy(devices, readings, mode, settings)
        except (SensorError, HAConnectionError) as e:
            logger.warning(f"Setpoint strategy {strategy.__name__} failed: {e}")
            continue
        if value is not None:
            return float(value)
    return None


def is_fan_only(operating_state: Optional[str]) -> bool:
    return bool(operating_state) and str(operating_state).lower() in FAN_ONLY_STATES


# Room temperature strategies for the Home Assistant adapter

RoomTempStrategy = Callable[["HomeAssistantDeviceLayer", VentSettings], Optional[float]]


def dedicated_sensor_temp(layer: "HomeAssistantDeviceLayer", vent: VentSettings) -> Optional[float]:
    if not vent.dedicated_temp_sensor:
        return None
    temp = layer.ha_client.get_temperature(vent.dedicated_temp_sensor)
    if layer.settings.thermostat_temp_unit == "F":
        temp = fahrenheit_to_celsius(temp)
    return temp


def room_sensor_temp(layer: "HomeAssistantDeviceLayer", vent: VentSettings) -> Optional[float]:
    if not vent.room_temp_sensor:
        return None
    return layer.ha_client.get_temperature(vent.room_temp_sensor)


ROOM_TEMPERATURE_STRATEGIES: list[RoomTempStrategy] = [
    dedicated_sensor_temp,
    room_sensor_temp,
]


class HomeAssistantDeviceLayer:
    """DeviceLayer over Home Assistant entities.

    Learned rates have no natural home on an HA entity, so they are kept in
    the state store under VENT_RATES_KEY.
    """

    def __init__(
        self,
        ha_client: HAClient,
        settings: DabSettings,
        state_store: StateStore,
        room_temp_strategies: Optional[list[RoomTempStrategy]] = None
    ):
        self.ha_client = ha_client
        self.settings = settings
        self.state_store = state_store
        self.room_temp_strategies = room_temp_strategies or ROOM_TEMPERATURE_STRATEGIES
        self._vents = {v.id: v for v in settings.vents}

    def vents(self) -> list[VentInfo]:
        return [
            VentInfo(vent_id=v.id, room_id=v.room_id, room_name=v.room_name, weight=v.weight)
            for v in self.settings.vents
        ]

    def _read(self, what: str, fn, *args):
        try:
            return fn(*args)
        except (SensorError, HAConnectionError) as e:
            logger.warning(f"Failed to read {what}: {e}")
            return None

    def room_temperature(self, vent: VentSettings) -> Optional[float]:
        for strategy in self.room_temp_strategies:
            temp = self._read(f"{vent.id} room temperature ({strategy.__name__})", strategy, self, vent)
            if temp is not None:
                return temp
        return None

    def read_vent(self, vent_id: str) -> VentReadings:
        vent = self._vents[vent_id]
        duct = None
        if vent.duct_temp_sensor:
            duct = self._read(f"{vent_id} duct temperature", self.ha_client.get_temperature, vent.duct_temp_sensor)
        position = self._read(f"{vent_id} position", self.ha_client.get_cover_position, vent.cover_entity)
        active = True
        if vent.room_active_entity:
            value = self._read(f"{vent_id} room active", self.ha_client.get_bool, vent.room_active_entity)
            active = True if value is None else value
        setpoint = None
        if vent.setpoint_entity:
            setpoint = self._read(f"{vent_id} setpoint", self.ha_client.get_number, vent.setpoint_entity)

        return VentReadings(
            vent_id=vent_id,
            duct_temp_c=duct,
            room_temp_c=self.room_temperature(vent),
            percent_open=int(position or 0),
            room_active=active,
            setpoint_c=setpoint,
        )

    def get_rate(self, vent_id: str, mode: str) -> float:
        rates = self.state_store.get(VENT_RATES_KEY, {}) or {}
        return float(rates.get(vent_id, {}).get(mode, 0.0) or 0.0)

    def set_rate(self, vent_id: str, mode: str, rate: float) -> None:
        def _apply(current):
            current = current or {}
            current.setdefault(vent_id, {})[mode] = rate
            return current

        self.state_store.update(VENT_RATES_KEY, _apply, default={})

    def set_percent_open(self, vent_id: str, percent: int) -> None:
        self.ha_client.set_cover_position(self._vents[vent_id].cover_entity, percent)

    def operating_state(self) -> Optional[str]:
        if not self.settings.thermostat_entity:
            return None
        state = self._read("thermostat state", self.ha_client.get_climate_state, self.settings.thermostat_entity)
        if not state:
            return None
        return state.get("hvac_action")

    def thermostat_setpoints(self) -> dict[str, Optional[float]]:
        if not self.settings.thermostat_entity:
            return {}
        state = self._read("thermostat setpoints", self.ha_client.get_climate_state, self.settings.thermostat_entity)
        if not state:
            return {}
        return {
            "cooling": state.get("target_temp_high"),
            "heating": state.get("target_temp_low"),
            "setpoint": state.get("target_temperature"),
        }
