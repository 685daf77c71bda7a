"""
Ventflow Configuration Settings

User-facing settings are loaded from options.json (Home Assistant add-on)
or config.yaml during development.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"
VENT_GRANULARITIES = (5, 10, 25, 50, 100)
OUTLIER_MODES = ("clip", "reject")
UNMANAGED_VENT_POLICIES = ("assume_default", "assume_open")


def _camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def _known_fields(cls, data: dict) -> dict:
    """Convert keys to snake_case and drop the ones the dataclass does not know."""
    names = {f.name for f in fields(cls)}
    converted = {_camel_to_snake(k): v for k, v in data.items()}
    unknown = set(converted) - names
    if unknown:
        logger.debug(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in converted.items() if k in names}


@dataclass
class VentSettings:
    """Configuration for a single vent and the room it serves."""

    id: str
    room_id: str
    room_name: str
    cover_entity: str  # Vent position (cover.* with current_position)
    duct_temp_sensor: str | None = None
    room_temp_sensor: str | None = None  # Room-level reading reported with the vent
    dedicated_temp_sensor: str | None = None  # Preferred sensor for this room, if any
    room_active_entity: str | None = None  # input_boolean / binary_sensor
    setpoint_entity: str | None = None  # Room setpoint (°C)
    weight: float = 1.0

    @classmethod
    def from_dict(cls, data: dict) -> "VentSettings":
        """Create from dictionary."""
        converted = _known_fields(cls, data)
        converted.setdefault("room_name", converted.get("room_id", ""))
        return cls(**converted)


@dataclass
class DabSettings:
    """Tunables for Dynamic Airflow Balancing."""

    enabled: bool = True
    structure_id: str | None = None
    timezone: str = "UTC"

    # Thermostat (plant) integration
    thermostat_entity: str | None = None
    thermostat_temp_unit: str = "C"  # "C" or "F" for thermostat / dedicated sensors
    setpoint_offset: float = 0.7

    # Mode detection
    duct_temp_diff_threshold: float = 0.5

    # Solver
    close_inactive_rooms: bool = True
    max_hvac_running_time: float = 60.0  # minutes
    min_combined_vent_flow: float = 30.0  # percent
    increment_percentage: float = 1.5
    max_iterations: int = 500
    additional_standard_vents: int = 0
    standard_vent_default_open: float = 50.0
    unmanaged_vent_policy: str = "assume_default"
    vent_granularity: int = 5
    allow_full_close: bool = False
    min_vent_floor_percent: int = 10

    # Learning
    min_temp_change_rate: float = 0.001
    max_temp_change_rate: float = 1.5
    min_detectable_temp_change: float = 0.1
    min_runtime_for_rate_calc: float = 5.0  # minutes
    min_minutes_to_setpoint: float = 1.0
    rolling_average_entries: int = 4
    fail_fast_finalization: bool = False

    # Rate history
    history_retention_days: int = 10
    enable_outlier_rejection: bool = True
    outlier_threshold_mad: float = 3.0
    outlier_mode: str = "clip"
    enable_ewma: bool = False
    ewma_half_life_days: float = 3.0
    carry_forward_last_hour: bool = True
    enable_adaptive_boost: bool = True
    adaptive_lookback_periods: int = 3
    adaptive_threshold_percent: float = 25.0
    adaptive_boost_percent: float = 12.5
    adaptive_max_boost_percent: float = 25.0

    # Cycle timing
    rebalancing_tolerance: float = 0.5
    post_state_change_delay_ms: int = 1000
    temp_readings_delay_ms: int = 30000
    evaluate_rebalance_interval_minutes: int = 5
    rebalance_interval_minutes: int = 30
    polling_interval_active: int = 3  # minutes, plant running
    polling_interval_idle: int = 10  # minutes, plant idle
    fan_only_open_all_vents: bool = False

    # Fallback setpoints when neither thermostat nor rooms report one
    default_cooling_setpoint_c: float = 24.0
    default_heating_setpoint_c: float = 20.0

    vents: list[VentSettings] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "DabSettings":
        """Create from dictionary."""
        converted = _known_fields(cls, data)
        converted["vents"] = [VentSettings.from_dict(v) for v in converted.get("vents", [])]
        settings = cls(**converted)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ConfigurationError on values the engine cannot work with."""
        if int(self.history_retention_days) < 1:
            raise ConfigurationError(
                f"history_retention_days must be >= 1, got {self.history_retention_days}"
            )
        if int(self.vent_granularity) not in VENT_GRANULARITIES:
            raise ConfigurationError(
                f"vent_granularity must be one of {VENT_GRANULARITIES}, got {self.vent_granularity}"
            )
        if self.outlier_mode not in OUTLIER_MODES:
            raise ConfigurationError(f"outlier_mode must be one of {OUTLIER_MODES}")
        if self.unmanaged_vent_policy not in UNMANAGED_VENT_POLICIES:
            raise ConfigurationError(
                f"unmanaged_vent_policy must be one of {UNMANAGED_VENT_POLICIES}"
            )
        if self.thermostat_temp_unit not in ("C", "F"):
            raise ConfigurationError("thermostat_temp_unit must be 'C' or 'F'")
        if not 0 <= int(self.additional_standard_vents) <= 15:
            raise ConfigurationError("additional_standard_vents must be between 0 and 15")
        if not 0 <= int(self.min_vent_floor_percent) <= 100:
            raise ConfigurationError("min_vent_floor_percent must be between 0 and 100")
        seen = set()
        for vent in self.vents:
            if vent.id in seen:
                raise ConfigurationError(f"Duplicate vent id: {vent.id}")
            seen.add(vent.id)
            if vent.weight <= 0:
                raise ConfigurationError(f"Vent {vent.id}: weight must be positive")

    @property
    def vent_floor_percent(self) -> int:
        """Lowest position a vent may be commanded to without an override."""
        return 0 if self.allow_full_close else int(self.min_vent_floor_percent)

    def vents_by_room(self) -> dict[str, list[str]]:
        """Map room id -> vent ids, in configuration order."""
        rooms: dict[str, list[str]] = {}
        for vent in self.vents:
            rooms.setdefault(vent.room_id, []).append(vent.id)
        return rooms


def load_settings(
    options_path: str = OPTIONS_PATH,
    config_path: str | None = None
) -> DabSettings:
    """Load DAB settings from the add-on options.json or config.yaml.

    Args:
        options_path: Home Assistant add-on options file (production)
        config_path: YAML config used during development

    Returns:
        Validated DabSettings (defaults if no configuration is found)
    """
    load_dotenv()

    if os.path.exists(options_path):
        with open(options_path) as f:
            options = json.load(f)
        logger.info(f"Loaded DAB settings from {options_path}")
        return DabSettings.from_dict(options.get("dab", options))

    if config_path is None:
        config_path = os.environ.get(
            "VENTFLOW_CONFIG",
            os.path.join(os.path.dirname(__file__), "..", "..", "config.yaml")
        )
    if os.path.exists(config_path):
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
        options = config.get("options", {})
        logger.info(f"Loaded DAB settings from {config_path}")
        return DabSettings.from_dict(options.get("dab", options))

    logger.warning("No configuration found, using default DAB settings")
    return DabSettings()
