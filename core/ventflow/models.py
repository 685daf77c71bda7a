"""
Ventflow Data Models

Typed records for device readings, cycle state and learned-rate history.
Persisted records round-trip through plain dicts (to_dict/from_dict) so the
state store can keep them as JSON.
"""

from dataclasses import asdict, dataclass, field
from typing import Literal, Optional

COOLING = "cooling"
HEATING = "heating"
IDLE = "idle"

HvacMode = Literal["cooling", "heating"]

RATE_HISTORY_VERSION = 2


@dataclass(frozen=True)
class VentInfo:
    """Static identity of a managed vent."""

    vent_id: str
    room_id: str
    room_name: str
    weight: float = 1.0


@dataclass(frozen=True)
class VentReadings:
    """Current sensor snapshot for one vent (°C)."""

    vent_id: str
    duct_temp_c: Optional[float] = None
    room_temp_c: Optional[float] = None
    percent_open: int = 0
    room_active: bool = True
    setpoint_c: Optional[float] = None


@dataclass(frozen=True)
class VentAttributes:
    """Solver input for one vent: weighted rate and current temperature."""

    vent_id: str
    room_id: str
    temp: float
    rate: float
    is_active: bool


@dataclass
class CycleRecord:
    """One continuous plant run. Timestamps are epoch milliseconds."""

    mode: str
    started_running: Optional[int] = None
    started_cycle: Optional[int] = None
    finished_running: Optional[int] = None
    cycle_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> Optional["CycleRecord"]:
        if not data or not data.get("mode"):
            return None
        return cls(
            mode=data["mode"],
            started_running=data.get("started_running"),
            started_cycle=data.get("started_cycle"),
            finished_running=data.get("finished_running"),
            cycle_id=data.get("cycle_id"),
        )


@dataclass
class FinalizeParams:
    """Snapshot handed to a (possibly delayed) finalize call."""

    vents_by_room: Optional[dict[str, list[str]]] = None
    started_cycle: Optional[int] = None
    started_running: Optional[int] = None
    finished_running: Optional[int] = None
    hvac_mode: Optional[str] = None
    cycle_id: Optional[str] = None

    def missing_fields(self) -> list[str]:
        """Fields required for finalization that are still empty."""
        required = ("vents_by_room", "started_cycle", "finished_running", "hvac_mode")
        return [name for name in required if not getattr(self, name)]

    @property
    def dedup_key(self) -> str:
        return f"{self.cycle_id or self.started_cycle}:{self.finished_running}"


@dataclass(frozen=True)
class HourlyRateEntry:
    """Single learned-rate observation in the append-only log."""

    timestamp: int
    room_id: str
    mode: str
    hour: int
    rate: float

    def to_list(self) -> list:
        return [self.timestamp, self.room_id, self.mode, self.hour, self.rate]

    @classmethod
    def from_list(cls, row) -> "HourlyRateEntry":
        return cls(int(row[0]), str(row[1]), str(row[2]), int(row[3]), float(row[4]))


@dataclass(frozen=True)
class AdaptiveMark:
    """Records how far a room's realized rate missed its predicted rate."""

    timestamp: int
    room_id: str
    mode: str
    hour: int
    deviation_ratio: float

    def to_list(self) -> list:
        return [self.timestamp, self.room_id, self.mode, self.hour, self.deviation_ratio]

    @classmethod
    def from_list(cls, row) -> "AdaptiveMark":
        return cls(int(row[0]), str(row[1]), str(row[2]), int(row[3]), float(row[4]))


@dataclass
class RateHistory:
    """Versioned learned-rate document: log, derived index, EWMA and marks."""

    entries: list[HourlyRateEntry] = field(default_factory=list)
    # room -> mode -> hour (str) -> rates, oldest first
    hourly_rates: dict[str, dict[str, dict[str, list[float]]]] = field(default_factory=dict)
    # room -> mode -> hour (str) -> smoothed rate
    ewma: dict[str, dict[str, dict[str, float]]] = field(default_factory=dict)
    adaptive_marks: list[AdaptiveMark] = field(default_factory=list)
    version: int = RATE_HISTORY_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "entries": [e.to_list() for e in self.entries],
            "hourlyRates": self.hourly_rates,
            "ewma": self.ewma,
            "adaptiveMarks": [m.to_list() for m in self.adaptive_marks],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "RateHistory":
        if not data:
            return cls()
        return cls(
            entries=[HourlyRateEntry.from_list(e) for e in data.get("entries", [])],
            hourly_rates=data.get("hourlyRates", {}),
            ewma=data.get("ewma", {}),
            adaptive_marks=[AdaptiveMark.from_list(m) for m in data.get("adaptiveMarks", [])],
            version=data.get("version", RATE_HISTORY_VERSION),
        )


@dataclass
class CoolingCycleState:
    """Running statistics for detecting the natural end of a cooling call (°F)."""

    cycle_start_time: int
    duct_min_f: Optional[float] = None
    duct_base_f: Optional[float] = None  # EMA of duct temperature
    delta_base_f: Optional[float] = None  # EMA of hottest room delta
    initial_delta_f: Optional[float] = None
    last_duct_temps: list[float] = field(default_factory=list)
    last_room_deltas: list[float] = field(default_factory=list)
    stabilization_polls: int = 2
    confirmation_count: int = 0
    poll_count: int = 0
    end_reason: Optional[str] = None
    rise_amount_f: Optional[float] = None
    collapse_percent: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> Optional["CoolingCycleState"]:
        if not data:
            return None
        return cls(**data)


@dataclass
class AirflowResult:
    """Outcome of minimum combined airflow enforcement."""

    percentages: dict[str, float]
    combined_flow: float
    iterations: int = 0
    cap_reached: bool = False
    no_adjustable_vents: bool = False

    @property
    def satisfied(self) -> bool:
        return not self.cap_reached and not self.no_adjustable_vents


@dataclass
class VentPlan:
    """Target open percentage per vent, ready to be applied atomically."""

    mode: str
    setpoint: Optional[float] = None
    targets: dict[str, int] = field(default_factory=dict)
    raw_percentages: dict[str, float] = field(default_factory=dict)
    longest_minutes: float = 0.0
    all_settled: bool = False
    airflow: Optional[AirflowResult] = None

    def to_dict(self) -> dict:
        return asdict(self)


def build_index(
    entries: list[HourlyRateEntry],
    cap: int
) -> dict[str, dict[str, dict[str, list[float]]]]:
    """Derive the room -> mode -> hour index from the log, oldest first."""
    index: dict[str, dict[str, dict[str, list[float]]]] = {}
    for entry in entries:
        bucket = index.setdefault(entry.room_id, {}).setdefault(entry.mode, {}).setdefault(str(entry.hour), [])
        bucket.append(entry.rate)
        if len(bucket) > cap:
            del bucket[: len(bucket) - cap]
    return index
