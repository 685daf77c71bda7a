"""Shared fixtures: in-memory device layer, manual scheduler and a fake clock."""

from dataclasses import replace

import pytest

from core.ventflow.cooling_end import CoolingEndDetector
from core.ventflow.exceptions import SensorError
from core.ventflow.history import HistoryTracker
from core.ventflow.models import VentInfo, VentReadings
from core.ventflow.orchestrator import CycleOrchestrator
from core.ventflow.rate_store import ThermalRateStore
from core.ventflow.settings import DabSettings
from core.ventflow.state_store import StateStore

# 2024-01-15 10:00:00 UTC
T0 = 1705312800000
MINUTE = 60 * 1000


class Clock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> int:
        self.now += int(minutes * MINUTE + seconds * 1000)
        return self.now


class FakeDeviceLayer:
    """DeviceLayer keeping vents, readings and rates in memory."""

    def __init__(self, vents: list[VentInfo]):
        self._vents = list(vents)
        self.readings = {v.vent_id: VentReadings(v.vent_id) for v in vents}
        self.rates: dict[tuple[str, str], float] = {}
        self.writes: list[tuple[str, int]] = []
        self.state = None
        self.setpoints: dict = {}
        self.failing_reads: set[str] = set()

    def vents(self) -> list[VentInfo]:
        return list(self._vents)

    def set_reading(self, vent_id: str, **kwargs) -> None:
        self.readings[vent_id] = replace(self.readings[vent_id], **kwargs)

    def set_all(self, **kwargs) -> None:
        for vent_id in self.readings:
            self.set_reading(vent_id, **kwargs)

    def read_vent(self, vent_id: str) -> VentReadings:
        if vent_id in self.failing_reads:
            raise SensorError(f"{vent_id} unavailable")
        return self.readings[vent_id]

    def get_rate(self, vent_id: str, mode: str) -> float:
        return self.rates.get((vent_id, mode), 0.0)

    def set_rate(self, vent_id: str, mode: str, rate: float) -> None:
        self.rates[(vent_id, mode)] = rate

    def set_percent_open(self, vent_id: str, percent: int) -> None:
        self.writes.append((vent_id, percent))
        self.set_reading(vent_id, percent_open=percent)

    def operating_state(self):
        return self.state

    def thermostat_setpoints(self) -> dict:
        return dict(self.setpoints)


class ManualScheduler:
    """Scheduler that only records jobs; tests fire them explicitly."""

    def __init__(self):
        self.once: dict[str, tuple] = {}
        self.every: dict[str, tuple] = {}

    def run_in(self, name, delay_ms, fn, *args):
        self.once[name] = (delay_ms, fn, args)

    def run_every(self, name, interval_s, fn):
        self.every[name] = (interval_s, fn)

    def cancel(self, name):
        self.once.pop(name, None)
        self.every.pop(name, None)

    def cancel_all(self, names):
        for name in names:
            self.cancel(name)

    def fire(self, name):
        _, fn, args = self.once.pop(name)
        return fn(*args)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings():
    return DabSettings()


@pytest.fixture
def state_store():
    return StateStore()


@pytest.fixture
def devices():
    return FakeDeviceLayer([
        VentInfo("v1", "living", "Living Room"),
        VentInfo("v2", "bedroom", "Bedroom"),
    ])


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def rate_store(state_store, settings, clock):
    return ThermalRateStore(state_store, settings, clock)


@pytest.fixture
def detector(state_store, clock):
    return CoolingEndDetector(state_store, clock)


@pytest.fixture
def history(state_store, settings, clock):
    return HistoryTracker(state_store, settings.timezone, clock)


@pytest.fixture
def orchestrator(devices, state_store, scheduler, rate_store, detector, settings, clock, history):
    return CycleOrchestrator(
        devices, state_store, scheduler, rate_store, detector, settings, clock=clock, history=history
    )
