"""
Cycle Orchestrator

Drives one DAB cycle per plant run:

    Idle -> Initializing -> Running -> Finalizing -> Idle

update_hvac_state() is the poll entry point. When the plant turns on, a
cycle record is created, starting temperatures are captured and the vent
plan is applied after a short settle delay. While running, rooms that hit
setpoint early trigger a rebalance. When the plant stops, a delayed finalize
measures how fast each room moved and feeds the learned rates back into the
rate store.

Every callback re-reads its inputs from the state store; nothing is carried
in memory between scheduled calls except the pending-finalize flag used for
reporting the phase.
"""

import logging
from dataclasses import asdict
from typing import Callable, Optional, Union

from .cooling_end import CoolingEndDetector
from .dab_math import (
    MS_PER_MINUTE,
    calculate_room_change_rate,
    celsius_to_fahrenheit,
    clean_rate,
    has_room_reached_setpoint,
    hour_of_day,
    now_ms,
    rolling_average,
)
from .devices import DeviceLayer, is_fan_only, resolve_global_setpoint
from .exceptions import (
    ConfigurationError,
    HAConnectionError,
    MissingInputError,
    ReconstructionError,
    SensorError,
)
from .history import HistoryTracker
from .mode_detector import detect_hvac_mode
from .models import COOLING, HEATING, IDLE, CycleRecord, FinalizeParams, VentPlan, VentReadings
from .rate_store import ThermalRateStore
from .scheduler import Scheduler
from .settings import DabSettings
from .state_store import (
    CYCLE_KEY,
    DIAGNOSTICS_KEY,
    FINALIZED_KEYS_KEY,
    MANUAL_OVERRIDES_KEY,
    STARTING_TEMPS_KEY,
    StateStore,
)
from .vent_solver import MAX_PERCENTAGE_OPEN, solve

logger = logging.getLogger(__name__)

INITIALIZE_JOB = "initialize_room_states"
FINALIZE_JOB = "finalize_room_states"
EVALUATE_REBALANCE_JOB = "evaluate_rebalancing"
REBALANCE_JOB = "rebalance"
CYCLE_JOBS = (INITIALIZE_JOB, FINALIZE_JOB, EVALUATE_REBALANCE_JOB, REBALANCE_JOB)

MAX_FINALIZED_KEYS = 50
MAX_CHANGES_IN_SUMMARY = 3


class CycleOrchestrator:
    """Cycle state machine wiring the detector, solver and rate store together."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    FINALIZING = "finalizing"

    def __init__(
        self,
        device_layer: DeviceLayer,
        state_store: StateStore,
        scheduler: Scheduler,
        rate_store: ThermalRateStore,
        cooling_detector: CoolingEndDetector,
        settings: DabSettings,
        clock: Callable[[], int] = now_ms,
        history: Optional[HistoryTracker] = None
    ):
        self.devices = device_layer
        self.state_store = state_store
        self.scheduler = scheduler
        self.rate_store = rate_store
        self.cooling_detector = cooling_detector
        self.settings = settings
        self.clock = clock
        self.history = history or HistoryTracker(state_store, settings.timezone, clock)
        self._finalize_pending = False

    # ------------------------------------------------------------------
    # Helpers

    @property
    def phase(self) -> str:
        cycle = self.state_store.get_cycle()
        if cycle is not None:
            return self.RUNNING if cycle.started_cycle else self.INITIALIZING
        if self._finalize_pending:
            return self.FINALIZING
        return self.IDLE

    def vents_by_room(self) -> dict[str, list[str]]:
        rooms: dict[str, list[str]] = {}
        for vent in self.devices.vents():
            rooms.setdefault(vent.room_id, []).append(vent.vent_id)
        return rooms

    def read_all(self) -> dict[str, VentReadings]:
        return {vent.vent_id: self.devices.read_vent(vent.vent_id) for vent in self.devices.vents()}

    def _diagnostic(self, field: str, default=None):
        return (self.state_store.get(DIAGNOSTICS_KEY, {}) or {}).get(field, default)

    def _bump(self, counter: str) -> None:
        def _apply(current):
            current = current or {}
            current[counter] = int(current.get(counter, 0)) + 1
            return current

        self.state_store.update(DIAGNOSTICS_KEY, _apply, default={})

    def _global_setpoint(self, mode: str, readings: dict[str, VentReadings]) -> Optional[float]:
        return resolve_global_setpoint(self.devices, list(readings.values()), mode, self.settings)

    def _require_setpoint(self, mode: str, readings: dict[str, VentReadings]) -> float:
        setpoint = self._global_setpoint(mode, readings)
        if setpoint is None:
            raise MissingInputError(f"No {mode} setpoint available")
        return setpoint

    # ------------------------------------------------------------------
    # Mode tracking

    def update_hvac_state(self) -> str:
        """Poll entry point: detect the plant mode and start or end cycles.

        Returns:
            Effective mode after cooling-end and fan-only handling
        """
        now = self.clock()
        cycle = self.state_store.get_cycle()
        previous = cycle.mode if cycle else IDLE

        readings = self.read_all()
        operating_state = self.devices.operating_state()
        coarse = detect_hvac_mode(
            readings.values(), operating_state, self.settings.duct_temp_diff_threshold
        )

        mode, details = self._refine_mode(coarse, readings, now)

        if self.settings.fan_only_open_all_vents and is_fan_only(operating_state):
            mode, details = IDLE, "Fan-only"
            self._open_all_for_fan()
        elif self._diagnostic("fan_only_active"):
            self.state_store.update_map_value(DIAGNOSTICS_KEY, "fan_only_active", False)

        if mode != previous:
            self.history.add_transition(previous, mode, details)
            self._bump("cycle_transitions")

        if mode in (COOLING, HEATING):
            if cycle is None or cycle.mode != mode:
                self._start_cycle(mode, now)
        elif cycle is not None:
            self._end_cycle(cycle, now)
        return mode

    def _refine_mode(self, coarse: str, readings: dict[str, VentReadings], now: int) -> tuple[str, str]:
        """Let the cooling-end detector overrule a cold duct once the call is over."""
        if coarse != COOLING:
            if self.cooling_detector.is_tracking():
                self.cooling_detector.reset()
            if self._diagnostic("cooling_end_latched"):
                self.state_store.update_map_value(DIAGNOSTICS_KEY, "cooling_end_latched", False)
            return coarse, ""

        if self._diagnostic("cooling_end_latched"):
            return IDLE, "Cooling end latched"

        setpoint = self._global_setpoint(COOLING, readings)
        duct_f = [celsius_to_fahrenheit(r.duct_temp_c) for r in readings.values() if r.duct_temp_c is not None]
        deltas_f = []
        if setpoint is not None:
            setpoint_f = celsius_to_fahrenheit(setpoint)
            deltas_f = [
                celsius_to_fahrenheit(r.room_temp_c) - setpoint_f
                for r in readings.values() if r.room_temp_c is not None
            ]

        if self.cooling_detector.poll(duct_f, deltas_f, now):
            self.state_store.update_map_value(DIAGNOSTICS_KEY, "cooling_end_latched", True)
            return IDLE, "Dynamic end detected"
        return COOLING, ""

    def _open_all_for_fan(self) -> None:
        if self._diagnostic("fan_only_active"):
            return
        self.state_store.update_map_value(DIAGNOSTICS_KEY, "fan_only_active", True)
        logger.info("Fan-only mode active - opening all vents")
        for vent in self.devices.vents():
            self._write_vent(vent.vent_id, MAX_PERCENTAGE_OPEN)
        self.history.add_activity("Fan-only mode: opened all vents")

    def _start_cycle(self, mode: str, now: int) -> None:
        self.scheduler.cancel_all(CYCLE_JOBS)
        self._finalize_pending = False
        record = CycleRecord(mode=mode, started_running=now, cycle_id=f"{mode}-{now}")
        self.state_store.set(CYCLE_KEY, record.to_dict())
        logger.info(f"Starting {mode} cycle {record.cycle_id}")

        self.record_starting_temperatures()
        self.scheduler.run_in(
            INITIALIZE_JOB, self.settings.post_state_change_delay_ms, self.initialize_room_states, mode
        )
        self.scheduler.run_every(
            EVALUATE_REBALANCE_JOB, self.settings.evaluate_rebalance_interval_minutes * 60, self.evaluate_rebalancing
        )
        self.scheduler.run_every(
            REBALANCE_JOB, self.settings.rebalance_interval_minutes * 60, self.rebalance
        )

    def _end_cycle(self, cycle: CycleRecord, now: int) -> None:
        self.scheduler.cancel_all(CYCLE_JOBS)
        cycle = self.state_store.update_cycle_field("finished_running", now) or cycle
        if self.settings.enabled:
            params = FinalizeParams(
                vents_by_room=self.vents_by_room(),
                started_cycle=cycle.started_cycle,
                started_running=cycle.started_running,
                finished_running=now,
                hvac_mode=cycle.mode,
                cycle_id=cycle.cycle_id,
            )
            self.scheduler.run_in(
                FINALIZE_JOB, self.settings.temp_readings_delay_ms, self.finalize_room_states, params
            )
            self._finalize_pending = True
        self.state_store.clear_cycle()
        logger.info(f"Ended {cycle.mode} cycle {cycle.cycle_id}")

    # ------------------------------------------------------------------
    # Initializing

    def record_starting_temperatures(self) -> dict[str, float]:
        """Snapshot every room's temperature as the cycle baseline."""
        temps = {}
        for vent_id, reading in self.read_all().items():
            if reading.room_temp_c is not None:
                temps[vent_id] = reading.room_temp_c
        self.state_store.set(STARTING_TEMPS_KEY, temps)
        return temps

    def initialize_room_states(self, mode: str) -> Optional[VentPlan]:
        """Refresh learned rates, solve and apply a vent plan for the cycle.

        Missing inputs skip this run; the next poll or rebalance retries.
        """
        if not self.settings.enabled:
            return None
        logger.info(f"Initializing room states - hvac mode: {mode}")
        try:
            return self._initialize(mode)
        except MissingInputError as e:
            logger.warning(f"{e}, skipping DAB initialization")
            return None

    def _initialize(self, mode: str) -> Optional[VentPlan]:
        vents_by_room = self.vents_by_room()
        if not vents_by_room:
            raise MissingInputError("No vents configured")
        if self.settings.fan_only_open_all_vents and is_fan_only(self.devices.operating_state()):
            logger.info("Fan-only mode active - skipping DAB initialization")
            return None

        now = self.clock()
        hour = hour_of_day(now, self.settings.timezone)
        for room_id, vent_ids in vents_by_room.items():
            average = self.rate_store.average(room_id, mode, hour, now)
            if average <= 0:
                continue
            for vent_id in vent_ids:
                self.devices.set_rate(vent_id, mode, average)

        readings = self.read_all()
        setpoint = self._require_setpoint(mode, readings)

        if self.state_store.get_cycle() is None:
            logger.info("Cycle ended before initialization, skipping")
            return None
        self.state_store.update_cycle_field("started_cycle", now)

        plan = self._solve(mode, setpoint, vents_by_room, readings)
        if plan is None:
            return None
        self.apply_plan(plan, readings)
        return plan

    def _solve(
        self,
        mode: str,
        setpoint: Optional[float],
        vents_by_room: dict[str, list[str]],
        readings: dict[str, VentReadings]
    ) -> Optional[VentPlan]:
        vents = self.devices.vents()
        rates = {v.vent_id: self.devices.get_rate(v.vent_id, mode) for v in vents}
        weights = {v.vent_id: v.weight for v in vents}
        return solve(
            vents_by_room,
            rates,
            readings,
            mode,
            setpoint,
            self.settings,
            weights=weights,
            overrides=self.state_store.get_manual_overrides(),
        )

    def _write_vent(self, vent_id: str, percent: int) -> bool:
        try:
            self.devices.set_percent_open(vent_id, percent)
            return True
        except (HAConnectionError, SensorError) as e:
            logger.warning(f"Failed to set vent {vent_id} to {percent}%: {e}")
            return False

    def apply_plan(self, plan: VentPlan, readings: dict[str, VentReadings]) -> int:
        """Write a fully computed plan to the vents; returns the number changed."""
        names = {v.vent_id: v.room_name for v in self.devices.vents()}
        changes = []
        for vent_id, target in plan.targets.items():
            reading = readings.get(vent_id)
            current = reading.percent_open if reading else None
            if current != target:
                changes.append(f"{names.get(vent_id, vent_id)}: {current}%->{target}%")
            self._write_vent(vent_id, target)

        if changes:
            self.history.add_activity(
                f"Applied {len(changes)} vent change(s): {', '.join(changes[:MAX_CHANGES_IN_SUMMARY])}"
            )
        self.state_store.update_map_value(DIAGNOSTICS_KEY, "last_plan", plan.to_dict())
        return len(changes)

    # ------------------------------------------------------------------
    # Running

    def evaluate_rebalancing(self) -> bool:
        """Rebalance once any active room has reached setpoint."""
        cycle = self.state_store.get_cycle()
        if cycle is None:
            return False

        now = self.clock()
        last_rebalance = self._diagnostic("last_rebalance_time", 0) or 0
        if now - last_rebalance < self.settings.min_runtime_for_rate_calc * MS_PER_MINUTE:
            return False

        readings = self.read_all()
        try:
            setpoint = self._require_setpoint(cycle.mode, readings)
        except MissingInputError as e:
            logger.warning(f"{e}, skipping rebalance evaluation")
            return False

        names = {v.vent_id: v.room_name for v in self.devices.vents()}
        for vent_id, reading in readings.items():
            if not reading.room_active or reading.room_temp_c is None:
                continue
            if has_room_reached_setpoint(cycle.mode, setpoint, reading.room_temp_c, self.settings.rebalancing_tolerance):
                logger.info(f"Triggering rebalance because '{names.get(vent_id, vent_id)}' reached setpoint")
                return self.rebalance()
        return False

    def rebalance(self) -> bool:
        """Learn from the partial cycle, then solve again with fresh temperatures."""
        cycle = self.state_store.get_cycle()
        if cycle is None or not cycle.started_running:
            logger.info("Skipping rebalance: HVAC cycle not properly started")
            return False

        now = self.clock()
        running_minutes = (now - cycle.started_running) / MS_PER_MINUTE
        if running_minutes < self.settings.min_runtime_for_rate_calc:
            logger.info(f"Skipping rebalance: HVAC has only been running for {running_minutes:.1f} minutes")
            return False

        self.state_store.update_map_value(DIAGNOSTICS_KEY, "last_rebalance_time", now)
        logger.info("Rebalancing vents")
        self.history.add_activity("Rebalancing vents")
        self.finalize_room_states(FinalizeParams(
            vents_by_room=self.vents_by_room(),
            started_cycle=cycle.started_cycle,
            started_running=cycle.started_running,
            finished_running=now,
            hvac_mode=cycle.mode,
            cycle_id=cycle.cycle_id,
        ))
        self.record_starting_temperatures()
        self.initialize_room_states(cycle.mode)
        return True

    # ------------------------------------------------------------------
    # Finalizing

    def _reconstruct(self, params: FinalizeParams) -> FinalizeParams:
        """Fill missing finalize inputs from the live cycle record."""
        cycle = self.state_store.get_cycle()
        if cycle is not None:
            if not params.started_cycle:
                params.started_cycle = cycle.started_cycle
            if not params.started_running:
                params.started_running = cycle.started_running
            if not params.hvac_mode:
                params.hvac_mode = cycle.mode
            if not params.cycle_id:
                params.cycle_id = cycle.cycle_id
            if not params.finished_running:
                params.finished_running = cycle.finished_running or self.clock()
        if not params.vents_by_room:
            params.vents_by_room = self.vents_by_room()

        missing = params.missing_fields()
        if missing:
            raise ReconstructionError(f"Cannot finalize cycle, missing {', '.join(missing)}")
        return params

    def abort_cycle(self, reason: str) -> None:
        """Drop the current cycle without learning from it."""
        logger.error(f"Aborting DAB cycle: {reason}")
        self.scheduler.cancel_all(CYCLE_JOBS)
        self.state_store.clear_cycle()
        self._finalize_pending = False
        self._bump("cycle_aborts")
        self.history.add_activity(f"Cycle aborted: {reason}")

    def _mark_finalized(self, key: str) -> bool:
        """Record a finalize key; False if it was already processed."""
        seen = {}

        def _apply(keys):
            keys = list(keys or [])
            if key in keys:
                seen["duplicate"] = True
                return keys
            keys.append(key)
            return keys[-MAX_FINALIZED_KEYS:]

        self.state_store.update(FINALIZED_KEYS_KEY, _apply, default=[])
        return not seen.get("duplicate")

    def finalize_room_states(self, params: Union[FinalizeParams, dict, None]) -> dict[str, float]:
        """Measure each room's rate over the cycle and store what was learned.

        Returns:
            Learned rate per room id (empty when nothing was learned)
        """
        self._finalize_pending = False
        if isinstance(params, dict):
            params = FinalizeParams(**params)
        params = params or FinalizeParams()

        if params.missing_fields():
            logger.warning(f"Finalizing room states: missing required parameters ({asdict(params)})")
            try:
                params = self._reconstruct(params)
            except ReconstructionError as e:
                self.abort_cycle(str(e))
                return {}

        if not params.started_running:
            logger.info("Skipping room state finalization - cycle has no recorded start")
            return {}

        if not self._mark_finalized(params.dedup_key):
            logger.info(f"Cycle {params.dedup_key} already finalized, skipping")
            return {}

        total_minutes = (params.finished_running - params.started_cycle) / MS_PER_MINUTE
        if total_minutes < self.settings.min_minutes_to_setpoint:
            logger.info(
                f"Could not calculate room states as it ran for {total_minutes:.2f} minutes "
                f"and needs to run for at least {self.settings.min_minutes_to_setpoint} minutes"
            )
            return {}

        mode = params.hvac_mode
        hour = hour_of_day(params.started_cycle, self.settings.timezone)
        starting_temps = self.state_store.get(STARTING_TEMPS_KEY, {}) or {}
        names = {v.vent_id: v.room_name for v in self.devices.vents()}
        room_rates: dict[str, float] = {}
        learned: dict[str, float] = {}

        for room_id, vent_ids in params.vents_by_room.items():
            try:
                rate = self._finalize_room(
                    room_id, vent_ids, mode, hour, total_minutes, starting_temps, names, room_rates
                )
                if rate is not None:
                    learned[room_id] = rate
            except Exception as e:
                logger.error(f"Error processing room {room_id} in finalize_room_states: {e}", exc_info=True)
                if self.settings.fail_fast_finalization:
                    raise

        self._bump("hourly_commits")
        logger.info(f"Finalized {mode} cycle {params.dedup_key}: {len(learned)} room rate(s) learned")
        return learned

    def _finalize_room(
        self,
        room_id: str,
        vent_ids: list[str],
        mode: str,
        hour: int,
        total_minutes: float,
        starting_temps: dict[str, float],
        names: dict[str, str],
        room_rates: dict[str, float]
    ) -> Optional[float]:
        readings = {vent_id: self.devices.read_vent(vent_id) for vent_id in vent_ids}
        room_percent_open = min(100, sum(int(r.percent_open or 0) for r in readings.values()))
        learned = None

        for vent_id in vent_ids:
            room_name = names.get(vent_id, room_id)
            if room_name in room_rates:
                self.devices.set_rate(vent_id, mode, room_rates[room_name])
                continue

            reading = readings[vent_id]
            start_temp = starting_temps.get(vent_id)
            if reading.room_temp_c is None or start_temp is None:
                logger.debug(f"Vent {vent_id}: missing start or current temperature, not learning")
                continue

            current_rate = self.devices.get_rate(vent_id, mode)
            new_rate = calculate_room_change_rate(
                start_temp,
                reading.room_temp_c,
                total_minutes,
                room_percent_open,
                current_rate,
                min_rate=self.settings.min_temp_change_rate,
                max_rate=self.settings.max_temp_change_rate,
                min_runtime=self.settings.min_runtime_for_rate_calc,
                min_detectable_change=self.settings.min_detectable_temp_change,
            )
            measured = new_rate > 0 and new_rate != current_rate

            if new_rate <= 0:
                room_setpoint = reading.setpoint_c
                if room_setpoint is None:
                    room_setpoint = self._global_setpoint(mode, readings)
                at_setpoint = room_setpoint is not None and has_room_reached_setpoint(
                    mode, room_setpoint, reading.room_temp_c
                )
                if at_setpoint and current_rate > 0:
                    new_rate = current_rate
                elif room_percent_open > 0:
                    new_rate = self.settings.min_temp_change_rate
                else:
                    continue

            rate = clean_rate(rolling_average(
                current_rate, new_rate, room_percent_open / 100, self.settings.rolling_average_entries
            ))
            self.devices.set_rate(vent_id, mode, rate)
            logger.info(f"Updating {room_name}'s {mode} rate to {rate:.4f}")

            if measured:
                self._record_deviation(room_id, mode, hour, new_rate)
            self.rate_store.append(room_id, mode, hour, rate)
            room_rates[room_name] = rate
            learned = rate
        return learned

    def _record_deviation(self, room_id: str, mode: str, hour: int, observed: float) -> None:
        """Mark the bucket when the realized rate missed the prediction badly."""
        predicted = self.rate_store.average(room_id, mode, hour)
        if predicted <= 0:
            return
        ratio = (observed - predicted) / predicted
        if abs(ratio) * 100 >= self.settings.adaptive_threshold_percent:
            logger.info(
                f"Room {room_id}: observed {mode} rate {observed:.4f} deviates {ratio:+.0%} "
                f"from predicted {predicted:.4f}"
            )
            self.rate_store.append_adaptive_mark(room_id, mode, hour, ratio)

    # ------------------------------------------------------------------
    # Overrides and diagnostics

    def set_manual_override(self, vent_id: str, percent: int) -> dict[str, int]:
        if not 0 <= int(percent) <= 100:
            raise ConfigurationError(f"Override for {vent_id} must be 0-100, got {percent}")
        if vent_id not in {v.vent_id for v in self.devices.vents()}:
            raise ConfigurationError(f"Unknown vent: {vent_id}")
        overrides = self.state_store.update_map_value(MANUAL_OVERRIDES_KEY, vent_id, int(percent))
        self.history.add_activity(f"Manual override: {vent_id} -> {int(percent)}%")
        return overrides

    def clear_manual_override(self, vent_id: Optional[str] = None) -> dict[str, int]:
        """Clear one vent's override, or all of them when vent_id is None."""
        def _apply(current):
            current = dict(current or {})
            if vent_id is None:
                return {}
            current.pop(vent_id, None)
            return current

        return self.state_store.update(MANUAL_OVERRIDES_KEY, _apply, default={})

    def run_diagnostic(self, mode: Optional[str] = None) -> dict:
        """Run the full balancing pipeline without touching any vent."""
        readings = self.read_all()
        detected = detect_hvac_mode(
            readings.values(), self.devices.operating_state(), self.settings.duct_temp_diff_threshold
        )
        if mode is None:
            cycle = self.state_store.get_cycle()
            mode = detected if detected != IDLE else (cycle.mode if cycle else HEATING)

        setpoint = self._global_setpoint(mode, readings)
        hour = hour_of_day(self.clock(), self.settings.timezone)
        vents_by_room = self.vents_by_room()
        names = {v.vent_id: v.room_name for v in self.devices.vents()}

        rooms = {}
        for room_id, vent_ids in vents_by_room.items():
            temps = [readings[v].room_temp_c for v in vent_ids if readings[v].room_temp_c is not None]
            rooms[room_id] = {
                "name": names.get(vent_ids[0], room_id),
                "temp": temps[0] if temps else None,
                "rate": self.rate_store.average(room_id, mode, hour),
            }

        plan = self._solve(mode, setpoint, vents_by_room, readings)
        result = {
            "inputs": {
                "detected_mode": detected,
                "hvac_mode": mode,
                "global_setpoint": setpoint,
                "rooms": rooms,
            },
            "calculations": {
                "longest_minutes": plan.longest_minutes if plan else None,
                "all_settled": plan.all_settled if plan else None,
                "initial_vent_positions": plan.raw_percentages if plan else {},
            },
            "adjustments": {
                "minimum_airflow": asdict(plan.airflow) if plan and plan.airflow else None,
            },
            "final_output": {
                "final_vent_positions": plan.targets if plan else {},
            },
        }
        self.state_store.update_map_value(DIAGNOSTICS_KEY, "last_diagnostic", result)
        return result

    def snapshot(self) -> dict:
        """Current cycle, phase and cooling debug state for reporting."""
        cycle = self.state_store.get_cycle()
        return {
            "phase": self.phase,
            "cycle": cycle.to_dict() if cycle else None,
            "cooling": self.cooling_detector.debug_snapshot(),
            "manual_overrides": self.state_store.get_manual_overrides(),
            "starting_temperatures": self.state_store.get(STARTING_TEMPS_KEY, {}) or {},
            "diagnostics": {
                k: v for k, v in (self.state_store.get(DIAGNOSTICS_KEY, {}) or {}).items()
                if k not in ("last_diagnostic",)
            },
        }
