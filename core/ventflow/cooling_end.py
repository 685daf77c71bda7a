"""
Cooling-End Detection

Duct temperature lags the compressor and noisy sensors chatter around the
duct/room threshold, so the end of a cooling call is detected from thermal
inertia: the duct warming away from its minimum, the hottest room's delta
collapsing, a sudden duct jump, or a sustained upward slope. Two consecutive
firing polls are required before the cycle is declared over.

All temperatures in this module are °F.
"""

import logging
from typing import Callable, Optional

from .dab_math import now_ms, upper_median
from .models import CoolingCycleState
from .state_store import DIAGNOSTICS_KEY, StateStore

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.25
STABILIZATION_POLLS = 2
MIN_VALID_CYCLE_SECONDS = 180
COOLING_BASE_RISE_F = 3.0
COOLING_MIN_RISE_FROM_MIN_F = 2.0
COOLING_FAST_RISE_F = 5.0
COOLING_DELTA_COLLAPSE_PCT = 0.55
COOLING_DELTA_ABSOLUTE_MIN_F = 0.8
COOLING_SLOPE_F_PER_POLL = 0.5
ROLLING_WINDOW = 5
END_CONFIRMATION_POLLS = 2


def ema(previous: Optional[float], value: float, alpha: float = EMA_ALPHA) -> float:
    """Exponential moving average seeded to the first observation."""
    if previous is None:
        return value
    return alpha * value + (1.0 - alpha) * previous


def _push(window: list[float], value: float, size: int = ROLLING_WINDOW) -> list[float]:
    window = window + [value]
    return window[-size:]


class CoolingEndDetector:
    """Debounced state machine over Stabilizing -> Tracking -> Confirming -> Ended."""

    IDLE = "idle"
    STABILIZING = "stabilizing"
    TRACKING = "tracking"
    CONFIRMING = "confirming"
    ENDED = "ended"

    def __init__(self, state_store: StateStore, clock: Callable[[], int] = now_ms):
        self.state_store = state_store
        self.clock = clock

    def is_tracking(self) -> bool:
        return self.state_store.get_cooling_state() is not None

    @property
    def phase(self) -> str:
        state = self.state_store.get_cooling_state()
        if state is None:
            return self.IDLE
        if state.stabilization_polls > 0:
            return self.STABILIZING
        if state.confirmation_count > 0:
            return self.CONFIRMING
        return self.TRACKING

    def start(self, now: Optional[int] = None) -> CoolingCycleState:
        """Begin tracking a freshly confirmed cooling call."""
        now = self.clock() if now is None else now
        state = CoolingCycleState(cycle_start_time=now, stabilization_polls=STABILIZATION_POLLS)
        self.state_store.set_cooling_state(state)
        logger.info("Cooling cycle tracking started")
        return state

    def reset(self) -> None:
        """Discard tracking state (mode changed externally)."""
        if self.is_tracking():
            logger.debug("Cooling cycle tracking reset")
        self.state_store.set_cooling_state(None)

    def poll(
        self,
        duct_temps_f: list[float],
        room_deltas_f: list[float],
        now: Optional[int] = None
    ) -> bool:
        """Feed one polling sample; True once the cooling call has ended.

        Args:
            duct_temps_f: Duct temperature of every vent reporting one
            room_deltas_f: (room temperature - global setpoint) per vent
            now: Poll time (epoch ms)
        """
        now = self.clock() if now is None else now
        state = self.state_store.get_cooling_state()
        if state is None:
            state = self.start(now)

        duct = upper_median(duct_temps_f)
        if duct is None:
            logger.debug("Cooling end check skipped: no duct temperatures")
            return False
        delta = max(room_deltas_f) if room_deltas_f else None
        previous_duct = state.last_duct_temps[-1] if state.last_duct_temps else None

        state.poll_count += 1
        state.duct_min_f = duct if state.duct_min_f is None else min(state.duct_min_f, duct)
        state.duct_base_f = ema(state.duct_base_f, duct)
        state.last_duct_temps = _push(state.last_duct_temps, duct)
        if delta is not None:
            state.delta_base_f = ema(state.delta_base_f, delta)
            if state.initial_delta_f is None:
                state.initial_delta_f = delta
            state.last_room_deltas = _push(state.last_room_deltas, delta)

        if state.stabilization_polls > 0:
            state.stabilization_polls -= 1
            self.state_store.set_cooling_state(state)
            return False

        elapsed_seconds = (now - state.cycle_start_time) / 1000.0
        if elapsed_seconds < MIN_VALID_CYCLE_SECONDS:
            self.state_store.set_cooling_state(state)
            return False

        fired = self._evaluate_paths(state, duct, delta, previous_duct)
        if fired is None:
            state.confirmation_count = 0
            self.state_store.set_cooling_state(state)
            return False

        reason, magnitude = fired
        state.confirmation_count += 1
        logger.debug(
            f"Cooling end signal '{reason}' ({magnitude:.2f}), "
            f"confirmation {state.confirmation_count}/{END_CONFIRMATION_POLLS}"
        )
        if state.confirmation_count < END_CONFIRMATION_POLLS:
            self.state_store.set_cooling_state(state)
            return False

        state.end_reason = reason
        if reason == "delta_collapse":
            state.collapse_percent = magnitude
        else:
            state.rise_amount_f = magnitude
        self.state_store.update_map_value(DIAGNOSTICS_KEY, "cooling_last_end", {
            "reason": reason,
            "magnitude": round(magnitude, 3),
            "poll_count": state.poll_count,
            "elapsed_seconds": elapsed_seconds,
            "timestamp": now,
        })
        logger.info(f"Cooling cycle ended ({reason}, {magnitude:.2f}) after {state.poll_count} polls")
        self.state_store.set_cooling_state(None)
        return True

    @staticmethod
    def _evaluate_paths(
        state: CoolingCycleState,
        duct: float,
        delta: Optional[float],
        previous_duct: Optional[float]
    ) -> Optional[tuple[str, float]]:
        """First firing end-detection path as (reason, magnitude), else None."""
        rise = state.duct_base_f - state.duct_min_f
        if rise >= COOLING_BASE_RISE_F or rise >= COOLING_MIN_RISE_FROM_MIN_F:
            return "base_rise", rise

        first_delta = state.initial_delta_f
        if delta is not None and len(state.last_room_deltas) >= 3 and first_delta and first_delta > 0:
            collapse = (first_delta - delta) / first_delta
            if collapse >= COOLING_DELTA_COLLAPSE_PCT and delta <= COOLING_DELTA_ABSOLUTE_MIN_F:
                return "delta_collapse", collapse

        if previous_duct is not None and duct - previous_duct >= COOLING_FAST_RISE_F:
            return "fast_rise", duct - previous_duct

        if len(state.last_duct_temps) >= ROLLING_WINDOW:
            slope = (duct - state.last_duct_temps[0]) / ROLLING_WINDOW
            if slope > COOLING_SLOPE_F_PER_POLL:
                return "trend_slope", duct - state.last_duct_temps[0]

        return None

    def debug_snapshot(self) -> dict:
        """Current tracking fields plus the last detected end, for diagnostics."""
        state = self.state_store.get_cooling_state()
        diagnostics = self.state_store.get(DIAGNOSTICS_KEY, {}) or {}
        return {
            "phase": self.phase,
            "state": state.to_dict() if state else None,
            "last_end": diagnostics.get("cooling_last_end"),
        }
