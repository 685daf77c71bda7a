"""
Vent Solver

Given the plant mode and a global setpoint, decide how open each vent should
be so every room arrives at roughly the same time, then make sure the
combined airflow stays above the minimum the plant needs.

Everything here is pure: the solver reads nothing from devices and writes
nothing. The orchestrator applies the returned plan in one pass.
"""

import logging
import math
from typing import Optional

from .dab_math import has_room_reached_setpoint, round_to_granularity
from .models import AirflowResult, VentAttributes, VentPlan, VentReadings
from .settings import DabSettings

logger = logging.getLogger(__name__)

MAX_PERCENTAGE_OPEN = 100
ALL_SETTLED = -1.0
# Combined flow this close to the minimum counts as reached
AIRFLOW_TOLERANCE = 0.01


def weighted_attributes(
    vents_by_room: dict[str, list[str]],
    rates: dict[str, float],
    readings: dict[str, VentReadings],
    weights: Optional[dict[str, float]] = None,
    min_rate: float = 0.001
) -> dict[str, VentAttributes]:
    """Split each room's learned rate across its vents by configured weight.

    Vents without a room temperature are left out; they have nothing to
    balance against.
    """
    weights = weights or {}
    attributes: dict[str, VentAttributes] = {}

    for room_id, vent_ids in vents_by_room.items():
        room_total_weight = sum(float(weights.get(v, 1.0)) for v in vent_ids)

        for vent_id in vent_ids:
            reading = readings.get(vent_id)
            if reading is None or reading.room_temp_c is None:
                logger.debug(f"Vent {vent_id}: no room temperature, not balanced this cycle")
                continue

            rate = float(rates.get(vent_id, 0.0) or 0.0)
            weight = float(weights.get(vent_id, 1.0))
            weighted = rate * (weight / room_total_weight) if room_total_weight > 0 else rate

            attributes[vent_id] = VentAttributes(
                vent_id=vent_id,
                room_id=room_id,
                temp=float(reading.room_temp_c),
                rate=weighted if weighted > 0 else min_rate,
                is_active=bool(reading.room_active),
            )
    return attributes


def _is_excluded(attrs: VentAttributes, mode: str, setpoint: float, close_inactive: bool, offset: float) -> bool:
    if close_inactive and not attrs.is_active:
        return True
    return has_room_reached_setpoint(mode, setpoint, attrs.temp, offset)


def longest_minutes_to_target(
    attributes: dict[str, VentAttributes],
    mode: str,
    setpoint: float,
    max_running_time: float = 60.0,
    close_inactive: bool = True,
    offset: float = 0.0
) -> float:
    """Minutes the slowest included room needs to reach setpoint.

    Returns:
        Minutes clamped to [0, max_running_time], or ALL_SETTLED (-1) when
        no vent still needs conditioning
    """
    included = [
        a for a in attributes.values()
        if not _is_excluded(a, mode, setpoint, close_inactive, offset)
    ]
    if not included:
        return ALL_SETTLED

    longest = max(abs(setpoint - a.temp) / a.rate for a in included)
    return min(max(longest, 0.0), float(max_running_time))


def open_percentages(
    attributes: dict[str, VentAttributes],
    mode: str,
    setpoint: float,
    longest_minutes: float,
    close_inactive: bool = True,
    offset: float = 0.0
) -> dict[str, float]:
    """Opening that lets each room finish together with the slowest one."""
    percentages: dict[str, float] = {}
    for vent_id, attrs in attributes.items():
        if _is_excluded(attrs, mode, setpoint, close_inactive, offset):
            percentages[vent_id] = 0.0
            continue

        required_rate = abs(setpoint - attrs.temp) / longest_minutes if longest_minutes > 0 else 0.0
        percent = (required_rate / attrs.rate) * 100 if attrs.rate > 0 else 0.0
        percentages[vent_id] = min(100.0, max(0.0, percent))
    return percentages


def combined_flow(
    percentages: dict[str, float],
    standard_vents: int,
    standard_vent_open: float
) -> float:
    """Average opening across managed and standard vents (percent)."""
    capacity = len(percentages) + standard_vents
    if capacity == 0:
        return 0.0
    return (sum(percentages.values()) + standard_vents * standard_vent_open) / capacity


def ensure_minimum_airflow(
    attributes: dict[str, VentAttributes],
    mode: str,
    setpoint: float,
    percentages: dict[str, float],
    standard_vents: int,
    settings: DabSettings
) -> AirflowResult:
    """Open vents further until the plant sees its minimum combined airflow.

    Vents furthest from setpoint get the largest share of each increment.
    Hitting the iteration cap is not an error; the best effort so far is
    returned with cap_reached set.
    """
    adjusted = dict(percentages)
    standard_vents = int(standard_vents or 0)
    if settings.unmanaged_vent_policy == "assume_open":
        standard_open = float(MAX_PERCENTAGE_OPEN)
    else:
        standard_open = float(settings.standard_vent_default_open)
    minimum = float(settings.min_combined_vent_flow)
    target = minimum - AIRFLOW_TOLERANCE

    if len(adjusted) + standard_vents == 0:
        return AirflowResult(adjusted, 0.0, no_adjustable_vents=True)

    flow = combined_flow(adjusted, standard_vents, standard_open)
    if flow >= target:
        return AirflowResult(adjusted, flow)

    iterations = 0
    while flow < target and iterations < settings.max_iterations:
        proportions = {
            vent_id: abs(setpoint - attributes[vent_id].temp)
            for vent_id, percent in adjusted.items()
            if percent < MAX_PERCENTAGE_OPEN and vent_id in attributes
        }
        total = sum(proportions.values())
        if total == 0:
            logger.warning(
                f"Minimum airflow {minimum}% not reachable: no adjustable vents "
                f"(combined flow {flow:.1f}%)"
            )
            return AirflowResult(adjusted, flow, iterations, no_adjustable_vents=True)

        shortfall = minimum - flow
        for vent_id, proportion in proportions.items():
            increment = (proportion / total) * shortfall * settings.increment_percentage
            adjusted[vent_id] = min(float(MAX_PERCENTAGE_OPEN), adjusted[vent_id] + increment)

        flow = combined_flow(adjusted, standard_vents, standard_open)
        iterations += 1

    cap_reached = flow < target
    if cap_reached:
        logger.warning(f"Minimum airflow iteration cap reached at {flow:.1f}% combined flow")
    else:
        logger.debug(f"Minimum airflow reached {flow:.1f}% after {iterations} iteration(s)")
    return AirflowResult(adjusted, flow, iterations, cap_reached=cap_reached)


def apply_overrides_and_floors(
    percentages: dict[str, float],
    overrides: Optional[dict[str, int]],
    floor: int
) -> dict[str, int]:
    """Manual overrides win outright; everything else is held at the floor."""
    overrides = overrides or {}
    final: dict[str, int] = {}
    for vent_id, percent in percentages.items():
        if overrides.get(vent_id) is not None:
            final[vent_id] = int(overrides[vent_id])
        else:
            final[vent_id] = min(MAX_PERCENTAGE_OPEN, max(int(floor), int(percent)))
    return final


def add_unplanned_overrides(
    targets: dict[str, int],
    vents_by_room: dict[str, list[str]],
    overrides: Optional[dict[str, int]]
) -> dict[str, int]:
    """Overridden vents the solver skipped (no readings) still get their value."""
    for vent_ids in vents_by_room.values():
        for vent_id in vent_ids:
            if vent_id not in targets and (overrides or {}).get(vent_id) is not None:
                targets[vent_id] = int(overrides[vent_id])
    return targets


def quantize(percent: float, granularity: int, floor: int = 0) -> int:
    """Snap to the vent's step size without dropping below the floor."""
    value = round_to_granularity(percent, granularity)
    if value < floor:
        value = int(math.ceil(floor / granularity) * granularity)
    return min(MAX_PERCENTAGE_OPEN, max(0, value))


def solve(
    vents_by_room: dict[str, list[str]],
    rates: dict[str, float],
    readings: dict[str, VentReadings],
    mode: str,
    setpoint: Optional[float],
    settings: DabSettings,
    weights: Optional[dict[str, float]] = None,
    overrides: Optional[dict[str, int]] = None
) -> Optional[VentPlan]:
    """Compute a complete vent plan.

    Args:
        vents_by_room: Room id -> vent ids
        rates: Learned rate per vent for this mode
        readings: Current readings per vent
        mode: "heating" or "cooling"
        setpoint: Global setpoint (°C); None aborts
        settings: Solver tunables
        weights: Per-vent weight (default 1.0)
        overrides: Manual override per vent

    Returns:
        VentPlan, or None when no setpoint is available
    """
    if not any(vents_by_room.values()):
        logger.info("No vents configured, nothing to balance")
        return VentPlan(mode=mode, setpoint=setpoint)
    if setpoint is None:
        logger.warning(f"No {mode} setpoint available, skipping vent balancing")
        return None

    attributes = weighted_attributes(
        vents_by_room, rates, readings, weights, settings.min_temp_change_rate
    )
    longest = longest_minutes_to_target(
        attributes, mode, setpoint, settings.max_hvac_running_time, settings.close_inactive_rooms
    )

    if longest <= 0:
        logger.info(f"All rooms at setpoint ({setpoint:.1f}), opening all vents")
        return VentPlan(
            mode=mode,
            setpoint=setpoint,
            targets=add_unplanned_overrides(
                apply_overrides_and_floors(
                    {vent_id: MAX_PERCENTAGE_OPEN for vent_id in attributes}, overrides, 0
                ),
                vents_by_room,
                overrides,
            ),
            raw_percentages={vent_id: float(MAX_PERCENTAGE_OPEN) for vent_id in attributes},
            longest_minutes=longest,
            all_settled=True,
        )

    raw = open_percentages(attributes, mode, setpoint, longest, settings.close_inactive_rooms)
    airflow = ensure_minimum_airflow(
        attributes, mode, setpoint, raw, settings.additional_standard_vents, settings
    )
    floor = settings.vent_floor_percent
    final = apply_overrides_and_floors(airflow.percentages, overrides, floor)

    overrides = overrides or {}
    targets = {
        vent_id: percent if overrides.get(vent_id) is not None
        else quantize(percent, settings.vent_granularity, floor)
        for vent_id, percent in final.items()
    }
    add_unplanned_overrides(targets, vents_by_room, overrides)
    logger.debug(f"Vent plan for {mode} setpoint {setpoint:.1f}: longest {longest:.1f} min, targets {targets}")

    return VentPlan(
        mode=mode,
        setpoint=setpoint,
        targets=targets,
        raw_percentages=raw,
        longest_minutes=longest,
        airflow=airflow,
    )
