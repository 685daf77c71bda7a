"""
HVAC Mode Detection

Classifies the plant as heating, cooling or idle from the median difference
between duct and room temperature across all vents, falling back to the
thermostat's reported operating state.
"""

import logging
from typing import Iterable, Optional

from .dab_math import upper_median
from .models import COOLING, HEATING, IDLE, VentReadings

logger = logging.getLogger(__name__)

DUCT_TEMP_DIFF_THRESHOLD = 0.5

_OPERATING_STATE_MODES = {
    "heating": HEATING,
    "pending heat": HEATING,
    "cooling": COOLING,
    "pending cool": COOLING,
}


def mode_from_operating_state(operating_state: Optional[str]) -> Optional[str]:
    """Map a thermostat operating state to heating/cooling, None otherwise."""
    if not operating_state:
        return None
    return _OPERATING_STATE_MODES.get(str(operating_state).strip().lower())


def duct_room_differences(readings: Iterable[VentReadings]) -> list[float]:
    """duct - room (°C) for every vent reporting both temperatures."""
    return [
        r.duct_temp_c - r.room_temp_c
        for r in readings
        if r.duct_temp_c is not None and r.room_temp_c is not None
    ]


def median_duct_room_difference(readings: Iterable[VentReadings]) -> Optional[float]:
    return upper_median(duct_room_differences(readings))


def detect_hvac_mode(
    readings: Iterable[VentReadings],
    operating_state: Optional[str] = None,
    threshold: float = DUCT_TEMP_DIFF_THRESHOLD
) -> str:
    """Coarse plant mode from a sensor snapshot.

    Args:
        readings: Current readings for all managed vents
        operating_state: Thermostat operating state, if a thermostat is configured
        threshold: Minimum |median(duct - room)| (°C) to call the plant active

    Returns:
        "heating", "cooling" or "idle"
    """
    median = median_duct_room_difference(readings)

    if median is not None:
        if median > threshold:
            return HEATING
        if median < -threshold:
            return COOLING

    fallback = mode_from_operating_state(operating_state)
    if fallback is not None:
        logger.debug(f"Duct median {median} inconclusive, using thermostat state '{operating_state}'")
        return fallback
    return IDLE
