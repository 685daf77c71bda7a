"""
DAB numeric helpers shared by the solver, the rate store and the orchestrator.
"""

import math
import time
from datetime import datetime, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import numpy as np

from .models import COOLING, HEATING

MS_PER_MINUTE = 60 * 1000
MS_PER_DAY = 24 * 60 * MS_PER_MINUTE


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def hour_of_day(timestamp_ms: int, tz_name: str = "UTC") -> int:
    """Local hour (0-23) of an epoch-millisecond timestamp."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.astimezone(ZoneInfo(tz_name)).hour


def upper_median(values: Iterable[float]) -> Optional[float]:
    """Median picking the upper-middle element for even-sized samples."""
    arr = np.sort(np.asarray(list(values), dtype=float))
    if arr.size == 0:
        return None
    return float(arr[arr.size // 2])


def clean_rate(value: Optional[float]) -> float:
    """Round to 9 decimals; non-finite values become 0."""
    if value is None:
        return 0.0
    value = float(value)
    if not math.isfinite(value):
        return 0.0
    return round(value, 9)


def celsius_to_fahrenheit(temp_c: float) -> float:
    return temp_c * 9.0 / 5.0 + 32.0


def fahrenheit_to_celsius(temp_f: float) -> float:
    return (temp_f - 32.0) * 5.0 / 9.0


def has_room_reached_setpoint(
    hvac_mode: str,
    setpoint: float,
    current_temp: float,
    offset: float = 0.0
) -> bool:
    """Cooling is done at/below setpoint - offset, heating at/above setpoint + offset."""
    if hvac_mode == COOLING:
        return current_temp <= setpoint - offset
    if hvac_mode == HEATING:
        return current_temp >= setpoint + offset
    return False


def rolling_average(
    current_average: Optional[float],
    new_number: float,
    weight: float = 1.0,
    num_entries: int = 10
) -> float:
    """Fold one weighted sample into a fixed-window running average."""
    if num_entries <= 0:
        return 0.0
    base = new_number if not current_average else current_average
    total = base * (num_entries - 1)
    total += base + (new_number - base) * weight
    return total / num_entries


def round_to_granularity(value: float, granularity: int = 5) -> int:
    """Round half-up to the nearest multiple of granularity."""
    if granularity <= 0:
        return int(math.floor(value + 0.5))
    return int(math.floor(value / granularity + 0.5) * granularity)


def calculate_room_change_rate(
    starting_temp: float,
    current_temp: float,
    minutes: float,
    percent_open: int,
    current_rate: float,
    min_rate: float = 0.001,
    max_rate: float = 1.5,
    min_runtime: float = 5.0,
    min_detectable_change: float = 0.1
) -> float:
    """Observed degrees/minute normalized to a fully open vent.

    Returns the prior rate when the run is too short or the change is below
    the sensor noise floor, and 0 when the room received no airflow.
    """
    if minutes < min_runtime:
        return current_rate
    if percent_open <= 0:
        return 0.0
    temp_change = abs(current_temp - starting_temp)
    if temp_change < min_detectable_change:
        return current_rate

    rate = (temp_change / minutes) * (100.0 / percent_open)
    return min(max_rate, max(min_rate, rate))
