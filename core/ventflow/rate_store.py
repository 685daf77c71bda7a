"""
Thermal-Rate Store

Keeps, per room and HVAC mode, an hour-of-day bucketed history of learned
rates (°C per minute per percent open) and answers "expected rate for this
room/mode/hour" for the vent solver.

The append-only entry log is authoritative; the hourly index is derived
from it and can always be rebuilt with reindex().
"""

import logging
from typing import Callable, Optional

import numpy as np

from .dab_math import MS_PER_DAY, clean_rate, now_ms
from .exceptions import ConfigurationError
from .models import AdaptiveMark, HourlyRateEntry, RateHistory, build_index
from .settings import DabSettings
from .state_store import StateStore

logger = logging.getLogger(__name__)

MAD_SCALE = 1.4826
MIN_OUTLIER_SAMPLES = 4
MAX_ADAPTIVE_MARKS = 5000
ADAPTIVE_MARK_MAX_AGE_MS = MS_PER_DAY


def assess_outlier(
    samples: list[float],
    candidate: float,
    k: float = 3.0,
    mode: str = "clip"
) -> tuple[str, float]:
    """Decide whether a candidate rate is an outlier for its bucket.

    Uses median/MAD (scaled to approximate a standard deviation); falls back
    to mean/standard deviation when the MAD is zero.

    Returns:
        (action, value) where action is "accept", "reject" or "clip"
    """
    if len(samples) < MIN_OUTLIER_SAMPLES:
        return "accept", candidate

    arr = np.sort(np.asarray(samples, dtype=float))
    median = arr[arr.size // 2]
    deviations = np.sort(np.abs(arr - median))
    mad = deviations[deviations.size // 2]

    if mad == 0:
        center = float(np.mean(arr))
        spread = float(np.std(arr, ddof=1))
        if spread == 0:
            return "accept", candidate
    else:
        center = float(median)
        spread = float(MAD_SCALE * mad)

    if abs(candidate - center) <= k * spread:
        return "accept", candidate
    if mode == "reject":
        return "reject", candidate
    bound = center + (k * spread if candidate > center else -k * spread)
    return "clip", bound


def ewma_alpha(half_life_days: float) -> float:
    """Smoothing factor giving the requested half-life in bucket updates."""
    if half_life_days <= 0:
        return 1.0
    return 1.0 - 2.0 ** (-1.0 / float(half_life_days))


class ThermalRateStore:
    """Learned-rate history with outlier handling, smoothing and adaptive boost."""

    def __init__(
        self,
        state_store: StateStore,
        settings: DabSettings,
        clock: Callable[[], int] = now_ms
    ):
        self.state_store = state_store
        self.settings = settings
        self.clock = clock
        self.last_error: Optional[str] = None

    @property
    def retention_days(self) -> int:
        return max(1, int(self.settings.history_retention_days))

    def _cutoff(self, now: int) -> int:
        return now - self.retention_days * MS_PER_DAY

    @staticmethod
    def _bucket(history: RateHistory, room_id: str, mode: str, hour: int) -> list[float]:
        return history.hourly_rates.get(room_id, {}).get(mode, {}).get(str(hour), [])

    def append(
        self,
        room_id: Optional[str],
        mode: Optional[str],
        hour: Optional[int],
        rate: Optional[float],
        now: Optional[int] = None
    ) -> Optional[float]:
        """Record a learned rate for a room/mode/hour bucket.

        Returns:
            The value stored after outlier handling and smoothing, or None
            if the sample was rejected or invalid.
        """
        if room_id is None or mode is None or hour is None or rate is None:
            self.last_error = (
                f"Rejected rate sample with missing key "
                f"(room={room_id}, mode={mode}, hour={hour}, rate={rate})"
            )
            logger.error(self.last_error)
            return None
        if rate <= 0:
            return None

        now = self.clock() if now is None else now
        hour = int(hour)
        stored: dict[str, float] = {}

        def _apply(history: RateHistory) -> RateHistory:
            value = float(rate)

            if self.settings.enable_outlier_rejection:
                action, bounded = assess_outlier(
                    self._bucket(history, room_id, mode, hour),
                    value,
                    k=float(self.settings.outlier_threshold_mad),
                    mode=self.settings.outlier_mode,
                )
                if action == "reject":
                    logger.info(f"Room {room_id}: rejected outlier {mode} rate {value:.4f} for hour {hour}")
                    return history
                if action == "clip":
                    logger.info(
                        f"Room {room_id}: clipped outlier {mode} rate {value:.4f} -> {bounded:.4f} for hour {hour}"
                    )
                    value = bounded

            if self.settings.enable_ewma:
                value = self._update_ewma(history, room_id, mode, hour, value)

            value = clean_rate(value)
            history.entries.append(HourlyRateEntry(now, room_id, mode, hour, value))
            bucket = history.hourly_rates.setdefault(room_id, {}).setdefault(mode, {}).setdefault(str(hour), [])
            bucket.append(value)
            if len(bucket) > self.retention_days:
                del bucket[: len(bucket) - self.retention_days]

            self._prune(history, now)
            stored["value"] = value
            return history

        self.state_store.update_rate_history(_apply)
        return stored.get("value")

    def _update_ewma(self, history: RateHistory, room_id: str, mode: str, hour: int, value: float) -> float:
        hours = history.ewma.setdefault(room_id, {}).setdefault(mode, {})
        previous = hours.get(str(hour))
        alpha = ewma_alpha(float(self.settings.ewma_half_life_days))
        updated = value if previous is None else alpha * value + (1 - alpha) * previous
        hours[str(hour)] = clean_rate(updated)
        return hours[str(hour)]

    def _prune(self, history: RateHistory, now: int) -> int:
        """Drop log entries outside the retention window; keeps the index in sync."""
        cutoff = self._cutoff(now)
        kept = [e for e in history.entries if e.timestamp >= cutoff]
        removed = len(history.entries) - len(kept)
        if removed:
            history.entries = kept
            history.hourly_rates = build_index(kept, self.retention_days)
            logger.debug(f"Pruned {removed} rate entries older than {self.retention_days} days")
        return removed

    def history(self) -> RateHistory:
        return self.state_store.get_rate_history()

    def hourly_rates(self, room_id: str, mode: str, hour: int) -> list[float]:
        return list(self._bucket(self.state_store.get_rate_history(), room_id, mode, int(hour)))

    def average(self, room_id: str, mode: str, hour: int, now: Optional[int] = None) -> float:
        """Expected rate for a room/mode/hour, 0 when nothing is known."""
        now = self.clock() if now is None else now
        hour = int(hour)
        history = self.state_store.get_rate_history()

        base: Optional[float] = None
        if self.settings.enable_ewma:
            base = history.ewma.get(room_id, {}).get(mode, {}).get(str(hour))
        if base is None:
            bucket = self._bucket(history, room_id, mode, hour)
            if bucket:
                base = float(np.mean(bucket))
        if base is None and self.settings.carry_forward_last_hour:
            base = self._carry_forward(history, room_id, mode, hour)
        if base is None:
            return 0.0

        if self.settings.enable_adaptive_boost:
            boost = self._adaptive_boost(history, room_id, mode, hour, now)
            if boost > 0:
                logger.debug(f"Room {room_id}: adaptive boost {boost:.1%} for {mode} hour {hour}")
            base *= 1 + boost
        return clean_rate(base)

    def _carry_forward(self, history: RateHistory, room_id: str, mode: str, hour: int) -> Optional[float]:
        for step in range(1, 24):
            prior_hour = (hour - step) % 24
            if not self._bucket(history, room_id, mode, prior_hour):
                continue
            for entry in reversed(history.entries):
                if entry.room_id == room_id and entry.mode == mode and entry.hour == prior_hour:
                    return entry.rate
        return None

    def adaptive_boost(self, room_id: str, mode: str, hour: int, now: Optional[int] = None) -> float:
        """Fractional boost earned by recent under-predicted cycles."""
        now = self.clock() if now is None else now
        return self._adaptive_boost(self.state_store.get_rate_history(), room_id, mode, int(hour), now)

    def _adaptive_boost(self, history: RateHistory, room_id: str, mode: str, hour: int, now: int) -> float:
        lookback = max(0, int(self.settings.adaptive_lookback_periods))
        threshold = float(self.settings.adaptive_threshold_percent)
        oldest = now - ADAPTIVE_MARK_MAX_AGE_MS

        latest: dict[int, AdaptiveMark] = {}
        for mark in reversed(history.adaptive_marks):
            if mark.timestamp < oldest:
                continue
            if mark.room_id == room_id and mark.mode == mode and mark.hour not in latest:
                latest[mark.hour] = mark

        hits = 0
        for offset in range(lookback):
            mark = latest.get((hour - offset) % 24)
            if mark is not None and mark.deviation_ratio * 100 >= threshold:
                hits += 1

        boost = min(
            float(self.settings.adaptive_boost_percent) * hits,
            float(self.settings.adaptive_max_boost_percent),
        )
        return boost / 100.0

    def append_adaptive_mark(
        self,
        room_id: str,
        mode: str,
        hour: int,
        deviation_ratio: float,
        now: Optional[int] = None
    ) -> None:
        now = self.clock() if now is None else now

        def _apply(history: RateHistory) -> RateHistory:
            history.adaptive_marks.append(AdaptiveMark(now, room_id, mode, int(hour), float(deviation_ratio)))
            if len(history.adaptive_marks) > MAX_ADAPTIVE_MARKS:
                history.adaptive_marks = history.adaptive_marks[-MAX_ADAPTIVE_MARKS:]
            return history

        self.state_store.update_rate_history(_apply)

    def reindex(self, now: Optional[int] = None) -> dict[str, int]:
        """Rebuild the hourly index from the entry log.

        Returns:
            Counts of retained entries and rooms
        """
        now = self.clock() if now is None else now
        cutoff = self._cutoff(now)
        counts = {}

        def _apply(history: RateHistory) -> RateHistory:
            history.entries = [e for e in history.entries if e.timestamp >= cutoff]
            history.hourly_rates = build_index(history.entries, self.retention_days)
            counts["entries"] = len(history.entries)
            counts["rooms"] = len(history.hourly_rates)
            return history

        self.state_store.update_rate_history(_apply)
        logger.info(f"Reindexed DAB history: {counts['entries']} entries across {counts['rooms']} rooms")
        return counts

    def set_retention_days(self, days: int, now: Optional[int] = None) -> dict[str, int]:
        if int(days) < 1:
            raise ConfigurationError(f"Retention must be at least 1 day, got {days}")
        self.settings.history_retention_days = int(days)
        return self.reindex(now)

    def check_integrity(self) -> dict[str, dict[str, list[int]]]:
        """Hours of the day with no learned rate, per room and mode."""
        history = self.state_store.get_rate_history()
        missing: dict[str, dict[str, list[int]]] = {}
        for room_id, modes in history.hourly_rates.items():
            for mode, hours in modes.items():
                gaps = [h for h in range(24) if not hours.get(str(h))]
                if gaps:
                    missing.setdefault(room_id, {})[mode] = gaps
        return missing

    def learned_rates(self) -> dict[str, dict[str, dict[str, float]]]:
        """Mean rate per room -> mode -> hour, for reporting."""
        history = self.state_store.get_rate_history()
        return {
            room_id: {
                mode: {hour: clean_rate(float(np.mean(rates))) for hour, rates in hours.items() if rates}
                for mode, hours in modes.items()
            }
            for room_id, modes in history.hourly_rates.items()
        }
