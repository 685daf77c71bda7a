"""
Persisted DAB State

One logical state document per running instance. Every read-modify-write
goes through StateStore.update so a scheduled callback always works on the
latest value; callers never hold on to objects between callbacks.
"""

import copy
import json
import logging
import os
import threading
from typing import Any, Callable

from .models import (
    CoolingCycleState,
    CycleRecord,
    HourlyRateEntry,
    RateHistory,
    RATE_HISTORY_VERSION,
    build_index,
)
from .settings import _known_fields

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

CYCLE_KEY = "cycle"
RATE_HISTORY_KEY = "rate_history"
COOLING_STATE_KEY = "cooling_state"
ACTIVITY_LOG_KEY = "activity_log"
TRANSITIONS_KEY = "transitions"
MANUAL_OVERRIDES_KEY = "manual_overrides"
VENT_RATES_KEY = "vent_rates"
STARTING_TEMPS_KEY = "starting_temps"
DIAGNOSTICS_KEY = "diagnostics"
FINALIZED_KEYS_KEY = "finalized_keys"

# Bucket cap used when rebuilding a legacy index; reindex() applies the real retention
LEGACY_INDEX_CAP = 10


def migrate_rate_history(legacy, index_cap: int = LEGACY_INDEX_CAP) -> dict:
    """Convert the old list/map history shapes into the versioned document.

    The hourly index is rebuilt from the entry log when the legacy document
    does not carry one.
    """
    if isinstance(legacy, list):
        legacy = {"entries": legacy}
    if not isinstance(legacy, dict):
        return RateHistory().to_dict()
    if "entries" not in legacy and "hourlyRates" not in legacy:
        # Per-date archive format; nothing usable for the hourly index
        logger.warning("Dropping unrecognized legacy DAB history layout")
        return RateHistory().to_dict()

    entries = [
        HourlyRateEntry.from_list(e)
        for e in legacy.get("entries", [])
        if isinstance(e, (list, tuple)) and len(e) >= 5
    ]
    hourly = {}
    for room_id, modes in (legacy.get("hourlyRates") or {}).items():
        hourly[str(room_id)] = {
            mode: {str(hour): [float(r) for r in rates] for hour, rates in hours.items()}
            for mode, hours in (modes or {}).items()
        }
    if not hourly and entries:
        hourly = build_index(entries, index_cap)

    return RateHistory.from_dict({
        "entries": [e.to_list() for e in entries],
        "hourlyRates": hourly,
        "ewma": legacy.get("ewma", {}),
        "adaptiveMarks": legacy.get("adaptiveMarks", []),
    }).to_dict()


def migrate_cooling_state(legacy) -> dict | None:
    """Snake-case a legacy cooling tracker; unusable trackers are dropped."""
    if not isinstance(legacy, dict):
        return None
    converted = _known_fields(CoolingCycleState, legacy)
    if converted.get("cycle_start_time") is None:
        logger.warning("Dropping legacy cooling state without a cycle start time")
        return None
    return CoolingCycleState(**converted).to_dict()


def migrate_state(data: dict) -> dict:
    """One-time upgrade of a state document to the current schema.

    Handles the camelCase keys and loosely shaped blobs written by earlier
    releases. Documents already at SCHEMA_VERSION are returned unchanged.
    """
    if data.get("schema_version") == SCHEMA_VERSION:
        return data

    migrated = {k: v for k, v in data.items() if k != "schema_version"}

    if "dabHistory" in migrated:
        migrated[RATE_HISTORY_KEY] = migrate_rate_history(migrated.pop("dabHistory"))
    elif RATE_HISTORY_KEY in migrated and migrated[RATE_HISTORY_KEY].get("version") != RATE_HISTORY_VERSION:
        migrated[RATE_HISTORY_KEY] = migrate_rate_history(migrated[RATE_HISTORY_KEY])

    if "dabEwma" in migrated:
        ewma = migrated.pop("dabEwma") or {}
        history = migrated.setdefault(RATE_HISTORY_KEY, RateHistory().to_dict())
        history["ewma"] = {
            str(room): {mode: {str(h): float(v) for h, v in hours.items()} for mode, hours in modes.items()}
            for room, modes in ewma.items()
        }

    if "thermostat1State" in migrated:
        legacy = migrated.pop("thermostat1State") or {}
        if legacy.get("mode"):
            migrated[CYCLE_KEY] = CycleRecord(
                mode=legacy["mode"],
                started_running=legacy.get("startedRunning"),
                started_cycle=legacy.get("startedCycle"),
                finished_running=legacy.get("finishedRunning"),
            ).to_dict()

    renames = {
        "dabActivityLog": ACTIVITY_LOG_KEY,
        "manualOverrides": MANUAL_OVERRIDES_KEY,
    }
    for old, new in renames.items():
        if old in migrated:
            migrated[new] = migrated.pop(old)

    if "coolingCycleState" in migrated:
        migrated[COOLING_STATE_KEY] = migrate_cooling_state(migrated.pop("coolingCycleState"))

    migrated["schema_version"] = SCHEMA_VERSION
    logger.info(f"Migrated DAB state document to schema version {SCHEMA_VERSION}")
    return migrated


class StateStore:
    """Atomic named-slot store, optionally mirrored to a JSON file."""

    def __init__(self, path: str | None = None):
        """Initialize state store.

        Args:
            path: JSON file to load from and persist to (None = memory only)
        """
        self.path = path
        self.lock = threading.RLock()
        self._data: dict[str, Any] = {"schema_version": SCHEMA_VERSION}

        if path and os.path.exists(path):
            with open(path) as f:
                self._data = migrate_state(json.load(f))
            logger.info(f"Loaded DAB state from {path}")

    def get(self, key: str, default: Any = None) -> Any:
        """Return a copy of the named slot."""
        with self.lock:
            return copy.deepcopy(self._data.get(key, default))

    def set(self, key: str, value: Any) -> None:
        with self.lock:
            self._data[key] = copy.deepcopy(value)
            self._persist()

    def delete(self, key: str) -> None:
        with self.lock:
            if self._data.pop(key, None) is not None:
                self._persist()

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write the named slot under the store lock.

        Args:
            key: Slot name
            fn: Receives a copy of the current value, returns the new value
            default: Value passed to fn when the slot is empty

        Returns:
            The value that was stored
        """
        with self.lock:
            current = copy.deepcopy(self._data.get(key, default))
            updated = fn(current)
            self._data[key] = updated
            self._persist()
            return copy.deepcopy(updated)

    def update_map_value(self, key: str, field: str, value: Any) -> dict:
        """Atomically set one field of a map-valued slot."""
        def _apply(current):
            current = current or {}
            current[field] = value
            return current

        return self.update(key, _apply, default={})

    def snapshot(self) -> dict:
        with self.lock:
            return copy.deepcopy(self._data)

    def _persist(self) -> None:
        if not self.path:
            return
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(self._data, f)
        os.replace(tmp_path, self.path)

    # Typed accessors

    def get_cycle(self) -> CycleRecord | None:
        return CycleRecord.from_dict(self.get(CYCLE_KEY))

    def update_cycle_field(self, field: str, value: Any) -> CycleRecord | None:
        return CycleRecord.from_dict(self.update_map_value(CYCLE_KEY, field, value))

    def clear_cycle(self) -> None:
        self.delete(CYCLE_KEY)

    def get_rate_history(self) -> RateHistory:
        return RateHistory.from_dict(self.get(RATE_HISTORY_KEY))

    def update_rate_history(self, fn: Callable[[RateHistory], RateHistory]) -> RateHistory:
        stored = self.update(
            RATE_HISTORY_KEY,
            lambda current: fn(RateHistory.from_dict(current)).to_dict(),
        )
        return RateHistory.from_dict(stored)

    def get_cooling_state(self) -> CoolingCycleState | None:
        return CoolingCycleState.from_dict(self.get(COOLING_STATE_KEY))

    def set_cooling_state(self, state: CoolingCycleState | None) -> None:
        if state is None:
            self.delete(COOLING_STATE_KEY)
        else:
            self.set(COOLING_STATE_KEY, state.to_dict())

    def get_manual_overrides(self) -> dict[str, int]:
        return self.get(MANUAL_OVERRIDES_KEY, {}) or {}
