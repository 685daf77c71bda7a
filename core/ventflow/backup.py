"""
Efficiency Data Backup

Export learned rates, rate history and the activity log as one JSON payload,
and restore them onto (possibly re-paired) vents.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from .devices import DeviceLayer
from .exceptions import ImportValidationError
from .history import HistoryTracker
from .models import COOLING, HEATING
from .rate_store import ThermalRateStore
from .settings import DabSettings
from .state_store import RATE_HISTORY_KEY, StateStore, migrate_rate_history

logger = logging.getLogger(__name__)

EXPORT_VERSION = "2.0"


def export_efficiency_data(
    devices: DeviceLayer,
    state_store: StateStore,
    history: HistoryTracker,
    settings: DabSettings
) -> dict[str, Any]:
    """Build the export payload."""
    rooms = []
    for vent in devices.vents():
        rooms.append({
            "roomId": vent.room_id,
            "roomName": vent.room_name,
            "ventId": vent.vent_id,
            "coolingRate": devices.get_rate(vent.vent_id, COOLING),
            "heatingRate": devices.get_rate(vent.vent_id, HEATING),
        })

    return {
        "exportMetadata": {
            "version": EXPORT_VERSION,
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "structureId": settings.structure_id,
        },
        "efficiencyData": {
            "globalRates": {
                "maxCoolingRate": max((r["coolingRate"] for r in rooms), default=0),
                "maxHeatingRate": max((r["heatingRate"] for r in rooms), default=0),
            },
            "roomEfficiencies": rooms,
            "dabHistory": state_store.get_rate_history().to_dict(),
            "dabActivityLog": history.get_activity(),
        },
    }


def validate_import_data(payload: Any) -> dict[str, Any]:
    """Check the payload shape before anything is written.

    Returns:
        The efficiencyData section

    Raises:
        ImportValidationError: If required sections are missing
    """
    if not isinstance(payload, dict):
        raise ImportValidationError("Import data must be a JSON object")
    if not isinstance(payload.get("exportMetadata"), dict):
        raise ImportValidationError("Missing exportMetadata")
    data = payload.get("efficiencyData")
    if not isinstance(data, dict):
        raise ImportValidationError("Missing efficiencyData")
    rooms = data.get("roomEfficiencies")
    if not isinstance(rooms, list):
        raise ImportValidationError("Missing efficiencyData.roomEfficiencies")
    for i, room in enumerate(rooms):
        if not isinstance(room, dict):
            raise ImportValidationError(f"roomEfficiencies[{i}] must be an object")
    return data


def _rate(value) -> float:
    try:
        return max(0.0, float(value or 0))
    except (TypeError, ValueError):
        return 0.0


def import_efficiency_data(
    payload: Any,
    devices: DeviceLayer,
    state_store: StateStore,
    rate_store: ThermalRateStore,
    history: HistoryTracker
) -> dict[str, int]:
    """Restore an exported payload.

    Vents are matched by id first, then by room name.

    Returns:
        Counts of restored and unmatched rooms, history entries and activity lines
    """
    data = validate_import_data(payload)
    vents = devices.vents()
    by_id = {v.vent_id: v for v in vents}
    by_room_name = {}
    for vent in vents:
        by_room_name.setdefault(vent.room_name, vent)

    restored = 0
    unmatched = 0
    for room in data["roomEfficiencies"]:
        vent = by_id.get(str(room.get("ventId"))) or by_room_name.get(room.get("roomName"))
        if vent is None:
            logger.warning(f"No vent matches imported room {room.get('roomName')} ({room.get('ventId')})")
            unmatched += 1
            continue
        devices.set_rate(vent.vent_id, COOLING, _rate(room.get("coolingRate")))
        devices.set_rate(vent.vent_id, HEATING, _rate(room.get("heatingRate")))
        restored += 1

    history_entries = 0
    if data.get("dabHistory"):
        state_store.set(RATE_HISTORY_KEY, migrate_rate_history(data["dabHistory"]))
        history_entries = rate_store.reindex()["entries"]

    activity = data.get("dabActivityLog") or []
    if activity:
        history.replace_activity(activity)

    logger.info(
        f"Imported efficiency data: {restored} room(s) restored, {unmatched} unmatched, "
        f"{history_entries} history entries"
    )
    return {
        "rooms_restored": restored,
        "rooms_unmatched": unmatched,
        "history_entries": history_entries,
        "activity_entries": len(activity),
    }
