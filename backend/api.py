"""
Ventflow API Endpoints
"""

import os
import sys

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.ventflow.backup import export_efficiency_data, import_efficiency_data
from core.ventflow.exceptions import ConfigurationError, ImportValidationError
from core.ventflow.ha_client import HAClient
from core.ventflow.models import COOLING, HEATING
from core.ventflow.settings import DabSettings, load_settings

router = APIRouter()

# Initialize HA client
HA_URL = os.environ.get("HA_URL", "http://supervisor/core")
HA_TOKEN = os.environ.get("HA_TOKEN", "")

ha_client = HAClient(HA_URL, HA_TOKEN) if HA_TOKEN else None

# Load DAB settings (options.json in production, config.yaml in development)
try:
    SETTINGS: DabSettings = load_settings()
    logger.info(f"Loaded {len(SETTINGS.vents)} vent(s) from configuration")
except ConfigurationError as e:
    logger.error(f"Invalid DAB configuration, using defaults: {e}")
    SETTINGS = DabSettings()

# DAB service (set by app.py during startup)
dab_service = None


class OverrideRequest(BaseModel):
    """Request body for a manual vent override."""
    percent: int = Field(ge=0, le=100)


class ReindexRequest(BaseModel):
    """Optional new retention for a history reindex."""
    retention_days: int | None = Field(default=None, ge=1)


def _require_service():
    if dab_service is None:
        raise HTTPException(status_code=503, detail="DAB service not available")
    return dab_service


def _check_mode(mode: str | None) -> str | None:
    if mode is not None and mode not in (COOLING, HEATING):
        raise HTTPException(status_code=400, detail=f"Invalid mode: {mode}")
    return mode


@router.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": "Ventflow",
        "version": "0.1.0",
        "ha_connected": ha_client is not None,
        "dab_running": dab_service is not None and dab_service.running,
    }


@router.get("/api/status")
async def get_status():
    """Get system status."""
    service = _require_service()
    cycle = service.state_store.get_cycle()
    return {
        "enabled": service.settings.enabled,
        "phase": service.orchestrator.phase,
        "mode": cycle.mode if cycle else "idle",
        "last_mode": service.last_mode,
        "vents": len(service.devices.vents()),
        "poll_interval_seconds": service.poll_interval_seconds(),
        "ha_url": HA_URL,
        "ha_connected": ha_client is not None,
    }


@router.post("/api/dab/poll")
async def poll_now():
    """Run one plant-state poll immediately."""
    service = _require_service()
    mode = service.poll_once()
    return {"mode": mode, "phase": service.orchestrator.phase}


@router.get("/api/dab/cycle")
async def get_cycle():
    """Current cycle snapshot."""
    return _require_service().orchestrator.snapshot()


@router.get("/api/dab/transitions")
async def get_transitions(hours: int | None = Query(None, ge=1)):
    """Recent HVAC transitions."""
    return {"transitions": _require_service().history.get_transitions(hours)}


@router.get("/api/dab/activity")
async def get_activity(limit: int | None = Query(None, ge=1)):
    """DAB activity log, oldest first."""
    return {"activity": _require_service().history.get_activity(limit)}


@router.get("/api/dab/cooling")
async def get_cooling_debug():
    """Cooling-end detector state."""
    return _require_service().cooling_detector.debug_snapshot()


@router.get("/api/dab/rates")
async def get_rates():
    """Learned rates per room/mode/hour and the current per-vent rates."""
    service = _require_service()
    vents = [
        {
            "vent_id": vent.vent_id,
            "room_id": vent.room_id,
            "room_name": vent.room_name,
            "cooling_rate": service.devices.get_rate(vent.vent_id, COOLING),
            "heating_rate": service.devices.get_rate(vent.vent_id, HEATING),
        }
        for vent in service.devices.vents()
    ]
    return {"hourly": service.rate_store.learned_rates(), "vents": vents}


@router.get("/api/dab/history")
async def get_rate_history(
    room_id: str | None = None,
    mode: str | None = None,
    hour: int | None = Query(None, ge=0, le=23)
):
    """Rate history document, or one bucket when room, mode and hour are given."""
    service = _require_service()
    _check_mode(mode)
    if room_id and mode and hour is not None:
        return {
            "room_id": room_id,
            "mode": mode,
            "hour": hour,
            "rates": service.rate_store.hourly_rates(room_id, mode, hour),
            "average": service.rate_store.average(room_id, mode, hour),
        }
    return service.rate_store.history().to_dict()


@router.get("/api/dab/history/integrity")
async def get_history_integrity():
    """Hours with no learned rate per room and mode."""
    missing = _require_service().rate_store.check_integrity()
    issues = [
        f"{room_id} {mode}: missing hour {hour}"
        for room_id, modes in missing.items()
        for mode, hours in modes.items()
        for hour in hours
    ]
    return {"missing": missing, "issues": issues}


@router.post("/api/dab/diagnostic")
async def run_diagnostic(mode: str | None = None):
    """Compute the full vent plan without applying it."""
    return _require_service().orchestrator.run_diagnostic(_check_mode(mode))


@router.post("/api/dab/reindex")
async def reindex_history(request: ReindexRequest | None = None):
    """Rebuild the hourly index, optionally with a new retention."""
    service = _require_service()
    try:
        if request and request.retention_days is not None:
            return service.rate_store.set_retention_days(request.retention_days)
        return service.rate_store.reindex()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/api/dab/export")
async def export_data():
    """Export learned efficiency data."""
    service = _require_service()
    return export_efficiency_data(service.devices, service.state_store, service.history, service.settings)


@router.post("/api/dab/import")
async def import_data(payload: dict):
    """Import previously exported efficiency data."""
    service = _require_service()
    try:
        return import_efficiency_data(
            payload, service.devices, service.state_store, service.rate_store, service.history
        )
    except ImportValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/api/dab/overrides")
async def get_overrides():
    """Active manual vent overrides."""
    return {"overrides": _require_service().state_store.get_manual_overrides()}


@router.put("/api/dab/overrides/{vent_id}")
async def set_override(vent_id: str, request: OverrideRequest):
    """Pin a vent to a fixed opening."""
    service = _require_service()
    try:
        overrides = service.orchestrator.set_manual_override(vent_id, request.percent)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"overrides": overrides}


@router.delete("/api/dab/overrides/{vent_id}")
async def clear_override(vent_id: str):
    """Release a vent override."""
    return {"overrides": _require_service().orchestrator.clear_manual_override(vent_id)}


@router.delete("/api/dab/overrides")
async def clear_all_overrides():
    """Release all vent overrides."""
    return {"overrides": _require_service().orchestrator.clear_manual_override()}
