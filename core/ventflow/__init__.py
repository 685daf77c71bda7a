"""Ventflow dynamic airflow balancing package."""

# Define public API
__all__ = [
    "DabSettings",
    "VentSettings",
    "load_settings",
    "VentReadings",
    "CycleRecord",
    "VentPlan",
    "HAClient",
    "HomeAssistantDeviceLayer",
    "StateStore",
    "ThermalRateStore",
    "CoolingEndDetector",
    "CycleOrchestrator",
    "DabService",
    "detect_hvac_mode",
    "solve",
]

# Import settings
from .settings import DabSettings, VentSettings, load_settings

# Import models
from .models import CycleRecord, VentPlan, VentReadings

# Import HA client and device layer
from .ha_client import HAClient
from .devices import HomeAssistantDeviceLayer

# Import engine
from .state_store import StateStore
from .rate_store import ThermalRateStore
from .cooling_end import CoolingEndDetector
from .mode_detector import detect_hvac_mode
from .vent_solver import solve
from .orchestrator import CycleOrchestrator
from .dab_service import DabService
