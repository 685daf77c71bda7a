"""
Ventflow Backend Application

FastAPI application exposing DAB diagnostics and running the polling
service in the background.
"""

import os
import sys
from contextlib import asynccontextmanager

import log_config  # noqa: F401
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Import API router
import api
from api import SETTINGS, ha_client
from api import router as api_router

from core.ventflow.dab_service import DabService
from core.ventflow.devices import HomeAssistantDeviceLayer
from core.ventflow.exceptions import HAConnectionError, SensorError
from core.ventflow.state_store import StateStore

DEFAULT_STATE_PATH = "/data/ventflow_state.json"


def _state_path() -> str | None:
    """State file location; memory only when /data is not available."""
    path = os.environ.get("VENTFLOW_STATE_PATH")
    if path:
        return path
    if os.path.isdir(os.path.dirname(DEFAULT_STATE_PATH)):
        return DEFAULT_STATE_PATH
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for startup/shutdown."""
    # Startup
    logger.info("Ventflow starting")

    # Log registered routes
    routes = [
        f"{getattr(route, 'path', '?')} - {getattr(route, 'methods', ['MOUNT'])}"
        for route in app.routes
    ]
    logger.info(f"Registered routes: {routes}")

    service = None
    if ha_client and SETTINGS.vents:
        state_store = StateStore(_state_path())
        devices = HomeAssistantDeviceLayer(ha_client, SETTINGS, state_store)
        service = DabService(devices, SETTINGS, state_store=state_store)
        await service.start()
        logger.info(f"DAB enabled for {len(SETTINGS.vents)} vent(s)")

        # Make DAB service available to API
        api.dab_service = service
    else:
        logger.warning("DAB disabled (no HA client or vents configured)")

    yield

    # Shutdown
    logger.info("Ventflow shutting down")
    if service:
        await service.stop()
        api.dab_service = None


# Create FastAPI application
app = FastAPI(
    title="Ventflow API",
    description="Dynamic airflow balancing for smart vents",
    version="0.1.0",
    lifespan=lifespan,
)


# Device-layer failures map to 502
@app.exception_handler(HAConnectionError)
@app.exception_handler(SensorError)
async def device_exception_handler(request, exc):
    logger.warning(f"Device read failed on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Log unhandled errors with their traceback and return a JSON 500."""
    logger.opt(exception=exc).error(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "message": "Internal server error",
        },
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# For development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
