"""
DAB Service

Background service that polls the plant state and drives the cycle
orchestrator. Polls every few minutes while a cycle is running and less
often while the plant is idle.
"""

import asyncio
import logging
from typing import Optional

from .cooling_end import CoolingEndDetector
from .dab_math import now_ms
from .devices import DeviceLayer
from .history import HistoryTracker
from .orchestrator import CycleOrchestrator
from .rate_store import ThermalRateStore
from .scheduler import AsyncioScheduler, Scheduler
from .settings import DabSettings
from .state_store import StateStore

logger = logging.getLogger(__name__)


class DabService:
    """
    Background service for Dynamic Airflow Balancing.

    Owns the engine components for one installation:
    - Rate store (learned room efficiency)
    - Cooling-end detector
    - Cycle orchestrator (polled from the loop)
    """

    def __init__(
        self,
        devices: DeviceLayer,
        settings: DabSettings,
        state_store: Optional[StateStore] = None,
        scheduler: Optional[Scheduler] = None,
        clock=now_ms
    ):
        self.devices = devices
        self.settings = settings
        self.state_store = state_store or StateStore()
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock

        self.history = HistoryTracker(self.state_store, settings.timezone, clock)
        self.rate_store = ThermalRateStore(self.state_store, settings, clock)
        self.cooling_detector = CoolingEndDetector(self.state_store, clock)
        self.orchestrator = CycleOrchestrator(
            devices,
            self.state_store,
            self.scheduler,
            self.rate_store,
            self.cooling_detector,
            settings,
            clock=clock,
            history=self.history,
        )

        self.last_mode: Optional[str] = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def poll_interval_seconds(self) -> int:
        """Seconds until the next poll, shorter while a cycle is running."""
        if self.state_store.get_cycle() is not None:
            return int(self.settings.polling_interval_active) * 60
        return int(self.settings.polling_interval_idle) * 60

    async def start(self):
        """Start the DAB polling loop."""
        if self._running:
            logger.warning("DAB service already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"DAB service started for {len(self.devices.vents())} vent(s)")

    async def stop(self):
        """Stop the DAB polling loop and cancel pending cycle jobs."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        if isinstance(self.scheduler, AsyncioScheduler):
            self.scheduler.shutdown()
        logger.info("DAB service stopped")

    def poll_once(self) -> str:
        """Run one plant-state poll."""
        self.last_mode = self.orchestrator.update_hvac_state()
        return self.last_mode

    async def _run_loop(self):
        """Main loop - polls the plant every interval."""
        logger.info("DAB polling loop starting...")

        while self._running:
            try:
                if self.settings.enabled:
                    self.poll_once()
            except Exception as e:
                logger.error(f"Error in DAB polling loop: {e}", exc_info=True)

            await asyncio.sleep(self.poll_interval_seconds())
