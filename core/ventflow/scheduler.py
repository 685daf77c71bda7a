"""
Named Job Scheduling

The orchestrator never sleeps or spawns work itself; it asks a Scheduler to
run a named job once after a delay or on a fixed cadence, and cancels jobs
by name when a cycle ends.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    """Run-once-after, run-every and cancel-by-name."""

    def run_in(self, name: str, delay_ms: int, fn: Callable, *args) -> None: ...

    def run_every(self, name: str, interval_s: float, fn: Callable) -> None: ...

    def cancel(self, name: str) -> None: ...

    def cancel_all(self, names: Iterable[str]) -> None: ...


class AsyncioScheduler:
    """Scheduler on an asyncio event loop.

    Scheduling a name that is already pending replaces the pending job.
    Callbacks run on the loop thread one at a time; exceptions are logged
    and never stop a periodic job.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _invoke(self, name: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Scheduled job '{name}' failed: {e}", exc_info=True)

    def run_in(self, name: str, delay_ms: int, fn: Callable, *args) -> None:
        self.cancel(name)

        def _fire():
            self._handles.pop(name, None)
            self._invoke(name, fn, *args)

        self._handles[name] = self.loop.call_later(max(0, delay_ms) / 1000.0, _fire)
        logger.debug(f"Scheduled '{name}' in {delay_ms} ms")

    def run_every(self, name: str, interval_s: float, fn: Callable) -> None:
        self.cancel(name)

        async def _periodic():
            while True:
                await asyncio.sleep(interval_s)
                self._invoke(name, fn)

        self._tasks[name] = self.loop.create_task(_periodic())
        logger.debug(f"Scheduled '{name}' every {interval_s} s")

    def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def cancel_all(self, names: Iterable[str]) -> None:
        for name in names:
            self.cancel(name)

    def pending(self) -> list[str]:
        """Names of jobs currently scheduled."""
        return sorted(set(self._handles) | set(self._tasks))

    def shutdown(self) -> None:
        self.cancel_all(self.pending())
