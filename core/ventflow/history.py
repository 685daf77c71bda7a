"""
DAB Activity and Transition History

Human-readable activity lines and structured HVAC transitions, kept in the
state store so they survive restarts and travel with an export.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .dab_math import now_ms
from .state_store import ACTIVITY_LOG_KEY, StateStore, TRANSITIONS_KEY

logger = logging.getLogger(__name__)

MAX_ACTIVITY_ENTRIES = 200
MAX_TRANSITIONS = 200
ACTIVITY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class HvacTransition:
    """A change of detected plant mode."""

    timestamp: int  # epoch ms
    previous_mode: str
    mode: str
    details: str = ""


class HistoryTracker:
    """Bounded activity log and transition log."""

    def __init__(
        self,
        state_store: StateStore,
        tz_name: str = "UTC",
        clock: Callable[[], int] = now_ms
    ):
        """Initialize history tracker.

        Args:
            state_store: Store holding both logs
            tz_name: Time zone used to format activity timestamps
            clock: Epoch-millisecond clock
        """
        self.state_store = state_store
        self.tz_name = tz_name
        self.clock = clock

    def _format_time(self, timestamp_ms: int) -> str:
        dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
        return dt.astimezone(ZoneInfo(self.tz_name)).strftime(ACTIVITY_TIME_FORMAT)

    def add_activity(self, message: str) -> str:
        """Append "<local time> - <message>" to the activity log."""
        line = f"{self._format_time(self.clock())} - {message}"

        def _apply(entries):
            entries = list(entries or [])
            entries.append(line)
            return entries[-MAX_ACTIVITY_ENTRIES:]

        self.state_store.update(ACTIVITY_LOG_KEY, _apply, default=[])
        return line

    def get_activity(self, limit: Optional[int] = None) -> list[str]:
        """Activity lines, oldest first.

        Args:
            limit: Return only the most recent N lines (None = all)
        """
        entries = self.state_store.get(ACTIVITY_LOG_KEY, []) or []
        if limit:
            entries = entries[-limit:]
        return entries

    def replace_activity(self, entries: list[str]) -> None:
        self.state_store.set(ACTIVITY_LOG_KEY, [str(e) for e in entries][-MAX_ACTIVITY_ENTRIES:])

    def add_transition(self, previous_mode: str, mode: str, details: str = "") -> HvacTransition:
        """Record a plant mode change and mirror it into the activity log."""
        transition = HvacTransition(
            timestamp=self.clock(),
            previous_mode=previous_mode,
            mode=mode,
            details=details,
        )

        def _apply(entries):
            entries = list(entries or [])
            entries.append(asdict(transition))
            return entries[-MAX_TRANSITIONS:]

        self.state_store.update(TRANSITIONS_KEY, _apply, default=[])
        suffix = f" ({details})" if details else ""
        logger.info(f"HVAC Transition: {previous_mode} -> {mode}{suffix}")
        self.add_activity(f"HVAC State Change: {previous_mode} -> {mode}")
        return transition

    def get_transitions(self, hours: Optional[int] = None) -> list[dict]:
        """Get transitions.

        Args:
            hours: How many hours back (None = all available)

        Returns:
            List of transitions as dicts
        """
        entries = [HvacTransition(**e) for e in self.state_store.get(TRANSITIONS_KEY, []) or []]

        if hours:
            cutoff = self.clock() - hours * 3600 * 1000
            entries = [e for e in entries if e.timestamp > cutoff]

        return [asdict(e) for e in entries]
