"""Tests for the activity and transition history."""

from core.ventflow.history import MAX_ACTIVITY_ENTRIES, HistoryTracker


class TestActivity:
    def test_line_format(self, history):
        assert history.add_activity("hello") == "2024-01-15 10:00:00 - hello"

    def test_local_time(self, state_store, clock):
        tracker = HistoryTracker(state_store, "America/New_York", clock)
        assert tracker.add_activity("hello").startswith("2024-01-15 05:00:00")

    def test_bounded(self, history):
        for i in range(MAX_ACTIVITY_ENTRIES + 5):
            history.add_activity(f"msg {i}")
        entries = history.get_activity()
        assert len(entries) == MAX_ACTIVITY_ENTRIES
        assert entries[0].endswith("msg 5")

    def test_limit(self, history):
        for i in range(3):
            history.add_activity(f"msg {i}")
        assert [e[-5:] for e in history.get_activity(limit=2)] == ["msg 1", "msg 2"]

    def test_replace(self, history):
        history.add_activity("old")
        history.replace_activity(["a", "b"])
        assert history.get_activity() == ["a", "b"]


class TestTransitions:
    def test_recorded_and_mirrored(self, history):
        history.add_transition("idle", "cooling", "Duct below room")
        transition = history.get_transitions()[0]
        assert transition["previous_mode"] == "idle"
        assert transition["details"] == "Duct below room"
        assert history.get_activity()[-1].endswith("HVAC State Change: idle -> cooling")

    def test_hours_window(self, history, clock):
        history.add_transition("idle", "cooling")
        clock.advance(minutes=180)
        history.add_transition("cooling", "idle")
        assert len(history.get_transitions()) == 2
        assert [t["mode"] for t in history.get_transitions(hours=2)] == ["idle"]
