"""Tests for the cycle orchestrator."""

import pytest

from core.ventflow.dab_math import fahrenheit_to_celsius
from core.ventflow import devices as device_strategies
from core.ventflow.exceptions import ConfigurationError, MissingInputError, SensorError
from core.ventflow.models import CycleRecord, FinalizeParams, VentInfo
from core.ventflow.orchestrator import (
    EVALUATE_REBALANCE_JOB,
    FINALIZE_JOB,
    INITIALIZE_JOB,
    REBALANCE_JOB,
    CycleOrchestrator,
)
from core.ventflow.state_store import CYCLE_KEY, DIAGNOSTICS_KEY, STARTING_TEMPS_KEY

from conftest import MINUTE, T0, FakeDeviceLayer


def _cooling_params(**overrides):
    params = dict(
        vents_by_room={"living": ["v1"]},
        started_cycle=T0,
        started_running=T0,
        finished_running=T0 + 20 * MINUTE,
        hvac_mode="cooling",
        cycle_id="cooling-1",
    )
    params.update(overrides)
    return FinalizeParams(**params)


@pytest.fixture
def heating_cycle(orchestrator, devices, scheduler):
    """Plant heating with both rooms at 18°C and the plan applied."""
    devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)
    orchestrator.update_hvac_state()
    scheduler.fire(INITIALIZE_JOB)
    return orchestrator


class TestCycleLifecycle:
    def test_plant_start_opens_cycle(self, orchestrator, devices, scheduler, state_store, history):
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)

        assert orchestrator.update_hvac_state() == "heating"

        cycle = state_store.get_cycle()
        assert cycle.mode == "heating"
        assert cycle.started_running == T0
        assert cycle.started_cycle is None
        assert orchestrator.phase == CycleOrchestrator.INITIALIZING
        assert scheduler.once[INITIALIZE_JOB][0] == 1000
        assert scheduler.every[EVALUATE_REBALANCE_JOB][0] == 300
        assert scheduler.every[REBALANCE_JOB][0] == 1800
        assert state_store.get(STARTING_TEMPS_KEY) == {"v1": 18.0, "v2": 18.0}

        transitions = history.get_transitions()
        assert [(t["previous_mode"], t["mode"]) for t in transitions] == [("idle", "heating")]

    def test_initialize_applies_plan(self, heating_cycle, devices, state_store, history):
        assert heating_cycle.phase == CycleOrchestrator.RUNNING
        assert state_store.get_cycle().started_cycle == T0
        assert devices.writes == [("v1", 100), ("v2", 100)]
        assert history.get_activity()[-1].endswith(
            "Applied 2 vent change(s): Living Room: 0%->100%, Bedroom: 0%->100%"
        )
        assert state_store.get(DIAGNOSTICS_KEY)["last_plan"]["targets"] == {"v1": 100, "v2": 100}

    def test_steady_poll_changes_nothing(self, heating_cycle, history, scheduler):
        heating_cycle.update_hvac_state()
        assert len(history.get_transitions()) == 1
        assert INITIALIZE_JOB not in scheduler.once

    def test_plant_stop_schedules_finalize(self, heating_cycle, devices, scheduler, state_store):
        devices.set_all(duct_temp_c=18.0)

        assert heating_cycle.update_hvac_state() == "idle"

        assert state_store.get_cycle() is None
        assert heating_cycle.phase == CycleOrchestrator.FINALIZING
        assert scheduler.once[FINALIZE_JOB][0] == 30000
        assert scheduler.every == {}

    def test_full_cycle_learns_rates(self, heating_cycle, devices, scheduler, clock, rate_store):
        clock.advance(minutes=20)
        devices.set_all(duct_temp_c=20.0, room_temp_c=20.0)
        heating_cycle.update_hvac_state()

        learned = scheduler.fire(FINALIZE_JOB)

        assert learned == {"living": pytest.approx(0.1), "bedroom": pytest.approx(0.1)}
        assert devices.get_rate("v1", "heating") == pytest.approx(0.1)
        assert rate_store.hourly_rates("living", "heating", 10) == pytest.approx([0.1])
        assert heating_cycle.phase == CycleOrchestrator.IDLE

    def test_new_cycle_cancels_stale_finalize(self, heating_cycle, devices, scheduler):
        devices.set_all(duct_temp_c=18.0)
        heating_cycle.update_hvac_state()
        devices.set_all(duct_temp_c=35.0)
        heating_cycle.update_hvac_state()

        assert FINALIZE_JOB not in scheduler.once
        assert INITIALIZE_JOB in scheduler.once

    def test_initialize_skipped_when_cycle_already_ended(self, orchestrator, devices, scheduler, state_store):
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)
        orchestrator.update_hvac_state()
        state_store.clear_cycle()

        assert scheduler.fire(INITIALIZE_JOB) is None
        assert devices.writes == []

    def test_initialize_without_setpoint_is_skipped(self, orchestrator, devices, scheduler, monkeypatch):
        monkeypatch.setattr(device_strategies, "SETPOINT_STRATEGIES", [])
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)
        orchestrator.update_hvac_state()

        with pytest.raises(MissingInputError):
            orchestrator._require_setpoint("heating", orchestrator.read_all())
        assert scheduler.fire(INITIALIZE_JOB) is None
        assert devices.writes == []

    def test_initialize_without_vents_is_skipped(self, state_store, scheduler, rate_store, detector, settings, clock):
        orchestrator = CycleOrchestrator(FakeDeviceLayer([]), state_store, scheduler, rate_store, detector, settings, clock=clock)
        assert orchestrator.initialize_room_states("heating") is None

    def test_initialize_uses_learned_average(self, orchestrator, devices, rate_store, state_store):
        rate_store.append("living", "heating", 10, 0.2)
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)
        orchestrator.update_hvac_state()
        orchestrator.initialize_room_states("heating")
        assert devices.get_rate("v1", "heating") == pytest.approx(0.2)
        assert devices.get_rate("v2", "heating") == 0.0


class TestCoolingEnd:
    def test_dynamic_end_stops_cycle_while_duct_still_cold(self, orchestrator, devices, clock, state_store, history):
        devices.set_all(room_temp_c=24.0)
        sequence = [55.0, 55.0, 55.0, 55.0, 56.5, 58.5]
        for duct_f in sequence:
            devices.set_all(duct_temp_c=fahrenheit_to_celsius(duct_f))
            assert orchestrator.update_hvac_state() == "cooling"
            clock.advance(seconds=60)

        devices.set_all(duct_temp_c=fahrenheit_to_celsius(58.5))
        assert orchestrator.update_hvac_state() == "idle"
        assert state_store.get_cycle() is None
        assert history.get_transitions()[-1]["details"] == "Dynamic end detected"

        # Duct still reads cold but the call is over
        clock.advance(seconds=60)
        assert orchestrator.update_hvac_state() == "idle"
        assert state_store.get_cycle() is None

    def test_latch_clears_when_duct_recovers(self, orchestrator, devices, state_store):
        state_store.update_map_value(DIAGNOSTICS_KEY, "cooling_end_latched", True)
        devices.set_all(duct_temp_c=12.0, room_temp_c=24.0)
        assert orchestrator.update_hvac_state() == "idle"

        devices.set_all(duct_temp_c=24.0)
        orchestrator.update_hvac_state()
        assert state_store.get(DIAGNOSTICS_KEY)["cooling_end_latched"] is False


class TestFanOnly:
    def test_opens_all_vents_once(self, orchestrator, devices, settings):
        settings.fan_only_open_all_vents = True
        devices.state = "fan only"
        devices.set_all(duct_temp_c=21.0, room_temp_c=21.0)

        assert orchestrator.update_hvac_state() == "idle"
        orchestrator.update_hvac_state()

        assert devices.writes == [("v1", 100), ("v2", 100)]

    def test_ends_running_cycle(self, heating_cycle, devices, settings, scheduler):
        settings.fan_only_open_all_vents = True
        devices.state = "fan only"

        assert heating_cycle.update_hvac_state() == "idle"
        assert FINALIZE_JOB in scheduler.once

    def test_ignored_when_disabled(self, orchestrator, devices):
        devices.state = "fan only"
        devices.set_all(duct_temp_c=21.0, room_temp_c=21.0)
        orchestrator.update_hvac_state()
        assert devices.writes == []


class TestFinalize:
    @pytest.fixture
    def cooled_room(self, devices, state_store):
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0})
        devices.set_reading("v1", room_temp_c=22.0, percent_open=50)
        return devices

    def test_learns_normalized_rate(self, orchestrator, cooled_room, rate_store):
        learned = orchestrator.finalize_room_states(_cooling_params())

        assert learned == {"living": pytest.approx(0.2)}
        assert cooled_room.get_rate("v1", "cooling") == pytest.approx(0.2)
        assert rate_store.hourly_rates("living", "cooling", 10) == pytest.approx([0.2])

    def test_same_cycle_is_finalized_once(self, orchestrator, cooled_room, rate_store, state_store):
        orchestrator.finalize_room_states(_cooling_params())
        assert orchestrator.finalize_room_states(_cooling_params()) == {}
        assert len(rate_store.hourly_rates("living", "cooling", 10)) == 1
        assert state_store.get(DIAGNOSTICS_KEY)["hourly_commits"] == 1

    def test_accepts_dict_params(self, orchestrator, cooled_room):
        params = _cooling_params().__dict__
        assert orchestrator.finalize_room_states(params) == {"living": pytest.approx(0.2)}

    def test_short_cycle_is_discarded(self, orchestrator, cooled_room):
        assert orchestrator.finalize_room_states(_cooling_params(finished_running=T0 + 30 * 1000)) == {}

    def test_missing_start_without_cycle_aborts(self, orchestrator, state_store, history):
        learned = orchestrator.finalize_room_states(FinalizeParams(finished_running=T0, hvac_mode="cooling"))

        assert learned == {}
        assert state_store.get(DIAGNOSTICS_KEY)["cycle_aborts"] == 1
        assert "Cycle aborted" in history.get_activity()[-1]

    def test_no_params_aborts(self, orchestrator, state_store):
        assert orchestrator.finalize_room_states(None) == {}
        assert state_store.get(DIAGNOSTICS_KEY)["cycle_aborts"] == 1

    def test_missing_fields_reconstructed_from_cycle(self, orchestrator, devices, state_store, clock):
        state_store.set(CYCLE_KEY, CycleRecord(
            "cooling", started_running=T0, started_cycle=T0, cycle_id="cooling-2"
        ).to_dict())
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0, "v2": 24.0})
        devices.set_all(room_temp_c=22.0, percent_open=50)
        clock.advance(minutes=20)

        learned = orchestrator.finalize_room_states({})

        assert learned == {"living": pytest.approx(0.2), "bedroom": pytest.approx(0.2)}

    def test_change_below_noise_floor_keeps_rate(self, orchestrator, devices, state_store):
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0})
        devices.set_reading("v1", room_temp_c=23.95, percent_open=50)
        devices.set_rate("v1", "cooling", 0.3)

        assert orchestrator.finalize_room_states(_cooling_params()) == {"living": pytest.approx(0.3)}

    def test_unmeasurable_open_vent_gets_minimum_rate(self, orchestrator, devices, state_store):
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0})
        devices.set_reading("v1", room_temp_c=23.95, percent_open=50)

        assert orchestrator.finalize_room_states(_cooling_params()) == {"living": pytest.approx(0.001)}

    def test_closed_vent_learns_nothing(self, orchestrator, devices, state_store):
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0})
        devices.set_reading("v1", room_temp_c=22.0, percent_open=0)

        assert orchestrator.finalize_room_states(_cooling_params()) == {}

    def test_vent_without_start_temperature_is_skipped(self, orchestrator, devices):
        devices.set_reading("v1", room_temp_c=22.0, percent_open=50)
        assert orchestrator.finalize_room_states(_cooling_params()) == {}

    def test_room_opening_is_capped_and_shared(self, state_store, scheduler, rate_store, detector, settings, clock):
        devices = FakeDeviceLayer([
            VentInfo("v1", "living", "Living Room"),
            VentInfo("v1b", "living", "Living Room"),
        ])
        orchestrator = CycleOrchestrator(devices, state_store, scheduler, rate_store, detector, settings, clock=clock)
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0, "v1b": 24.0})
        devices.set_reading("v1", room_temp_c=22.0, percent_open=60)
        devices.set_reading("v1b", room_temp_c=22.0, percent_open=70)

        learned = orchestrator.finalize_room_states(_cooling_params(vents_by_room={"living": ["v1", "v1b"]}))

        assert learned == {"living": pytest.approx(0.1)}
        assert devices.get_rate("v1b", "cooling") == pytest.approx(0.1)
        assert rate_store.hourly_rates("living", "cooling", 10) == pytest.approx([0.1])

    def test_room_failure_does_not_stop_others(self, orchestrator, devices, state_store):
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0, "v2": 24.0})
        devices.set_all(room_temp_c=22.0, percent_open=50)
        devices.failing_reads = {"v2"}
        params = _cooling_params(vents_by_room={"living": ["v1"], "bedroom": ["v2"]})

        assert orchestrator.finalize_room_states(params) == {"living": pytest.approx(0.2)}

    def test_fail_fast_reraises(self, orchestrator, devices, state_store, settings):
        settings.fail_fast_finalization = True
        state_store.set(STARTING_TEMPS_KEY, {"v1": 24.0, "v2": 24.0})
        devices.set_all(room_temp_c=22.0, percent_open=50)
        devices.failing_reads = {"v2"}
        params = _cooling_params(vents_by_room={"living": ["v1"], "bedroom": ["v2"]})

        with pytest.raises(SensorError):
            orchestrator.finalize_room_states(params)

    def test_large_miss_leaves_adaptive_mark(self, orchestrator, cooled_room, rate_store, state_store):
        rate_store.append("living", "cooling", 10, 0.1)
        cooled_room.set_rate("v1", "cooling", 0.1)

        learned = orchestrator.finalize_room_states(_cooling_params())

        assert learned == {"living": pytest.approx(0.1125)}
        marks = state_store.get_rate_history().adaptive_marks
        assert len(marks) == 1
        assert marks[0].deviation_ratio == pytest.approx(1.0)
        assert rate_store.hourly_rates("living", "cooling", 10) == pytest.approx([0.1, 0.1125])


class TestRebalance:
    def test_needs_minimum_runtime(self, heating_cycle, clock):
        clock.advance(minutes=3)
        assert not heating_cycle.rebalance()

    def test_learns_and_reinitializes(self, heating_cycle, devices, clock, rate_store, state_store, history):
        clock.advance(minutes=10)
        devices.set_all(room_temp_c=19.0)

        assert heating_cycle.rebalance()

        assert rate_store.hourly_rates("living", "heating", 10) == pytest.approx([0.1])
        assert state_store.get(STARTING_TEMPS_KEY) == {"v1": 19.0, "v2": 19.0}
        assert state_store.get_cycle().started_cycle == T0 + 10 * MINUTE
        assert devices.get_rate("v1", "heating") == pytest.approx(0.1)
        assert any(line.endswith("Rebalancing vents") for line in history.get_activity())

    def test_without_cycle(self, orchestrator):
        assert not orchestrator.rebalance()

    def test_evaluate_triggers_when_room_reaches_setpoint(self, heating_cycle, devices, clock, state_store):
        clock.advance(minutes=6)
        assert not heating_cycle.evaluate_rebalancing()

        devices.set_reading("v1", room_temp_c=20.6)
        assert heating_cycle.evaluate_rebalancing()
        assert state_store.get(DIAGNOSTICS_KEY)["last_rebalance_time"] == T0 + 6 * MINUTE

        # throttled until min_runtime_for_rate_calc has passed
        assert not heating_cycle.evaluate_rebalancing()

    def test_declined_rebalance_does_not_throttle(self, heating_cycle, devices, clock, state_store):
        clock.advance(minutes=3)
        devices.set_reading("v1", room_temp_c=20.6)
        assert not heating_cycle.evaluate_rebalancing()
        assert "last_rebalance_time" not in (state_store.get(DIAGNOSTICS_KEY) or {})

        clock.advance(minutes=3)
        assert heating_cycle.evaluate_rebalancing()

    def test_backstop_rebalance_throttles_evaluate(self, heating_cycle, devices, clock, state_store):
        clock.advance(minutes=10)
        assert heating_cycle.rebalance()
        assert state_store.get(DIAGNOSTICS_KEY)["last_rebalance_time"] == T0 + 10 * MINUTE

        clock.advance(minutes=1)
        devices.set_reading("v1", room_temp_c=20.6)
        assert not heating_cycle.evaluate_rebalancing()

    def test_evaluate_ignores_inactive_rooms(self, heating_cycle, devices, clock):
        clock.advance(minutes=6)
        devices.set_reading("v1", room_temp_c=20.6, room_active=False)
        assert not heating_cycle.evaluate_rebalancing()

    def test_evaluate_without_cycle(self, orchestrator):
        assert not orchestrator.evaluate_rebalancing()


class TestOverrides:
    def test_override_pins_vent(self, orchestrator, devices, scheduler):
        assert orchestrator.set_manual_override("v1", 30) == {"v1": 30}
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)
        orchestrator.update_hvac_state()
        scheduler.fire(INITIALIZE_JOB)
        assert ("v1", 30) in devices.writes

    def test_out_of_range(self, orchestrator):
        with pytest.raises(ConfigurationError):
            orchestrator.set_manual_override("v1", 150)

    def test_unknown_vent(self, orchestrator):
        with pytest.raises(ConfigurationError):
            orchestrator.set_manual_override("nope", 30)

    def test_clear(self, orchestrator):
        orchestrator.set_manual_override("v1", 30)
        orchestrator.set_manual_override("v2", 40)
        assert orchestrator.clear_manual_override("v1") == {"v2": 40}
        assert orchestrator.clear_manual_override() == {}


class TestDiagnostic:
    def test_computes_plan_without_writing(self, orchestrator, devices, state_store):
        devices.set_all(duct_temp_c=35.0, room_temp_c=18.0)

        result = orchestrator.run_diagnostic()

        assert result["inputs"]["hvac_mode"] == "heating"
        assert result["inputs"]["global_setpoint"] == 20.0
        assert result["final_output"]["final_vent_positions"] == {"v1": 100, "v2": 100}
        assert devices.writes == []
        assert "last_diagnostic" in state_store.get(DIAGNOSTICS_KEY)

    def test_explicit_mode(self, orchestrator, devices):
        devices.set_all(room_temp_c=18.0)
        result = orchestrator.run_diagnostic("cooling")
        assert result["calculations"]["all_settled"] is True

    def test_snapshot(self, heating_cycle):
        snapshot = heating_cycle.snapshot()
        assert snapshot["phase"] == CycleOrchestrator.RUNNING
        assert snapshot["cycle"]["mode"] == "heating"
        assert "last_diagnostic" not in snapshot["diagnostics"]
