"""Alarm debouncer state machine and alarm manager"""

from datetime import timedelta

from plc_collector.common.config import AlarmSettings, PointRange
from plc_collector.common.models import RawSample
from plc_collector.services.alarm import (
    AlarmDebouncer,
    AlarmManager,
    AlarmPhase,
    Direction,
    EventKind,
)

from .conftest import START

RANGE = PointRange(min=60, max=90)


def at(seconds: float):
    return START + timedelta(seconds=seconds)


def feed(debouncer, values_by_second, point="data2"):
    """Observe (second, value) pairs; return the events produced"""
    events = []
    for second, value in values_by_second:
        event = debouncer.observe("plc_a", "PLC_A", point, value, RANGE, at(second))
        if event is not None:
            events.append(event)
    return events


def run(start: int, end: int, value: float, step: int = 5):
    return [(s, value) for s in range(start, end, step)]


def test_short_excursion_is_suppressed():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 30, 95) + run(30, 300, 75))
    assert events == []
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.QUIESCENT


def test_activation_after_delay_exactly_once():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 200, 95))

    assert len(events) == 1
    event = events[0]
    assert event.kind == EventKind.ACTIVATE
    assert event.direction == Direction.HIGH
    assert event.threshold == 90
    assert event.value == 95
    assert event.timestamp == at(60)
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.ACTIVE


def test_low_direction_uses_min_threshold():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 65, 50))
    assert [(e.direction, e.threshold) for e in events] == [(Direction.LOW, 60)]


def test_range_bounds_are_inclusive():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 300, 90) + run(300, 600, 60))
    assert events == []


def test_resolution_after_delay_exactly_once():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 65, 95) + run(65, 400, 75))

    kinds = [e.kind for e in events]
    assert kinds == [EventKind.ACTIVATE, EventKind.RESOLVE]
    resolve = events[1]
    assert resolve.timestamp == at(65 + 180)
    assert resolve.direction == Direction.HIGH
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.QUIESCENT


def test_no_resolve_if_value_exits_again():
    debouncer = AlarmDebouncer()
    samples = run(0, 65, 95) + run(65, 165, 75) + run(165, 200, 95) + run(200, 300, 75)
    events = feed(debouncer, samples)

    assert [e.kind for e in events] == [EventKind.ACTIVATE]
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.PENDING_RESOLVE


def test_active_never_jumps_to_quiescent():
    debouncer = AlarmDebouncer()
    feed(debouncer, run(0, 65, 95))
    feed(debouncer, [(65, 75)])
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.PENDING_RESOLVE


def test_out_of_order_observation_is_ignored():
    debouncer = AlarmDebouncer()
    feed(debouncer, [(0, 95), (30, 95)])
    # Older and equal timestamps change nothing
    feed(debouncer, [(10, 75), (30, 75)])
    state = debouncer.get_state("plc_a", "data2")
    assert state.phase == AlarmPhase.PENDING_ACTIVE
    assert state.candidate_since == at(0)


def test_missing_data_leaves_state_untouched():
    debouncer = AlarmDebouncer()
    feed(debouncer, [(0, 95)])
    # 200 s without data is within stale_after_s; dwell keeps counting
    events = feed(debouncer, [(200, 95)])
    assert [e.kind for e in events] == [EventKind.ACTIVATE]


def test_gap_longer_than_stale_after_restarts_pending_dwell():
    debouncer = AlarmDebouncer(AlarmSettings(stale_after_s=300))
    feed(debouncer, [(0, 95)])

    events = feed(debouncer, [(1000, 95)])
    assert events == []
    state = debouncer.get_state("plc_a", "data2")
    assert state.phase == AlarmPhase.PENDING_ACTIVE
    assert state.candidate_since == at(1000)

    events = feed(debouncer, [(1060, 95)])
    assert [e.timestamp for e in events] == [at(1060)]


def test_gap_keeps_active_alarm_active():
    debouncer = AlarmDebouncer()
    feed(debouncer, run(0, 65, 95))
    events = feed(debouncer, [(5000, 95)])
    assert events == []
    assert debouncer.get_state("plc_a", "data2").phase == AlarmPhase.ACTIVE


def test_keys_are_independent():
    debouncer = AlarmDebouncer()
    events = feed(debouncer, run(0, 65, 95), point="data2")
    events += feed(debouncer, run(0, 65, 75), point="data3")
    assert [(e.point_name, e.kind) for e in events] == [("data2", EventKind.ACTIVATE)]
    assert [s.point_name for s in debouncer.get_states()] == ["data2"]


def test_zero_delays_fire_immediately():
    debouncer = AlarmDebouncer(AlarmSettings(activation_delay_s=0, resolution_delay_s=0))
    events = feed(debouncer, [(0, 95), (5, 75)])
    assert [e.kind for e in events] == [EventKind.ACTIVATE, EventKind.RESOLVE]


def test_end_to_end_high_run_scenario():
    """50 s high run is ignored, a later 70 s high run activates once"""
    debouncer = AlarmDebouncer()
    samples = (
        run(0, 50, 95)       # 50 s high
        + run(50, 300, 75)   # back in range long enough to settle
        + run(300, 370, 95)  # 70 s high
    )
    events = feed(debouncer, samples)

    assert len(events) == 1
    assert events[0].kind == EventKind.ACTIVATE
    assert events[0].direction == Direction.HIGH
    assert events[0].timestamp == at(360)


# --- Alarm manager ---

def sample(second: float, value: float, point="data2", range_min=60.0, range_max=90.0):
    return RawSample(
        device_id="plc_a",
        device_name="PLC_A",
        point_name=point,
        value=value,
        timestamp=at(second),
        range_min=range_min,
        range_max=range_max,
    )


def test_manager_persists_and_resolves_alarms(db):
    manager = AlarmManager(AlarmSettings(), database=db)

    manager.process_samples([sample(s, 95) for s in range(0, 65, 5)])
    active = db.get_active_alarms()
    assert len(active) == 1
    assert active[0]["alarm_type"] == "HIGH"
    assert active[0]["violated_value"] == 95
    assert active[0]["threshold_value"] == 90
    assert active[0]["alarm_time"] == at(60)

    manager.process_samples([sample(s, 75) for s in range(65, 300, 5)])
    assert db.get_active_alarms() == []
    log = db.get_alarm_log()
    assert log[0]["status"] == "RESOLVED"
    assert log[0]["resolved_at"] is not None


def test_manager_orders_samples_by_timestamp(db):
    manager = AlarmManager(AlarmSettings(), database=db)
    samples = [sample(s, 95) for s in range(0, 65, 5)]
    events = manager.process_samples(list(reversed(samples)))
    assert [e.kind for e in events] == [EventKind.ACTIVATE]


def test_manager_skips_samples_without_range():
    manager = AlarmManager(AlarmSettings())
    samples = [sample(s, 1e6, range_min=None, range_max=None) for s in range(0, 120, 5)]
    assert manager.process_samples(samples) == []
    assert manager.debouncer.get_states(include_quiescent=True) == []


def test_manager_disabled_does_nothing():
    manager = AlarmManager(AlarmSettings(enabled=False))
    assert manager.process_samples([sample(s, 95) for s in range(0, 120, 5)]) == []


def test_failing_listener_does_not_affect_others():
    manager = AlarmManager(AlarmSettings(activation_delay_s=0))
    received = []

    def broken(event):
        raise RuntimeError("listener down")

    manager.add_listener(broken)
    manager.add_listener(received.append)
    manager.process_samples([sample(0, 95)])

    assert [e.kind for e in received] == [EventKind.ACTIVATE]


def test_restart_restores_active_alarms(db):
    first = AlarmManager(AlarmSettings(), database=db)
    first.process_samples([sample(s, 95) for s in range(0, 65, 5)])

    second = AlarmManager(AlarmSettings(), database=db)
    assert second.restore_from_database() == 1
    state = second.debouncer.get_state("plc_a", "data2")
    assert state.phase == AlarmPhase.ACTIVE
    assert state.direction == Direction.HIGH

    # Still out of range after restart: no second activation
    events = second.process_samples([sample(s, 95) for s in range(100, 200, 5)])
    assert events == []
    assert len(db.get_active_alarms()) == 1


def test_removed_listener_is_not_called():
    manager = AlarmManager(AlarmSettings(activation_delay_s=0))
    received = []
    manager.add_listener(received.append)
    manager.remove_listener(received.append)
    manager.remove_listener(received.append)

    manager.process_samples([sample(0, 95)])
    assert received == []
    assert manager.event_count == 1
