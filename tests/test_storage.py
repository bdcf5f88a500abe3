"""Local SQLite database"""

from datetime import timedelta

from plc_collector.common.models import RawSample

from .conftest import START


def test_samples_round_trip_with_ranges(db):
    db.insert_samples_batch([
        RawSample("plc_a", "PLC_A", "data2", 75.0, START, range_min=60, range_max=90),
        RawSample("plc_a", "PLC_A", "data1", 1.5, START + timedelta(seconds=5)),
    ])

    samples = db.get_samples(device_id="plc_a")
    assert [(s.point_name, s.range_min, s.range_max) for s in samples] == [
        ("data2", 60, 90),
        ("data1", None, None),
    ]
    assert db.latest_sample_timestamp() == START + timedelta(seconds=5)


def test_batch_insert_is_chunked(db):
    db.BATCH_CHUNK_SIZE = 10
    samples = [
        RawSample("plc_a", "PLC_A", "data1", float(i), START + timedelta(seconds=i))
        for i in range(25)
    ]
    assert db.insert_samples_batch(samples) == 25
    assert db.get_stats()["raw_samples"] == 25


def test_upsert_overwrites_mean_and_end(db):
    db.upsert_window("plc_a", "data1", START, START + timedelta(minutes=20), 10.0, 2)
    db.upsert_window("plc_a", "data1", START, START + timedelta(minutes=20), 12.0, 3)

    rows = db.get_aggregates()
    assert len(rows) == 1
    assert rows[0].mean_value == 12.0
    assert rows[0].sample_count == 3
    assert db.latest_window_end() == START + timedelta(minutes=20)


def test_watermark_state(db):
    assert db.get_watermark() is None
    db.set_watermark(START)
    db.set_watermark(START + timedelta(minutes=20))
    assert db.get_watermark() == START + timedelta(minutes=20)


def test_alarm_log_lifecycle(db):
    alarm_id = db.insert_alarm("plc_a", "PLC_A", "data3", "HIGH", 95.0, 90.0, START)
    assert alarm_id > 0
    assert [a["id"] for a in db.get_active_alarms()] == [alarm_id]

    assert db.resolve_alarm("plc_a", "data3", START + timedelta(minutes=4)) == 1
    assert db.get_active_alarms() == []
    assert db.resolve_alarm("plc_a", "data3", START + timedelta(minutes=5)) == 0
    assert db.get_stats()["active_alarms"] == 0
