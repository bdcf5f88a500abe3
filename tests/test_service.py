"""Collector pipeline wiring and health endpoints"""

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from aiohttp import test_utils

from plc_collector.common.config import (
    CalibrationRule,
    CalibrationSettings,
    CollectorConfig,
    SensorMapping,
)
from plc_collector.common.models import RawSample
from plc_collector.services.alarm import AlarmPhase
from plc_collector.services.collector import CollectorService

from .conftest import START

JAKARTA = ZoneInfo("Asia/Jakarta")


@pytest.fixture
def service(plc_device, db, pool, client_factory, clock):
    client_factory.get(plc_device.host, plc_device.port).load(1, 5000, [253, 75, 95])
    config = CollectorConfig(
        site_name="test",
        devices=[plc_device],
        calibration=CalibrationSettings(
            rules={"linear": CalibrationRule(sensor_type="linear", lookup_table=[(0, 0), (100, 50)])},
            mappings=[SensorMapping(device_id="plc_a", point_name="data1", sensor_type="linear")],
        ),
    )
    return CollectorService(config, database=db, connection_pool=pool, clock=clock, health_port=0)


async def test_poll_once_calibrates_stores_and_attaches_ranges(service, db):
    samples = await service.poll_once()

    by_point = {s.point_name: s for s in samples}
    assert by_point["data1"].value == 13  # 25.3 -> 12.65 -> rounded
    assert by_point["data2"].value == 75
    assert (by_point["data1"].range_min, by_point["data1"].range_max) == (0, 50)
    assert (by_point["data3"].range_min, by_point["data3"].range_max) == (60, 90)
    assert {s.timestamp for s in samples} == {START}

    stored = db.get_samples(device_id="plc_a")
    assert sorted(s.point_name for s in stored) == ["data1", "data2", "data3"]


async def test_out_of_range_point_alarms_after_delay(service, db, clock):
    for _ in range(12):
        await service.poll_once()
        clock.advance(5)
    assert db.get_active_alarms() == []
    state = service.alarms.debouncer.get_state("plc_a", "data3")
    assert state.phase == AlarmPhase.PENDING_ACTIVE

    await service.poll_once()  # 60 s after the first excursion
    active = db.get_active_alarms()
    assert [(a["point_name"], a["alarm_type"]) for a in active] == [("data3", "HIGH")]


async def test_failed_device_produces_no_samples(service, client_factory, plc_device):
    client_factory.get(plc_device.host, plc_device.port).fail = True
    assert await service.poll_once() == []
    assert not service.device_manager.get_status("plc_a").is_online


async def test_start_and_stop(service, db, clock):
    db.set_watermark(START - timedelta(minutes=20))
    await service.start()
    assert service.is_running
    assert service.aggregator.watermark == START  # caught up during start
    assert service.scheduler.get("poll") is not None
    assert service.scheduler.get("retention") is not None

    await service.stop()
    assert not service.is_running


async def test_run_until_shutdown_requested(service):
    task = asyncio.create_task(service.run())
    while not service.is_running:
        await asyncio.sleep(0)

    service.request_shutdown()
    await asyncio.wait_for(task, timeout=5)
    assert not service.is_running


async def test_health_endpoints(service):
    await service.poll_once()

    async with test_utils.TestClient(test_utils.TestServer(service.create_health_app())) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        health = await resp.json()
        assert health["service"] == "collector"
        assert health["devices"] == {"total": 1, "online": 1, "offline": 0}
        assert health["poll_rounds"] == 1

        resp = await client.get("/devices")
        devices = await resp.json()
        assert devices["plc_a"]["status"] == "connected"
        assert devices["plc_a"]["last_latency_ms"] is not None

        resp = await client.get("/alarms")
        alarms = await resp.json()
        assert [(a["point_name"], a["phase"]) for a in alarms] == [("data3", "pending_active")]


def sample_at(ts: datetime, value: float) -> RawSample:
    return RawSample("plc_a", "PLC_A", "data2", value, ts)


async def test_poll_once_removes_previous_day_samples(service, db):
    db.set_watermark(START)
    db.insert_samples_batch([sample_at(START - timedelta(days=1), 70)])

    await service.poll_once()

    stored = db.get_samples(device_id="plc_a")
    assert len(stored) == 3
    assert {s.timestamp for s in stored} == {START}


async def test_restart_across_midnight_aggregates_before_cleanup(service, db, clock):
    watermark = datetime(2024, 5, 1, 23, 40, tzinfo=JAKARTA)
    db.set_watermark(watermark)
    db.insert_samples_batch([sample_at(watermark + timedelta(minutes=m), 70 + m) for m in range(10)])
    clock.set(datetime(2024, 5, 2, 0, 30, tzinfo=JAKARTA))

    await service.start()
    try:
        rows = [a for a in db.get_aggregates() if a.window_start == watermark]
        assert len(rows) == 1
        assert rows[0].sample_count == 10
        assert rows[0].mean_value == pytest.approx(74.5)
        assert service.aggregator.watermark == datetime(2024, 5, 2, 0, 20, tzinfo=JAKARTA)
        assert db.get_samples() == []
    finally:
        await service.stop()


async def test_calibration_crash_stores_raw_value(service, monkeypatch):
    def explode(device_id, point_name, raw_value):
        raise RuntimeError("calibration bug")

    monkeypatch.setattr(service.calibration, "calibrate", explode)
    samples = await service.poll_once()

    by_point = {s.point_name: s.value for s in samples}
    assert by_point["data1"] == pytest.approx(25.3)
    assert by_point["data3"] == 95


async def test_round_listeners_and_all_devices_failed(service, client_factory, plc_device):
    rounds = []
    service.add_round_listener(rounds.append)
    service.add_round_listener(lambda poll_round: 1 / 0)

    await service.poll_once()
    client_factory.get(plc_device.host, plc_device.port).fail = True
    await service.poll_once()

    assert [(r.devices_ok, r.devices_failed, r.all_failed) for r in rounds] == [
        (1, 0, False),
        (0, 1, True),
    ]
    assert len(rounds[0].samples) == 3

    service.remove_round_listener(rounds.append)
    await service.poll_once()
    assert len(rounds) == 2


async def test_latest_values_endpoint(service, client_factory, plc_device, clock):
    await service.poll_once()
    client_factory.get(plc_device.host, plc_device.port).load(1, 5001, [80])
    clock.advance(5)
    await service.poll_once()

    latest = {s.point_name: s for s in service.latest_samples()}
    assert latest["data2"].value == 80
    assert latest["data2"].timestamp == START + timedelta(seconds=5)

    client_factory.get(plc_device.host, plc_device.port).fail = True
    await service.poll_once()

    async with test_utils.TestClient(test_utils.TestServer(service.create_health_app())) as client:
        resp = await client.get("/latest")
        body = await resp.json()
        assert [(r["point_name"], r["value"]) for r in body] == [
            ("data1", 13), ("data2", 80), ("data3", 95),
        ]
        assert body[1]["range_min"] == 60

        health = await (await client.get("/health")).json()
        assert health["all_devices_failed_rounds"] == 1
