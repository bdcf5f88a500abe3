"""Shared fixtures: fake clock, fake Modbus client, temporary database"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from plc_collector.common.config import DataPoint, DeviceConfig, PointRange, TagRangeGroup
from plc_collector.common.exceptions import CommunicationError
from plc_collector.common.scheduler import Clock
from plc_collector.services.device import ConnectionPool
from plc_collector.storage import LocalDatabase


class FakeClock(Clock):
    """Manually advanced clock; sleep() jumps time forward instead of waiting"""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeModbusClient:
    """In-memory stand-in for ModbusClient"""

    def __init__(self, host: str, port: int = 502, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        # unit_id -> {address: value}
        self.registers: dict[int, dict[int, int]] = {}
        self.fail = False
        self.hang = False
        self.reads: list[tuple[int, int, int, str]] = []
        self.writes: list[tuple[int, int, int]] = []
        self.broken_count = 0
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def load(self, unit_id: int, start: int, values: list[int]) -> None:
        unit = self.registers.setdefault(unit_id, {})
        for i, value in enumerate(values):
            unit[start + i] = value

    async def connect(self) -> bool:
        self._connected = not self.fail
        return self._connected

    async def disconnect(self) -> None:
        self._connected = False

    async def mark_broken(self) -> None:
        self.broken_count += 1

    async def read_registers(self, address, count, unit_id=1, register_type="holding"):
        self.reads.append((address, count, unit_id, register_type))
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise CommunicationError("Connection refused", host=self.host, port=self.port)
        self._connected = True
        unit = self.registers.get(unit_id, {})
        return [unit.get(address + i, 0) for i in range(count)]

    async def write_register(self, address, value, unit_id=1):
        if self.fail:
            raise CommunicationError("Connection refused", host=self.host, port=self.port)
        self.writes.append((address, value, unit_id))
        self.registers.setdefault(unit_id, {})[address] = value
        return True


class FakeClientFactory:
    """Client factory for ConnectionPool that remembers every client it made"""

    def __init__(self):
        self.clients: dict[str, FakeModbusClient] = {}

    def __call__(self, host: str, port: int, timeout: float) -> FakeModbusClient:
        key = f"{host}:{port}"
        if key not in self.clients:
            self.clients[key] = FakeModbusClient(host, port, timeout)
        return self.clients[key]

    def get(self, host: str, port: int) -> FakeModbusClient:
        return self(host, port, 3.0)


# 2024-05-01 10:00:00 in Asia/Jakarta (UTC+7)
START = datetime(2024, 5, 1, 3, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def db(tmp_path) -> LocalDatabase:
    return LocalDatabase(tmp_path / "collector.db")


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def pool(client_factory) -> ConnectionPool:
    return ConnectionPool(connection_timeout=1.0, client_factory=client_factory)


@pytest.fixture
def plc_device() -> DeviceConfig:
    return DeviceConfig(
        id="plc_a",
        name="PLC_A",
        host="10.0.0.10",
        port=5000,
        unit_id=1,
        start_register=5000,
        points=[
            DataPoint(name="data1", offset=0, scale=0.1),
            DataPoint(name="data2", offset=1),
            DataPoint(name="data3", offset=2),
        ],
        tag_ranges=[
            TagRangeGroup(tags=("data2", "data3"), range=PointRange(min=60, max=90)),
        ],
        default_range=PointRange(min=0, max=50),
        timeout_s=0.5,
    )
