"""
Device Poller

Reads every configured device once per round with a single block read,
decodes its points and tags them with one shared capture timestamp.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime

from ...common.config import DeviceConfig
from ...common.exceptions import CommunicationError, DecodeError, DeviceError
from ...common.logging_setup import get_service_logger, log_device_read
from ...common.scheduler import Clock, SystemClock
from .connection_pool import ConnectionPool
from .decoder import decode_point
from .device_manager import DeviceManager

logger = get_service_logger("device.poller")


@dataclass(frozen=True)
class PointReading:
    """Decoded (not yet calibrated) value of one point"""
    device_id: str
    device_name: str
    point_name: str
    raw_value: float
    timestamp: datetime


@dataclass
class DeviceRoundResult:
    """Outcome of one device in one poll round"""
    device_id: str
    device_name: str
    success: bool
    timestamp: datetime | None = None
    readings: list[PointReading] = field(default_factory=list)
    error: str | None = None
    latency_ms: float | None = None
    skipped: bool = False  # In reconnect backoff, not attempted


class DevicePoller:
    """
    Polls all devices concurrently.

    Each device is read under its own timeout, so an unreachable PLC only
    degrades itself for that round. A failed device is marked disconnected
    and its client is dropped so the next round reconnects.
    """

    def __init__(
        self,
        devices: list[DeviceConfig],
        connection_pool: ConnectionPool,
        device_manager: DeviceManager,
        clock: Clock | None = None,
    ):
        self._devices = list(devices)
        self._pool = connection_pool
        self._manager = device_manager
        self._clock = clock or SystemClock()
        self._round_count = 0

        self._manager.register_devices(self._devices)

    @property
    def devices(self) -> list[DeviceConfig]:
        return list(self._devices)

    @property
    def round_count(self) -> int:
        return self._round_count

    async def poll_round(self) -> list[DeviceRoundResult]:
        """
        Poll every device once.

        Returns:
            One result per configured device, in configuration order
        """
        self._round_count += 1
        results = await asyncio.gather(
            *(self.poll_device(device) for device in self._devices),
            return_exceptions=True,
        )

        round_results = []
        for device, result in zip(self._devices, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Unexpected error polling {device.name}: {result}")
                self._manager.record_failure(device.id, self._clock.now(), str(result))
                result = DeviceRoundResult(
                    device_id=device.id,
                    device_name=device.name,
                    success=False,
                    error=str(result),
                )
            round_results.append(result)

        return round_results

    async def poll_device(self, device: DeviceConfig) -> DeviceRoundResult:
        """Read one device's register block and decode its points"""
        if not self._manager.should_poll(device.id, self._clock.now()):
            return DeviceRoundResult(
                device_id=device.id,
                device_name=device.name,
                success=False,
                error="reconnect backoff",
                skipped=True,
            )

        if not device.points:
            return DeviceRoundResult(device_id=device.id, device_name=device.name, success=True)

        client = await self._pool.get_connection(device.host, device.port)
        started = time.perf_counter()

        try:
            block = await asyncio.wait_for(
                client.read_registers(
                    address=device.block_start,
                    count=device.block_count,
                    unit_id=device.unit_id,
                    register_type=device.register_type,
                ),
                timeout=device.timeout_s,
            )
        except (CommunicationError, asyncio.TimeoutError, OSError) as e:
            error = str(e) or type(e).__name__
            if isinstance(e, asyncio.TimeoutError):
                error = f"Read timeout after {device.timeout_s}s"
            logger.warning(f"Polling {device.name} failed: {error}")
            self._manager.record_failure(device.id, self._clock.now(), error)
            await client.mark_broken()
            return DeviceRoundResult(
                device_id=device.id,
                device_name=device.name,
                success=False,
                error=error,
            )

        latency_ms = (time.perf_counter() - started) * 1000
        timestamp = self._clock.now()
        self._manager.record_success(device.id, timestamp, latency_ms)

        first_offset = device.block_start - device.start_register
        readings = []
        for point in device.points:
            try:
                value = decode_point(block, first_offset, point)
            except DecodeError as e:
                log_device_read(logger, device.name, point.name, None, error=e.message)
                continue

            log_device_read(logger, device.name, point.name, value)
            readings.append(PointReading(
                device_id=device.id,
                device_name=device.name,
                point_name=point.name,
                raw_value=value,
                timestamp=timestamp,
            ))

        return DeviceRoundResult(
            device_id=device.id,
            device_name=device.name,
            success=True,
            timestamp=timestamp,
            readings=readings,
            latency_ms=latency_ms,
        )

    async def write_register(self, device_id: str, address: int, value: int) -> bool:
        """
        Write a single holding register on a device.

        Raises:
            DeviceError: unknown device
            CommunicationError / WriteError: from the client
        """
        device = next((d for d in self._devices if d.id == device_id), None)
        if device is None:
            raise DeviceError(f"Device not found: {device_id}", device_id=device_id)

        client = await self._pool.get_connection(device.host, device.port)
        return await client.write_register(address=address, value=value, unit_id=device.unit_id)
