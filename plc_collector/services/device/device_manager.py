"""
Device Manager

Per-device health: online flag, last successful round, last error, round
latency and the reconnect backoff that keeps an unreachable PLC from
costing a full timeout every poll.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from ...common.config import DeviceConfig
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.manager")


@dataclass
class DeviceStatus:
    device_id: str
    device_name: str
    is_online: bool = False
    last_seen: datetime | None = None
    last_error: str | None = None
    last_latency_ms: float | None = None
    consecutive_failures: int = 0
    backoff_seconds: int = 0
    next_retry_at: datetime | None = None

    @property
    def in_backoff(self) -> bool:
        return self.next_retry_at is not None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "status": "connected" if self.is_online else "disconnected",
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "last_error": self.last_error,
            "last_latency_ms": self.last_latency_ms,
            "consecutive_failures": self.consecutive_failures,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


class DeviceManager:
    """
    Status registry for polled devices.

    The first failed round marks a device disconnected. From the
    OFFLINE_THRESHOLD-th consecutive failure on, the poller skips it until
    next_retry_at; the wait doubles with each further failure up to
    MAX_BACKOFF_SECONDS. One successful round clears everything.
    """

    OFFLINE_THRESHOLD = 3
    INITIAL_BACKOFF_SECONDS = 5
    MAX_BACKOFF_SECONDS = 60

    def __init__(self):
        self._devices: dict[str, DeviceStatus] = {}

    def register_device(self, device: DeviceConfig) -> None:
        self._devices[device.id] = DeviceStatus(device_id=device.id, device_name=device.name)

    def register_devices(self, devices: list[DeviceConfig]) -> None:
        for device in devices:
            self.register_device(device)
        logger.debug(f"Tracking {len(self._devices)} device(s)")

    @classmethod
    def backoff_for(cls, consecutive_failures: int) -> int:
        """Seconds to wait after this many failures in a row (0 = no wait)"""
        doublings = consecutive_failures - cls.OFFLINE_THRESHOLD
        if doublings < 0:
            return 0
        return min(cls.INITIAL_BACKOFF_SECONDS << min(doublings, 16), cls.MAX_BACKOFF_SECONDS)

    def should_poll(self, device_id: str, now: datetime) -> bool:
        status = self._devices.get(device_id)
        if status is None or not status.in_backoff:
            return True
        return now >= status.next_retry_at

    def record_success(self, device_id: str, now: datetime, latency_ms: float) -> None:
        status = self._devices.get(device_id)
        if status is None:
            return
        if status.consecutive_failures:
            logger.info(
                f"{status.device_name} back online after "
                f"{status.consecutive_failures} failed round(s)"
            )

        status.is_online = True
        status.last_seen = now
        status.last_latency_ms = round(latency_ms, 1)
        status.last_error = None
        status.consecutive_failures = 0
        status.backoff_seconds = 0
        status.next_retry_at = None

    def record_failure(self, device_id: str, now: datetime, error: str) -> None:
        status = self._devices.get(device_id)
        if status is None:
            return
        if status.is_online:
            logger.warning(f"{status.device_name} went offline: {error}")

        status.is_online = False
        status.last_error = error
        status.consecutive_failures += 1

        backoff = self.backoff_for(status.consecutive_failures)
        if backoff:
            if backoff != status.backoff_seconds:
                logger.info(f"{status.device_name} unreachable, retrying every {backoff}s")
            status.backoff_seconds = backoff
            status.next_retry_at = now + timedelta(seconds=backoff)

    def get_status(self, device_id: str) -> DeviceStatus | None:
        return self._devices.get(device_id)

    def get_all_status(self) -> dict[str, DeviceStatus]:
        return dict(self._devices)

    def get_device_count(self) -> dict:
        online = sum(status.is_online for status in self._devices.values())
        return {
            "total": len(self._devices),
            "online": online,
            "offline": len(self._devices) - online,
        }
