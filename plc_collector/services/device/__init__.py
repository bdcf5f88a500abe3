"""
Device Service - Modbus Communication

- modbus_client.py - pymodbus TCP wrapper (block read, register write)
- connection_pool.py - one client per host:port
- device_manager.py - connection status, latency, reconnect backoff
- decoder.py - register block to point values
- poller.py - concurrent per-round polling
"""

from .connection_pool import ConnectionPool
from .device_manager import DeviceManager, DeviceStatus
from .modbus_client import ModbusClient
from .poller import DevicePoller, DeviceRoundResult, PointReading

__all__ = [
    "ConnectionPool",
    "DeviceManager",
    "DeviceStatus",
    "ModbusClient",
    "DevicePoller",
    "DeviceRoundResult",
    "PointReading",
]
