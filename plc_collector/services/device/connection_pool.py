"""
Modbus Connection Pool

Devices behind the same gateway (same host:port, different unit ids) share
one ModbusClient and therefore one TCP connection. Clients are created
unconnected; they connect on first read.
"""

import asyncio
from collections import Counter
from typing import Callable

from ...common.logging_setup import get_service_logger
from .modbus_client import ModbusClient

logger = get_service_logger("device.pool")

ClientFactory = Callable[[str, int, float], ModbusClient]


def default_client_factory(host: str, port: int, timeout: float) -> ModbusClient:
    return ModbusClient(host=host, port=port, timeout=timeout)


class ConnectionPool:
    """One client per gateway, handed out to every device that needs it"""

    def __init__(
        self,
        connection_timeout: float = 3.0,
        client_factory: ClientFactory | None = None,
    ):
        self._connection_timeout = connection_timeout
        self._client_factory = client_factory or default_client_factory
        self._clients: dict[tuple[str, int], ModbusClient] = {}
        self._checkouts: Counter = Counter()
        self._lock = asyncio.Lock()

    async def get_connection(self, host: str, port: int) -> ModbusClient:
        gateway = (host, port)
        async with self._lock:
            client = self._clients.get(gateway)
            if client is None:
                client = self._client_factory(host, port, self._connection_timeout)
                self._clients[gateway] = client
                logger.debug(f"New client for gateway {host}:{port}")
            self._checkouts[gateway] += 1
        return client

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            self._checkouts.clear()

        for client in clients:
            await client.disconnect()
        logger.info(f"Closed {len(clients)} gateway connection(s)")

    def get_stats(self) -> dict:
        return {
            f"{host}:{port}": {
                "connected": client.is_connected,
                "checkouts": self._checkouts[(host, port)],
            }
            for (host, port), client in self._clients.items()
        }
