"""
Async Modbus Client

Wrapper around pymodbus for async Modbus TCP block reads and single
register writes.
"""

import asyncio

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from ...common.exceptions import CommunicationError, WriteError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")


class ModbusClient:
    """
    Async Modbus TCP client.

    Handles:
    - Idempotent connect, reconnect after the link drops
    - Holding and input register block reads
    - Single holding register writes

    One client is shared by every device behind the same host:port
    (e.g. several unit ids on one gateway), so requests are serialized
    with a per-client lock.
    """

    READ_METHODS = {
        "holding": "read_holding_registers",
        "input": "read_input_registers",
    }

    def __init__(
        self,
        host: str,
        port: int = 502,
        timeout: float = 3.0,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout

        self._client: AsyncModbusTcpClient | None = None
        self._lock = asyncio.Lock()
        self._io_lock = asyncio.Lock()
        self._connected = False
        self._broken = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> bool:
        """Establish connection to Modbus device (no-op when connected)"""
        async with self._lock:
            if self._connected and self._client and self._client.connected:
                return True

            try:
                if self._client is None:
                    self._client = AsyncModbusTcpClient(
                        host=self.host,
                        port=self.port,
                        timeout=self.timeout,
                    )

                await self._client.connect()
                self._connected = bool(self._client.connected)

                if self._connected:
                    logger.debug(f"Connected to Modbus device at {self.host}:{self.port}")
                else:
                    logger.warning(f"Failed to connect to Modbus device at {self.host}:{self.port}")

                return self._connected

            except (ModbusException, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Connection error to {self.host}:{self.port}: {e}")
                self._connected = False
                return False

    async def disconnect(self) -> None:
        """Close connection"""
        async with self._lock:
            if self._client:
                self._client.close()
                self._client = None
            self._connected = False
            logger.debug(f"Disconnected from {self.host}:{self.port}")

    async def mark_broken(self) -> None:
        """
        Flag the link as suspect after a failed or timed-out request.

        The socket is replaced by the next request, inside the I/O lock, so
        a request another unit id has in flight on this gateway is not cut.
        """
        self._broken = True

    async def read_registers(
        self,
        address: int,
        count: int,
        unit_id: int = 1,
        register_type: str = "holding",
    ) -> list[int]:
        """
        Read a contiguous register block.

        Args:
            address: Starting register address
            count: Number of registers to read
            unit_id: Modbus unit (slave) id
            register_type: "holding" or "input"

        Returns:
            Raw 16-bit register values

        Raises:
            CommunicationError: connection refused, timeout or Modbus exception
        """
        method = self.READ_METHODS.get(register_type, "read_holding_registers")

        try:
            async with self._io_lock:
                client = await self._require_connection()
                response = await getattr(client, method)(
                    address=address, count=count, device_id=unit_id
                )
        except (ModbusException, asyncio.TimeoutError) as e:
            self._connected = False
            raise self._error(f"read of {count} @ {address} failed: {str(e) or 'timeout'}") from e

        if response.isError():
            raise self._error(f"unit {unit_id} returned {response}")

        registers = list(response.registers)
        if len(registers) < count:
            raise self._error(f"short read: expected {count} registers, got {len(registers)}")
        return registers

    async def write_register(
        self,
        address: int,
        value: int,
        unit_id: int = 1,
    ) -> bool:
        """
        Write a single holding register.

        Raises:
            CommunicationError: not connected
            WriteError: device rejected the write
        """
        try:
            async with self._io_lock:
                client = await self._require_connection()
                response = await client.write_register(
                    address=address,
                    value=value,
                    device_id=unit_id,
                )
        except ModbusException as e:
            raise WriteError(f"Modbus exception: {e}", register=address, value=value) from e

        if response.isError():
            raise WriteError(f"Write failed: {response}", register=address, value=value)

        logger.debug(f"{self.host}:{self.port} unit {unit_id}: wrote {value} to {address}")
        return True

    def _error(self, message: str) -> CommunicationError:
        return CommunicationError(message, host=self.host, port=self.port)

    async def _require_connection(self) -> AsyncModbusTcpClient:
        """Connected pymodbus client, reconnecting if the link dropped. Call under _io_lock."""
        if self._broken:
            self._broken = False
            await self.disconnect()
        if not (self._connected and self._client and self._client.connected):
            self._connected = False
            if not await self.connect():
                raise self._error(f"Not connected to {self.host}:{self.port}")
        return self._client
