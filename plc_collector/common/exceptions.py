"""
Custom Exception Classes for the PLC Collector

Hierarchical exception structure for error handling across services.
"""


class CollectorError(Exception):
    """Base exception for all collector errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(CollectorError):
    """Configuration-related errors (fatal at startup)"""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(f"Config Error: {message}", recoverable=False)


class DeviceError(CollectorError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        device_name: str | None = None,
        recoverable: bool = True,
    ):
        self.device_id = device_id
        self.device_name = device_name
        super().__init__(f"Device Error: {message}", recoverable)


class CommunicationError(DeviceError):
    """Modbus/network communication errors"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        device_name: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_id, device_name, recoverable=True)


class WriteError(DeviceError):
    """Register write failed errors"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        device_name: str | None = None,
        register: int | None = None,
        value: int | None = None,
    ):
        self.register = register
        self.value = value
        super().__init__(message, device_id, device_name, recoverable=True)


class DecodeError(CollectorError):
    """A single point could not be decoded from its registers"""

    def __init__(self, message: str, point_name: str | None = None):
        self.point_name = point_name
        super().__init__(f"Decode Error: {message}", recoverable=True)


class StorageError(CollectorError):
    """Local database read/write errors"""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(f"Storage Error: {message}", recoverable=True)


class ServiceError(CollectorError):
    """Service lifecycle errors"""

    def __init__(self, message: str, service_name: str, recoverable: bool = True):
        self.service_name = service_name
        super().__init__(f"Service [{service_name}]: {message}", recoverable)
