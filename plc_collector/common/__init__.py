"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Interval and daily schedulers with injectable clock
- timestamp.py - Window alignment and storage timestamp format
"""

from .config import (
    CollectorConfig,
    DeviceConfig,
    DataPoint,
    PointRange,
    TagRangeGroup,
    CalibrationRule,
    CalibrationSegment,
    CalibrationSettings,
    SensorMapping,
    PollSettings,
    AlarmSettings,
    HistorySettings,
    StorageSettings,
    RegisterDataType,
    load_collector_config,
)
from .exceptions import (
    CollectorError,
    ConfigError,
    DeviceError,
    CommunicationError,
    WriteError,
    DecodeError,
    StorageError,
    ServiceError,
)
from .logging_setup import (
    configure_logging,
    get_service_logger,
    log_device_read,
    log_poll_round,
    log_alarm,
)
from .scheduler import Clock, SystemClock, ScheduledLoop, DailyTask, SchedulerGroup

__all__ = [
    # Config
    "CollectorConfig",
    "DeviceConfig",
    "DataPoint",
    "PointRange",
    "TagRangeGroup",
    "CalibrationRule",
    "CalibrationSegment",
    "CalibrationSettings",
    "SensorMapping",
    "PollSettings",
    "AlarmSettings",
    "HistorySettings",
    "StorageSettings",
    "RegisterDataType",
    "load_collector_config",
    # Exceptions
    "CollectorError",
    "ConfigError",
    "DeviceError",
    "CommunicationError",
    "WriteError",
    "DecodeError",
    "StorageError",
    "ServiceError",
    # Logging
    "configure_logging",
    "get_service_logger",
    "log_device_read",
    "log_poll_round",
    "log_alarm",
    # Scheduling
    "Clock",
    "SystemClock",
    "ScheduledLoop",
    "DailyTask",
    "SchedulerGroup",
]
