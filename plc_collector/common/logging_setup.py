"""
Structured Logging Setup

All collector loggers live under the "plc_collector" namespace and share a
single stdout handler installed on the package logger. Service loggers are
children that propagate to it, so one call changes the level or format of
the whole process.

Environment:
    COLLECTOR_LOG_LEVEL   DEBUG, INFO, WARNING, ERROR, CRITICAL (default INFO)
    COLLECTOR_LOG_FORMAT  "json" (default) or "text"
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "plc_collector"

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(service)s: %(message)s"

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "service"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extra fields flattened in"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the service name, keeping caller extras"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**kwargs.get("extra", {}), "service": self.extra["service"]}
        return msg, kwargs


def _level(log_level: str) -> int:
    return getattr(logging, log_level.upper(), logging.INFO)


def configure_logging(
    log_level: str | None = None,
    json_format: bool | None = None,
) -> logging.Logger:
    """
    Install the collector's stdout handler, replacing any earlier one.

    Args:
        log_level: Level name; defaults to COLLECTOR_LOG_LEVEL
        json_format: JSON lines if True, plain text if False;
            defaults to COLLECTOR_LOG_FORMAT

    Returns:
        The package logger every service logger propagates to
    """
    if log_level is None:
        log_level = os.environ.get("COLLECTOR_LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.environ.get("COLLECTOR_LOG_FORMAT", "json").lower() == "json"

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger(ROOT_LOGGER)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_level(log_level))
    root.propagate = False
    return root


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """Logger for one service, e.g. "device.poller" or "history.aggregator"."""
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    logger = logging.getLogger(f"{ROOT_LOGGER}.{service_name}")
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every collector logger at once"""
    logging.getLogger(ROOT_LOGGER).setLevel(_level(log_level))


# Convenience loggers for common operations
def log_device_read(
    logger: logging.LoggerAdapter,
    device_name: str,
    point: str,
    value: Any,
    error: str | None = None,
) -> None:
    """Log one decoded point, or why it was dropped"""
    if error is None:
        logger.debug(
            f"Read {device_name}.{point} = {value}",
            extra={"device": device_name, "point": point, "value": value},
        )
    else:
        logger.warning(
            f"Dropping {device_name}.{point}: {error}",
            extra={"device": device_name, "point": point},
        )


def log_poll_round(
    logger: logging.LoggerAdapter,
    sample_count: int,
    devices_ok: int,
    devices_failed: int,
    execution_time_ms: float,
) -> None:
    """Log a completed poll round"""
    level = logging.WARNING if devices_failed and not devices_ok else logging.INFO
    logger.log(
        level,
        f"Poll round: samples={sample_count}, ok={devices_ok}, "
        f"failed={devices_failed}, took={execution_time_ms:.0f}ms",
        extra={
            "sample_count": sample_count,
            "devices_ok": devices_ok,
            "devices_failed": devices_failed,
            "execution_time_ms": execution_time_ms,
        },
    )


def log_alarm(
    logger: logging.LoggerAdapter,
    kind: str,
    device_name: str,
    point: str,
    message: str,
    direction: str | None = None,
) -> None:
    """Activations are warnings, resolutions are info"""
    level = logging.WARNING if kind == "activate" else logging.INFO
    logger.log(
        level,
        f"ALARM [{kind.upper()}] {device_name}.{point}: {message}",
        extra={
            "alarm_kind": kind,
            "device": device_name,
            "point": point,
            "direction": direction,
        },
    )
