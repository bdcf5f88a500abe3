"""Structured logging helpers"""

import json
import logging

from plc_collector.common.logging_setup import (
    ROOT_LOGGER,
    JsonFormatter,
    get_service_logger,
    log_alarm,
    log_device_read,
    set_log_level,
)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


def capture(service_name):
    logger = get_service_logger(service_name)
    handler = ListHandler()
    logger.logger.addHandler(handler)
    return logger, handler


def test_json_formatter_includes_service_and_extra_fields():
    record = logging.LogRecord("plc_collector.x", logging.WARNING, __file__, 1, "hello %s", ("there",), None)
    record.service = "alarm.manager"
    record.device = "PLC_A"

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "hello there"
    assert data["level"] == "WARNING"
    assert data["service"] == "alarm.manager"
    assert data["device"] == "PLC_A"
    assert "lineno" not in data


def test_service_logger_keeps_caller_extras():
    logger, handler = capture("test.extras")
    logger.warning("x", extra={"device": "PLC_B"})

    record = handler.records[0]
    assert record.service == "test.extras"
    assert record.device == "PLC_B"


def test_alarm_helper_levels():
    logger, handler = capture("test.alarms")

    log_alarm(logger, "activate", "PLC_A", "data3", "95 above 90", direction="HIGH")
    log_alarm(logger, "resolve", "PLC_A", "data3", "back in range")

    assert [r.levelno for r in handler.records] == [logging.WARNING, logging.INFO]
    first = handler.records[0]
    assert first.direction == "HIGH"
    assert "ALARM [ACTIVATE] PLC_A.data3" in first.getMessage()


def test_dropped_point_is_a_warning():
    logger, handler = capture("test.reads")
    log_device_read(logger, "PLC_A", "data4", None, error="non-finite value")

    assert handler.records[0].levelno == logging.WARNING
    assert handler.records[0].getMessage() == "Dropping PLC_A.data4: non-finite value"


def test_set_log_level_applies_to_package_logger():
    logger = get_service_logger("test.level")
    set_log_level("ERROR")
    try:
        assert logging.getLogger(ROOT_LOGGER).level == logging.ERROR
        assert not logger.isEnabledFor(logging.WARNING)
    finally:
        set_log_level("INFO")
