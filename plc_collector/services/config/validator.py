"""
Configuration Validator

Checks a raw configuration dictionary before it is turned into
dataclasses, collecting every problem instead of stopping at the first.
"""

from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...common.config import REGISTER_TYPES, RegisterDataType, parse_time_of_day
from ...common.logging_setup import get_service_logger

logger = get_service_logger("config.validator")

DATATYPES = {t.value for t in RegisterDataType}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """Validates collector configuration"""

    def validate(self, config: dict[str, Any]) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Args:
            config: Configuration dictionary

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        if not isinstance(config, dict):
            return False, ["Configuration must be a mapping"]

        errors: list[str] = []

        errors.extend(self._validate_devices(config))
        errors.extend(self._validate_calibration(config))
        errors.extend(self._validate_alarms(config))
        errors.extend(self._validate_history(config))
        errors.extend(self._validate_poll(config))

        default_range = config.get("default_range")
        if default_range is not None:
            errors.extend(self._validate_range(default_range, "default_range"))

        port = config.get("health_port", 8090)
        if not isinstance(port, int) or not 0 <= port <= 65535:
            errors.append("Invalid health_port")

        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(
                f"Config validation failed: {len(errors)} errors",
                extra={"errors": errors},
            )
        else:
            logger.debug("Config validation passed")

        return is_valid, errors

    def _validate_devices(self, config: dict[str, Any]) -> list[str]:
        """Validate device configuration"""
        errors = []
        devices = config.get("devices", [])

        if not devices:
            errors.append("No devices configured")
            return errors
        if not isinstance(devices, list):
            errors.append("devices must be a list")
            return errors

        seen_ids = set()
        for i, device in enumerate(devices):
            if not isinstance(device, dict):
                errors.append(f"device[{i}] must be a mapping, got {device!r}")
                continue
            device_id = device.get("id")
            if isinstance(device_id, (str, int)):
                if device_id in seen_ids:
                    errors.append(f"Duplicate device ID: {device_id}")
                seen_ids.add(device_id)
            errors.extend(self._validate_device(device, i))

        return errors

    def _validate_device(self, device: dict, index: int) -> list[str]:
        """Validate a single device configuration"""
        errors = []
        device_name = device.get("name", f"device[{index}]")

        if not device.get("id"):
            errors.append(f"{device_name}: Missing device ID")

        if not device.get("host"):
            errors.append(f"{device_name}: Missing host/IP address")

        port = device.get("port", 502)
        if not isinstance(port, int) or port < 1 or port > 65535:
            errors.append(f"{device_name}: Invalid port number")

        unit_id = device.get("unit_id", 1)
        if not isinstance(unit_id, int) or unit_id < 0 or unit_id > 247:
            errors.append(f"{device_name}: Invalid unit ID (must be 0-247)")

        start = device.get("start_register", 0)
        if not isinstance(start, int) or start < 0 or start > 65535:
            errors.append(f"{device_name}: Invalid start register")

        if device.get("register_type", "holding") not in REGISTER_TYPES:
            errors.append(
                f"{device_name}: Invalid register type (must be one of {', '.join(REGISTER_TYPES)})"
            )

        timeout = device.get("timeout_s")
        if timeout is not None and (not _is_number(timeout) or timeout <= 0):
            errors.append(f"{device_name}: timeout_s must be positive")

        # Validate points
        points = device.get("points", [])
        if not points:
            errors.append(f"{device_name}: No points configured")
        elif not isinstance(points, list):
            errors.append(f"{device_name}: points must be a list")
        else:
            names = set()
            for j, point in enumerate(points):
                if not isinstance(point, dict):
                    errors.append(f"{device_name}: Point[{j}] must be a mapping")
                    continue
                name = point.get("name")
                if not name or not isinstance(name, str):
                    errors.append(f"{device_name}: Point[{j}] missing name")
                elif name in names:
                    errors.append(f"{device_name}: Duplicate point name '{name}'")
                names.add(name)

                offset = point.get("offset", j)
                if not isinstance(offset, int) or offset < 0:
                    errors.append(f"{device_name}: Point[{j}] invalid offset")

                datatype = point.get("datatype", "int16")
                if not isinstance(datatype, str) or datatype not in DATATYPES:
                    errors.append(f"{device_name}: Point[{j}] unknown datatype '{datatype}'")

                scale = point.get("scale", 1.0)
                if not _is_number(scale) or scale == 0:
                    errors.append(f"{device_name}: Point[{j}] scale must be a non-zero number")

        tag_ranges = device.get("tag_ranges") or {}
        if not isinstance(tag_ranges, dict):
            errors.append(f"{device_name}: tag_ranges must be a mapping")
            tag_ranges = {}
        for key, value in tag_ranges.items():
            errors.extend(self._validate_range(value, f"{device_name}: tag range '{key}'"))

        return errors

    def _validate_range(self, value: Any, label: str) -> list[str]:
        if not isinstance(value, dict) or "min" not in value or "max" not in value:
            return [f"{label} needs min and max"]
        if not _is_number(value["min"]) or not _is_number(value["max"]):
            return [f"{label} min/max must be numbers"]
        if value["min"] > value["max"]:
            return [f"{label} min is greater than max"]
        return []

    def _validate_calibration(self, config: dict[str, Any]) -> list[str]:
        """Validate calibration rules and sensor mappings"""
        errors = []
        calibration = config.get("calibration", {}) or {}
        if not isinstance(calibration, dict):
            return ["calibration must be a mapping"]
        rules = calibration.get("rules", {}) or {}
        if not isinstance(rules, dict):
            errors.append("calibration.rules must be a mapping of sensor type to rule")
            rules = {}

        for sensor_type, rule in rules.items():
            if not isinstance(rule, dict):
                errors.append(f"Sensor type '{sensor_type}': rule must be a mapping")
                continue
            table = rule.get("lookup_table", []) or []
            segments = rule.get("segments", []) or []
            if not table and not segments:
                errors.append(f"Sensor type '{sensor_type}': no lookup table or segments")
            if not isinstance(table, list) or not isinstance(segments, list):
                errors.append(f"Sensor type '{sensor_type}': lookup_table and segments must be lists")
                continue

            for k, entry in enumerate(table):
                if (
                    not isinstance(entry, (list, tuple))
                    or len(entry) != 2
                    or not all(_is_number(v) for v in entry)
                ):
                    errors.append(f"Sensor type '{sensor_type}': lookup_table[{k}] must be [raw, value]")

            for k, segment in enumerate(segments):
                if not isinstance(segment, dict):
                    errors.append(f"Sensor type '{sensor_type}': segments[{k}] must be a mapping")
                    continue
                if not segment.get("formula"):
                    errors.append(f"Sensor type '{sensor_type}': segments[{k}] missing formula")
                raw_min, raw_max = segment.get("raw_min"), segment.get("raw_max")
                if not _is_number(raw_min) or not _is_number(raw_max):
                    errors.append(f"Sensor type '{sensor_type}': segments[{k}] needs raw_min and raw_max")
                elif raw_min >= raw_max:
                    errors.append(f"Sensor type '{sensor_type}': segments[{k}] raw_min must be below raw_max")

        devices = config.get("devices") or []
        if not isinstance(devices, list):
            devices = []
        device_ids = {str(d.get("id")) for d in devices if isinstance(d, dict)}

        sensors = calibration.get("sensors", []) or []
        if not isinstance(sensors, list):
            errors.append("calibration.sensors must be a list")
            sensors = []
        for k, sensor in enumerate(sensors):
            if not isinstance(sensor, dict):
                errors.append(f"Sensor[{k}] must be a mapping")
                continue
            sensor_type = sensor.get("sensor_type")
            if not isinstance(sensor_type, str) or sensor_type not in rules:
                errors.append(f"Sensor[{k}]: unknown sensor type '{sensor_type}'")
            if str(sensor.get("device_id")) not in device_ids:
                errors.append(f"Sensor[{k}]: unknown device '{sensor.get('device_id')}'")
            if not sensor.get("point_name"):
                errors.append(f"Sensor[{k}]: missing point_name")

        return errors

    def _validate_alarms(self, config: dict[str, Any]) -> list[str]:
        errors = []
        alarms = config.get("alarms", {}) or {}
        if not isinstance(alarms, dict):
            return ["alarms must be a mapping"]
        for key in ("activation_delay_s", "resolution_delay_s", "stale_after_s"):
            value = alarms.get(key)
            if value is not None and (not _is_number(value) or value < 0):
                errors.append(f"alarms.{key} must be a non-negative number")
        return errors

    def _validate_history(self, config: dict[str, Any]) -> list[str]:
        errors = []
        history = config.get("history", {}) or {}
        if not isinstance(history, dict):
            return ["history must be a mapping"]

        window = history.get("window_minutes", 20)
        if not isinstance(window, int) or window < 1:
            errors.append("history.window_minutes must be a positive integer")

        check = history.get("check_interval_s", 15)
        if not _is_number(check) or check <= 0:
            errors.append("history.check_interval_s must be positive")

        try:
            parse_time_of_day(history.get("cleanup_time", "00:01"))
        except (TypeError, ValueError):
            errors.append(f"history.cleanup_time is not a time of day: {history.get('cleanup_time')!r}")

        tz_name = history.get("timezone", "Asia/Jakarta")
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"history.timezone unknown: {tz_name}")

        return errors

    def _validate_poll(self, config: dict[str, Any]) -> list[str]:
        errors = []
        poll = config.get("poll", {}) or {}
        if not isinstance(poll, dict):
            return ["poll must be a mapping"]

        interval = poll.get("interval_s", 5.0)
        if not _is_number(interval) or interval <= 0:
            errors.append("poll.interval_s must be positive")

        timeout = poll.get("default_timeout_s", 3.0)
        if not _is_number(timeout) or timeout <= 0:
            errors.append("poll.default_timeout_s must be positive")
        elif _is_number(interval) and timeout > interval:
            logger.warning(
                f"Device timeout {timeout}s exceeds poll interval {interval}s; rounds may be skipped"
            )

        return errors
