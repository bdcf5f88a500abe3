"""
Configuration Dataclasses

Type-safe configuration structures for the collector.
Configuration is loaded once at startup from a YAML file and is not
hot-reloaded.
"""

from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from functools import cached_property
from typing import Any
from zoneinfo import ZoneInfo

from .exceptions import ConfigError


class RegisterDataType(str, Enum):
    """Modbus register data types"""
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"


REGISTER_WIDTHS: dict[RegisterDataType, int] = {
    RegisterDataType.UINT16: 1,
    RegisterDataType.INT16: 1,
    RegisterDataType.UINT32: 2,
    RegisterDataType.INT32: 2,
    RegisterDataType.FLOAT32: 2,
}

REGISTER_TYPES = ("holding", "input")


@dataclass(frozen=True)
class DataPoint:
    """One named measurement inside a device's register block"""
    name: str
    offset: int  # Relative to the device's start register
    datatype: RegisterDataType = RegisterDataType.INT16
    scale: float = 1.0  # e.g. 0.1 for fixed-point tenths
    unit: str = ""
    alias: str = ""
    size: int = 0  # Register count override (0 = use datatype default)

    @property
    def width(self) -> int:
        if self.size > 0:
            return self.size
        return REGISTER_WIDTHS.get(self.datatype, 1)


@dataclass(frozen=True)
class PointRange:
    """Allowed engineering-value range, inclusive on both ends"""
    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True)
class TagRangeGroup:
    """A range shared by a group of points (config key "data2|data3")"""
    tags: tuple[str, ...]
    range: PointRange


@dataclass
class DeviceConfig:
    """Device (PLC) configuration"""
    id: str
    name: str
    host: str
    port: int = 502
    unit_id: int = 1
    start_register: int = 0
    register_type: str = "holding"  # holding, input
    points: list[DataPoint] = field(default_factory=list)
    tag_ranges: list[TagRangeGroup] = field(default_factory=list)
    default_range: PointRange | None = None
    timeout_s: float = 3.0

    @property
    def block_start(self) -> int:
        """First register address covered by the block read"""
        if not self.points:
            return self.start_register
        return self.start_register + min(p.offset for p in self.points)

    @property
    def block_count(self) -> int:
        """Number of registers needed to cover every configured point"""
        if not self.points:
            return 0
        first = min(p.offset for p in self.points)
        last = max(p.offset + p.width for p in self.points)
        return last - first

    def range_for(self, point_name: str, fallback: PointRange | None = None) -> PointRange | None:
        """
        Resolve the allowed range of a point.

        First group containing the point wins, then the device default,
        then the site-wide fallback.
        """
        for group in self.tag_ranges:
            if point_name in group.tags:
                return group.range
        return self.default_range or fallback


@dataclass
class CalibrationSegment:
    """Formula applied to raw values in [raw_min, raw_max)"""
    raw_min: float
    raw_max: float
    formula: str


@dataclass
class CalibrationRule:
    """Calibration for one sensor type"""
    sensor_type: str
    lookup_table: list[tuple[float, float]] = field(default_factory=list)
    segments: list[CalibrationSegment] = field(default_factory=list)


@dataclass(frozen=True)
class SensorMapping:
    """Which sensor type is wired to a device point"""
    device_id: str
    point_name: str
    sensor_type: str


@dataclass
class CalibrationSettings:
    rules: dict[str, CalibrationRule] = field(default_factory=dict)
    mappings: list[SensorMapping] = field(default_factory=list)


@dataclass
class PollSettings:
    interval_s: float = 5.0
    default_timeout_s: float = 3.0


@dataclass
class AlarmSettings:
    enabled: bool = True
    activation_delay_s: float = 60.0
    resolution_delay_s: float = 180.0
    stale_after_s: float = 300.0


@dataclass
class HistorySettings:
    window_minutes: int = 20
    check_interval_s: float = 15.0
    cleanup_time: time = time(0, 1)
    timezone: str = "Asia/Jakarta"

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60

    @cached_property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class StorageSettings:
    db_path: str = "data/collector.db"


@dataclass
class CollectorConfig:
    """Complete collector configuration"""
    site_name: str = ""
    devices: list[DeviceConfig] = field(default_factory=list)
    global_default_range: PointRange | None = None
    calibration: CalibrationSettings = field(default_factory=CalibrationSettings)
    poll: PollSettings = field(default_factory=PollSettings)
    alarms: AlarmSettings = field(default_factory=AlarmSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    health_port: int = 8090
    log_level: str = "INFO"

    def get_device(self, device_id: str) -> DeviceConfig | None:
        return next((d for d in self.devices if d.id == device_id), None)


def parse_time_of_day(value: Any) -> time:
    """Parse "HH:MM" or "HH:MM:SS" (YAML may also hand us an int of minutes)"""
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 1:30 as a sexagesimal int (90)
        return time(value // 60, value % 60)
    return time.fromisoformat(str(value))


def _parse_range(data: dict) -> PointRange:
    return PointRange(min=float(data["min"]), max=float(data["max"]))


def _parse_tag_ranges(data: dict) -> tuple[list[TagRangeGroup], PointRange | None]:
    groups = []
    default = None
    for key, value in (data or {}).items():
        if key == "default":
            default = _parse_range(value)
            continue
        tags = tuple(t.strip() for t in str(key).split("|") if t.strip())
        groups.append(TagRangeGroup(tags=tags, range=_parse_range(value)))
    return groups, default


def _parse_points(device_data: dict) -> list[DataPoint]:
    points = []
    for index, p in enumerate(device_data.get("points", [])):
        points.append(DataPoint(
            name=p["name"],
            offset=p.get("offset", index),
            datatype=RegisterDataType(p.get("datatype", "int16")),
            scale=float(p.get("scale", 1.0)),
            unit=p.get("unit", ""),
            alias=p.get("alias", ""),
            size=p.get("size", 0),
        ))
    return points


def load_collector_config(data: dict) -> CollectorConfig:
    """
    Load CollectorConfig from a dictionary (e.g., parsed YAML).

    Raises:
        ConfigError: if a required key is missing or a value has the wrong type
    """
    try:
        poll_data = data.get("poll", {})
        poll = PollSettings(
            interval_s=float(poll_data.get("interval_s", 5.0)),
            default_timeout_s=float(poll_data.get("default_timeout_s", 3.0)),
        )

        devices = []
        for d in data.get("devices", []):
            tag_ranges, default_range = _parse_tag_ranges(d.get("tag_ranges", {}))
            devices.append(DeviceConfig(
                id=str(d["id"]),
                name=d.get("name", str(d["id"])),
                host=d["host"],
                port=d.get("port", 502),
                unit_id=d.get("unit_id", 1),
                start_register=d.get("start_register", 0),
                register_type=d.get("register_type", "holding"),
                points=_parse_points(d),
                tag_ranges=tag_ranges,
                default_range=default_range,
                timeout_s=float(d.get("timeout_s", poll.default_timeout_s)),
            ))

        calibration_data = data.get("calibration", {})
        rules = {}
        for sensor_type, rule_data in calibration_data.get("rules", {}).items():
            rules[sensor_type] = CalibrationRule(
                sensor_type=sensor_type,
                lookup_table=[
                    (float(raw), float(eng))
                    for raw, eng in rule_data.get("lookup_table", [])
                ],
                segments=[
                    CalibrationSegment(
                        raw_min=float(s["raw_min"]),
                        raw_max=float(s["raw_max"]),
                        formula=str(s["formula"]),
                    )
                    for s in rule_data.get("segments", [])
                ],
            )
        mappings = [
            SensorMapping(
                device_id=str(m["device_id"]),
                point_name=m["point_name"],
                sensor_type=m["sensor_type"],
            )
            for m in calibration_data.get("sensors", [])
        ]

        alarm_data = data.get("alarms", {})
        alarms = AlarmSettings(
            enabled=alarm_data.get("enabled", True),
            activation_delay_s=float(alarm_data.get("activation_delay_s", 60.0)),
            resolution_delay_s=float(alarm_data.get("resolution_delay_s", 180.0)),
            stale_after_s=float(alarm_data.get("stale_after_s", 300.0)),
        )

        history_data = data.get("history", {})
        history = HistorySettings(
            window_minutes=int(history_data.get("window_minutes", 20)),
            check_interval_s=float(history_data.get("check_interval_s", 15.0)),
            cleanup_time=parse_time_of_day(history_data.get("cleanup_time", "00:01")),
            timezone=history_data.get("timezone", "Asia/Jakarta"),
        )

        global_range = data.get("default_range")

        return CollectorConfig(
            site_name=data.get("site_name", ""),
            devices=devices,
            global_default_range=_parse_range(global_range) if global_range else None,
            calibration=CalibrationSettings(rules=rules, mappings=mappings),
            poll=poll,
            alarms=alarms,
            history=history,
            storage=StorageSettings(
                db_path=data.get("storage", {}).get("db_path", "data/collector.db"),
            ),
            health_port=data.get("health_port", 8090),
            log_level=data.get("log_level", "INFO"),
        )
    except KeyError as e:
        raise ConfigError(f"missing required key {e}") from e
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e
