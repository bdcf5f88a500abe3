"""
Pipeline Records

Value objects passed between the poller, the debouncer, the aggregator and
the local database.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class RawSample:
    """One calibrated value of one point, captured in one poll round"""
    device_id: str
    device_name: str
    point_name: str
    value: float
    timestamp: datetime
    range_min: float | None = None
    range_max: float | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.point_name)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "point_name": self.point_name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "range_min": self.range_min,
            "range_max": self.range_max,
        }


@dataclass(frozen=True)
class AggregateWindow:
    """Mean of one (device, point) over one history window"""
    device_id: str
    point_name: str
    window_start: datetime
    window_end: datetime
    mean_value: float
    sample_count: int = 0
