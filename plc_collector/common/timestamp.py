"""
Timestamp Utilities

Window alignment, local-day boundaries and the storage timestamp format.

All timestamps handed between components are timezone-aware datetimes.
The database stores them as fixed-width UTC strings so that SQL string
comparison orders them the same way as the datetimes they encode.

Example:
    Two samples captured at 14:07:12 and 14:19:59 both fall into the
    20-minute window that starts at 14:00:00.
"""

from datetime import datetime, time, timedelta, timezone, tzinfo

# Fixed width: microseconds are always written, offset is always Z
DB_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def align_timestamp(ts: datetime, interval_seconds: float) -> datetime:
    """
    Align timestamp to the previous interval boundary.

    Rounds DOWN so that every timestamp inside a window maps to that
    window's start. Boundaries are computed on the epoch, so for zones
    with whole-hour offsets they coincide with local clock boundaries.

    Args:
        ts: The timestamp to align (naive values are treated as UTC)
        interval_seconds: The interval in seconds

    Returns:
        Aligned datetime, preserving the original timezone

    Examples:
        # 14:30:17 with 60s   -> 14:30:00
        # 14:07:12 with 1200s -> 14:00:00
        # 14:20:00 with 1200s -> 14:20:00 (already on a boundary)
    """
    if interval_seconds <= 0:
        return ts

    tz = ts.tzinfo or timezone.utc
    epoch = ts.replace(tzinfo=tz).timestamp()
    aligned_epoch = (epoch // interval_seconds) * interval_seconds
    return datetime.fromtimestamp(aligned_epoch, tz)


def start_of_local_day(now: datetime, tz: tzinfo) -> datetime:
    """
    Midnight of the current day in the given zone.

    The result is aware and expressed in `tz`; compare it against other
    aware datetimes, or convert with `to_db_timestamp` for SQL.
    """
    local_now = now.astimezone(tz)
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


def next_daily_run(now: datetime, run_at: time, tz: tzinfo) -> datetime:
    """Next occurrence of wall-clock `run_at` in `tz`, strictly after `now`"""
    local_now = now.astimezone(tz)
    candidate = local_now.replace(
        hour=run_at.hour,
        minute=run_at.minute,
        second=run_at.second,
        microsecond=0,
    )
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate


def to_db_timestamp(ts: datetime) -> str:
    """Serialize an aware datetime for storage (naive values are treated as UTC)"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back to an aware UTC datetime"""
    return datetime.strptime(value, DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
