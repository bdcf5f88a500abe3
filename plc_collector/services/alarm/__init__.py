"""
Alarm Service

- debouncer.py - per (device, point) dwell-time state machine
- manager.py - event delivery (log, alarm log, listeners)
"""

from .debouncer import (
    AlarmDebouncer,
    AlarmEvent,
    AlarmPhase,
    AlarmState,
    Direction,
    EventKind,
    check_range,
)
from .manager import AlarmListener, AlarmManager

__all__ = [
    "AlarmDebouncer",
    "AlarmEvent",
    "AlarmPhase",
    "AlarmState",
    "Direction",
    "EventKind",
    "check_range",
    "AlarmListener",
    "AlarmManager",
]
