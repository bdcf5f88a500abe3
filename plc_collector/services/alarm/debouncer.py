"""
Alarm Debouncer

Per (device, point) state machine that turns a stream of range checks into
activate/resolve events, requiring a violation (or a recovery) to persist
for a dwell time before it is reported.

    QUIESCENT --out of range--> PENDING_ACTIVE --held activation_delay--> ACTIVE
        ^                           |                                      |
        +--------back in range------+                                 back in range
        |                                                                  v
        +--------------held resolution_delay------------------------ PENDING_RESOLVE
                                                  (out of range again -> ACTIVE)

Only `observe` (and `restore_active` at startup) mutate the state table.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ...common.config import AlarmSettings, PointRange
from ...common.logging_setup import get_service_logger

logger = get_service_logger("alarm.debouncer")


class AlarmPhase(str, Enum):
    QUIESCENT = "quiescent"
    PENDING_ACTIVE = "pending_active"
    ACTIVE = "active"
    PENDING_RESOLVE = "pending_resolve"


class Direction(str, Enum):
    HIGH = "HIGH"  # Above range max
    LOW = "LOW"  # Below range min


class EventKind(str, Enum):
    ACTIVATE = "activate"
    RESOLVE = "resolve"


@dataclass(frozen=True)
class AlarmEvent:
    """An alarm transition reported to the outside world"""
    kind: EventKind
    device_id: str
    device_name: str
    point_name: str
    direction: Direction
    value: float
    threshold: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "point_name": self.point_name,
            "direction": self.direction.value,
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AlarmState:
    """Debounce state of one (device, point)"""
    device_id: str
    point_name: str
    device_name: str = ""
    phase: AlarmPhase = AlarmPhase.QUIESCENT
    candidate_value: float | None = None
    candidate_since: datetime | None = None  # Start of the current pending dwell
    threshold: float | None = None
    direction: Direction | None = None
    last_observed: datetime | None = None
    active_since: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.point_name)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "point_name": self.point_name,
            "phase": self.phase.value,
            "direction": self.direction.value if self.direction else None,
            "value": self.candidate_value,
            "threshold": self.threshold,
            "candidate_since": self.candidate_since.isoformat() if self.candidate_since else None,
            "active_since": self.active_since.isoformat() if self.active_since else None,
            "last_observed": self.last_observed.isoformat() if self.last_observed else None,
        }


def check_range(value: float, point_range: PointRange) -> tuple[Direction, float] | None:
    """
    Compare a value with an inclusive range.

    Returns:
        (direction, crossed threshold), or None when in range
    """
    if value > point_range.max:
        return Direction.HIGH, point_range.max
    if value < point_range.min:
        return Direction.LOW, point_range.min
    return None


class AlarmDebouncer:
    """
    Owns the alarm state table.

    Observations for one key must arrive in timestamp order; an observation
    not later than the last accepted one is ignored. Missing data leaves the
    state untouched. After a gap longer than `stale_after_s`, a pending
    phase restarts its dwell at the first observation after the gap, so an
    alarm never fires or resolves across a data outage.
    """

    def __init__(self, settings: AlarmSettings | None = None):
        self._settings = settings or AlarmSettings()
        self._states: dict[tuple[str, str], AlarmState] = {}

    @property
    def settings(self) -> AlarmSettings:
        return self._settings

    def get_state(self, device_id: str, point_name: str) -> AlarmState | None:
        return self._states.get((device_id, point_name))

    def get_states(self, include_quiescent: bool = False) -> list[AlarmState]:
        return [
            state for state in self._states.values()
            if include_quiescent or state.phase != AlarmPhase.QUIESCENT
        ]

    def restore_active(
        self,
        device_id: str,
        device_name: str,
        point_name: str,
        direction: Direction,
        value: float,
        threshold: float,
        since: datetime,
    ) -> None:
        """Seed an Active alarm recovered from the alarm log"""
        state = self._get_or_create(device_id, device_name, point_name)
        state.phase = AlarmPhase.ACTIVE
        state.direction = direction
        state.candidate_value = value
        state.threshold = threshold
        state.active_since = since
        state.candidate_since = None
        logger.info(f"Restored active {direction.value} alarm on {device_name}.{point_name}")

    def observe(
        self,
        device_id: str,
        device_name: str,
        point_name: str,
        value: float,
        point_range: PointRange,
        now: datetime,
    ) -> AlarmEvent | None:
        """
        Feed one observation into the state machine.

        Returns:
            The event produced by this observation, if any
        """
        state = self._get_or_create(device_id, device_name, point_name)

        if state.last_observed is not None:
            if now <= state.last_observed:
                logger.debug(
                    f"Ignoring out-of-order sample for {device_name}.{point_name} at {now}"
                )
                return None
            gap = (now - state.last_observed).total_seconds()
            if gap > self._settings.stale_after_s and state.phase in (
                AlarmPhase.PENDING_ACTIVE,
                AlarmPhase.PENDING_RESOLVE,
            ):
                logger.info(
                    f"{device_name}.{point_name}: data resumed after {gap:.0f}s, "
                    f"restarting {state.phase.value} dwell"
                )
                state.candidate_since = now

        state.last_observed = now
        if device_name:
            state.device_name = device_name

        violation = check_range(value, point_range)

        if state.phase == AlarmPhase.QUIESCENT:
            if violation is None:
                return None
            state.phase = AlarmPhase.PENDING_ACTIVE
            state.candidate_since = now
            self._set_violation(state, value, violation)
            return self._try_activate(state, now)

        if state.phase == AlarmPhase.PENDING_ACTIVE:
            if violation is None:
                self._reset(state)
                return None
            self._set_violation(state, value, violation)
            return self._try_activate(state, now)

        if state.phase == AlarmPhase.ACTIVE:
            if violation is not None:
                state.candidate_value = value
                return None
            state.phase = AlarmPhase.PENDING_RESOLVE
            state.candidate_since = now
            state.candidate_value = value
            return self._try_resolve(state, now)

        # PENDING_RESOLVE
        if violation is not None:
            state.phase = AlarmPhase.ACTIVE
            state.candidate_since = None
            state.candidate_value = value
            return None
        state.candidate_value = value
        return self._try_resolve(state, now)

    def _get_or_create(self, device_id: str, device_name: str, point_name: str) -> AlarmState:
        key = (device_id, point_name)
        state = self._states.get(key)
        if state is None:
            state = AlarmState(device_id=device_id, point_name=point_name, device_name=device_name)
            self._states[key] = state
        return state

    @staticmethod
    def _set_violation(state: AlarmState, value: float, violation: tuple[Direction, float]) -> None:
        state.direction, state.threshold = violation
        state.candidate_value = value

    @staticmethod
    def _reset(state: AlarmState) -> None:
        state.phase = AlarmPhase.QUIESCENT
        state.candidate_value = None
        state.candidate_since = None
        state.threshold = None
        state.direction = None
        state.active_since = None

    def _try_activate(self, state: AlarmState, now: datetime) -> AlarmEvent | None:
        elapsed = (now - state.candidate_since).total_seconds()
        if elapsed < self._settings.activation_delay_s:
            return None

        state.phase = AlarmPhase.ACTIVE
        state.active_since = now
        state.candidate_since = None
        return AlarmEvent(
            kind=EventKind.ACTIVATE,
            device_id=state.device_id,
            device_name=state.device_name,
            point_name=state.point_name,
            direction=state.direction,
            value=state.candidate_value,
            threshold=state.threshold,
            timestamp=now,
        )

    def _try_resolve(self, state: AlarmState, now: datetime) -> AlarmEvent | None:
        elapsed = (now - state.candidate_since).total_seconds()
        if elapsed < self._settings.resolution_delay_s:
            return None

        event = AlarmEvent(
            kind=EventKind.RESOLVE,
            device_id=state.device_id,
            device_name=state.device_name,
            point_name=state.point_name,
            direction=state.direction,
            value=state.candidate_value,
            threshold=state.threshold,
            timestamp=now,
        )
        self._reset(state)
        return event
