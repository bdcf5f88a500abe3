"""
Alarm Manager

Feeds calibrated samples through the debouncer and delivers the resulting
events: logged, written to the alarm log, then handed to listeners.
"""

from typing import Callable

from ...common.config import AlarmSettings, PointRange
from ...common.exceptions import StorageError
from ...common.logging_setup import get_service_logger, log_alarm
from ...common.models import RawSample
from ...storage.local_db import LocalDatabase
from .debouncer import AlarmDebouncer, AlarmEvent, Direction, EventKind

logger = get_service_logger("alarm.manager")

AlarmListener = Callable[[AlarmEvent], None]


class AlarmManager:
    """
    Alarm pipeline for the poll loop.

    The database is optional so the debouncer can run without persistence
    (dry runs, tests).
    """

    def __init__(
        self,
        settings: AlarmSettings | None = None,
        database: LocalDatabase | None = None,
        debouncer: AlarmDebouncer | None = None,
    ):
        self._settings = settings or AlarmSettings()
        self._db = database
        self.debouncer = debouncer or AlarmDebouncer(self._settings)
        self._listeners: list[AlarmListener] = []
        self._event_count = 0

    @property
    def event_count(self) -> int:
        return self._event_count

    def add_listener(self, listener: AlarmListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AlarmListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def restore_from_database(self) -> int:
        """
        Seed the debouncer with alarms still ACTIVE in the alarm log.

        Returns:
            Number of alarms restored
        """
        if self._db is None:
            return 0

        restored = 0
        for row in self._db.get_active_alarms():
            try:
                direction = Direction(row["alarm_type"])
            except ValueError:
                logger.warning(
                    f"Skipping active alarm {row['id']} with unknown type {row['alarm_type']!r}"
                )
                continue
            self.debouncer.restore_active(
                device_id=row["device_id"],
                device_name=row["device_name"] or "",
                point_name=row["point_name"],
                direction=direction,
                value=row["violated_value"],
                threshold=row["threshold_value"],
                since=row["alarm_time"],
            )
            restored += 1
        return restored

    def process_samples(self, samples: list[RawSample]) -> list[AlarmEvent]:
        """
        Observe a batch of samples in timestamp order.

        Samples without a range are not evaluated.
        """
        if not self._settings.enabled:
            return []

        events = []
        for sample in sorted(samples, key=lambda s: s.timestamp):
            if sample.range_min is None or sample.range_max is None:
                continue
            event = self.debouncer.observe(
                device_id=sample.device_id,
                device_name=sample.device_name,
                point_name=sample.point_name,
                value=sample.value,
                point_range=PointRange(min=sample.range_min, max=sample.range_max),
                now=sample.timestamp,
            )
            if event is not None:
                self._dispatch(event)
                events.append(event)
        return events

    def _dispatch(self, event: AlarmEvent) -> None:
        self._event_count += 1

        if event.kind == EventKind.ACTIVATE:
            message = (
                f"{event.value} {'above' if event.direction == Direction.HIGH else 'below'} "
                f"{event.threshold}"
            )
        else:
            message = f"back in range at {event.value}"
        log_alarm(
            logger,
            event.kind.value,
            event.device_name,
            event.point_name,
            message,
            direction=event.direction.value,
        )

        if self._db is not None:
            try:
                if event.kind == EventKind.ACTIVATE:
                    self._db.insert_alarm(
                        device_id=event.device_id,
                        device_name=event.device_name,
                        point_name=event.point_name,
                        alarm_type=event.direction.value,
                        violated_value=event.value,
                        threshold_value=event.threshold,
                        alarm_time=event.timestamp,
                    )
                else:
                    self._db.resolve_alarm(event.device_id, event.point_name, event.timestamp)
            except StorageError as e:
                logger.error(f"Failed to record alarm {event.kind.value}: {e.message}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Alarm listener {listener!r} failed: {e}")
