"""
Raw Sample Retention

Raw samples are kept only for the current local day. The cutoff is local
midnight in the configured timezone; rows are stored in UTC, so the
cutoff is converted before comparing.

Samples the history aggregator has not averaged yet are never deleted:
the cutoff is held back to the persisted watermark when that is earlier
than midnight, and nothing is deleted before the first window commits.
"""

from datetime import datetime, tzinfo

from ...common.logging_setup import get_service_logger
from ...common.scheduler import Clock, SystemClock
from ...common.timestamp import start_of_local_day
from ...storage.local_db import LocalDatabase

logger = get_service_logger("history.retention")


class RetentionCleaner:
    """Deletes raw samples older than the start of the local day"""

    def __init__(self, database: LocalDatabase, tz: tzinfo, clock: Clock | None = None):
        self._db = database
        self._tz = tz
        self._clock = clock or SystemClock()
        self._total_deleted = 0
        self._last_cutoff: datetime | None = None

    def local_midnight(self, now: datetime | None = None) -> datetime:
        return start_of_local_day(now or self._clock.now(), self._tz)

    def cutoff(self, now: datetime | None = None) -> datetime | None:
        """
        Earliest timestamp that must be kept.

        Local midnight, or the aggregation watermark if that is earlier.
        None while no window has been aggregated.
        """
        watermark = self._db.get_watermark()
        if watermark is None:
            return None
        return min(self.local_midnight(now), watermark)

    def cleanup(self, now: datetime | None = None) -> int:
        """
        Delete raw samples before the cutoff. Idempotent.

        Returns:
            Rows deleted
        """
        midnight = self.local_midnight(now)
        cutoff = self.cutoff(now)
        if cutoff is None:
            logger.debug("Retention cleanup skipped: no history window aggregated yet")
            return 0
        if cutoff < midnight:
            logger.info(
                f"Keeping samples after {cutoff.isoformat()} until they are aggregated"
            )

        deleted = self._db.delete_samples_older_than(cutoff)
        self._last_cutoff = cutoff
        if deleted:
            self._total_deleted += deleted
            logger.info(f"Retention cleanup: deleted {deleted} samples before {cutoff.isoformat()}")
        return deleted

    def cleanup_if_stale(self, now: datetime | None = None) -> int:
        """
        Startup check: clean up only if the newest sample is not from today.

        Returns:
            Rows deleted (0 when nothing was stale)
        """
        now = now or self._clock.now()
        latest = self._db.latest_sample_timestamp()
        if latest is None or latest >= self.local_midnight(now):
            return 0
        logger.info(f"Newest raw sample {latest.isoformat()} is from a previous day")
        return self.cleanup(now)

    def get_stats(self) -> dict:
        return {
            "total_deleted": self._total_deleted,
            "last_cutoff": self._last_cutoff.isoformat() if self._last_cutoff else None,
        }
