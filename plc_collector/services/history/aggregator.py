"""
History Aggregator

Rolls raw samples up into fixed windows (default 20 minutes), one mean per
(device, point) per window, driven by a persisted watermark.

Each tick processes every complete window after the watermark, in order.
A window's aggregates and the advanced watermark are committed together,
so a failed write leaves the watermark where it was and the same window is
retried on the next tick. Upserts make re-processing harmless.
"""

import asyncio
from datetime import datetime, timedelta

from ...common.config import HistorySettings
from ...common.exceptions import StorageError
from ...common.logging_setup import get_service_logger
from ...common.scheduler import Clock, SystemClock
from ...common.timestamp import align_timestamp
from ...storage.local_db import LocalDatabase

logger = get_service_logger("history.aggregator")


class HistoryAggregator:
    """Watermark-driven window aggregation"""

    def __init__(
        self,
        database: LocalDatabase,
        settings: HistorySettings | None = None,
        clock: Clock | None = None,
    ):
        self._db = database
        self._settings = settings or HistorySettings()
        self._clock = clock or SystemClock()
        self._window = timedelta(seconds=self._settings.window_seconds)
        self._watermark: datetime | None = None
        self._lock = asyncio.Lock()

        # Stats
        self._windows_processed = 0
        self._rows_written = 0
        self._failures = 0
        self._last_error: str | None = None

    @property
    def watermark(self) -> datetime | None:
        return self._watermark

    @property
    def window(self) -> timedelta:
        return self._window

    async def _run_db(self, func, *args):
        """Run a blocking database call in a thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def init_watermark(self) -> datetime:
        """
        Load the starting watermark.

        Persisted watermark first, then the end of the newest aggregate
        window, then the current time rounded down to a window boundary.
        """
        watermark = self._db.get_watermark()
        source = "persisted"
        if watermark is None:
            watermark = self._db.latest_window_end()
            source = "latest aggregate"
        if watermark is None:
            watermark = align_timestamp(self._clock.now(), self._settings.window_seconds)
            source = "current window boundary"

        self._watermark = watermark
        logger.info(f"History watermark initialised from {source}: {watermark.isoformat()}")
        return watermark

    async def tick(self) -> int:
        """
        Process every complete window after the watermark.

        Ticks never overlap; a tick that starts while another runs waits
        for it and then finds nothing left to do.

        Returns:
            Number of windows committed
        """
        async with self._lock:
            if self._watermark is None:
                await self._run_db(self.init_watermark)

            committed = 0
            while self._clock.now() >= self._watermark + self._window:
                window_start = self._watermark
                window_end = window_start + self._window
                try:
                    rows = await self._run_db(self.process_window, window_start, window_end)
                except StorageError as e:
                    self._failures += 1
                    self._last_error = e.message
                    logger.error(
                        f"Aggregation of window {window_start.isoformat()} failed, "
                        f"will retry: {e.message}"
                    )
                    break

                self._watermark = window_end
                self._windows_processed += 1
                self._rows_written += rows
                committed += 1

            if committed > 1:
                logger.info(f"Caught up {committed} history windows")
            return committed

    def process_window(self, window_start: datetime, window_end: datetime) -> int:
        """
        Aggregate one window and persist it with the advanced watermark.

        Raises:
            StorageError: nothing was committed

        Returns:
            Number of aggregate rows written
        """
        windows = self._db.window_means(window_start, window_end)
        self._db.commit_window(windows, watermark=window_end)
        if windows:
            logger.debug(
                f"Window {window_start.isoformat()}: {len(windows)} aggregates"
            )
        return len(windows)

    def get_stats(self) -> dict:
        return {
            "watermark": self._watermark.isoformat() if self._watermark else None,
            "window_seconds": self._settings.window_seconds,
            "windows_processed": self._windows_processed,
            "rows_written": self._rows_written,
            "failures": self._failures,
            "last_error": self._last_error,
        }
