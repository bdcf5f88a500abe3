"""
Collector Service

Wires the pipeline together and runs it on one event loop:

    poll (every poll.interval_s)
      -> calibrate -> store raw samples -> retention cleanup
      -> alarm debouncer (in timestamp order) -> alarm log / listeners
      -> latest values, round listeners, all-devices-failed alert
    history (every history.check_interval_s)
      -> aggregate complete windows after the watermark
    retention (daily at history.cleanup_time, local)
      -> delete raw samples before local midnight, never past the watermark
"""

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from aiohttp import web

from ...common.config import CollectorConfig
from ...common.exceptions import StorageError
from ...common.logging_setup import get_service_logger, log_poll_round
from ...common.models import RawSample
from ...common.scheduler import Clock, SchedulerGroup, SystemClock
from ...storage.local_db import LocalDatabase
from ..alarm import AlarmManager
from ..calibration import CalibrationEngine
from ..device import ConnectionPool, DeviceManager, DevicePoller, DeviceRoundResult, PointReading
from ..history import HistoryAggregator, RetentionCleaner

logger = get_service_logger("collector")


@dataclass(frozen=True)
class PollRound:
    """Outcome of one poll round, handed to round listeners"""
    timestamp: datetime
    samples: list[RawSample] = field(default_factory=list)
    devices_ok: int = 0
    devices_failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.devices_failed > 0 and self.devices_ok == 0


RoundListener = Callable[[PollRound], None]


class CollectorService:
    """
    PLC telemetry collector.

    The database, connection pool and clock can be injected; by default
    they are built from the configuration.
    """

    def __init__(
        self,
        config: CollectorConfig,
        database: LocalDatabase | None = None,
        connection_pool: ConnectionPool | None = None,
        clock: Clock | None = None,
        health_port: int | None = None,
    ):
        self.config = config
        self.clock = clock or SystemClock()
        self.health_port = config.health_port if health_port is None else health_port

        self.database = database or LocalDatabase(config.storage.db_path)
        self.connection_pool = connection_pool or ConnectionPool(
            connection_timeout=config.poll.default_timeout_s,
        )
        self.device_manager = DeviceManager()
        self.poller = DevicePoller(
            config.devices,
            connection_pool=self.connection_pool,
            device_manager=self.device_manager,
            clock=self.clock,
        )
        self.calibration = CalibrationEngine(config.calibration)
        self.alarms = AlarmManager(config.alarms, database=self.database)
        self.aggregator = HistoryAggregator(self.database, config.history, clock=self.clock)
        self.retention = RetentionCleaner(self.database, config.history.tz, clock=self.clock)
        self.scheduler = SchedulerGroup(self.clock)

        self._devices = {d.id: d for d in config.devices}
        self._start_time: datetime | None = None
        self._samples_stored = 0
        self._latest: dict[tuple[str, str], RawSample] = {}
        self._round_listeners: list[RoundListener] = []
        self._all_failed_rounds = 0

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_db(self, func, *args):
        """Run a blocking database call in a thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def start(self) -> None:
        """Restore state and start the schedulers"""
        logger.info(f"Starting collector for site '{self.config.site_name or 'unnamed'}'")
        self._running = True
        self._start_time = self.clock.now()

        restored = await self._run_db(self.alarms.restore_from_database)
        if restored:
            logger.info(f"Restored {restored} active alarms")

        # catch up history before retention may delete yesterday's samples
        await self._run_db(self.aggregator.init_watermark)
        await self.aggregator.tick()
        await self._run_db(self.retention.cleanup_if_stale)

        history = self.config.history
        self.scheduler.add("poll", self.config.poll.interval_s, self.poll_once)
        self.scheduler.add("history", history.check_interval_s, self.aggregator.tick)
        self.scheduler.add_daily("retention", history.cleanup_time, history.tz, self._daily_cleanup)
        await self.scheduler.start_all()

        if self.health_port:
            await self._start_health_server()

        logger.info(
            f"Collector started ({len(self.config.devices)} devices)",
            extra={"device_count": len(self.config.devices)},
        )

    async def stop(self) -> None:
        """Stop schedulers, close connections and the health server"""
        if not self._running:
            return
        logger.info("Stopping collector")
        self._running = False

        self.scheduler.stop_all()
        await self.scheduler.wait_all()
        await self.connection_pool.close_all()
        await self._stop_health_server()

        logger.info("Collector stopped")

    async def run(self) -> None:
        """Start, wait for a shutdown signal, stop"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def poll_once(self) -> list[RawSample]:
        """
        One poll round through the whole pipeline.

        Returns:
            Calibrated samples of this round
        """
        started = time.perf_counter()
        results = await self.poller.poll_round()
        samples = self.build_samples(results)

        if samples:
            try:
                stored = await self._run_db(self.database.insert_samples_batch, samples)
                self._samples_stored += stored
                await self._run_db(self.retention.cleanup)
            except StorageError as e:
                logger.error(f"Failed to store {len(samples)} samples: {e.message}")

        for sample in samples:
            self._latest[sample.key] = sample

        self.alarms.process_samples(samples)

        devices_ok = sum(1 for r in results if r.success)
        poll_round = PollRound(
            timestamp=self.clock.now(),
            samples=samples,
            devices_ok=devices_ok,
            devices_failed=len(results) - devices_ok,
        )
        log_poll_round(
            logger,
            sample_count=len(samples),
            devices_ok=poll_round.devices_ok,
            devices_failed=poll_round.devices_failed,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        if poll_round.all_failed:
            self._all_failed_rounds += 1
            logger.error(
                f"ALERT: none of {poll_round.devices_failed} devices responded",
                extra={"alert": "all_devices_failed"},
            )
        self._notify_round(poll_round)
        return samples

    def add_round_listener(self, listener: RoundListener) -> None:
        self._round_listeners.append(listener)

    def remove_round_listener(self, listener: RoundListener) -> None:
        if listener in self._round_listeners:
            self._round_listeners.remove(listener)

    def _notify_round(self, poll_round: PollRound) -> None:
        for listener in list(self._round_listeners):
            try:
                listener(poll_round)
            except Exception as e:
                logger.error(f"Poll round listener failed: {e}", exc_info=True)

    def latest_samples(self) -> list[RawSample]:
        """Most recent calibrated sample of every point seen so far"""
        return [self._latest[key] for key in sorted(self._latest)]

    def build_samples(self, results: list[DeviceRoundResult]) -> list[RawSample]:
        """Calibrate readings and attach the range in force for each point"""
        samples = []
        for result in results:
            if not result.success:
                continue
            device = self._devices[result.device_id]
            for reading in result.readings:
                point_range = device.range_for(reading.point_name, self.config.global_default_range)
                samples.append(RawSample(
                    device_id=reading.device_id,
                    device_name=reading.device_name,
                    point_name=reading.point_name,
                    value=self._calibrate(reading),
                    timestamp=reading.timestamp,
                    range_min=point_range.min if point_range else None,
                    range_max=point_range.max if point_range else None,
                ))
        return samples

    def _calibrate(self, reading: PointReading) -> float:
        try:
            return self.calibration.calibrate(
                reading.device_id, reading.point_name, reading.raw_value
            )
        except Exception as e:
            logger.error(
                f"Calibration of {reading.device_name}.{reading.point_name} failed, "
                f"storing raw value: {e}",
                exc_info=True,
            )
            return reading.raw_value

    async def _daily_cleanup(self) -> None:
        try:
            await self._run_db(self.retention.cleanup)
        except StorageError as e:
            logger.error(f"Daily retention cleanup failed: {e.message}")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = self.create_health_app()
        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "127.0.0.1", self.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.health_port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    def create_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/devices", self._devices_handler)
        app.router.add_get("/alarms", self._alarms_handler)
        app.router.add_get("/latest", self._latest_handler)
        return app

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        now = self.clock.now()
        uptime = (now - self._start_time).total_seconds() if self._start_time else 0

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "collector",
            "uptime": int(uptime),
            "timestamp": now.isoformat(),
            "devices": self.device_manager.get_device_count(),
            "connections": self.connection_pool.get_stats(),
            "poll_rounds": self.poller.round_count,
            "samples_stored": self._samples_stored,
            "alarm_events": self.alarms.event_count,
            "all_devices_failed_rounds": self._all_failed_rounds,
            "history": self.aggregator.get_stats(),
            "retention": self.retention.get_stats(),
            "schedulers": self.scheduler.get_stats(),
        })

    async def _devices_handler(self, request: web.Request) -> web.Response:
        """Return connection status of every device"""
        return web.json_response({
            device_id: status.to_dict()
            for device_id, status in self.device_manager.get_all_status().items()
        })

    async def _alarms_handler(self, request: web.Request) -> web.Response:
        """Return every alarm state that is not quiescent"""
        return web.json_response([
            state.to_dict() for state in self.alarms.debouncer.get_states()
        ])

    async def _latest_handler(self, request: web.Request) -> web.Response:
        """Return the latest calibrated value of every point"""
        return web.json_response([sample.to_dict() for sample in self.latest_samples()])
