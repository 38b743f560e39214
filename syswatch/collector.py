import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from . import sensors
from .errors import StorageError
from .events import EventBus
from .models import RETENTION_TABLES
from .scheduler import PeriodicTask
from .sensors import MULTI_ROW_CATEGORIES, MetricCategory, SensorFn
from .store import MetricsStore

logger = logging.getLogger(__name__)

METRICS_EVENT = "metrics"


class MetricsCollector:
    """
    Samples every sensor category on a fixed cadence, persists the readings
    and publishes one combined "metrics" event per tick.

    Sensors are independent: one that raises is logged and left out of both
    persistence and the event for that tick.
    """

    def __init__(
        self,
        store: MetricsStore,
        bus: EventBus,
        *,
        sensor_map: Optional[Mapping[MetricCategory, SensorFn]] = None,
        interval: float = 5.0,
        cleanup_interval: float = 86400.0,
        retention_days: int = 30,
        retention_tables: Iterable[str] = RETENTION_TABLES,
        system_info: Optional[Callable[[], Dict[str, Any]]] = sensors.read_system_info,
    ):
        self.store = store
        self.bus = bus
        self.sensors: Dict[MetricCategory, SensorFn] = dict(sensor_map or sensors.DEFAULT_SENSORS)
        self.interval = interval
        self.cleanup_interval = cleanup_interval
        self.retention_days = retention_days
        self.retention_tables = tuple(retention_tables)
        self.system_info = system_info
        self.is_collecting = False
        self._sampling: Optional[PeriodicTask] = None
        self._cleanup: Optional[PeriodicTask] = None

    async def start(
        self,
        interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        retention_days: Optional[int] = None,
    ) -> bool:
        if self.is_collecting:
            logger.warning("Metrics collection already started")
            return False

        self.is_collecting = True
        if interval is not None:
            self.interval = interval
        if cleanup_interval is not None:
            self.cleanup_interval = cleanup_interval
        if retention_days is not None:
            self.retention_days = retention_days

        logger.info("Starting metrics collection (interval: %ss)", self.interval)
        try:
            await self._record_system_info()
            await self.collect_once()
        except Exception:
            # no timers were scheduled, so a later start may retry
            self.is_collecting = False
            raise

        self._sampling = PeriodicTask("metrics-sampling", self.interval, self.collect_once)
        self._cleanup = PeriodicTask("retention-cleanup", self.cleanup_interval, self.cleanup_old_data)
        self._sampling.start()
        self._cleanup.start()
        logger.info("Metrics collection started")
        return True

    def stop(self) -> bool:
        if not self.is_collecting:
            return False
        self.is_collecting = False
        for schedule in (self._sampling, self._cleanup):
            if schedule is not None:
                schedule.stop()
        logger.info("Metrics collection stopped")
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        idle = True
        for schedule in (self._sampling, self._cleanup):
            if schedule is not None:
                idle = await schedule.wait_idle(timeout) and idle
        return idle

    # -------------------------------------------------------
    # One tick
    # -------------------------------------------------------

    async def collect_once(self) -> Dict[str, Any]:
        timestamp = datetime.now(timezone.utc)
        categories = list(self.sensors)
        results = await asyncio.gather(*(self._read(c, self.sensors[c]) for c in categories))
        readings = {c: r for c, r in zip(categories, results) if r is not None}

        await asyncio.gather(*(self._store(c, r) for c, r in readings.items()))

        snapshot: Dict[str, Any] = {c.payload_key: r for c, r in readings.items()}
        snapshot["timestamp"] = timestamp.isoformat()
        self.bus.publish(METRICS_EVENT, snapshot)
        return snapshot

    async def _read(self, category: MetricCategory, sensor: SensorFn) -> Any:
        try:
            return await asyncio.to_thread(sensor)
        except Exception as exc:
            logger.error("Error collecting %s metrics: %s", category.value, exc)
            return None

    async def _store(self, category: MetricCategory, reading: Any) -> int:
        rows = reading if category in MULTI_ROW_CATEGORIES else [reading]
        stored = 0
        for row in rows:
            try:
                await self.store.insert(category.table, row)
                stored += 1
            except Exception as exc:
                logger.error("Error storing %s metrics: %s", category.value, exc)
        return stored

    async def _record_system_info(self) -> None:
        if self.system_info is None:
            return
        try:
            info = await asyncio.to_thread(self.system_info)
            await self.store.upsert_system_info(info)
            logger.info("System info recorded for %s", info.get("hostname"))
        except Exception as exc:
            logger.error("Failed to record system info: %s", exc)

    # -------------------------------------------------------
    # Retention
    # -------------------------------------------------------

    async def cleanup_old_data(self, retention_days: Optional[int] = None) -> Dict[str, int]:
        days = retention_days if retention_days is not None else self.retention_days
        logger.info("Starting cleanup of data older than %s days", days)
        removed: Dict[str, int] = {}
        for table in self.retention_tables:
            try:
                removed[table] = await self.store.delete_older_than(table, days)
            except StorageError as exc:
                logger.error("Error cleaning %s: %s", table, exc)
                continue
            if removed[table] > 0:
                logger.info("Cleaned %d old records from %s", removed[table], table)
        return removed
