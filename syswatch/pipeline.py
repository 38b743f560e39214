import logging
from typing import Mapping, Optional

from . import sensors
from .alerts import ALERT_EVENT, ALERT_RESOLVED_EVENT, AlertEngine
from .collector import METRICS_EVENT, MetricsCollector
from .config import Settings
from .database import create_engine, create_session_factory, init_models
from .errors import StorageInitError
from .events import Event, EventBus
from .hub import BroadcastHub
from .notifier import KafkaAlertPublisher
from .sensors import MetricCategory, SensorFn
from .store import MetricsStore

logger = logging.getLogger(__name__)

METRICS_CHANNEL = "metrics"
ALERTS_CHANNEL = "alerts"
SHUTDOWN_GRACE_SECONDS = 10.0


class MonitorPipeline:
    """
    Composition root: owns the storage pool, collector, alert engine,
    event bus and broadcast hub, and their start/stop order.

    The collector and alert engine never reference the hub; they publish on
    the bus and the pipeline forwards those events to subscribers.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        sensor_map: Optional[Mapping[MetricCategory, SensorFn]] = None,
        kafka: Optional[KafkaAlertPublisher] = None,
    ):
        self.settings = settings
        self._default_sensors = sensor_map is None
        self.engine = create_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        )
        self.store = MetricsStore(create_session_factory(self.engine))
        self.bus = EventBus()
        self.hub = BroadcastHub(
            heartbeat_interval=settings.WS_HEARTBEAT_INTERVAL,
            welcome_message=f"Connected to {settings.APP_NAME}",
        )
        self.collector = MetricsCollector(
            self.store,
            self.bus,
            sensor_map=sensor_map,
            interval=settings.METRICS_INTERVAL,
            cleanup_interval=settings.CLEANUP_INTERVAL,
            retention_days=settings.DATA_RETENTION_DAYS,
            system_info=sensors.read_system_info if sensor_map is None else None,
        )
        self.alerts = AlertEngine(
            self.store,
            self.bus,
            settings.thresholds(),
            check_interval=settings.ALERT_CHECK_INTERVAL,
            cooldown_seconds=settings.ALERT_COOLDOWN_MINUTES * 60,
            auto_resolve=settings.AUTO_RESOLVE_ENABLED,
        )
        if kafka is None and settings.KAFKA_BOOTSTRAP_SERVERS:
            kafka = KafkaAlertPublisher(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_ALERTS_TOPIC)
        self.kafka = kafka
        self.started = False
        self._wire()

    def _wire(self) -> None:
        self.bus.subscribe(METRICS_EVENT, self._forward_metrics)
        self.bus.subscribe(ALERT_EVENT, self._forward_alert)
        self.bus.subscribe(ALERT_RESOLVED_EVENT, self._forward_alert)
        if self.kafka is not None:
            self.bus.subscribe(ALERT_EVENT, self.kafka.handle)

    async def _forward_metrics(self, event: Event) -> None:
        await self.hub.broadcast(event.event_type, event.payload, METRICS_CHANNEL)

    async def _forward_alert(self, event: Event) -> None:
        await self.hub.broadcast(event.event_type, event.payload, ALERTS_CHANNEL)

    async def start(self) -> None:
        """Raises StorageInitError when the database cannot be prepared."""
        if self.started:
            logger.warning("Pipeline already started")
            return
        await init_models(self.engine)
        if not await self.store.ping():
            raise StorageInitError("database", "connection failed")

        await self.bus.start()
        if self._default_sensors:
            sensors.prime()
        await self.collector.start()
        await self.alerts.start()
        self.hub.start_heartbeat()
        self.started = True
        logger.info("All services initialized successfully")

    async def stop(self) -> None:
        if not self.started:
            return
        logger.info("Shutting down gracefully...")
        self.collector.stop()
        self.alerts.stop()
        idle = await self.collector.wait_idle(SHUTDOWN_GRACE_SECONDS)
        idle = await self.alerts.wait_idle(SHUTDOWN_GRACE_SECONDS) and idle
        if not idle:
            logger.error("Forced shutdown: ticks still running after %ss", SHUTDOWN_GRACE_SECONDS)
        await self.bus.shutdown()
        await self.hub.shutdown()
        if self.kafka is not None:
            self.kafka.close()
        await self.engine.dispose()
        self.started = False
        logger.info("Pipeline stopped")
