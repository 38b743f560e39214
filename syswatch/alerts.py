import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .database import utcnow
from .errors import ConfigurationError, StorageError, StorageReadFailed, StorageWriteFailed
from .events import EventBus
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

ALERT_EVENT = "alert"
ALERT_RESOLVED_EVENT = "alert_resolved"

SWAP_LIMIT_PERCENT = 50.0
ZOMBIE_LIMIT = 5
PROCESS_COUNT_LIMIT = 500
RECOVERY_RATIO = 0.8
RECENT_WINDOW = timedelta(minutes=5)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    CPU_USAGE_HIGH = "cpu_usage_high"
    CPU_TEMPERATURE_HIGH = "cpu_temperature_high"
    MEMORY_USAGE_HIGH = "memory_usage_high"
    SWAP_USAGE_HIGH = "swap_usage_high"
    DISK_USAGE_HIGH = "disk_usage_high"
    GPU_TEMPERATURE_HIGH = "gpu_temperature_high"
    LOAD_AVERAGE_HIGH = "load_average_high"
    ZOMBIE_PROCESSES_HIGH = "zombie_processes_high"
    PROCESS_COUNT_HIGH = "process_count_high"


class AlertThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cpu: float = Field(default=80.0, gt=0)
    memory: float = Field(default=85.0, gt=0)
    disk: float = Field(default=90.0, gt=0)
    temperature: float = Field(default=75.0, gt=0)
    load: float = Field(default=5.0, gt=0)  # 15-minute load average


@dataclass(frozen=True)
class CooldownKey:
    alert_type: AlertType
    severity: Severity
    subject: str = ""  # mount point for disk alerts


# metric backing each auto-resolvable alert type: (table, column, threshold field)
RECOVERY_RULES = {
    AlertType.CPU_USAGE_HIGH: ("cpu_metrics", "cpu_usage_percent", "cpu"),
    AlertType.MEMORY_USAGE_HIGH: ("memory_metrics", "usage_percent", "memory"),
}


def get_severity(value: float, threshold: float) -> Severity:
    ratio = value / threshold
    if ratio >= 1.5:
        return Severity.CRITICAL
    if ratio >= 1.2:
        return Severity.HIGH
    if ratio >= 1.0:
        return Severity.MEDIUM
    return Severity.LOW


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AlertEngine:
    """
    Evaluates the newest stored readings against thresholds and raises
    de-duplicated alerts.

    A (type, severity) pair that fired less than `cooldown_seconds` ago is
    suppressed: nothing is written and no event is published. Alerts only
    move Open -> Resolved; a breach after the cooldown opens a new alert.
    """

    def __init__(
        self,
        store,
        bus: EventBus,
        thresholds: Optional[AlertThresholds] = None,
        *,
        check_interval: float = 30.0,
        cooldown_seconds: float = 600.0,
        auto_resolve: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.bus = bus
        self._thresholds = thresholds or AlertThresholds()
        self.check_interval = check_interval
        self.cooldown_seconds = cooldown_seconds
        self.auto_resolve = auto_resolve
        self.clock = clock
        self.is_monitoring = False
        self._last_created: Dict[CooldownKey, float] = {}
        self._pending: set = set()
        self._schedule: Optional[PeriodicTask] = None

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    # -------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------

    async def start(self, check_interval: Optional[float] = None) -> bool:
        if self.is_monitoring:
            logger.warning("Alert monitoring already started")
            return False
        if check_interval is not None:
            self.check_interval = check_interval
        self.is_monitoring = True
        self._schedule = PeriodicTask("alert-check", self.check_interval, self._tick)
        self._schedule.start()
        logger.info("Alert monitoring started (interval: %ss)", self.check_interval)
        return True

    def stop(self) -> bool:
        if not self.is_monitoring:
            return False
        self.is_monitoring = False
        if self._schedule is not None:
            self._schedule.stop()
        logger.info("Alert monitoring stopped")
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        if self._schedule is None:
            return True
        return await self._schedule.wait_idle(timeout)

    async def _tick(self) -> None:
        await self.check_all()
        if self.auto_resolve:
            await self.auto_resolve_alerts()

    # -------------------------------------------------------
    # Rules
    # -------------------------------------------------------

    async def check_all(self) -> List[Dict[str, Any]]:
        rules = (
            self.check_cpu,
            self.check_memory,
            self.check_disk,
            self.check_gpu_temperature,
            self.check_load,
            self.check_processes,
        )
        results = await asyncio.gather(*(self._run_rule(rule) for rule in rules))
        return [alert for created in results for alert in created]

    async def _run_rule(self, rule) -> List[Dict[str, Any]]:
        try:
            return [a for a in await rule() if a is not None]
        except StorageReadFailed as exc:
            logger.warning("Skipping %s this cycle: %s", rule.__name__, exc)
        except Exception:
            logger.exception("Error in alert rule %s", rule.__name__)
        return []

    async def _latest(self, table: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query_latest(table, 1)
        return rows[0] if rows else None

    async def check_cpu(self):
        row = await self._latest("cpu_metrics")
        if row is None:
            return []
        t = self._thresholds
        created = []
        usage = row.get("cpu_usage_percent")
        if usage is not None and usage > t.cpu:
            created.append(
                await self.create_alert(
                    AlertType.CPU_USAGE_HIGH,
                    get_severity(usage, t.cpu),
                    f"CPU usage is {usage}% (threshold: {t.cpu}%)",
                    usage,
                    t.cpu,
                )
            )
        temp = row.get("cpu_temp_celsius")
        if temp is not None and temp > t.temperature:
            created.append(
                await self.create_alert(
                    AlertType.CPU_TEMPERATURE_HIGH,
                    get_severity(temp, t.temperature),
                    f"CPU temperature is {temp}°C (threshold: {t.temperature}°C)",
                    temp,
                    t.temperature,
                )
            )
        return created

    async def check_memory(self):
        row = await self._latest("memory_metrics")
        if row is None:
            return []
        t = self._thresholds
        created = []
        usage = row.get("usage_percent")
        if usage is not None and usage > t.memory:
            created.append(
                await self.create_alert(
                    AlertType.MEMORY_USAGE_HIGH,
                    get_severity(usage, t.memory),
                    f"Memory usage is {usage}% (threshold: {t.memory}%)",
                    usage,
                    t.memory,
                )
            )
        swap = row.get("swap_usage_percent")
        if swap is not None and swap > SWAP_LIMIT_PERCENT:
            created.append(
                await self.create_alert(
                    AlertType.SWAP_USAGE_HIGH,
                    get_severity(swap, SWAP_LIMIT_PERCENT),
                    f"Swap usage is {swap}% (threshold: {SWAP_LIMIT_PERCENT:g}%)",
                    swap,
                    SWAP_LIMIT_PERCENT,
                )
            )
        return created

    async def check_disk(self):
        limit = self._thresholds.disk
        created = []
        for row in await self.store.latest_disk_usage(utcnow() - RECENT_WINDOW):
            usage = row.get("usage_percent")
            if usage is None or usage <= limit:
                continue
            created.append(
                await self.create_alert(
                    AlertType.DISK_USAGE_HIGH,
                    get_severity(usage, limit),
                    f"Disk usage on {row['mount_point']} ({row['filesystem']}) is {usage}% (threshold: {limit}%)",
                    usage,
                    limit,
                    subject=row["mount_point"] or "",
                )
            )
        return created

    async def check_gpu_temperature(self):
        row = await self._latest("gpu_metrics")
        if row is None or row.get("gpu_temp_celsius") is None:
            return []
        temp = row["gpu_temp_celsius"]
        limit = self._thresholds.temperature
        if temp <= limit:
            return []
        return [
            await self.create_alert(
                AlertType.GPU_TEMPERATURE_HIGH,
                get_severity(temp, limit),
                f"GPU temperature is {temp}°C (threshold: {limit}°C)",
                temp,
                limit,
            )
        ]

    async def check_load(self):
        row = await self._latest("cpu_metrics")
        if row is None or row.get("load_avg_15min") is None:
            return []
        load = row["load_avg_15min"]
        limit = self._thresholds.load
        if load <= limit:
            return []
        return [
            await self.create_alert(
                AlertType.LOAD_AVERAGE_HIGH,
                get_severity(load, limit),
                f"15-minute load average is {load} (threshold: {limit})",
                load,
                limit,
            )
        ]

    async def check_processes(self):
        row = await self._latest("process_metrics")
        if row is None:
            return []
        created = []
        zombies = row.get("zombie_processes") or 0
        if zombies > ZOMBIE_LIMIT:
            created.append(
                await self.create_alert(
                    AlertType.ZOMBIE_PROCESSES_HIGH,
                    Severity.MEDIUM,
                    f"{zombies} zombie processes detected",
                    zombies,
                    ZOMBIE_LIMIT,
                )
            )
        total = row.get("total_processes") or 0
        if total > PROCESS_COUNT_LIMIT:
            created.append(
                await self.create_alert(
                    AlertType.PROCESS_COUNT_HIGH,
                    Severity.LOW,
                    f"Total process count is {total} (threshold: {PROCESS_COUNT_LIMIT})",
                    total,
                    PROCESS_COUNT_LIMIT,
                )
            )
        return created

    # -------------------------------------------------------
    # Creation
    # -------------------------------------------------------

    async def create_alert(
        self,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        metric_value: float,
        threshold_value: float,
        *,
        subject: str = "",
    ) -> Optional[Dict[str, Any]]:
        key = CooldownKey(AlertType(alert_type), Severity(severity), subject)
        now = self.clock()
        last = self._last_created.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            logger.debug("Alert %s/%s suppressed by cooldown", key.alert_type.value, key.severity.value)
            return None
        if key in self._pending:
            return None

        self._pending.add(key)
        try:
            alert_id = await self.store.insert(
                "alerts",
                {
                    "alert_type": key.alert_type.value,
                    "severity": key.severity.value,
                    "message": message,
                    "metric_value": metric_value,
                    "threshold_value": threshold_value,
                },
            )
        except StorageWriteFailed as exc:
            logger.error("Error creating alert %s: %s", key.alert_type.value, exc)
            return None
        finally:
            self._pending.discard(key)

        self._last_created[key] = now
        alert = {
            "id": alert_id,
            "type": key.alert_type.value,
            "severity": key.severity.value,
            "message": message,
            "metricValue": metric_value,
            "thresholdValue": threshold_value,
            "timestamp": _iso_now(),
        }
        self.bus.publish(ALERT_EVENT, alert)
        logger.warning("Alert created: %s", message)
        return alert

    # -------------------------------------------------------
    # Resolution
    # -------------------------------------------------------

    async def resolve_alert(self, alert_id: int, resolved_by: str = "system") -> bool:
        """Resolve one open alert. Resolving an already-resolved alert is a no-op."""
        if not await self.store.resolve_alert(alert_id):
            return False
        logger.info("Alert %s resolved by %s", alert_id, resolved_by)
        try:
            await self.store.record_event(
                "alert_resolved",
                {"alert_id": alert_id, "resolved_by": resolved_by},
                f"Alert {alert_id} resolved by {resolved_by}",
            )
        except StorageError as exc:
            logger.error("Failed to record resolution of alert %s: %s", alert_id, exc)
        self.bus.publish(
            ALERT_RESOLVED_EVENT,
            {"id": alert_id, "resolvedBy": resolved_by, "timestamp": _iso_now()},
        )
        return True

    async def resolve_alerts(
        self,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        resolved_by: str = "system",
    ) -> int:
        if not alert_type and not severity:
            raise ConfigurationError("Either alert_type or severity must be specified")
        ids = await self.store.resolve_alerts(alert_type=alert_type, severity=severity)
        try:
            await self.store.record_event(
                "alerts_bulk_resolved",
                {"alert_type": alert_type, "severity": severity, "resolved_by": resolved_by, "count": len(ids)},
                f"{len(ids)} alerts resolved by {resolved_by}",
            )
        except StorageError as exc:
            logger.error("Failed to record bulk resolution: %s", exc)
        for alert_id in ids:
            self.bus.publish(
                ALERT_RESOLVED_EVENT,
                {"id": alert_id, "resolvedBy": resolved_by, "timestamp": _iso_now()},
            )
        logger.info("%d alerts resolved by %s", len(ids), resolved_by)
        return len(ids)

    async def auto_resolve_alerts(self) -> int:
        """Resolve CPU/memory alerts whose metric has fallen below 80% of its threshold."""
        since = utcnow() - RECENT_WINDOW
        resolved = 0
        for alert_type, (table, column, field_name) in RECOVERY_RULES.items():
            below = getattr(self._thresholds, field_name) * RECOVERY_RATIO
            try:
                ids = await self.store.recovered_alert_ids(alert_type.value, table, column, below, since)
                for alert_id in ids:
                    if await self.resolve_alert(alert_id, "auto"):
                        resolved += 1
            except StorageError as exc:
                logger.error("Error auto-resolving %s alerts: %s", alert_type.value, exc)
        if resolved:
            logger.info("Auto-resolved %d alerts", resolved)
        return resolved

    # -------------------------------------------------------
    # Thresholds
    # -------------------------------------------------------

    def update_thresholds(self, changes: Mapping[str, float]) -> AlertThresholds:
        try:
            updated = AlertThresholds.model_validate({**self._thresholds.model_dump(), **dict(changes)})
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid thresholds: {exc.errors()}") from exc
        self._thresholds = updated
        logger.info("Alert thresholds updated: %s", updated.model_dump())
        return updated
