import asyncio
from datetime import timedelta

import pytest

from syswatch.alerts import (
    ALERT_EVENT,
    ALERT_RESOLVED_EVENT,
    AlertEngine,
    AlertThresholds,
    AlertType,
    Severity,
    get_severity,
)
from syswatch.database import create_session_factory, utcnow
from syswatch.errors import ConfigurationError, StorageReadFailed, StorageWriteFailed
from syswatch.store import MetricsStore

from conftest import cpu_reading, disk_reading, gpu_reading, memory_reading, process_reading


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alert_engine(store, bus, clock):
    return AlertEngine(store, bus, AlertThresholds(), cooldown_seconds=600, clock=clock)


@pytest.mark.parametrize(
    "value, threshold, expected",
    [
        (120, 80, Severity.CRITICAL),
        (96, 80, Severity.HIGH),
        (80, 80, Severity.MEDIUM),
        (85, 80, Severity.MEDIUM),
        (40, 80, Severity.LOW),
    ],
)
def test_get_severity(value, threshold, expected):
    assert get_severity(value, threshold) is expected


async def test_create_alert_persists_and_publishes(alert_engine, store, bus):
    alert = await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "CPU hot", 97.0, 80.0)

    assert alert["type"] == "cpu_usage_high"
    assert alert["metricValue"] == 97.0
    assert bus.of_type(ALERT_EVENT) == [alert]
    stored = await store.get_alert(alert["id"])
    assert stored["resolved"] is False
    assert stored["message"] == "CPU hot"


async def test_cooldown_suppresses_same_type_and_severity(alert_engine, store, bus, clock):
    first = await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0)
    assert first is not None

    clock.advance(599)
    assert await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0) is None
    # a different severity is a different key
    assert await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.CRITICAL, "m", 125.0, 80.0) is not None

    clock.advance(2)
    assert await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0) is not None
    assert len(bus.of_type(ALERT_EVENT)) == 3
    assert len(await store.list_alerts()) == 3


async def test_concurrent_duplicates_create_one_alert(alert_engine, store):
    results = await asyncio.gather(
        *(alert_engine.create_alert(AlertType.MEMORY_USAGE_HIGH, Severity.MEDIUM, "m", 90.0, 85.0) for _ in range(3))
    )
    assert sum(r is not None for r in results) == 1
    assert len(await store.list_alerts()) == 1


class FailingAlertStore(MetricsStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.fail_alerts = True

    async def insert(self, table, record):
        if table == "alerts" and self.fail_alerts:
            raise StorageWriteFailed(table, "disk full")
        return await super().insert(table, record)


async def test_failed_write_publishes_nothing_and_does_not_arm_cooldown(engine, bus, clock):
    store = FailingAlertStore(create_session_factory(engine))
    alerts = AlertEngine(store, bus, clock=clock)

    assert await alerts.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0) is None
    assert bus.of_type(ALERT_EVENT) == []

    store.fail_alerts = False
    assert await alerts.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0) is not None


async def test_cpu_rule(alert_engine, store, bus):
    await store.insert("cpu_metrics", cpu_reading(usage=120.0, temp=50.0))
    created = await alert_engine.check_cpu()
    assert [(a["type"], a["severity"]) for a in created] == [("cpu_usage_high", "critical")]

    await store.insert("cpu_metrics", cpu_reading(usage=50.0, temp=80.0))
    created = await alert_engine.check_cpu()
    assert [(a["type"], a["severity"]) for a in created] == [("cpu_temperature_high", "medium")]


async def test_memory_rule_includes_swap(alert_engine, store):
    await store.insert("memory_metrics", memory_reading(usage=90.0, swap=60.0))
    created = await alert_engine.check_memory()
    assert {a["type"] for a in created} == {"memory_usage_high", "swap_usage_high"}


async def test_disk_rule_alerts_per_filesystem(alert_engine, store):
    await store.insert("disk_metrics", disk_reading("/", 95.0))
    await store.insert("disk_metrics", disk_reading("/data", 96.0, "/dev/sdb1"))
    await store.insert("disk_metrics", disk_reading("/boot", 20.0, "/dev/sda2"))

    created = await alert_engine.check_disk()
    assert len(created) == 2
    assert all(a["severity"] == "medium" for a in created)
    assert "/data" in created[0]["message"] or "/data" in created[1]["message"]

    # both mounts are now in cooldown
    assert [a for a in await alert_engine.check_disk() if a] == []


async def test_disk_rule_ignores_stale_rows(alert_engine, store):
    await store.insert("disk_metrics", {**disk_reading("/", 99.0), "timestamp": utcnow() - timedelta(minutes=30)})
    assert await alert_engine.check_disk() == []


async def test_gpu_load_and_process_rules(alert_engine, store):
    await store.insert("gpu_metrics", gpu_reading(temp=90.0))
    await store.insert("cpu_metrics", cpu_reading(usage=10.0, temp=None, load15=7.5))
    await store.insert("process_metrics", process_reading(zombies=6, total=600))

    assert [a["type"] for a in await alert_engine.check_gpu_temperature()] == ["gpu_temperature_high"]
    load = await alert_engine.check_load()
    assert [(a["type"], a["severity"]) for a in load] == [("load_average_high", "critical")]
    procs = {a["type"]: a["severity"] for a in await alert_engine.check_processes()}
    assert procs == {"zombie_processes_high": "medium", "process_count_high": "low"}


async def test_rules_are_quiet_without_data(alert_engine):
    assert await alert_engine.check_all() == []


class UnreadableCpuStore(MetricsStore):
    async def query_latest(self, table, limit=100):
        if table == "cpu_metrics":
            raise StorageReadFailed(table, "database is locked")
        return await super().query_latest(table, limit)


async def test_failed_read_skips_only_that_rule(engine, bus, clock):
    store = UnreadableCpuStore(create_session_factory(engine))
    await store.insert("memory_metrics", memory_reading(usage=99.0, swap=0.0))
    alerts = AlertEngine(store, bus, clock=clock)

    created = await alerts.check_all()
    assert [a["type"] for a in created] == ["memory_usage_high"]


async def test_resolve_is_idempotent(alert_engine, store, bus):
    alert = await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0)

    assert await alert_engine.resolve_alert(alert["id"], "operator") is True
    assert await alert_engine.resolve_alert(alert["id"], "operator") is False
    assert await alert_engine.resolve_alert(12345) is False

    assert len(await store.list_events("alert_resolved")) == 1
    resolved = bus.of_type(ALERT_RESOLVED_EVENT)
    assert len(resolved) == 1
    assert resolved[0]["id"] == alert["id"]
    assert resolved[0]["resolvedBy"] == "operator"


async def test_resolution_keeps_cooldown(alert_engine, clock):
    alert = await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0)
    await alert_engine.resolve_alert(alert["id"])
    clock.advance(60)
    assert await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0) is None


async def test_bulk_resolve(alert_engine, store, bus):
    with pytest.raises(ConfigurationError):
        await alert_engine.resolve_alerts()

    await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.HIGH, "m", 97.0, 80.0)
    await alert_engine.create_alert(AlertType.CPU_USAGE_HIGH, Severity.CRITICAL, "m", 130.0, 80.0)
    await alert_engine.create_alert(AlertType.DISK_USAGE_HIGH, Severity.HIGH, "m", 95.0, 90.0, subject="/")

    assert await alert_engine.resolve_alerts(alert_type="cpu_usage_high") == 2
    assert [a["alert_type"] for a in await store.active_alerts()] == ["disk_usage_high"]
    assert len(bus.of_type(ALERT_RESOLVED_EVENT)) == 2
    assert len(await store.list_events("alerts_bulk_resolved")) == 1


async def test_auto_resolve_after_recovery(alert_engine, store, bus):
    now = utcnow()
    cpu_alert = await store.insert(
        "alerts",
        {
            "alert_type": "cpu_usage_high",
            "severity": "medium",
            "message": "m",
            "metric_value": 85.0,
            "threshold_value": 80.0,
            "timestamp": now - timedelta(minutes=2),
        },
    )
    mem_alert = await store.insert(
        "alerts",
        {
            "alert_type": "memory_usage_high",
            "severity": "medium",
            "message": "m",
            "metric_value": 90.0,
            "threshold_value": 85.0,
            "timestamp": now - timedelta(minutes=2),
        },
    )
    # 50 < 0.8 * 80; memory stays at 80, above 0.8 * 85
    await store.insert("cpu_metrics", cpu_reading(usage=50.0))
    await store.insert("memory_metrics", memory_reading(usage=80.0))

    assert await alert_engine.auto_resolve_alerts() == 1
    assert (await store.get_alert(cpu_alert))["resolved"] is True
    assert (await store.get_alert(mem_alert))["resolved"] is False
    assert bus.of_type(ALERT_RESOLVED_EVENT)[0]["resolvedBy"] == "auto"


def test_update_thresholds(bus):
    alerts = AlertEngine(None, bus)
    updated = alerts.update_thresholds({"cpu": 70})
    assert updated.cpu == 70
    assert alerts.thresholds.memory == 85

    with pytest.raises(ConfigurationError):
        alerts.update_thresholds({"cpu": -5})
    with pytest.raises(ConfigurationError):
        alerts.update_thresholds({"gpu": 50})
    assert alerts.thresholds.cpu == 70


async def test_start_stop_idempotent(alert_engine):
    assert await alert_engine.start(check_interval=3600) is True
    assert await alert_engine.start() is False
    assert alert_engine.stop() is True
    assert alert_engine.stop() is False
    assert await alert_engine.wait_idle(1.0) is True
