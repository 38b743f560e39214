"""
Shared fixtures: a temporary SQLite-backed store, fake sensors and a fake
subscriber transport.
"""
import asyncio
import json
import logging

import pytest
import pytest_asyncio

from syswatch.config import Settings
from syswatch.database import create_engine, create_session_factory, init_models
from syswatch.events import EventBus
from syswatch.hub import NORMAL_CLOSURE
from syswatch.sensors import MetricCategory
from syswatch.store import MetricsStore


def db_url(tmp_path, name="test.db"):
    return f"sqlite+aiosqlite:///{tmp_path / name}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine(db_url(tmp_path), pool_size=5)
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine):
    return MetricsStore(create_session_factory(engine))


@pytest.fixture(autouse=True)
def restore_syswatch_logger():
    """setup_logging() detaches the package logger from root; undo it so caplog keeps working."""
    log = logging.getLogger("syswatch")
    handlers, level, propagate = list(log.handlers), log.level, log.propagate
    yield
    for h in log.handlers:
        if h not in handlers:
            h.close()
    log.handlers = handlers
    log.setLevel(level)
    log.propagate = propagate


class RecordingBus(EventBus):
    """EventBus that also keeps every published (type, payload) pair."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.published = []

    def publish(self, event_type, payload):
        self.published.append((event_type, payload))
        return super().publish(event_type, payload)

    def of_type(self, event_type):
        return [p for t, p in self.published if t == event_type]


@pytest.fixture
def bus():
    return RecordingBus()


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.closed = None

    async def send_text(self, data):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(json.loads(data))

    async def close(self, code=NORMAL_CLOSURE, reason=""):
        self.closed = (code, reason)

    def of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]


def cpu_reading(usage=42.5, temp=55.0, load15=0.5):
    return {
        "cpu_usage_percent": usage,
        "cpu_count": 4,
        "cpu_freq_current": 1500.0,
        "cpu_freq_min": 600.0,
        "cpu_freq_max": 1800.0,
        "cpu_temp_celsius": temp,
        "load_avg_1min": 0.4,
        "load_avg_5min": 0.45,
        "load_avg_15min": load15,
    }


def memory_reading(usage=40.0, swap=10.0):
    return {
        "total_bytes": 8_000_000_000,
        "available_bytes": 4_800_000_000,
        "used_bytes": 3_200_000_000,
        "free_bytes": 4_000_000_000,
        "usage_percent": usage,
        "swap_total_bytes": 1_000_000_000,
        "swap_used_bytes": 100_000_000,
        "swap_free_bytes": 900_000_000,
        "swap_usage_percent": swap,
    }


def disk_reading(mount="/", usage=50.0, device="/dev/sda1"):
    return {
        "filesystem": device,
        "mount_point": mount,
        "total_bytes": 100_000,
        "used_bytes": int(usage * 1000),
        "available_bytes": 100_000 - int(usage * 1000),
        "usage_percent": usage,
        "inodes_total": 1000,
        "inodes_used": 100,
        "inodes_free": 900,
    }


def network_reading(name="eth0"):
    return {
        "interface_name": name,
        "bytes_sent": 1000,
        "bytes_recv": 2000,
        "packets_sent": 10,
        "packets_recv": 20,
        "errors_in": 0,
        "errors_out": 0,
        "drops_in": 0,
        "drops_out": 0,
        "speed_mbps": 1000,
        "duplex": "full",
        "mtu": 1500,
    }


def process_reading(zombies=0, total=120):
    return {
        "running_processes": 2,
        "sleeping_processes": total - 2 - zombies,
        "zombie_processes": zombies,
        "total_processes": total,
        "cpu_usage_percent": 12.5,
        "memory_usage_percent": 8.0,
    }


def gpu_reading(temp=48.0):
    return {
        "gpu_temp_celsius": temp,
        "gpu_memory_used_bytes": None,
        "gpu_memory_total_bytes": 76 * 1024 * 1024,
        "gpu_usage_percent": None,
        "fan_status": {"level": 1, "status": "on", "description": "Fan Low"},
    }


def fake_sensors(**overrides):
    sensors = {
        MetricCategory.CPU: cpu_reading,
        MetricCategory.MEMORY: memory_reading,
        MetricCategory.DISK: lambda: [disk_reading("/"), disk_reading("/boot", 20.0, "/dev/sda2")],
        MetricCategory.NETWORK: lambda: [network_reading("eth0"), network_reading("lo")],
        MetricCategory.PROCESS: process_reading,
        MetricCategory.GPU: gpu_reading,
    }
    for key, fn in overrides.items():
        sensors[MetricCategory(key)] = fn
    return sensors


def make_settings(tmp_path, **overrides):
    values = dict(
        DATABASE_URL=db_url(tmp_path, "pipeline.db"),
        DATABASE_POOL_SIZE=5,
        METRICS_INTERVAL=3600,
        CLEANUP_INTERVAL=3600,
        ALERT_CHECK_INTERVAL=3600,
        WS_HEARTBEAT_INTERVAL=3600,
        LOG_DIR=str(tmp_path / "logs"),
    )
    values.update(overrides)
    return Settings(**values)


async def wait_for(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True
