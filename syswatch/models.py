from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Float, Integer, String, Text

from .database import Base, utcnow


class CpuMetric(Base):
    __tablename__ = "cpu_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    cpu_usage_percent = Column(Float)
    cpu_count = Column(Integer)
    cpu_freq_current = Column(Float)
    cpu_freq_min = Column(Float)
    cpu_freq_max = Column(Float)
    cpu_temp_celsius = Column(Float)  # null on hardware without a sensor
    load_avg_1min = Column(Float)
    load_avg_5min = Column(Float)
    load_avg_15min = Column(Float)


class MemoryMetric(Base):
    __tablename__ = "memory_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    total_bytes = Column(BigInteger)
    available_bytes = Column(BigInteger)
    used_bytes = Column(BigInteger)
    free_bytes = Column(BigInteger)
    usage_percent = Column(Float)
    swap_total_bytes = Column(BigInteger)
    swap_used_bytes = Column(BigInteger)
    swap_free_bytes = Column(BigInteger)
    swap_usage_percent = Column(Float)


class DiskMetric(Base):
    __tablename__ = "disk_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    filesystem = Column(String, index=True)
    mount_point = Column(String)
    total_bytes = Column(BigInteger)
    used_bytes = Column(BigInteger)
    available_bytes = Column(BigInteger)
    usage_percent = Column(Float)
    inodes_total = Column(BigInteger)
    inodes_used = Column(BigInteger)
    inodes_free = Column(BigInteger)


class NetworkMetric(Base):
    __tablename__ = "network_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    interface_name = Column(String, index=True)
    bytes_sent = Column(BigInteger)
    bytes_recv = Column(BigInteger)
    packets_sent = Column(BigInteger)
    packets_recv = Column(BigInteger)
    errors_in = Column(BigInteger)
    errors_out = Column(BigInteger)
    drops_in = Column(BigInteger)
    drops_out = Column(BigInteger)
    speed_mbps = Column(Integer)
    duplex = Column(String)
    mtu = Column(Integer)


class ProcessMetric(Base):
    __tablename__ = "process_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    running_processes = Column(Integer)
    sleeping_processes = Column(Integer)
    zombie_processes = Column(Integer)
    total_processes = Column(Integer)
    cpu_usage_percent = Column(Float)
    memory_usage_percent = Column(Float)


class GpuMetric(Base):
    __tablename__ = "gpu_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    gpu_temp_celsius = Column(Float)
    gpu_memory_used_bytes = Column(BigInteger)
    gpu_memory_total_bytes = Column(BigInteger)
    gpu_usage_percent = Column(Float)


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)  # created_at
    alert_type = Column(String, index=True)   # e.g. "cpu_usage_high"
    severity = Column(String, index=True)     # low / medium / high / critical
    message = Column(Text)
    metric_value = Column(Float)
    threshold_value = Column(Float)
    resolved = Column(Boolean, default=False, nullable=False, index=True)
    resolved_at = Column(DateTime)


class SystemEvent(Base):
    __tablename__ = "system_events"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    event_type = Column(String, index=True)
    event_data = Column(JSON)
    description = Column(Text)


class SystemInfo(Base):
    __tablename__ = "system_info"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, onupdate=utcnow, index=True, nullable=False)
    hostname = Column(String, unique=True, nullable=False)
    platform = Column(String)
    arch = Column(String)
    kernel = Column(String)
    uptime_seconds = Column(BigInteger)
    boot_time = Column(DateTime)


TABLES = {
    model.__tablename__: model
    for model in (
        CpuMetric,
        MemoryMetric,
        DiskMetric,
        NetworkMetric,
        ProcessMetric,
        GpuMetric,
        Alert,
        SystemEvent,
        SystemInfo,
    )
}

# Tables pruned by the retention cleanup.
RETENTION_TABLES = (
    "cpu_metrics",
    "memory_metrics",
    "disk_metrics",
    "network_metrics",
    "process_metrics",
    "gpu_metrics",
    "alerts",
    "system_events",
)
