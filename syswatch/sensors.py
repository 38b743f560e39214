"""
Sensor adapters, one per metric category.

Each adapter is a plain blocking function over psutil / the OS. It returns a
reading (a dict, or a list of dicts for disk and network) or raises; the
collector runs them off the event loop and turns failures into omissions.
Individual fields that the hardware cannot provide are None.
"""
import os
import platform
import re
import socket
import subprocess
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil

from .errors import SensorUnavailable


class MetricCategory(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    NETWORK = "network"
    PROCESS = "process"
    GPU = "gpu"

    @property
    def table(self) -> str:
        return f"{self.value}_metrics"

    @property
    def payload_key(self) -> str:
        # key used in the emitted "metrics" event
        return "processes" if self is MetricCategory.PROCESS else self.value


MULTI_ROW_CATEGORIES = (MetricCategory.DISK, MetricCategory.NETWORK)

CPU_TEMP_SENSORS = ("cpu_thermal", "coretemp", "k10temp", "soc_thermal", "acpitz")
SKIPPED_FILESYSTEMS = ("squashfs",)
THERMAL_FAN_STATE = "/sys/class/thermal/cooling_device0/cur_state"

FAN_DESCRIPTIONS = {
    0: "Fan Off",
    1: "Fan Low",
    2: "Fan Medium",
    3: "Fan High",
    4: "Fan Max",
}


# -------------------------------------------------------
# CPU / memory
# -------------------------------------------------------

def _cpu_temperature() -> Optional[float]:
    if not hasattr(psutil, "sensors_temperatures"):
        return None
    try:
        temps = psutil.sensors_temperatures()
    except (OSError, RuntimeError):
        return None
    for name in CPU_TEMP_SENSORS:
        entries = temps.get(name)
        if entries:
            return round(float(entries[0].current), 1)
    return None


def read_cpu() -> Dict[str, Any]:
    freq = psutil.cpu_freq()
    try:
        load1, load5, load15 = psutil.getloadavg()
    except (AttributeError, OSError):
        load1 = load5 = load15 = None

    return {
        "cpu_usage_percent": round(float(psutil.cpu_percent(interval=None)), 2),
        "cpu_count": psutil.cpu_count(logical=True),
        "cpu_freq_current": freq.current if freq else None,
        "cpu_freq_min": (freq.min or None) if freq else None,
        "cpu_freq_max": (freq.max or None) if freq else None,
        "cpu_temp_celsius": _cpu_temperature(),
        "load_avg_1min": load1,
        "load_avg_5min": load5,
        "load_avg_15min": load15,
    }


def read_memory() -> Dict[str, Any]:
    mem = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return {
        "total_bytes": mem.total,
        "available_bytes": mem.available,
        "used_bytes": mem.used,
        "free_bytes": mem.free,
        "usage_percent": round(mem.used / mem.total * 100, 2) if mem.total else 0.0,
        "swap_total_bytes": swap.total,
        "swap_used_bytes": swap.used,
        "swap_free_bytes": swap.free,
        "swap_usage_percent": round(swap.used / swap.total * 100, 2) if swap.total > 0 else 0.0,
    }


# -------------------------------------------------------
# Disk / network (zero or more rows per tick)
# -------------------------------------------------------

def _inodes(mount_point: str):
    try:
        st = os.statvfs(mount_point)
    except (AttributeError, OSError):
        return None, None, None
    if not st.f_files:
        return None, None, None
    return st.f_files, st.f_files - st.f_ffree, st.f_ffree


def read_disks() -> List[Dict[str, Any]]:
    rows = []
    for part in psutil.disk_partitions(all=False):
        if part.fstype in SKIPPED_FILESYSTEMS:
            continue
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (PermissionError, OSError):
            # unreadable mounts (e.g. empty optical drives) are skipped
            continue
        if usage.free <= 0:
            continue
        inodes_total, inodes_used, inodes_free = _inodes(part.mountpoint)
        rows.append(
            {
                "filesystem": part.device,
                "mount_point": part.mountpoint,
                "total_bytes": usage.total,
                "used_bytes": usage.used,
                "available_bytes": usage.free,
                "usage_percent": round(float(usage.percent), 2),
                "inodes_total": inodes_total,
                "inodes_used": inodes_used,
                "inodes_free": inodes_free,
            }
        )
    return rows


def _duplex_name(duplex) -> Optional[str]:
    if duplex == psutil.NIC_DUPLEX_FULL:
        return "full"
    if duplex == psutil.NIC_DUPLEX_HALF:
        return "half"
    return None


def read_network() -> List[Dict[str, Any]]:
    counters = psutil.net_io_counters(pernic=True)
    stats = psutil.net_if_stats()
    rows = []
    for name, io in counters.items():
        st = stats.get(name)
        rows.append(
            {
                "interface_name": name,
                "bytes_sent": io.bytes_sent,
                "bytes_recv": io.bytes_recv,
                "packets_sent": io.packets_sent,
                "packets_recv": io.packets_recv,
                "errors_in": io.errin,
                "errors_out": io.errout,
                "drops_in": io.dropin,
                "drops_out": io.dropout,
                "speed_mbps": (st.speed or None) if st else None,
                "duplex": _duplex_name(st.duplex) if st else None,
                "mtu": st.mtu if st else None,
            }
        )
    return rows


# -------------------------------------------------------
# Processes
# -------------------------------------------------------

def read_processes(top_n: int = 10) -> Dict[str, Any]:
    counts = {"running": 0, "sleeping": 0, "zombie": 0}
    usage = []
    total = 0
    for proc in psutil.process_iter(["status", "cpu_percent", "memory_percent"]):
        info = proc.info
        total += 1
        status = info.get("status")
        if status == psutil.STATUS_RUNNING:
            counts["running"] += 1
        elif status in (psutil.STATUS_SLEEPING, psutil.STATUS_IDLE, psutil.STATUS_DISK_SLEEP):
            counts["sleeping"] += 1
        elif status == psutil.STATUS_ZOMBIE:
            counts["zombie"] += 1
        usage.append((info.get("cpu_percent") or 0.0, info.get("memory_percent") or 0.0))

    if total == 0:
        raise SensorUnavailable("process", "process table is empty")

    busiest = sorted(usage, key=lambda u: u[0], reverse=True)[:top_n]
    return {
        "running_processes": counts["running"],
        "sleeping_processes": counts["sleeping"],
        "zombie_processes": counts["zombie"],
        "total_processes": total,
        "cpu_usage_percent": round(sum(u[0] for u in busiest), 2),
        "memory_usage_percent": round(sum(u[1] for u in busiest), 2),
    }


# -------------------------------------------------------
# GPU / thermal (Raspberry Pi firmware via vcgencmd)
# -------------------------------------------------------

def _vcgencmd(*args: str) -> Optional[str]:
    try:
        out = subprocess.run(
            ["vcgencmd", *args], capture_output=True, text=True, timeout=2, check=True
        )
    except (FileNotFoundError, subprocess.SubprocessError, OSError):
        return None
    return out.stdout


def gpu_temperature() -> Optional[float]:
    out = _vcgencmd("measure_temp")
    match = re.search(r"temp=(\d+(?:\.\d+)?)'C", out or "")
    return float(match.group(1)) if match else None


def gpu_memory_total() -> Optional[int]:
    out = _vcgencmd("get_mem", "gpu")
    match = re.search(r"gpu=(\d+)M", out or "")
    return int(match.group(1)) * 1024 * 1024 if match else None


def fan_description(level: int) -> str:
    return FAN_DESCRIPTIONS.get(level, f"Fan Level {level}")


def fan_status(path: str = THERMAL_FAN_STATE) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            level = int(f.read().strip())
    except (OSError, ValueError):
        return {"level": None, "status": "unknown", "description": "Fan status unavailable"}
    return {
        "level": level,
        "status": "off" if level == 0 else "on",
        "description": fan_description(level),
    }


def read_gpu() -> Dict[str, Any]:
    return {
        "gpu_temp_celsius": gpu_temperature(),
        "gpu_memory_used_bytes": None,
        "gpu_memory_total_bytes": gpu_memory_total(),
        "gpu_usage_percent": None,
        "fan_status": fan_status(),
    }


# -------------------------------------------------------
# Host identity
# -------------------------------------------------------

def read_system_info() -> Dict[str, Any]:
    boot = psutil.boot_time()
    uname = platform.uname()
    return {
        "hostname": socket.gethostname(),
        "platform": uname.system.lower(),
        "arch": uname.machine,
        "kernel": uname.release,
        "uptime_seconds": int(time.time() - boot),
        "boot_time": datetime.fromtimestamp(boot, tz=timezone.utc).replace(tzinfo=None),
    }


def prime() -> None:
    """First psutil cpu_percent call returns 0.0; take a throwaway sample."""
    psutil.cpu_percent(interval=None)


SensorFn = Callable[[], Any]

DEFAULT_SENSORS: Dict[MetricCategory, SensorFn] = {
    MetricCategory.CPU: read_cpu,
    MetricCategory.MEMORY: read_memory,
    MetricCategory.DISK: read_disks,
    MetricCategory.NETWORK: read_network,
    MetricCategory.PROCESS: read_processes,
    MetricCategory.GPU: read_gpu,
}
