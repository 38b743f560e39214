from types import SimpleNamespace

import psutil
import pytest

from syswatch import sensors
from syswatch.errors import SensorUnavailable
from syswatch.sensors import MetricCategory


def test_category_tables_and_payload_keys():
    assert MetricCategory.CPU.table == "cpu_metrics"
    assert MetricCategory.PROCESS.table == "process_metrics"
    assert MetricCategory.PROCESS.payload_key == "processes"
    assert MetricCategory.DISK.payload_key == "disk"


@pytest.mark.parametrize(
    "raw, level, status, description",
    [
        ("0\n", 0, "off", "Fan Off"),
        ("2", 2, "on", "Fan Medium"),
        ("4", 4, "on", "Fan Max"),
        ("9", 9, "on", "Fan Level 9"),
    ],
)
def test_fan_status_reads_cooling_device(tmp_path, raw, level, status, description):
    path = tmp_path / "cur_state"
    path.write_text(raw)
    assert sensors.fan_status(str(path)) == {"level": level, "status": status, "description": description}


def test_fan_status_unavailable(tmp_path):
    missing = sensors.fan_status(str(tmp_path / "nope"))
    assert missing["level"] is None
    assert missing["status"] == "unknown"

    garbage = tmp_path / "cur_state"
    garbage.write_text("n/a")
    assert sensors.fan_status(str(garbage))["status"] == "unknown"


def test_gpu_readings_parse_vcgencmd(monkeypatch):
    outputs = {"measure_temp": "temp=48.3'C\n", "get_mem": "gpu=76M\n"}
    monkeypatch.setattr(sensors, "_vcgencmd", lambda *args: outputs[args[0]])
    assert sensors.gpu_temperature() == 48.3
    assert sensors.gpu_memory_total() == 76 * 1024 * 1024


def test_gpu_readings_absent_without_firmware_tool(monkeypatch):
    monkeypatch.setattr(sensors, "_vcgencmd", lambda *args: None)
    reading = sensors.read_gpu()
    assert reading["gpu_temp_celsius"] is None
    assert reading["gpu_memory_total_bytes"] is None
    assert "fan_status" in reading


def test_read_memory_percentages(monkeypatch):
    monkeypatch.setattr(
        psutil, "virtual_memory", lambda: SimpleNamespace(total=1000, available=700, used=250, free=600)
    )
    monkeypatch.setattr(psutil, "swap_memory", lambda: SimpleNamespace(total=0, used=0, free=0))
    reading = sensors.read_memory()
    assert reading["usage_percent"] == 25.0
    assert reading["swap_usage_percent"] == 0.0
    assert reading["total_bytes"] == 1000


def test_read_disks_skips_squashfs_and_full_mounts(monkeypatch):
    parts = [
        SimpleNamespace(device="/dev/sda1", mountpoint="/", fstype="ext4"),
        SimpleNamespace(device="/dev/loop0", mountpoint="/snap/core", fstype="squashfs"),
        SimpleNamespace(device="/dev/sdb1", mountpoint="/full", fstype="ext4"),
        SimpleNamespace(device="/dev/sr0", mountpoint="/media/cdrom", fstype="iso9660"),
    ]
    usages = {
        "/": SimpleNamespace(total=100, used=40, free=60, percent=40.0),
        "/full": SimpleNamespace(total=100, used=100, free=0, percent=100.0),
    }

    def disk_usage(mount):
        if mount not in usages:
            raise PermissionError(mount)
        return usages[mount]

    monkeypatch.setattr(psutil, "disk_partitions", lambda all=False: parts)
    monkeypatch.setattr(psutil, "disk_usage", disk_usage)
    monkeypatch.setattr(sensors, "_inodes", lambda mount: (10, 4, 6))

    rows = sensors.read_disks()
    assert [r["mount_point"] for r in rows] == ["/"]
    assert rows[0]["usage_percent"] == 40.0
    assert rows[0]["inodes_used"] == 4


def test_read_network_maps_duplex(monkeypatch):
    io = SimpleNamespace(
        bytes_sent=1, bytes_recv=2, packets_sent=3, packets_recv=4, errin=0, errout=0, dropin=1, dropout=0
    )
    monkeypatch.setattr(psutil, "net_io_counters", lambda pernic=True: {"eth0": io, "wlan0": io})
    monkeypatch.setattr(
        psutil,
        "net_if_stats",
        lambda: {"eth0": SimpleNamespace(speed=1000, duplex=psutil.NIC_DUPLEX_FULL, mtu=1500)},
    )
    rows = {r["interface_name"]: r for r in sensors.read_network()}
    assert rows["eth0"]["duplex"] == "full"
    assert rows["eth0"]["speed_mbps"] == 1000
    assert rows["wlan0"]["duplex"] is None
    assert rows["wlan0"]["mtu"] is None
    assert rows["eth0"]["drops_in"] == 1


def test_read_processes_counts_states(monkeypatch):
    procs = [
        SimpleNamespace(info={"status": psutil.STATUS_RUNNING, "cpu_percent": 50.0, "memory_percent": 5.0}),
        SimpleNamespace(info={"status": psutil.STATUS_SLEEPING, "cpu_percent": 1.0, "memory_percent": 1.0}),
        SimpleNamespace(info={"status": psutil.STATUS_ZOMBIE, "cpu_percent": None, "memory_percent": None}),
    ]
    monkeypatch.setattr(psutil, "process_iter", lambda attrs: iter(procs))
    reading = sensors.read_processes(top_n=2)
    assert reading["total_processes"] == 3
    assert reading["running_processes"] == 1
    assert reading["sleeping_processes"] == 1
    assert reading["zombie_processes"] == 1
    assert reading["cpu_usage_percent"] == 51.0


def test_read_processes_empty_table_is_unavailable(monkeypatch):
    monkeypatch.setattr(psutil, "process_iter", lambda attrs: iter([]))
    with pytest.raises(SensorUnavailable):
        sensors.read_processes()


def test_read_system_info_shape():
    info = sensors.read_system_info()
    assert info["hostname"]
    assert info["uptime_seconds"] >= 0
    assert info["boot_time"].tzinfo is None
