"""Metric collectors for the OS table and the GPU driver."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from typing import Any

import psutil
import pynvml

from sentinel.log import get_logger
from sentinel.models import (
    BatteryStats,
    CpuStats,
    DiskStats,
    GpuStats,
    MemoryStats,
    NetworkStats,
    ProcessSnapshot,
    ProcessStatus,
    SystemSample,
)
from sentinel.sources import Fresh, SourceFamily, SourceResult

logger = get_logger(__name__)

_PROCESS_ATTRS = [
    "pid",
    "ppid",
    "name",
    "exe",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "num_threads",
    "cmdline",
]
if hasattr(psutil.Process, "io_counters"):
    _PROCESS_ATTRS.append("io_counters")


def _rate(current: int, previous: int | None, elapsed: float) -> float:
    if previous is None or elapsed <= 0 or current < previous:
        return 0.0
    return (current - previous) / elapsed


class SystemCollector:
    """
    Collects CPU, memory, disks, network, battery and the process table.

    Throughput figures (disk, network, per-process I/O) are deltas against
    the previous call, so the first sample reports zero rates.
    """

    family = SourceFamily.SYSTEM

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_time: float | None = None
        self._last_disk_io: dict[str, Any] = {}
        self._last_net_io: dict[str, Any] = {}
        self._last_proc_io: dict[int, tuple[int, int]] = {}
        # First call returns 0.0, prime it
        psutil.cpu_percent(percpu=True)

    def is_available(self) -> bool:
        return True

    def poll(self) -> SourceResult:
        now = self._clock()
        return Fresh(self.collect(now), now)

    def collect(self, now: float) -> SystemSample:
        """Collect one sample of the whole OS table."""
        elapsed = 0.0 if self._last_time is None else now - self._last_time
        self._last_time = now

        per_core = psutil.cpu_percent(percpu=True)
        cpu = CpuStats(
            percent=sum(per_core) / len(per_core) if per_core else 0.0,
            per_core=tuple(per_core),
            load_avg=tuple(psutil.getloadavg()),
            core_count=psutil.cpu_count() or len(per_core),
        )

        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        memory = MemoryStats(
            total=mem.total,
            used=mem.total - mem.available,
            swap_total=swap.total,
            swap_used=swap.used,
        )

        return SystemSample(
            cpu=cpu,
            memory=memory,
            disks=self._collect_disks(elapsed),
            networks=self._collect_networks(elapsed),
            battery=self._collect_battery(),
            processes=self._collect_processes(),
            uptime_seconds=time.time() - psutil.boot_time(),
        )

    def _collect_disks(self, elapsed: float) -> tuple[DiskStats, ...]:
        io = psutil.disk_io_counters(perdisk=True) or {}
        disks: list[DiskStats] = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                # Unmounted media, permission-restricted mounts
                continue
            device = os.path.basename(part.device)
            counters = io.get(device)
            previous = self._last_disk_io.get(device)
            disks.append(
                DiskStats(
                    device=part.device,
                    mount_point=part.mountpoint,
                    fs_type=part.fstype,
                    total=usage.total,
                    used=usage.used,
                    free=usage.free,
                    read_bytes_per_sec=_rate(
                        counters.read_bytes, previous.read_bytes if previous else None, elapsed
                    ) if counters else 0.0,
                    write_bytes_per_sec=_rate(
                        counters.write_bytes, previous.write_bytes if previous else None, elapsed
                    ) if counters else 0.0,
                )
            )
        self._last_disk_io = dict(io)
        return tuple(disks)

    def _collect_networks(self, elapsed: float) -> tuple[NetworkStats, ...]:
        io = psutil.net_io_counters(pernic=True) or {}
        networks: list[NetworkStats] = []
        for interface, counters in io.items():
            previous = self._last_net_io.get(interface)
            networks.append(
                NetworkStats(
                    interface=interface,
                    rx_bytes_per_sec=_rate(
                        counters.bytes_recv, previous.bytes_recv if previous else None, elapsed
                    ),
                    tx_bytes_per_sec=_rate(
                        counters.bytes_sent, previous.bytes_sent if previous else None, elapsed
                    ),
                    total_rx=counters.bytes_recv,
                    total_tx=counters.bytes_sent,
                )
            )
        self._last_net_io = dict(io)
        return tuple(networks)

    def _collect_battery(self) -> BatteryStats | None:
        if not hasattr(psutil, "sensors_battery"):
            return None
        battery = psutil.sensors_battery()
        if battery is None:
            return None
        seconds_left = battery.secsleft if isinstance(battery.secsleft, int) and battery.secsleft >= 0 else None
        return BatteryStats(
            percent=float(battery.percent),
            plugged_in=battery.power_plugged,
            seconds_left=seconds_left,
        )

    def _collect_processes(self) -> tuple[ProcessSnapshot, ...]:
        """
        Collect snapshots of all running processes.

        Uses psutil.process_iter() with oneshot() for efficiency. Processes
        that vanish mid-poll, deny access or turn out to be zombies are
        skipped rather than failing the whole table.
        """
        processes: list[ProcessSnapshot] = []
        proc_io: dict[int, tuple[int, int]] = {}

        for proc in psutil.process_iter(attrs=_PROCESS_ATTRS):
            try:
                with proc.oneshot():
                    info = proc.info

                    cmdline = info.get("cmdline") or []
                    command_line = " ".join(cmdline) if cmdline else info.get("name") or ""

                    mem_info = info.get("memory_info")
                    memory_rss = mem_info.rss if mem_info else 0

                    pid = info.get("pid", 0)
                    read_delta = write_delta = 0
                    io = info.get("io_counters")
                    if io is not None:
                        proc_io[pid] = (io.read_bytes, io.write_bytes)
                        previous = self._last_proc_io.get(pid)
                        if previous is not None:
                            read_delta = max(0, io.read_bytes - previous[0])
                            write_delta = max(0, io.write_bytes - previous[1])

                    processes.append(
                        ProcessSnapshot(
                            pid=pid,
                            ppid=info.get("ppid") or 0,
                            name=info.get("name") or "",
                            exe=info.get("exe") or "",
                            username=info.get("username") or "",
                            status=ProcessStatus.from_psutil(info.get("status")),
                            cpu_percent=info.get("cpu_percent") or 0.0,
                            memory_bytes=memory_rss,
                            memory_percent=info.get("memory_percent") or 0.0,
                            disk_read_bytes=read_delta,
                            disk_write_bytes=write_delta,
                            threads=info.get("num_threads") or 0,
                            command_line=command_line,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        self._last_proc_io = proc_io
        return tuple(processes)


def _text(value: str | bytes) -> str:
    # Older NVML bindings return bytes
    return value.decode(errors="replace") if isinstance(value, bytes) else value


class GpuCollector:
    """NVIDIA GPUs through NVML. Reports itself unavailable when no driver is loaded."""

    family = SourceFamily.GPU

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._initialized = False

    def is_available(self) -> bool:
        if self._initialized:
            return True
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            logger.info("NVIDIA driver not available, GPU metrics disabled: %s", e)
            return False
        self._initialized = True
        return True

    def poll(self) -> SourceResult:
        now = self._clock()
        count = pynvml.nvmlDeviceGetCount()
        gpus = tuple(self._device_stats(i) for i in range(count))
        return Fresh(gpus, now)

    def close(self) -> None:
        if self._initialized:
            self._initialized = False
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as e:
                logger.debug("nvmlShutdown failed: %s", e)

    def _device_stats(self, index: int) -> GpuStats:
        handle = pynvml.nvmlDeviceGetHandleByIndex(index)
        util = pynvml.nvmlDeviceGetUtilizationRates(handle)
        mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
        temperature = pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU)

        # Power and fan readings are not supported on every board
        try:
            power_watts = pynvml.nvmlDeviceGetPowerUsage(handle) / 1000.0
        except pynvml.NVMLError:
            power_watts = 0.0
        try:
            fan_percent: float | None = float(pynvml.nvmlDeviceGetFanSpeed(handle))
        except pynvml.NVMLError:
            fan_percent = None

        return GpuStats(
            index=index,
            name=_text(pynvml.nvmlDeviceGetName(handle)),
            utilization=float(util.gpu),
            memory_used=int(mem.used),
            memory_total=int(mem.total),
            temperature=float(temperature),
            power_watts=power_watts,
            fan_percent=fan_percent,
        )
