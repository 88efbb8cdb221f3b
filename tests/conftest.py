"""Shared fixtures: fake clocks, collectors, triggers and snapshot factories."""

import threading
from types import MappingProxyType

import pytest

from sentinel.errors import ShutdownExecutionError
from sentinel.models import (
    CpuStats,
    MemoryStats,
    ProcessSnapshot,
    ProcessStatus,
    SensorKind,
    Snapshot,
    SystemSample,
    ThermalBatch,
    ThermalReading,
)
from sentinel.sources import Fresh, SourceFamily, Unavailable

GIB = 1024**3
MIB = 1024**2


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingTrigger:
    """ShutdownTrigger that counts calls and can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    def execute(self) -> None:
        self.calls += 1
        if self.fail:
            raise ShutdownExecutionError("permission denied")


class ScriptedCollector:
    """Collector returning (or raising) a scripted sequence of outcomes."""

    def __init__(self, family: SourceFamily, outcomes=None, available: bool = True) -> None:
        self.family = family
        self._outcomes = list(outcomes or [])
        self._available = available
        self.calls = 0
        self.lock = threading.Lock()

    def push(self, outcome) -> None:
        with self.lock:
            self._outcomes.append(outcome)

    def is_available(self) -> bool:
        return self._available

    def poll(self):
        with self.lock:
            self.calls += 1
            outcome = self._outcomes.pop(0) if self._outcomes else Unavailable("script exhausted")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingCollector:
    """Collector whose poll() blocks until released."""

    def __init__(self, family: SourceFamily) -> None:
        self.family = family
        self.release = threading.Event()
        self.calls = 0

    def is_available(self) -> bool:
        return True

    def poll(self):
        self.calls += 1
        self.release.wait(timeout=10.0)
        return Unavailable("released")


def _process(pid: int = 100, **overrides) -> ProcessSnapshot:
    fields = dict(
        pid=pid,
        ppid=1,
        name=f"proc{pid}",
        exe=f"/usr/bin/proc{pid}",
        username="user",
        status=ProcessStatus.SLEEPING,
        cpu_percent=0.0,
        memory_bytes=50 * MIB,
        memory_percent=0.5,
        disk_read_bytes=0,
        disk_write_bytes=0,
        threads=1,
        command_line=f"/usr/bin/proc{pid}",
    )
    fields.update(overrides)
    return ProcessSnapshot(**fields)


def _system_sample(processes=(), cpu_percent: float = 10.0, memory_used: int = 4 * GIB) -> SystemSample:
    return SystemSample(
        cpu=CpuStats(percent=cpu_percent, per_core=(cpu_percent, cpu_percent), load_avg=(0.5, 0.4, 0.3), core_count=2),
        memory=MemoryStats(total=16 * GIB, used=memory_used, swap_total=2 * GIB, swap_used=0),
        disks=(),
        networks=(),
        battery=None,
        processes=tuple(processes),
        uptime_seconds=3600.0,
    )


def _snapshot(
    timestamp: float,
    processes=(),
    process_as_of: float | None = None,
    cpu_percent: float = 10.0,
    memory_used: int = 4 * GIB,
    thermal: ThermalBatch | None = None,
) -> Snapshot:
    sample = _system_sample(processes, cpu_percent, memory_used)
    as_of = timestamp if process_as_of is None else process_as_of
    sources = {SourceFamily.SYSTEM: Fresh(sample, as_of)}
    if thermal is not None:
        sources[SourceFamily.THERMAL] = Fresh(thermal, thermal.as_of)
    return Snapshot(
        timestamp=timestamp,
        cpu=sample.cpu,
        memory=sample.memory,
        disks=(),
        networks=(),
        battery=None,
        processes=sample.processes,
        gpus=(),
        containers=(),
        thermal=thermal,
        sources=MappingProxyType(sources),
        uptime_seconds=sample.uptime_seconds,
    )


def _batch(cpu: float | None = None, gpu: float | None = None, as_of: float = 0.0, motherboard: float | None = None) -> ThermalBatch:
    readings = []
    if cpu is not None:
        readings.append(ThermalReading("cpu/package", "CPU Package", SensorKind.CPU_PACKAGE, cpu, "test"))
    if gpu is not None:
        readings.append(ThermalReading("gpu/core", "GPU Core", SensorKind.GPU_CORE, gpu, "test"))
    if motherboard is not None:
        readings.append(ThermalReading("nct/cpu", "CPU", SensorKind.MOTHERBOARD, motherboard, "test"))
    return ThermalBatch(readings=tuple(readings), as_of=as_of)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trigger():
    return RecordingTrigger()


@pytest.fixture
def make_process():
    return _process


@pytest.fixture
def make_sample():
    return _system_sample


@pytest.fixture
def make_snapshot():
    return _snapshot


@pytest.fixture
def make_batch():
    return _batch
