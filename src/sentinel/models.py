"""Data models for sentinel.

Every value published to consumers is a frozen, slotted dataclass whose
collection fields are tuples, so a Snapshot can be shared between threads
without copying.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sentinel.sources import SourceFamily, SourceResult

SYSTEM_SUBJECT = "system"
THERMAL_SUBJECT = "thermal"


class ProcessStatus(Enum):
    """Process scheduler state, normalized from psutil status strings."""

    RUNNING = "running"
    SLEEPING = "sleeping"
    STOPPED = "stopped"
    ZOMBIE = "zombie"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @classmethod
    def from_psutil(cls, status: str | None) -> ProcessStatus:
        """Map a psutil ``STATUS_*`` string to a ProcessStatus."""
        mapping = {
            "running": cls.RUNNING,
            "sleeping": cls.SLEEPING,
            "disk-sleep": cls.SLEEPING,
            "idle": cls.SLEEPING,
            "stopped": cls.STOPPED,
            "tracing-stop": cls.STOPPED,
            "zombie": cls.ZOMBIE,
            "dead": cls.DEAD,
        }
        return mapping.get((status or "").lower(), cls.UNKNOWN)


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """Immutable snapshot of a process state."""

    pid: int
    ppid: int
    name: str
    exe: str
    username: str
    status: ProcessStatus
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_bytes: int  # RSS
    memory_percent: float
    disk_read_bytes: int  # since the previous sample
    disk_write_bytes: int
    threads: int
    command_line: str


@dataclass(slots=True, frozen=True)
class CpuStats:
    percent: float
    per_core: tuple[float, ...]
    load_avg: tuple[float, float, float]
    core_count: int


@dataclass(slots=True, frozen=True)
class MemoryStats:
    total: int
    used: int
    swap_total: int
    swap_used: int

    @property
    def percent(self) -> float:
        """Used memory as a percentage of total."""
        if self.total == 0:
            return 0.0
        return self.used / self.total * 100.0

    @property
    def swap_percent(self) -> float:
        """Used swap as a percentage of total swap."""
        if self.swap_total == 0:
            return 0.0
        return self.swap_used / self.swap_total * 100.0


@dataclass(slots=True, frozen=True)
class DiskStats:
    """Usage and throughput of one mounted filesystem."""

    device: str
    mount_point: str
    fs_type: str
    total: int
    used: int
    free: int
    read_bytes_per_sec: float
    write_bytes_per_sec: float


@dataclass(slots=True, frozen=True)
class NetworkStats:
    """Rates since the previous sample plus totals since boot."""

    interface: str
    rx_bytes_per_sec: float
    tx_bytes_per_sec: float
    total_rx: int
    total_tx: int


@dataclass(slots=True, frozen=True)
class BatteryStats:
    percent: float
    plugged_in: bool | None
    seconds_left: int | None


@dataclass(slots=True, frozen=True)
class SystemSample:
    """Everything one call of the OS collector produces."""

    cpu: CpuStats
    memory: MemoryStats
    disks: tuple[DiskStats, ...]
    networks: tuple[NetworkStats, ...]
    battery: BatteryStats | None
    processes: tuple[ProcessSnapshot, ...]
    uptime_seconds: float


@dataclass(slots=True, frozen=True)
class GpuStats:
    index: int
    name: str
    utilization: float  # 0-100
    memory_used: int
    memory_total: int
    temperature: float  # Celsius
    power_watts: float
    fan_percent: float | None

    @property
    def memory_percent(self) -> float:
        """VRAM used as a percentage of total."""
        if self.memory_total == 0:
            return 0.0
        return self.memory_used / self.memory_total * 100.0


@dataclass(slots=True, frozen=True)
class ContainerStats:
    id: str
    name: str
    image: str
    state: str
    cpu_percent: float
    memory_usage: int
    memory_limit: int
    pids: int

    @property
    def memory_percent(self) -> float:
        if self.memory_limit == 0:
            return 0.0
        return self.memory_usage / self.memory_limit * 100.0


class SensorKind(Enum):
    """Classification of a thermal sensor."""

    CPU_PACKAGE = "cpu_package"
    CPU_CORE = "cpu_core"
    GPU_CORE = "gpu_core"
    GPU_HOTSPOT = "gpu_hotspot"
    NVME = "nvme"
    MOTHERBOARD = "motherboard"
    FAN = "fan"

    @property
    def is_cpu_die(self) -> bool:
        """True only for sensors that read the CPU die itself."""
        return self in (SensorKind.CPU_PACKAGE, SensorKind.CPU_CORE)

    @property
    def is_gpu(self) -> bool:
        return self in (SensorKind.GPU_CORE, SensorKind.GPU_HOTSPOT)

    @property
    def drives_safety(self) -> bool:
        """Whether readings of this kind feed the thermal safety machine."""
        return self.is_cpu_die or self.is_gpu or self is SensorKind.NVME


@dataclass(slots=True, frozen=True)
class ThermalReading:
    """A single sensor value in Celsius (or RPM for fans)."""

    sensor_id: str
    name: str
    kind: SensorKind
    value: float
    source: str


@dataclass(slots=True, frozen=True)
class ThermalBatch:
    """All readings from one thermal fetch."""

    readings: tuple[ThermalReading, ...]
    as_of: float

    def _max(self, predicate) -> float | None:
        values = [r.value for r in self.readings if predicate(r.kind)]
        return max(values) if values else None

    @property
    def max_cpu(self) -> float | None:
        """Hottest CPU-die reading; motherboard proxies are excluded."""
        return self._max(lambda kind: kind.is_cpu_die)

    @property
    def max_gpu(self) -> float | None:
        return self._max(lambda kind: kind.is_gpu)

    @property
    def max_storage(self) -> float | None:
        return self._max(lambda kind: kind is SensorKind.NVME)

    @property
    def max_motherboard(self) -> float | None:
        return self._max(lambda kind: kind is SensorKind.MOTHERBOARD)

    @property
    def max_relevant(self) -> float | None:
        """Hottest reading among the sensors that drive the safety machine."""
        return self._max(lambda kind: kind.drives_safety)

    def of_kind(self, kind: SensorKind) -> tuple[ThermalReading, ...]:
        return tuple(r for r in self.readings if r.kind is kind)


class AlertSeverity(IntEnum):
    """Alert severity, ordered from least to most severe."""

    INFO = 0
    WARNING = 1
    CRITICAL = 2
    DANGER = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


class AlertCategory(Enum):
    HIGH_CPU = "high_cpu"
    HIGH_MEMORY = "high_memory"
    SYSTEM_OVERLOAD = "system_overload"
    ZOMBIE = "zombie"
    SUSPICIOUS = "suspicious"
    SECURITY_THREAT = "security_threat"
    MEMORY_LEAK = "memory_leak"
    HIGH_DISK_IO = "high_disk_io"
    THERMAL_WARNING = "thermal_warning"
    THERMAL_CRITICAL = "thermal_critical"
    THERMAL_EMERGENCY = "thermal_emergency"


@dataclass(slots=True, frozen=True)
class Alert:
    """A raised alert. ``subject_key`` is a pid or a fixed system key."""

    category: AlertCategory
    severity: AlertSeverity
    subject_key: int | str
    subject_name: str
    message: str
    raised_at: float
    value: float = 0.0
    threshold: float = 0.0

    @property
    def dedup_key(self) -> tuple[int | str, AlertCategory]:
        return (self.subject_key, self.category)


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    One immutable, timestamped, fused view of all monitored sources.

    Family fields hold the last good value for that family, or the absent
    marker (``None`` / empty tuple) when the family never produced data.
    ``sources`` holds the latest SourceResult per family so consumers can
    tell fresh data from carried-forward data.
    """

    timestamp: float
    cpu: CpuStats | None
    memory: MemoryStats | None
    disks: tuple[DiskStats, ...]
    networks: tuple[NetworkStats, ...]
    battery: BatteryStats | None
    processes: tuple[ProcessSnapshot, ...]
    gpus: tuple[GpuStats, ...]
    containers: tuple[ContainerStats, ...]
    thermal: ThermalBatch | None
    sources: Mapping[SourceFamily, SourceResult] = field(
        default_factory=lambda: MappingProxyType({}), compare=False
    )
    uptime_seconds: float = 0.0

    def source(self, family: SourceFamily) -> SourceResult | None:
        """Latest SourceResult recorded for ``family`` at merge time."""
        return self.sources.get(family)

    def as_of(self, family: SourceFamily) -> float | None:
        """Capture time of the data carried for ``family``."""
        result = self.sources.get(family)
        return None if result is None else result.as_of

    def is_degraded(self, family: SourceFamily) -> bool:
        result = self.sources.get(family)
        return result is None or not result.is_fresh

    def data(self, family: SourceFamily) -> Any:
        result = self.sources.get(family)
        return None if result is None else result.data
