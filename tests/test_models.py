"""Tests for sentinel data models."""

from types import MappingProxyType

import pytest

from sentinel.models import (
    Alert,
    AlertCategory,
    AlertSeverity,
    MemoryStats,
    ProcessStatus,
    SensorKind,
    Snapshot,
    ThermalBatch,
    ThermalReading,
)
from sentinel.sources import Fresh, SourceFamily, Stale, Unavailable


def test_process_snapshot_creation(make_process):
    """Test ProcessSnapshot dataclass creation."""
    snapshot = make_process(pid=123, name="test_process", status=ProcessStatus.RUNNING, cpu_percent=50.0)

    assert snapshot.pid == 123
    assert snapshot.name == "test_process"
    assert snapshot.status is ProcessStatus.RUNNING
    assert snapshot.cpu_percent == 50.0


def test_process_snapshot_is_frozen(make_process):
    """Test that ProcessSnapshot is immutable (frozen)."""
    snapshot = make_process()

    with pytest.raises(AttributeError):
        snapshot.pid = 999


def test_process_snapshot_uses_slots(make_process):
    """Test that ProcessSnapshot uses __slots__ for memory efficiency."""
    assert not hasattr(make_process(), "__dict__")


class TestProcessStatus:
    """Tests for psutil status normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("running", ProcessStatus.RUNNING),
            ("sleeping", ProcessStatus.SLEEPING),
            ("disk-sleep", ProcessStatus.SLEEPING),
            ("zombie", ProcessStatus.ZOMBIE),
            ("stopped", ProcessStatus.STOPPED),
            (None, ProcessStatus.UNKNOWN),
            ("parked", ProcessStatus.UNKNOWN),
        ],
    )
    def test_from_psutil(self, raw, expected):
        assert ProcessStatus.from_psutil(raw) is expected


class TestMemoryStats:
    """Tests for derived memory percentages."""

    def test_percent(self):
        stats = MemoryStats(total=1000, used=250, swap_total=100, swap_used=50)
        assert stats.percent == 25.0
        assert stats.swap_percent == 50.0

    def test_zero_totals(self):
        """No swap configured must not divide by zero."""
        stats = MemoryStats(total=0, used=0, swap_total=0, swap_used=0)
        assert stats.percent == 0.0
        assert stats.swap_percent == 0.0


class TestThermalBatch:
    """Tests for per-class maxima of a thermal batch."""

    def _batch(self) -> ThermalBatch:
        return ThermalBatch(
            readings=(
                ThermalReading("cpu/pkg", "CPU Package", SensorKind.CPU_PACKAGE, 72.0, "t"),
                ThermalReading("cpu/c1", "CPU Core #1", SensorKind.CPU_CORE, 75.0, "t"),
                ThermalReading("gpu/hs", "GPU Hot Spot", SensorKind.GPU_HOTSPOT, 80.0, "t"),
                ThermalReading("nvme", "Composite", SensorKind.NVME, 45.0, "t"),
                ThermalReading("nct/cpu", "CPU", SensorKind.MOTHERBOARD, 110.0, "t"),
                ThermalReading("fan", "CPU Fan", SensorKind.FAN, 1800.0, "t"),
            ),
            as_of=10.0,
        )

    def test_maxima(self):
        batch = self._batch()
        assert batch.max_cpu == 75.0
        assert batch.max_gpu == 80.0
        assert batch.max_storage == 45.0
        assert batch.max_motherboard == 110.0

    def test_motherboard_and_fans_do_not_drive_safety(self):
        """A hot Super-I/O proxy or a fast fan never counts as the hottest relevant sensor."""
        assert self._batch().max_relevant == 80.0

    def test_empty_batch(self):
        batch = ThermalBatch(readings=(), as_of=0.0)
        assert batch.max_cpu is None
        assert batch.max_relevant is None

    def test_of_kind(self):
        assert [r.name for r in self._batch().of_kind(SensorKind.CPU_CORE)] == ["CPU Core #1"]


class TestAlert:
    """Tests for Alert ordering and keys."""

    def test_severity_order(self):
        assert AlertSeverity.INFO < AlertSeverity.WARNING < AlertSeverity.CRITICAL < AlertSeverity.DANGER

    def test_dedup_key(self):
        alert = Alert(AlertCategory.HIGH_CPU, AlertSeverity.WARNING, 42, "x", "msg", 1.0)
        assert alert.dedup_key == (42, AlertCategory.HIGH_CPU)


class TestSourceResults:
    """Tests for the Fresh/Stale/Unavailable variants."""

    def test_fresh(self):
        result = Fresh("data", 5.0)
        assert result.is_fresh
        assert result.last_good == "data"

    def test_stale_carries_last_good(self):
        result = Stale("old", 3.0, "timeout")
        assert not result.is_fresh
        assert result.data == "old"
        assert result.as_of == 3.0

    def test_unavailable_has_no_data(self):
        result = Unavailable("gone")
        assert not result.is_fresh
        assert result.data is None
        assert result.as_of is None


class TestSnapshot:
    """Tests for Snapshot source accessors."""

    def test_source_accessors(self, make_snapshot):
        snapshot = make_snapshot(10.0, process_as_of=9.0)
        assert snapshot.as_of(SourceFamily.SYSTEM) == 9.0
        assert not snapshot.is_degraded(SourceFamily.SYSTEM)
        assert snapshot.is_degraded(SourceFamily.GPU)
        assert snapshot.source(SourceFamily.GPU) is None
        assert snapshot.data(SourceFamily.GPU) is None

    def test_sources_are_read_only(self, make_snapshot):
        snapshot = make_snapshot(10.0)
        assert isinstance(snapshot.sources, MappingProxyType)
        with pytest.raises(TypeError):
            snapshot.sources[SourceFamily.GPU] = Unavailable("x")

    def test_snapshot_is_frozen(self, make_snapshot):
        snapshot = make_snapshot(10.0)
        with pytest.raises(AttributeError):
            snapshot.timestamp = 11.0

    def test_default_sources_empty(self):
        snapshot = Snapshot(
            timestamp=1.0, cpu=None, memory=None, disks=(), networks=(), battery=None,
            processes=(), gpus=(), containers=(), thermal=None,
        )
        assert snapshot.is_degraded(SourceFamily.SYSTEM)
        assert dict(snapshot.sources) == {}
