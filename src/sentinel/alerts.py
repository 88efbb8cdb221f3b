"""Alert engine for sentinel.

Analyzes each merged Snapshot and turns threshold breaches, trends and
pattern matches into deduplicated Alerts.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence

from sentinel.config import MIB, AlertConfig
from sentinel.log import get_logger
from sentinel.models import (
    SYSTEM_SUBJECT,
    THERMAL_SUBJECT,
    Alert,
    AlertCategory,
    AlertSeverity,
    ProcessSnapshot,
    ProcessStatus,
    Snapshot,
)
from sentinel.patterns import PatternSet, default_security_set, default_suspicious_set
from sentinel.safety import ThermalState, ThermalStatus
from sentinel.sources import SourceFamily

logger = get_logger(__name__)

DedupKey = tuple[int | str, AlertCategory]

_THERMAL_ALERTS: dict[ThermalState, tuple[AlertCategory, AlertSeverity]] = {
    ThermalState.WARNING: (AlertCategory.THERMAL_WARNING, AlertSeverity.WARNING),
    ThermalState.CRITICAL: (AlertCategory.THERMAL_CRITICAL, AlertSeverity.CRITICAL),
    ThermalState.EMERGENCY: (AlertCategory.THERMAL_EMERGENCY, AlertSeverity.DANGER),
    ThermalState.SHUTDOWN_COUNTDOWN: (AlertCategory.THERMAL_EMERGENCY, AlertSeverity.DANGER),
    ThermalState.SHUTDOWN_TRIGGERED: (AlertCategory.THERMAL_EMERGENCY, AlertSeverity.DANGER),
}


def format_bytes(size: float) -> str:
    """Format bytes as a human-readable string (KiB, MiB, GiB)."""
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f} B" if unit == "B" else f"{size:.1f} {unit}"
        size = size / 1024
    return f"{size:.1f} GiB"


class DedupMemory:
    """
    Remembers when each (subject, category) pair last fired.

    Entries older than the cooldown count as absent and are dropped when
    they are looked up, so the work per tick stays proportional to the
    alerts actually raised.
    """

    def __init__(self, cooldown: float, escalation_bypasses_cooldown: bool = False) -> None:
        self._cooldown = cooldown
        self._escalation_bypasses = escalation_bypasses_cooldown
        self._entries: dict[DedupKey, tuple[float, AlertSeverity]] = {}

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def __len__(self) -> int:
        return len(self._entries)

    def last_raised(self, key: DedupKey, now: float) -> tuple[float, AlertSeverity] | None:
        """Return the live entry for ``key``, pruning it if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now - entry[0] >= self._cooldown:
            del self._entries[key]
            return None
        return entry

    def admit(self, alert: Alert) -> bool:
        """
        Decide whether ``alert`` may be emitted and record it if so.

        Within the cooldown the same key is suppressed. When escalation
        bypass is enabled, a strictly higher severity than the one on
        record is let through and restarts the cooldown.
        """
        entry = self.last_raised(alert.dedup_key, alert.raised_at)
        if entry is not None:
            _, severity = entry
            if not (self._escalation_bypasses and alert.severity > severity):
                return False
        self._entries[alert.dedup_key] = (alert.raised_at, alert.severity)
        return True

    def forget_subject(self, subject_key: int | str) -> None:
        """Drop every entry for a subject, e.g. an exited process."""
        for key in [k for k in self._entries if k[0] == subject_key]:
            del self._entries[key]


class ProcessTrendBuffer:
    """Bounded ring of recent ``(timestamp, memory_bytes)`` samples for one pid."""

    __slots__ = ("pid", "_samples")

    def __init__(self, pid: int, capacity: int) -> None:
        self.pid = pid
        self._samples: deque[tuple[float, int]] = deque(maxlen=capacity)

    def append(self, timestamp: float, memory_bytes: int) -> None:
        self._samples.append((timestamp, memory_bytes))

    def samples(self) -> list[tuple[float, int]]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


def detect_leak(
    samples: Sequence[tuple[float, int]],
    min_samples: int,
    min_duration: float,
    growth_factor: float,
    min_bytes: int,
) -> float | None:
    """
    Test a window of memory samples for sustained growth.

    The window must hold at least ``min_samples`` samples spanning at least
    ``min_duration`` seconds. Memory must never decrease between
    consecutive samples and must strictly rise in at least
    ``min_samples - 1`` steps, so a flat window ending in one spike does
    not pass. The mean of the newer half of the window must be at least
    ``growth_factor`` times the mean of the older half, the last sample
    must be at least ``growth_factor`` times the first and above
    ``min_bytes``, and the least-squares slope must be positive.

    Returns:
        Growth in percent across the window, or ``None`` when no leak.
    """
    if len(samples) < min_samples:
        return None
    first_ts, first_mem = samples[0]
    last_ts, last_mem = samples[-1]
    if last_ts - first_ts < min_duration or first_mem <= 0 or last_mem < min_bytes:
        return None
    steps = [b[1] - a[1] for a, b in zip(samples, samples[1:])]
    if any(step < 0 for step in steps):
        return None
    if sum(1 for step in steps if step > 0) < min_samples - 1:
        return None
    if last_mem < first_mem * growth_factor:
        return None

    n = len(samples)
    half = n // 2
    older = sum(m for _, m in samples[:half]) / half
    newer = sum(m for _, m in samples[half:]) / (n - half)
    if newer < older * growth_factor:
        return None

    mean_t = sum(t for t, _ in samples) / n
    mean_m = sum(m for _, m in samples) / n
    covariance = sum((t - mean_t) * (m - mean_m) for t, m in samples)
    if covariance <= 0:
        return None
    return (last_mem - first_mem) / first_mem * 100.0


class AlertEngine:
    """
    Runs every enabled rule over a Snapshot and deduplicates the result.

    The engine owns its dedup memory, trend buffers and zombie counters;
    it must be driven by one thread at a time, in snapshot order.
    """

    def __init__(
        self,
        config: AlertConfig,
        suspicious: PatternSet | None = None,
        security: PatternSet | None = None,
    ) -> None:
        """
        Initialize the AlertEngine.

        Args:
            config: Rule toggles and thresholds.
            suspicious: Pattern set for the Suspicious category. Built from
                ``config.suspicious_patterns`` when omitted.
            security: Pattern set for the SecurityThreat category. Built
                from ``config.security_patterns`` when omitted.
        """
        self._config = config
        self._suspicious = suspicious or default_suspicious_set(config.suspicious_patterns)
        self._security = security or default_security_set(config.security_patterns)
        self._dedup = DedupMemory(config.cooldown, config.escalation_bypasses_cooldown)
        self._trends: dict[int, ProcessTrendBuffer] = {}
        self._missing: dict[int, int] = {}
        self._zombie_streak: dict[int, int] = {}
        self._last_process_as_of: float | None = None

    @property
    def dedup(self) -> DedupMemory:
        return self._dedup

    @property
    def suspicious_patterns(self) -> PatternSet:
        return self._suspicious

    @property
    def security_patterns(self) -> PatternSet:
        return self._security

    def trend_buffer(self, pid: int) -> ProcessTrendBuffer | None:
        return self._trends.get(pid)

    def tracked_pids(self) -> set[int]:
        return set(self._trends)

    def evaluate(self, snapshot: Snapshot, thermal: ThermalStatus | None = None) -> list[Alert]:
        """
        Run all detection rules against ``snapshot``.

        Args:
            snapshot: The merged snapshot to analyze.
            thermal: Current status of the thermal safety machine, if any.

        Returns:
            Alerts that passed the cooldown filter, in rule order.
        """
        now = snapshot.timestamp
        raw: list[Alert] = []

        if self._process_table_changed(snapshot):
            self._update_process_tracking(snapshot.processes, now)

        self._check_system(raw, snapshot, now)

        table = {proc.pid: proc for proc in snapshot.processes}
        for proc in snapshot.processes:
            self._check_process(raw, proc, table, now)

        if thermal is not None and self._config.thermal:
            self._check_thermal(raw, thermal, now)

        return [alert for alert in raw if self._dedup.admit(alert)]

    def _process_table_changed(self, snapshot: Snapshot) -> bool:
        as_of = snapshot.as_of(SourceFamily.SYSTEM)
        if as_of is None or as_of == self._last_process_as_of:
            return False
        self._last_process_as_of = as_of
        return True

    def _update_process_tracking(self, processes: Iterable[ProcessSnapshot], now: float) -> None:
        """Advance trend buffers, zombie streaks and exit detection by one process table."""
        seen: set[int] = set()
        capacity = self._config.leak_buffer_capacity
        for proc in processes:
            seen.add(proc.pid)
            buffer = self._trends.get(proc.pid)
            if buffer is None:
                buffer = self._trends[proc.pid] = ProcessTrendBuffer(proc.pid, capacity)
            buffer.append(now, proc.memory_bytes)
            self._missing.pop(proc.pid, None)
            if proc.status is ProcessStatus.ZOMBIE:
                self._zombie_streak[proc.pid] = self._zombie_streak.get(proc.pid, 0) + 1
            else:
                self._zombie_streak.pop(proc.pid, None)

        for pid in [pid for pid in self._trends if pid not in seen]:
            self._zombie_streak.pop(pid, None)
            misses = self._missing.get(pid, 0) + 1
            if misses >= 2:
                del self._trends[pid]
                self._missing.pop(pid, None)
                self._dedup.forget_subject(pid)
                logger.debug("Evicted trend buffer for exited pid %d", pid)
            else:
                self._missing[pid] = misses

    def _check_system(self, alerts: list[Alert], snapshot: Snapshot, now: float) -> None:
        cfg = self._config
        memory = snapshot.memory
        if cfg.system_memory and memory is not None:
            pct = memory.percent
            detail = f"{pct:.1f}% ({format_bytes(memory.used)} / {format_bytes(memory.total)})"
            if pct >= cfg.system_memory_critical_percent:
                alerts.append(self._alert(
                    AlertCategory.SYSTEM_OVERLOAD, AlertSeverity.DANGER, SYSTEM_SUBJECT, "SYSTEM",
                    f"System memory critically high: {detail}",
                    now, pct, cfg.system_memory_critical_percent,
                ))
            elif pct >= cfg.system_memory_warning_percent:
                alerts.append(self._alert(
                    AlertCategory.SYSTEM_OVERLOAD, AlertSeverity.WARNING, SYSTEM_SUBJECT, "SYSTEM",
                    f"System memory high: {detail}",
                    now, pct, cfg.system_memory_warning_percent,
                ))

        cpu = snapshot.cpu
        if cfg.system_cpu and cpu is not None and cpu.percent >= cfg.cpu_critical_percent:
            # Same subject and category as system memory: one overload alert per cooldown.
            alerts.append(self._alert(
                AlertCategory.SYSTEM_OVERLOAD, AlertSeverity.CRITICAL, SYSTEM_SUBJECT, "SYSTEM",
                f"System CPU critically high: {cpu.percent:.1f}%",
                now, cpu.percent, cfg.cpu_critical_percent,
            ))

    def _check_process(
        self,
        alerts: list[Alert],
        proc: ProcessSnapshot,
        table: dict[int, ProcessSnapshot],
        now: float,
    ) -> None:
        cfg = self._config

        if cfg.high_cpu:
            self._threshold(
                alerts, proc, AlertCategory.HIGH_CPU, proc.cpu_percent,
                cfg.cpu_warning_percent, cfg.cpu_critical_percent,
                f"{proc.name} using {proc.cpu_percent:.1f}% CPU", now,
            )

        if cfg.process_memory:
            self._threshold(
                alerts, proc, AlertCategory.HIGH_MEMORY, proc.memory_bytes,
                cfg.process_memory_warning_mib * MIB, cfg.process_memory_critical_mib * MIB,
                f"{proc.name} using {format_bytes(proc.memory_bytes)} RAM ({proc.memory_percent:.1f}%)",
                now,
            )

        if cfg.zombie and self._zombie_streak.get(proc.pid, 0) > 1:
            alerts.append(self._alert(
                AlertCategory.ZOMBIE, AlertSeverity.WARNING, proc.pid, proc.name,
                f"Zombie process: {proc.name} (PID {proc.pid})", now, 1.0, 0.0,
            ))

        if cfg.suspicious:
            self._check_patterns(alerts, self._suspicious, proc, table, now)
        if cfg.security:
            self._check_patterns(alerts, self._security, proc, table, now)

        if cfg.memory_leak:
            self._check_memory_leak(alerts, proc, now)

        if cfg.disk_io:
            total_io = proc.disk_read_bytes + proc.disk_write_bytes
            threshold = cfg.disk_io_threshold_mib * MIB
            if total_io > threshold:
                alerts.append(self._alert(
                    AlertCategory.HIGH_DISK_IO, AlertSeverity.INFO, proc.pid, proc.name,
                    f"High disk I/O: {proc.name} (R: {format_bytes(proc.disk_read_bytes)}, "
                    f"W: {format_bytes(proc.disk_write_bytes)})",
                    now, total_io, threshold,
                ))

    def _threshold(
        self,
        alerts: list[Alert],
        proc: ProcessSnapshot,
        category: AlertCategory,
        value: float,
        warning: float,
        critical: float,
        message: str,
        now: float,
    ) -> None:
        if value >= critical:
            alerts.append(self._alert(category, AlertSeverity.CRITICAL, proc.pid, proc.name, message, now, value, critical))
        elif value >= warning:
            alerts.append(self._alert(category, AlertSeverity.WARNING, proc.pid, proc.name, message, now, value, warning))

    def _check_patterns(
        self,
        alerts: list[Alert],
        patterns: PatternSet,
        proc: ProcessSnapshot,
        table: dict[int, ProcessSnapshot],
        now: float,
    ) -> None:
        reason = patterns.classify(proc, table)
        if reason:
            alerts.append(self._alert(
                patterns.category, patterns.severity, proc.pid, proc.name,
                f"{patterns.label}: {proc.name} ({reason})", now,
            ))

    def _check_memory_leak(self, alerts: list[Alert], proc: ProcessSnapshot, now: float) -> None:
        buffer = self._trends.get(proc.pid)
        if buffer is None:
            return
        cfg = self._config
        growth = detect_leak(
            buffer.samples(),
            min_samples=cfg.leak_min_samples,
            min_duration=cfg.leak_min_duration,
            growth_factor=cfg.leak_growth_factor,
            min_bytes=cfg.leak_min_memory_mib * MIB,
        )
        if growth is not None:
            alerts.append(self._alert(
                AlertCategory.MEMORY_LEAK, AlertSeverity.WARNING, proc.pid, proc.name,
                f"Possible memory leak in {proc.name}: +{growth:.0f}% growth trend",
                now, growth, (cfg.leak_growth_factor - 1.0) * 100.0,
            ))

    def _check_thermal(self, alerts: list[Alert], status: ThermalStatus, now: float) -> None:
        mapped = _THERMAL_ALERTS.get(status.state)
        if mapped is None:
            return
        category, severity = mapped
        temp = status.max_relevant or 0.0
        message = f"Thermal {status.state.label}: hottest sensor {temp:.1f}°C"
        if status.state is ThermalState.SHUTDOWN_COUNTDOWN and status.deadline is not None:
            message += f", shutdown in {max(0.0, status.deadline - now):.0f}s"
        alerts.append(self._alert(
            category, severity, THERMAL_SUBJECT, "THERMAL", message, now, temp, status.threshold_for_state,
        ))

    @staticmethod
    def _alert(
        category: AlertCategory,
        severity: AlertSeverity,
        subject_key: int | str,
        subject_name: str,
        message: str,
        now: float,
        value: float = 0.0,
        threshold: float = 0.0,
    ) -> Alert:
        return Alert(
            category=category,
            severity=severity,
            subject_key=subject_key,
            subject_name=subject_name,
            message=message,
            raised_at=now,
            value=float(value),
            threshold=float(threshold),
        )
