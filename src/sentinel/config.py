"""Monitor configuration.

The core consumes a single immutable :class:`MonitorConfig` built once at
startup. Defaults mirror the thresholds the monitor has always shipped
with; :meth:`MonitorConfig.validate` is the only place a fatal error can
come from.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from sentinel.errors import ConfigError
from sentinel.sources import SourceFamily

MIB = 1024 * 1024

SHUTDOWN_CONFIRM_ENV = "SENTINEL_AUTO_SHUTDOWN"
DEFAULT_LHM_URL = "http://localhost:8085/data.json"

DEFAULT_SUSPICIOUS_PATTERNS = (
    "kdevtmpfsi",
    "xmrig",
    "minerd",
    "cpuminer",
    "cryptonight",
    "stratum",
)
DEFAULT_SECURITY_PATTERNS = (
    "kinsing",
    "bindshell",
    "reverse_shell",
    "nc -e",
    "ncat -e",
    "coinhive",
)


@dataclass(slots=True, frozen=True)
class PollIntervals:
    """Seconds between polls, per source family."""

    system: float = 1.0
    gpu: float = 2.0
    containers: float = 5.0
    thermal: float = 5.0

    def for_family(self, family: SourceFamily) -> float:
        return getattr(self, family.value)


@dataclass(slots=True, frozen=True)
class AlertConfig:
    """Alert rule toggles and thresholds."""

    high_cpu: bool = True
    cpu_warning_percent: float = 50.0
    cpu_critical_percent: float = 90.0

    process_memory: bool = True
    process_memory_warning_mib: int = 1024
    process_memory_critical_mib: int = 2048

    system_memory: bool = True
    system_memory_warning_percent: float = 75.0
    system_memory_critical_percent: float = 90.0

    system_cpu: bool = True

    zombie: bool = True

    suspicious: bool = True
    suspicious_patterns: tuple[str, ...] = DEFAULT_SUSPICIOUS_PATTERNS
    security: bool = True
    security_patterns: tuple[str, ...] = DEFAULT_SECURITY_PATTERNS

    memory_leak: bool = True
    leak_buffer_capacity: int = 30
    leak_min_samples: int = 10
    leak_min_duration: float = 10.0
    leak_growth_factor: float = 1.2
    leak_min_memory_mib: int = 100

    disk_io: bool = True
    disk_io_threshold_mib: int = 500

    thermal: bool = True

    cooldown: float = 60.0
    escalation_bypasses_cooldown: bool = False


@dataclass(slots=True, frozen=True)
class ThermalConfig:
    """Thermal feed location, thresholds and the auto-shutdown settings."""

    lhm_url: str | None = None
    username: str | None = None
    password: str | None = None
    request_timeout: float = 3.0

    warning_temp: float = 85.0
    critical_temp: float = 95.0
    emergency_temp: float = 100.0
    hysteresis_cycles: int = 1

    auto_shutdown_enabled: bool = False
    shutdown_delay: float = 30.0
    sustained_seconds: float = 30.0
    schedule_start_hour: int = 0
    schedule_end_hour: int = 24


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """Everything the core needs, supplied once at startup."""

    intervals: PollIntervals = field(default_factory=PollIntervals)
    call_timeout: float = 3.0
    failure_threshold: int = 3
    max_backoff: float = 60.0
    alerts: AlertConfig = field(default_factory=AlertConfig)
    thermal: ThermalConfig = field(default_factory=ThermalConfig)

    def validate(self) -> MonitorConfig:
        """
        Check invariants between settings.

        Returns:
            The config itself, so construction can be chained.

        Raises:
            ConfigError: If any setting is out of range or inconsistent.
        """
        problems: list[str] = []

        for family in SourceFamily:
            if self.intervals.for_family(family) <= 0:
                problems.append(f"poll interval for {family.value} must be positive")
        if self.call_timeout <= 0:
            problems.append("call_timeout must be positive")
        if self.failure_threshold < 1:
            problems.append("failure_threshold must be at least 1")
        if self.max_backoff < max(self.intervals.for_family(f) for f in SourceFamily):
            problems.append("max_backoff must not be shorter than any poll interval")

        a = self.alerts
        if not a.cpu_warning_percent < a.cpu_critical_percent:
            problems.append("cpu_warning_percent must be below cpu_critical_percent")
        if not a.process_memory_warning_mib < a.process_memory_critical_mib:
            problems.append("process memory warning must be below critical")
        if not 0 < a.system_memory_warning_percent < a.system_memory_critical_percent <= 100:
            problems.append("system memory thresholds must satisfy 0 < warning < critical <= 100")
        if a.leak_min_samples < 3 or a.leak_min_samples > a.leak_buffer_capacity:
            problems.append("leak_min_samples must be between 3 and leak_buffer_capacity")
        if a.leak_growth_factor <= 1.0:
            problems.append("leak_growth_factor must be greater than 1.0")
        if a.cooldown < 0:
            problems.append("cooldown must not be negative")

        t = self.thermal
        if not t.warning_temp < t.critical_temp < t.emergency_temp:
            problems.append("thermal thresholds must satisfy warning < critical < emergency")
        if t.hysteresis_cycles < 1:
            problems.append("hysteresis_cycles must be at least 1")
        if t.shutdown_delay < 0 or t.sustained_seconds < 0:
            problems.append("shutdown_delay and sustained_seconds must not be negative")
        if not (0 <= t.schedule_start_hour <= 23 and 0 <= t.schedule_end_hour <= 24):
            problems.append("shutdown schedule hours must be within 0-23 / 0-24")

        if problems:
            raise ConfigError("; ".join(problems))
        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MonitorConfig:
        """
        Build a validated config from plain nested mappings.

        Missing keys keep their defaults. Unknown keys are rejected so a
        misspelled threshold cannot silently fall back to a default.
        List values (pattern lists) are converted to tuples.

        Raises:
            ConfigError: On unknown keys or invalid values.
        """
        sections = {
            "intervals": PollIntervals,
            "alerts": AlertConfig,
            "thermal": ThermalConfig,
        }
        top: dict[str, Any] = {}
        for key, value in data.items():
            if key in sections:
                top[key] = _build_section(sections[key], value, key)
            elif key in _field_names(cls):
                top[key] = value
            else:
                raise ConfigError(f"unknown config key: {key}")
        return cls(**top).validate()

    def with_thermal(self, **changes: Any) -> MonitorConfig:
        """Return a copy with some thermal settings replaced."""
        return replace(self, thermal=replace(self.thermal, **changes))

    def with_alerts(self, **changes: Any) -> MonitorConfig:
        """Return a copy with some alert settings replaced."""
        return replace(self, alerts=replace(self.alerts, **changes))


def _field_names(cls: type) -> set[str]:
    return {f.name for f in fields(cls)}


def _build_section(cls: type, value: Any, name: str) -> Any:
    if not isinstance(value, Mapping):
        raise ConfigError(f"config section {name!r} must be a mapping")
    known = _field_names(cls)
    unknown = set(value) - known
    if unknown:
        raise ConfigError(f"unknown keys in {name!r}: {', '.join(sorted(unknown))}")
    kwargs = {k: tuple(v) if isinstance(v, list) else v for k, v in value.items()}
    return cls(**kwargs)


def environment_confirms_shutdown(environ: Mapping[str, str] | None = None) -> bool:
    """Second auto-shutdown gate: ``SENTINEL_AUTO_SHUTDOWN`` set to a true value."""
    env = os.environ if environ is None else environ
    return env.get(SHUTDOWN_CONFIRM_ENV, "").strip().lower() in ("1", "true", "yes")
