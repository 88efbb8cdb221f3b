"""Pluggable process classification predicates.

A predicate looks at one process (plus the whole process table, for
parent lookups) and returns a short reason string when it matches, or
``None``. A :class:`PatternSet` bundles predicates under one alert
category, so new heuristics are added with :meth:`PatternSet.add`
instead of touching the alert engine.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from sentinel.models import AlertCategory, AlertSeverity, ProcessSnapshot

ProcessTable = Mapping[int, ProcessSnapshot]
ProcessPredicate = Callable[[ProcessSnapshot, ProcessTable], "str | None"]

WRITABLE_TEMP_DIRS = ("/tmp/", "/var/tmp/", "/dev/shm/", "/run/user/")

# name -> parents it is normally spawned by
PRIVILEGED_PARENTS: dict[str, frozenset[str]] = {
    "sshd": frozenset({"sshd", "systemd", "init"}),
    "cron": frozenset({"systemd", "init"}),
    "systemd-journald": frozenset({"systemd"}),
}


def matches_substring(patterns: Iterable[str]) -> ProcessPredicate:
    """Match when the name or command line contains any pattern (case-insensitive)."""
    lowered = tuple(p.lower() for p in patterns if p)

    def predicate(proc: ProcessSnapshot, table: ProcessTable) -> str | None:
        name = proc.name.lower()
        cmdline = proc.command_line.lower()
        for pattern in lowered:
            if pattern in name or pattern in cmdline:
                return f"matched '{pattern}'"
        return None

    return predicate


def executes_from(directories: Iterable[str] = WRITABLE_TEMP_DIRS) -> ProcessPredicate:
    """Match processes whose executable lives under a world-writable directory."""
    prefixes = tuple(directories)

    def predicate(proc: ProcessSnapshot, table: ProcessTable) -> str | None:
        if proc.exe and proc.exe.startswith(prefixes):
            return f"executing from {proc.exe}"
        return None

    return predicate


def unexpected_parent(expected: Mapping[str, frozenset[str]] = PRIVILEGED_PARENTS) -> ProcessPredicate:
    """Match a privileged process name spawned by a parent it is never spawned by."""

    def predicate(proc: ProcessSnapshot, table: ProcessTable) -> str | None:
        allowed = expected.get(proc.name)
        if allowed is None:
            return None
        parent = table.get(proc.ppid)
        # Parent already gone: nothing to compare against.
        if parent is None:
            return None
        if parent.name not in allowed:
            return f"unexpected parent '{parent.name}' (pid {parent.pid})"
        return None

    return predicate


@dataclass(slots=True)
class PatternSet:
    """Predicates reported under one alert category and severity."""

    category: AlertCategory
    severity: AlertSeverity
    label: str
    predicates: list[ProcessPredicate] = field(default_factory=list)

    def add(self, predicate: ProcessPredicate) -> PatternSet:
        self.predicates.append(predicate)
        return self

    def classify(self, proc: ProcessSnapshot, table: ProcessTable) -> str | None:
        """Return the first matching predicate's reason, if any."""
        for predicate in self.predicates:
            reason = predicate(proc, table)
            if reason:
                return reason
        return None


def default_suspicious_set(patterns: Iterable[str]) -> PatternSet:
    return PatternSet(
        category=AlertCategory.SUSPICIOUS,
        severity=AlertSeverity.WARNING,
        label="Suspicious process detected",
        predicates=[matches_substring(patterns), executes_from()],
    )


def default_security_set(patterns: Iterable[str]) -> PatternSet:
    return PatternSet(
        category=AlertCategory.SECURITY_THREAT,
        severity=AlertSeverity.DANGER,
        label="SECURITY THREAT",
        predicates=[matches_substring(patterns), unexpected_parent()],
    )
