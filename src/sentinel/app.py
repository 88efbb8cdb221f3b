"""sentinel - Textual dashboard subscribed to the publication bus."""

import argparse
import time
from enum import Enum
from operator import attrgetter
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.logging import TextualHandler
from textual.widgets import DataTable, Footer, RichLog, Static

from sentinel.agent import MonitorAgent
from sentinel.config import DEFAULT_LHM_URL, MonitorConfig
from sentinel.log import setup_logger
from sentinel.models import Alert, AlertSeverity, CpuStats, MemoryStats, ProcessSnapshot, Snapshot
from sentinel.safety import ThermalState, ThermalStatus
from sentinel.sources import SourceFamily


class SortKey(Enum):
    """Columns the process table can be ordered by."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    USER = "user"
    IO = "io"


_SORT_FIELDS = {
    SortKey.CPU: attrgetter("cpu_percent"),
    SortKey.MEM: attrgetter("memory_percent"),
    SortKey.PID: attrgetter("pid"),
    SortKey.USER: lambda p: p.username.lower(),
    SortKey.IO: lambda p: p.disk_read_bytes + p.disk_write_bytes,
}

# Largest first for these; the rest sort ascending.
_DESCENDING = frozenset({SortKey.CPU, SortKey.MEM, SortKey.IO})

# (label, key, width)
_COLUMNS = (
    ("PID", "pid", 8),
    ("PPID", "ppid", 8),
    ("USER", "user", 10),
    ("S", "status", 3),
    ("CPU%", "cpu", 7),
    ("MEM%", "mem", 7),
    ("RES", "rss", 8),
    ("READ", "read", 8),
    ("WRITE", "write", 8),
    ("Command", "command", None),
)

_SEVERITY_STYLE = {
    AlertSeverity.INFO: "blue",
    AlertSeverity.WARNING: "yellow",
    AlertSeverity.CRITICAL: "red",
    AlertSeverity.DANGER: "bold red",
}

_THERMAL_STYLE = {
    ThermalState.NORMAL: "green",
    ThermalState.WARNING: "yellow",
    ThermalState.CRITICAL: "red",
    ThermalState.EMERGENCY: "bold red",
    ThermalState.SHUTDOWN_COUNTDOWN: "bold white on red",
    ThermalState.ABORTED: "magenta",
    ThermalState.SHUTDOWN_TRIGGERED: "bold white on red",
}

_UNITS = "KMGTP"
_GIB = 1024**3


def format_bytes(size: float) -> str:
    """Six-character byte count for table cells, e.g. ``"  2.0K"``."""
    if size < 1024:
        return f"{int(size):5d}B"
    for unit in _UNITS:
        size /= 1024
        if size < 1024 or unit == _UNITS[-1]:
            break
    return f"{size:5.1f}{unit}"


def format_uptime(uptime: float) -> str:
    days, rest = divmod(int(uptime), 86400)
    clock = time.strftime("%H:%M:%S", time.gmtime(rest))
    return f"{days} days, {clock}" if days else clock


def _bar(percent: float, color: str, width: int = 20) -> str:
    filled = max(0, min(round(percent * width / 100), width))
    return f"[{color}]{'█' * filled}[/{color}][dim]{'░' * (width - filled)}[/dim]"


class QueueSubscriber:
    """Bus subscriber that hands snapshots and alerts to the UI thread via queues."""

    def __init__(self) -> None:
        self.snapshots: Queue[Snapshot] = Queue()
        self.alerts: Queue[Alert] = Queue()

    def on_snapshot(self, snapshot: Snapshot) -> None:
        self.snapshots.put(snapshot)

    def on_alert(self, alert: Alert) -> None:
        self.alerts.put(alert)


class HeaderStats(Static):
    """Per-core CPU bars on the left, memory, swap and uptime on the right."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 0 1;
        background: $boost;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._cpu: CpuStats | None = None
        self._memory: MemoryStats | None = None
        self._uptime_seconds = 0.0
        self._degraded = False

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._cores_text(), id="cpu-info"),
            Static(self._memory_text(), id="mem-info"),
        )

    def update_stats(self, snapshot: Snapshot) -> None:
        self._cpu = snapshot.cpu
        self._memory = snapshot.memory
        self._uptime_seconds = snapshot.uptime_seconds
        self._degraded = snapshot.is_degraded(SourceFamily.SYSTEM)
        self.query_one("#cpu-info", Static).update(self._cores_text())
        self.query_one("#mem-info", Static).update(self._memory_text())

    def _cores_text(self) -> str:
        if self._cpu is None:
            return "CPU: waiting for first sample"
        return "\n".join(
            f"{core:>3} \\[{_bar(usage, 'green')}] {usage:5.1f}%"
            for core, usage in enumerate(self._cpu.per_core)
        )

    def _memory_text(self) -> str:
        memory = self._memory
        if memory is None:
            return "Memory: waiting for first sample"
        one, five, fifteen = self._cpu.load_avg if self._cpu else (0.0, 0.0, 0.0)
        lines = [
            f"Mem \\[{_bar(memory.percent, 'cyan')}] {memory.used / _GIB:.1f}/{memory.total / _GIB:.1f} GiB",
            f"Swap\\[{_bar(memory.swap_percent, 'yellow')}] {memory.swap_used / _GIB:.1f}/{memory.swap_total / _GIB:.1f} GiB",
            f"Load {one:.2f} {five:.2f} {fifteen:.2f}   Up {format_uptime(self._uptime_seconds)}",
        ]
        if self._degraded:
            lines.append("[yellow](stale)[/yellow]")
        return "\n".join(lines)


class ThermalLine(Static):
    """One-line thermal summary: state, hottest sensors and any countdown."""

    DEFAULT_CSS = """
    ThermalLine {
        height: 1;
        padding: 0 1;
    }
    """

    def show(self, status: ThermalStatus, now: float) -> None:
        self.update(self.render_status(status, now))

    @staticmethod
    def render_status(status: ThermalStatus, now: float) -> str:
        style = _THERMAL_STYLE[status.state]
        parts = [f"[{style}]Thermal: {status.state.label}[/{style}]"]
        for label, value in (("CPU", status.max_cpu), ("GPU", status.max_gpu), ("NVMe", status.max_storage)):
            if value is not None:
                parts.append(f"{label} {value:.0f}°C")
        remaining = status.seconds_remaining(now)
        if status.state is ThermalState.SHUTDOWN_COUNTDOWN and remaining is not None:
            parts.append(f"[bold red]shutdown in {remaining:.0f}s, ctrl+x to abort[/bold red]")
        if status.degraded:
            parts.append(f"[yellow]degraded: {status.degraded_reason}[/yellow]")
        if status.last_error:
            parts.append(f"[red]shutdown failed: {status.last_error}[/red]")
        if status.auto_shutdown_armed:
            parts.append("[dim]auto-shutdown armed[/dim]")
        return "  ".join(parts)


class AlertLog(RichLog):
    """Scrolling list of published alerts."""

    DEFAULT_CSS = """
    AlertLog {
        height: 8;
        border: solid $warning;
    }
    """

    def add_alert(self, alert: Alert) -> None:
        style = _SEVERITY_STYLE[alert.severity]
        stamp = time.strftime("%H:%M:%S", time.localtime(alert.raised_at))
        self.write(f"{stamp} [{style}]{alert.severity.label:<8}[/{style}] {alert.message}")


class ProcessTable(Container):
    """Sortable table of the latest process sample."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: round $accent;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._shown_pids: frozenset[int] = frozenset()
        self._sort_key = SortKey.CPU

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    @property
    def row_count(self) -> int:
        return len(self._shown_pids)

    def cycle_sort(self) -> SortKey:
        """Advance to the next sort column and return it."""
        order = list(SortKey)
        self._sort_key = order[(order.index(self._sort_key) + 1) % len(order)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        for label, key, width in _COLUMNS:
            table.add_column(label, key=key, width=width)

    def update_processes(self, processes: tuple[ProcessSnapshot, ...]) -> None:
        """Replace the rows with ``processes`` in the current sort order."""
        ordered = sorted(
            processes,
            key=_SORT_FIELDS[self._sort_key],
            reverse=self._sort_key in _DESCENDING,
        )
        table = self.query_one(DataTable)
        table.clear()
        for proc in ordered:
            table.add_row(*self._cells(proc), key=str(proc.pid))
        self._shown_pids = frozenset(proc.pid for proc in processes)

    @staticmethod
    def _cells(proc: ProcessSnapshot) -> tuple[str, ...]:
        return (
            str(proc.pid),
            str(proc.ppid),
            proc.username[:10] or "?",
            proc.status.value[:1].upper(),
            f"{proc.cpu_percent:6.1f}",
            f"{proc.memory_percent:6.1f}",
            format_bytes(proc.memory_bytes),
            format_bytes(proc.disk_read_bytes),
            format_bytes(proc.disk_write_bytes),
            (proc.command_line or proc.name)[:60],
        )


class SentinelApp(App):
    """Live monitor dashboard."""

    TITLE = "sentinel"
    SUB_TITLE = "Machine Monitor"

    CSS = """
    #header-stats {
        dock: top;
        min-height: 6;
    }

    HeaderStats Horizontal {
        height: auto;
    }

    #cpu-info, #mem-info {
        width: 1fr;
    }

    #mem-info {
        padding-left: 3;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("ctrl+x", "abort_shutdown", "Abort shutdown"),
    ]

    def __init__(self, agent: MonitorAgent | None = None) -> None:
        super().__init__()
        self._agent = agent or MonitorAgent()
        self._feed = QueueSubscriber()
        self._agent.subscribe(self._feed, name="dashboard")

    @property
    def agent(self) -> MonitorAgent:
        return self._agent

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ThermalLine("Thermal: waiting for data", id="thermal-line")
        yield AlertLog(id="alert-log", markup=True, max_lines=500)
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        self._agent.start()
        self.set_interval(0.5, self._drain_feed)

    def _drain_feed(self) -> None:
        """Show every queued alert and only the newest queued snapshot."""
        latest = None
        while True:
            try:
                latest = self._feed.snapshots.get_nowait()
            except Empty:
                break

        alert_log = self.query_one(AlertLog)
        while True:
            try:
                alert_log.add_alert(self._feed.alerts.get_nowait())
            except Empty:
                break

        if latest is not None:
            self.query_one(HeaderStats).update_stats(latest)
            self.query_one(ProcessTable).update_processes(latest.processes)
        self.query_one(ThermalLine).show(self._agent.thermal_status, time.time())

    def action_sort(self) -> None:
        key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sorted by {key.value.upper()}")

    def action_abort_shutdown(self) -> None:
        if self._agent.request_abort():
            self.notify("Thermal shutdown aborted", severity="warning")
        else:
            self.notify("No shutdown countdown running")

    def action_quit(self) -> None:
        """Stop the agent threads before leaving."""
        self._agent.stop()
        self.exit()


def main() -> None:
    """Entry point for the sentinel dashboard."""
    parser = argparse.ArgumentParser(description="Live machine monitor")
    parser.add_argument("--log-file", default=None, help="Write a rotating log file here")
    parser.add_argument("--log-level", default="WARNING", help="Console log level")
    parser.add_argument("--lhm-url", nargs="?", const=DEFAULT_LHM_URL, default=None,
                        help=f"Read temperatures from LibreHardwareMonitor (default URL {DEFAULT_LHM_URL})")
    parser.add_argument("--auto-shutdown", action="store_true",
                        help="Enable thermal auto-shutdown (also requires SENTINEL_AUTO_SHUTDOWN=1)")
    args = parser.parse_args()

    # Textual owns the terminal: console records only reach its devtools
    # console, and records from worker threads go to the log file alone
    setup_logger(
        console_level_name=args.log_level,
        log_file_path=args.log_file,
        console_handler=TextualHandler(stderr=False),
    )
    config = MonitorConfig()
    if args.lhm_url:
        config = config.with_thermal(lhm_url=args.lhm_url)
    if args.auto_shutdown:
        config = config.with_thermal(auto_shutdown_enabled=True)

    SentinelApp(MonitorAgent(config)).run()


if __name__ == "__main__":
    main()
