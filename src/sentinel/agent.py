"""Wires collectors, orchestrator, alert engine, safety machine and bus together."""

from __future__ import annotations

import platform
import time
from collections.abc import Callable, Iterable, Mapping

from sentinel.alerts import AlertEngine
from sentinel.bus import LoggingSubscriber, PublicationBus, PublicationSubscriber, Subscription
from sentinel.collectors import GpuCollector, SystemCollector
from sentinel.config import DEFAULT_LHM_URL, MonitorConfig, environment_confirms_shutdown
from sentinel.containers import ContainerCollector
from sentinel.log import get_logger
from sentinel.models import Alert, Snapshot
from sentinel.orchestrator import SnapshotOrchestrator
from sentinel.safety import ThermalSafetyMachine, ThermalStatus
from sentinel.shutdown import CommandShutdownTrigger, ShutdownTrigger
from sentinel.sources import Collector, SourceFamily
from sentinel.thermal import LhmThermalAdapter, LocalSensorsAdapter

logger = get_logger(__name__)


def default_collectors(config: MonitorConfig) -> list[Collector]:
    """
    The stock collector set: psutil, NVML, Docker and the thermal feed.

    The thermal feed is LibreHardwareMonitor when a URL is configured and
    psutil's kernel sensors otherwise. Windows has no kernel sensors in
    psutil, so there an unset URL means the local LHM web server.
    """
    thermal_cfg = config.thermal
    lhm_url = thermal_cfg.lhm_url
    if lhm_url is None and platform.system() == "Windows":
        lhm_url = DEFAULT_LHM_URL
    thermal: Collector
    if lhm_url:
        thermal = LhmThermalAdapter(
            url=lhm_url,
            username=thermal_cfg.username,
            password=thermal_cfg.password,
            timeout=thermal_cfg.request_timeout,
        )
    else:
        thermal = LocalSensorsAdapter()
    return [
        SystemCollector(),
        GpuCollector(),
        ContainerCollector(timeout=config.call_timeout),
        thermal,
    ]


class Evaluator:
    """
    Bus subscriber running the alert engine and the thermal safety machine.

    It runs on its own delivery thread, so the engine's dedup memory and
    trend buffers and the machine's state have a single writer.
    """

    def __init__(
        self,
        engine: AlertEngine,
        machine: ThermalSafetyMachine,
        publish_alerts: Callable[[Iterable[Alert]], None],
    ) -> None:
        self._engine = engine
        self._machine = machine
        self._publish_alerts = publish_alerts
        self._last_thermal_as_of: float | None = None

    def on_snapshot(self, snapshot: Snapshot) -> None:
        self.evaluate(snapshot)

    def on_alert(self, alert: Alert) -> None:
        pass

    def evaluate(self, snapshot: Snapshot) -> list[Alert]:
        """Advance the safety machine, then run the alert rules on ``snapshot``."""
        self._machine.tick(snapshot.timestamp)

        result = snapshot.source(SourceFamily.THERMAL)
        if result is not None and result.is_fresh:
            if result.as_of != self._last_thermal_as_of:
                self._last_thermal_as_of = result.as_of
                self._machine.observe(result.data, snapshot.timestamp)
        else:
            self._machine.mark_unavailable(
                getattr(result, "reason", "") or "thermal source has not reported"
            )

        alerts = self._engine.evaluate(snapshot, thermal=self._machine.status)
        if alerts:
            self._publish_alerts(alerts)
        return alerts


class MonitorAgent:
    """
    The assembled monitor.

    Construction validates the config, which is the only fatal error path.
    ``start`` launches the polling threads; consumers attach with
    :meth:`subscribe` before or after starting.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        collectors: Iterable[Collector] | None = None,
        trigger: ShutdownTrigger | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        log_alerts: bool = True,
    ) -> None:
        """
        Initialize the MonitorAgent.

        Args:
            config: Monitor configuration. Defaults are used when omitted.
            collectors: Source collectors. :func:`default_collectors` when omitted.
            trigger: Shutdown collaborator. Runs the platform command when omitted.
            environ: Environment consulted for the auto-shutdown confirmation.
            clock: Time source shared by the orchestrator and safety machine.
            log_alerts: Attach a LoggingSubscriber to the bus.

        Raises:
            ConfigError: If the configuration is invalid.
        """
        self.config = (config or MonitorConfig()).validate()
        self.bus = PublicationBus()
        self.engine = AlertEngine(self.config.alerts)
        self.machine = ThermalSafetyMachine(
            self.config.thermal,
            trigger or CommandShutdownTrigger(),
            environment_confirmed=environment_confirms_shutdown(environ),
            clock=clock,
        )
        self.evaluator = Evaluator(self.engine, self.machine, self.bus.publish_alerts)
        self.bus.subscribe(self.evaluator, name="evaluator")
        if log_alerts:
            self.bus.subscribe(LoggingSubscriber(), name="alert-log")

        self.orchestrator = SnapshotOrchestrator(
            collectors if collectors is not None else default_collectors(self.config),
            self.config,
            publish=self.bus.publish_snapshot,
            clock=clock,
        )

    @property
    def thermal_status(self) -> ThermalStatus:
        return self.machine.status

    def subscribe(self, subscriber: PublicationSubscriber, name: str | None = None) -> Subscription:
        return self.bus.subscribe(subscriber, name)

    def request_abort(self) -> bool:
        """Abort a running shutdown countdown. Safe to call from any thread."""
        return self.machine.request_abort()

    def start(self) -> None:
        if self.machine.auto_shutdown_armed:
            logger.warning("Thermal auto-shutdown is ARMED")
        self.orchestrator.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self.orchestrator.stop(timeout)
        self.bus.close(timeout)
