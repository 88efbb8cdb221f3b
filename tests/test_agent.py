"""Tests for wiring the orchestrator, evaluator and bus together."""

import time

import pytest

from conftest import RecordingTrigger, ScriptedCollector
from sentinel import agent as agent_module
from sentinel.agent import Evaluator, MonitorAgent, default_collectors
from sentinel.alerts import AlertEngine
from sentinel.config import (
    DEFAULT_LHM_URL,
    SHUTDOWN_CONFIRM_ENV,
    AlertConfig,
    MonitorConfig,
    PollIntervals,
    ThermalConfig,
)
from sentinel.errors import ConfigError
from sentinel.models import AlertCategory
from sentinel.safety import ThermalSafetyMachine, ThermalState
from sentinel.sources import Fresh, SourceFamily
from sentinel.thermal import LhmThermalAdapter, LocalSensorsAdapter


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class AlertRecorder:
    def __init__(self):
        self.snapshots = 0
        self.categories = []

    def on_snapshot(self, snapshot):
        self.snapshots += 1

    def on_alert(self, alert):
        self.categories.append(alert.category)


@pytest.fixture
def evaluator_parts(trigger, clock):
    published = []
    machine = ThermalSafetyMachine(ThermalConfig(), trigger, environment_confirmed=False, clock=clock)
    evaluator = Evaluator(AlertEngine(AlertConfig()), machine, published.extend)
    return evaluator, machine, published


class TestEvaluator:
    """Tests for the snapshot-driven evaluation step."""

    def test_thermal_reading_reaches_machine(self, evaluator_parts, make_snapshot, make_batch):
        evaluator, machine, published = evaluator_parts

        alerts = evaluator.evaluate(make_snapshot(10.0, thermal=make_batch(cpu=96.0, as_of=9.0)))

        assert machine.state is ThermalState.CRITICAL
        assert [a.category for a in alerts] == [AlertCategory.THERMAL_CRITICAL]
        assert published == alerts

    def test_same_batch_observed_once(self, evaluator_parts, make_snapshot, make_batch):
        """A carried-forward batch must not count as a new downgrade cycle."""
        evaluator, machine, _ = evaluator_parts
        evaluator.evaluate(make_snapshot(10.0, thermal=make_batch(cpu=90.0, as_of=9.0)))
        evaluator.evaluate(make_snapshot(11.0, thermal=make_batch(cpu=70.0, as_of=11.0)))
        assert machine.state is ThermalState.NORMAL

        evaluator.evaluate(make_snapshot(12.0, thermal=make_batch(cpu=90.0, as_of=12.0)))
        evaluator.evaluate(make_snapshot(13.0, thermal=make_batch(cpu=70.0, as_of=12.0)))
        assert machine.state is ThermalState.WARNING

    def test_missing_thermal_marks_degraded(self, evaluator_parts, make_snapshot):
        evaluator, machine, published = evaluator_parts

        assert evaluator.evaluate(make_snapshot(10.0)) == []

        status = machine.status
        assert status.degraded
        assert status.degraded_reason == "thermal source has not reported"
        assert published == []

    def test_process_alerts_published(self, evaluator_parts, make_snapshot, make_process):
        evaluator, _, published = evaluator_parts
        evaluator.evaluate(make_snapshot(10.0, processes=[make_process(pid=7, cpu_percent=95.0)]))
        assert [(a.category, a.subject_key) for a in published] == [(AlertCategory.HIGH_CPU, 7)]


class TestMonitorAgent:
    """Tests for the assembled agent."""

    def test_invalid_config_is_fatal(self):
        with pytest.raises(ConfigError):
            MonitorAgent(MonitorConfig().with_thermal(critical_temp=50.0), collectors=[], log_alerts=False)

    def test_auto_shutdown_needs_environment(self):
        config = MonitorConfig().with_thermal(auto_shutdown_enabled=True)

        disarmed = MonitorAgent(config, collectors=[], trigger=RecordingTrigger(), environ={}, log_alerts=False)
        armed = MonitorAgent(
            config, collectors=[], trigger=RecordingTrigger(), environ={SHUTDOWN_CONFIRM_ENV: "1"}, log_alerts=False
        )
        try:
            assert not disarmed.thermal_status.auto_shutdown_armed
            assert armed.thermal_status.auto_shutdown_armed
            assert armed.request_abort() is False
        finally:
            disarmed.stop()
            armed.stop()

    def test_end_to_end(self, make_sample, make_process, make_batch):
        sample = make_sample(processes=[make_process(pid=42, name="busy", cpu_percent=95.0)])
        system = ScriptedCollector(SourceFamily.SYSTEM, [Fresh(sample, float(i)) for i in range(50)])
        thermal = ScriptedCollector(SourceFamily.THERMAL, [Fresh(make_batch(cpu=90.0, as_of=1.0), 1.0)])
        config = MonitorConfig(intervals=PollIntervals(system=0.02, gpu=0.02, containers=0.02, thermal=0.02))

        agent = MonitorAgent(config, collectors=[system, thermal], trigger=RecordingTrigger(), environ={},
                             log_alerts=False)
        recorder = AlertRecorder()
        agent.subscribe(recorder, "recorder")
        agent.start()
        try:
            assert _wait_for(
                lambda: {AlertCategory.HIGH_CPU, AlertCategory.THERMAL_WARNING} <= set(recorder.categories)
            )
            assert recorder.snapshots > 0
            assert agent.orchestrator.is_enabled(SourceFamily.SYSTEM)
            assert not agent.orchestrator.is_enabled(SourceFamily.GPU)
        finally:
            agent.stop()

        assert not agent.orchestrator.is_running
        assert recorder.categories.count(AlertCategory.HIGH_CPU) == 1


class TestDefaultCollectors:
    """Tests for the stock collector set."""

    def test_local_sensors_by_default(self, monkeypatch):
        monkeypatch.setattr(agent_module.platform, "system", lambda: "Linux")
        collectors = default_collectors(MonitorConfig())
        families = [c.family for c in collectors]
        assert families == [SourceFamily.SYSTEM, SourceFamily.GPU, SourceFamily.CONTAINERS, SourceFamily.THERMAL]
        assert isinstance(collectors[-1], LocalSensorsAdapter)

    def test_lhm_when_url_configured(self, monkeypatch):
        monkeypatch.setattr(agent_module.platform, "system", lambda: "Linux")
        collectors = default_collectors(MonitorConfig().with_thermal(lhm_url="http://10.0.0.5:8085/data.json"))
        assert isinstance(collectors[-1], LhmThermalAdapter)
        assert collectors[-1].url == "http://10.0.0.5:8085/data.json"

    def test_windows_defaults_to_local_lhm(self, monkeypatch):
        monkeypatch.setattr(agent_module.platform, "system", lambda: "Windows")
        thermal = default_collectors(MonitorConfig())[-1]
        assert isinstance(thermal, LhmThermalAdapter)
        assert thermal.url == DEFAULT_LHM_URL
