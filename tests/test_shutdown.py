"""Tests for the OS shutdown trigger."""

import subprocess

import pytest

from sentinel import shutdown
from sentinel.errors import ShutdownExecutionError
from sentinel.shutdown import CommandShutdownTrigger, default_shutdown_command


@pytest.mark.parametrize(
    "system,release,expected",
    [
        ("Windows", "10", ["shutdown", "/s", "/t", "0"]),
        ("Linux", "5.15.153.1-microsoft-standard-WSL2", ["powershell.exe", "-Command", "Stop-Computer -Force"]),
        ("Darwin", "23.1.0", ["shutdown", "-h", "now"]),
        ("Linux", "6.8.0-45-generic", ["systemctl", "poweroff"]),
        ("FreeBSD", "14.0-RELEASE", ["systemctl", "poweroff"]),
    ],
)
def test_default_command(monkeypatch, system, release, expected):
    monkeypatch.setattr(shutdown.platform, "system", lambda: system)
    monkeypatch.setattr(shutdown.platform, "release", lambda: release)
    assert default_shutdown_command() == expected


def test_execute_runs_command_detached(monkeypatch):
    calls = []

    def fake_popen(command, **kwargs):
        calls.append((command, kwargs))

    monkeypatch.setattr(shutdown.subprocess, "Popen", fake_popen)
    CommandShutdownTrigger(["echo", "bye"]).execute()

    assert calls == [
        (["echo", "bye"], {"stdin": subprocess.DEVNULL, "stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL})
    ]


def test_missing_binary_raises_execution_error(monkeypatch):
    def fake_popen(command, **kwargs):
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr(shutdown.subprocess, "Popen", fake_popen)
    trigger = CommandShutdownTrigger(["definitely-not-a-shutdown-binary"])

    with pytest.raises(ShutdownExecutionError, match="cannot run definitely-not-a-shutdown-binary"):
        trigger.execute()


def test_command_is_copied():
    trigger = CommandShutdownTrigger(["shutdown", "-h", "now"])
    trigger.command.append("extra")
    assert trigger.command == ["shutdown", "-h", "now"]
