"""OS shutdown trigger used by the thermal safety machine."""

from __future__ import annotations

import platform
import subprocess
from typing import Protocol

from sentinel.errors import ShutdownExecutionError
from sentinel.log import get_logger

logger = get_logger(__name__)


class ShutdownTrigger(Protocol):
    def execute(self) -> None:
        """Start the OS shutdown. Raises ShutdownExecutionError if it cannot."""
        ...


def default_shutdown_command() -> list[str]:
    """Pick the shutdown command for the host platform."""
    system = platform.system()
    if system == "Windows":
        return ["shutdown", "/s", "/t", "0"]
    if system == "Linux" and "microsoft" in platform.release().lower():
        # WSL: the Linux side cannot power off the host.
        return ["powershell.exe", "-Command", "Stop-Computer -Force"]
    if system == "Darwin":
        return ["shutdown", "-h", "now"]
    return ["systemctl", "poweroff"]


class CommandShutdownTrigger:
    """Runs a shutdown command once, without waiting for it to finish."""

    def __init__(self, command: list[str] | None = None) -> None:
        self._command = command or default_shutdown_command()

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def execute(self) -> None:
        logger.critical("Running shutdown command: %s", " ".join(self._command))
        try:
            subprocess.Popen(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise ShutdownExecutionError(f"cannot run {self._command[0]}: {e}") from e
