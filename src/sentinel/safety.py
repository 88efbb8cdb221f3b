"""Thermal safety state machine.

State flow::

    Normal -> Warning -> Critical -> Emergency -> ShutdownCountdown -> ShutdownTriggered
                                                        |
                                                        +-> Aborted (user abort)

Escalation is immediate, downgrades wait for the hysteresis window.
Counting down to a shutdown is double-gated: the config flag AND the
environment confirmation must both be set. Every transition happens under
one lock, so an abort observed before the deadline always wins over the
shutdown trigger.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sentinel.config import ThermalConfig
from sentinel.errors import ShutdownExecutionError
from sentinel.log import get_logger
from sentinel.models import ThermalBatch
from sentinel.shutdown import ShutdownTrigger

logger = get_logger(__name__)


class ThermalState(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"
    SHUTDOWN_COUNTDOWN = "shutdown_countdown"
    ABORTED = "aborted"
    SHUTDOWN_TRIGGERED = "shutdown_triggered"

    @property
    def label(self) -> str:
        return {
            ThermalState.SHUTDOWN_COUNTDOWN: "SHUTDOWN IMMINENT",
            ThermalState.SHUTDOWN_TRIGGERED: "SHUTTING DOWN",
        }.get(self, self.value.capitalize())


# Severity rank of the temperature classifications.
_RANK = {
    ThermalState.NORMAL: 0,
    ThermalState.WARNING: 1,
    ThermalState.CRITICAL: 2,
    ThermalState.EMERGENCY: 3,
}


@dataclass(slots=True, frozen=True)
class ThermalStatus:
    """Read-only view of the machine, safe to hand to other threads."""

    state: ThermalState
    deadline: float | None
    degraded: bool
    degraded_reason: str
    max_cpu: float | None
    max_gpu: float | None
    max_storage: float | None
    max_relevant: float | None
    warning_temp: float
    critical_temp: float
    emergency_temp: float
    auto_shutdown_armed: bool
    last_error: str | None

    @property
    def threshold_for_state(self) -> float:
        """The threshold the current state was entered through."""
        if self.state is ThermalState.WARNING:
            return self.warning_temp
        if self.state is ThermalState.CRITICAL:
            return self.critical_temp
        if self.state in (
            ThermalState.EMERGENCY,
            ThermalState.SHUTDOWN_COUNTDOWN,
            ThermalState.SHUTDOWN_TRIGGERED,
        ):
            return self.emergency_temp
        return 0.0

    def seconds_remaining(self, now: float) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - now)


def in_schedule(hour: int, start: int, end: int) -> bool:
    """Whether ``hour`` falls in ``[start, end)``, wrapping past midnight when start > end."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


class ThermalSafetyMachine:
    """
    Owns the ThermalState and its transition function.

    ``observe`` is fed every new thermal batch, ``mark_unavailable`` every
    failed fetch, and ``tick`` runs at the top of every evaluation tick so
    deadlines are checked even between thermal polls. ``request_abort`` may
    be called from any thread.
    """

    def __init__(
        self,
        config: ThermalConfig,
        trigger: ShutdownTrigger,
        environment_confirmed: bool,
        clock: Callable[[], float] = time.time,
        hour_of_day: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the machine in the Normal state.

        Args:
            config: Thresholds, hysteresis and auto-shutdown settings.
            trigger: Collaborator that runs the OS shutdown. Called at most once.
            environment_confirmed: Second auto-shutdown gate, resolved by the
                caller from the process environment.
            clock: Time source used when callers do not pass ``now``.
            hour_of_day: Local hour source for the shutdown schedule window.
        """
        self._config = config
        self._trigger = trigger
        self._armed = config.auto_shutdown_enabled and environment_confirmed
        self._clock = clock
        self._hour_of_day = hour_of_day or (lambda: datetime.now().hour)
        self._lock = threading.Lock()

        self._state = ThermalState.NORMAL
        self._deadline: float | None = None
        self._emergency_since: float | None = None
        self._last_level = ThermalState.NORMAL
        self._downgrade_streak = 0
        self._degraded = False
        self._degraded_reason = ""
        self._last_batch: ThermalBatch | None = None
        self._fired = False
        self._last_error: str | None = None

        if config.auto_shutdown_enabled and not environment_confirmed:
            logger.info("Auto-shutdown enabled in config but not confirmed by environment; staying disarmed")

    @property
    def state(self) -> ThermalState:
        return self._state

    @property
    def auto_shutdown_armed(self) -> bool:
        return self._armed

    @property
    def status(self) -> ThermalStatus:
        with self._lock:
            batch = self._last_batch
            return ThermalStatus(
                state=self._state,
                deadline=self._deadline,
                degraded=self._degraded,
                degraded_reason=self._degraded_reason,
                max_cpu=batch.max_cpu if batch else None,
                max_gpu=batch.max_gpu if batch else None,
                max_storage=batch.max_storage if batch else None,
                max_relevant=batch.max_relevant if batch else None,
                warning_temp=self._config.warning_temp,
                critical_temp=self._config.critical_temp,
                emergency_temp=self._config.emergency_temp,
                auto_shutdown_armed=self._armed,
                last_error=self._last_error,
            )

    def classify(self, temperature: float | None) -> ThermalState:
        """Map the hottest safety-relevant temperature to a severity level."""
        cfg = self._config
        if temperature is None or temperature < cfg.warning_temp:
            return ThermalState.NORMAL
        if temperature < cfg.critical_temp:
            return ThermalState.WARNING
        if temperature < cfg.emergency_temp:
            return ThermalState.CRITICAL
        return ThermalState.EMERGENCY

    def observe(self, batch: ThermalBatch, now: float | None = None) -> ThermalState:
        """
        Run one transition for a fresh batch of readings.

        A batch without any CPU-die, GPU or NVMe sensor carries nothing the
        machine may act on and is handled like an unavailable feed.

        Returns:
            The state after the transition.
        """
        now = self._clock() if now is None else now
        if batch.max_relevant is None:
            self.mark_unavailable("no safety-relevant sensors in thermal feed")
            return self._state

        with self._lock:
            if self._degraded:
                logger.info("Thermal feed recovered")
            self._degraded = False
            self._degraded_reason = ""
            self._last_batch = batch

            if self._state is ThermalState.SHUTDOWN_TRIGGERED:
                return self._state

            level = self.classify(batch.max_relevant)
            self._last_level = level

            if self._state is ThermalState.SHUTDOWN_COUNTDOWN:
                if level is ThermalState.EMERGENCY:
                    self._check_deadline(now)
                else:
                    logger.warning(
                        "Temperature back below emergency (%.1f°C), shutdown countdown canceled",
                        batch.max_relevant,
                    )
                    self._clear_countdown()
                    self._set_state(level)
                return self._state

            current = ThermalState.NORMAL if self._state is ThermalState.ABORTED else self._state
            if _RANK[level] >= _RANK[current]:
                self._downgrade_streak = 0
                self._set_state(level)
            else:
                self._downgrade_streak += 1
                if self._downgrade_streak >= self._config.hysteresis_cycles:
                    self._downgrade_streak = 0
                    self._set_state(level)

            if self._state is ThermalState.EMERGENCY and level is ThermalState.EMERGENCY:
                if self._emergency_since is None:
                    self._emergency_since = now
                self._maybe_arm_countdown(now)
            else:
                self._emergency_since = None
            return self._state

    def mark_unavailable(self, reason: str) -> None:
        """Freeze in the current state and flag the machine as degraded."""
        with self._lock:
            if not self._degraded:
                logger.warning("Thermal feed unavailable (%s); holding state %s", reason, self._state.value)
            self._degraded = True
            self._degraded_reason = reason

    def tick(self, now: float | None = None) -> ThermalState:
        """Check sustained-emergency arming and the countdown deadline."""
        now = self._clock() if now is None else now
        with self._lock:
            if self._degraded:
                return self._state
            if self._state is ThermalState.EMERGENCY:
                self._maybe_arm_countdown(now)
            elif self._state is ThermalState.SHUTDOWN_COUNTDOWN:
                self._check_deadline(now)
            return self._state

    def request_abort(self) -> bool:
        """
        Abort a running shutdown countdown.

        Returns:
            True if a countdown was canceled, False if none was running.
        """
        with self._lock:
            if self._state is not ThermalState.SHUTDOWN_COUNTDOWN:
                return False
            logger.warning("Thermal shutdown ABORTED by user")
            self._clear_countdown()
            self._set_state(ThermalState.ABORTED)
            return True

    # Callers hold self._lock for everything below.

    def _set_state(self, new_state: ThermalState) -> None:
        if new_state is self._state:
            return
        log = logger.warning if new_state in _ESCALATED else logger.info
        log("Thermal state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _clear_countdown(self) -> None:
        self._deadline = None
        self._emergency_since = None
        self._downgrade_streak = 0

    def _maybe_arm_countdown(self, now: float) -> None:
        if not self._armed or self._emergency_since is None:
            return
        if self._last_level is not ThermalState.EMERGENCY:
            return
        if now - self._emergency_since < self._config.sustained_seconds:
            return
        cfg = self._config
        if not in_schedule(self._hour_of_day(), cfg.schedule_start_hour, cfg.schedule_end_hour):
            return
        self._deadline = now + cfg.shutdown_delay
        self._set_state(ThermalState.SHUTDOWN_COUNTDOWN)
        logger.critical("Thermal emergency sustained, system shutdown in %.0fs unless aborted", cfg.shutdown_delay)
        self._check_deadline(now)

    def _check_deadline(self, now: float) -> None:
        if self._deadline is None or now < self._deadline:
            return
        if self._last_level is not ThermalState.EMERGENCY:
            return
        self._deadline = None
        self._set_state(ThermalState.SHUTDOWN_TRIGGERED)
        self._fire()

    def _fire(self) -> None:
        if self._fired:
            return
        self._fired = True
        logger.critical("Executing thermal emergency shutdown")
        try:
            self._trigger.execute()
        except ShutdownExecutionError as e:
            self._last_error = str(e)
            logger.error("Shutdown command failed, not retrying: %s", e)


_ESCALATED = frozenset({
    ThermalState.WARNING,
    ThermalState.CRITICAL,
    ThermalState.EMERGENCY,
    ThermalState.SHUTDOWN_COUNTDOWN,
    ThermalState.SHUTDOWN_TRIGGERED,
    ThermalState.ABORTED,
})
