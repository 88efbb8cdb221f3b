"""Snapshot orchestrator: per-family polling loops and the snapshot merge."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from sentinel.config import MonitorConfig
from sentinel.errors import SourceTimeout
from sentinel.log import get_logger
from sentinel.models import Snapshot, SystemSample
from sentinel.sources import Collector, Fresh, SourceFamily, SourceResult, Stale, Unavailable

logger = get_logger(__name__)

# Keeps merged timestamps strictly increasing when the clock does not advance.
_TIMESTAMP_EPSILON = 1e-6


@dataclass(slots=True)
class _FamilyState:
    collector: Collector | None
    interval: float
    current_interval: float
    result: SourceResult
    enabled: bool = True
    last_fresh: Fresh | None = None
    failures: int = 0
    executor: ThreadPoolExecutor | None = None
    pending: Future | None = None
    thread: threading.Thread | None = None


class SnapshotOrchestrator:
    """
    Polls every source family on its own cadence and merges the latest
    result per family into a Snapshot.

    Each family runs in its own daemon thread, and each collector call runs
    on a single-worker executor bounded by ``call_timeout``, so a slow or
    hung source only ever delays its own family. Every merge is handed to
    ``publish`` while the merge lock is held, so publication order matches
    timestamp order.
    """

    def __init__(
        self,
        collectors: Iterable[Collector],
        config: MonitorConfig,
        publish: Callable[[Snapshot], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            collectors: At most one collector per source family. Families
                without one are reported as Unavailable.
            config: Poll intervals, call timeout and backoff settings.
            publish: Receives every merged Snapshot, typically
                ``PublicationBus.publish_snapshot``.
            clock: Time source for snapshot timestamps.
        """
        self._config = config
        self._publish = publish
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._last_timestamp = 0.0
        self._latest_snapshot: Snapshot | None = None

        by_family: dict[SourceFamily, Collector] = {}
        for collector in collectors:
            if collector.family in by_family:
                raise ValueError(f"more than one collector for {collector.family.value}")
            by_family[collector.family] = collector

        self._families: dict[SourceFamily, _FamilyState] = {}
        for family in SourceFamily:
            interval = config.intervals.for_family(family)
            collector = by_family.get(family)
            state = _FamilyState(
                collector=collector,
                interval=interval,
                current_interval=interval,
                result=Unavailable("not polled yet"),
            )
            if collector is None:
                state.enabled = False
                state.result = Unavailable("no collector configured")
            elif not self._check_available(collector):
                state.enabled = False
                state.result = Unavailable(f"{family.value} source not available on this host")
            self._families[family] = state

    @staticmethod
    def _check_available(collector: Collector) -> bool:
        try:
            return bool(collector.is_available())
        except Exception:
            logger.exception("Availability check failed for %s", collector.family.value)
            return False

    @property
    def is_running(self) -> bool:
        return any(s.thread is not None and s.thread.is_alive() for s in self._families.values())

    @property
    def latest_snapshot(self) -> Snapshot | None:
        return self._latest_snapshot

    def is_enabled(self, family: SourceFamily) -> bool:
        return self._families[family].enabled

    def latest(self, family: SourceFamily) -> SourceResult:
        with self._lock:
            return self._families[family].result

    def current_interval(self, family: SourceFamily) -> float:
        return self._families[family].current_interval

    def consecutive_failures(self, family: SourceFamily) -> int:
        return self._families[family].failures

    def start(self) -> None:
        """Start one polling thread per enabled family."""
        if self.is_running:
            return
        self._stop_event.clear()
        for family, state in self._families.items():
            if not state.enabled:
                continue
            if state.executor is None:
                state.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"collect-{family.value}")
            state.thread = threading.Thread(
                target=self._poll_loop,
                args=(family,),
                daemon=True,
                name=f"Orchestrator-{family.value}",
            )
            state.thread.start()
        logger.info(
            "Polling started for: %s",
            ", ".join(f.value for f, s in self._families.items() if s.enabled) or "nothing",
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling threads.

        A collector call still hanging is abandoned, not waited for.

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        self._stop_event.set()
        for state in self._families.values():
            if state.thread is not None:
                state.thread.join(timeout=timeout)
                state.thread = None
            if state.executor is not None:
                state.executor.shutdown(wait=False, cancel_futures=True)
                state.executor = None
                state.pending = None

    def poll(self, family: SourceFamily) -> SourceResult:
        """
        Call the family's collector once and store the outcome.

        Failures never raise: they become Stale (while failures are below
        the threshold and a fresh value exists) or Unavailable.

        Returns:
            The SourceResult now stored for ``family``.
        """
        state = self._families[family]
        if not state.enabled:
            return state.result

        outcome: SourceResult | BaseException
        if state.pending is not None and not state.pending.done():
            outcome = SourceTimeout("previous call has not returned yet")
        else:
            if state.executor is None:
                state.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"collect-{family.value}")
            state.pending = state.executor.submit(state.collector.poll)
            try:
                outcome = state.pending.result(timeout=self._config.call_timeout)
            except FutureTimeout:
                outcome = SourceTimeout(f"no answer within {self._config.call_timeout}s")
            except Exception as e:
                outcome = e

        with self._lock:
            return self._record(family, state, outcome)

    def _record(self, family: SourceFamily, state: _FamilyState, outcome: Any) -> SourceResult:
        if isinstance(outcome, Fresh):
            if state.failures >= self._config.failure_threshold:
                logger.info("%s source recovered after %d failures", family.value, state.failures)
            state.failures = 0
            state.current_interval = state.interval
            state.last_fresh = outcome
            state.result = outcome
            return outcome

        if isinstance(outcome, BaseException):
            reason = f"{type(outcome).__name__}: {outcome}"
        elif isinstance(outcome, (Stale, Unavailable)):
            reason = outcome.reason
        else:
            reason = f"collector returned {type(outcome).__name__}"

        state.failures += 1
        threshold = self._config.failure_threshold
        if state.failures < threshold:
            if state.failures == 1:
                logger.warning("%s source failed: %s", family.value, reason)
            if state.last_fresh is not None:
                state.result = Stale(state.last_fresh.data, state.last_fresh.as_of, reason)
            else:
                state.result = Unavailable(reason)
            return state.result

        backoff = state.interval * 2 ** (state.failures - threshold + 1)
        state.current_interval = min(self._config.max_backoff, backoff)
        if state.failures == threshold:
            logger.warning(
                "%s source unavailable after %d consecutive failures, backing off to %.1fs: %s",
                family.value, state.failures, state.current_interval, reason,
            )
        else:
            logger.debug("%s source still failing (%d), next poll in %.1fs", family.value, state.failures,
                         state.current_interval)
        state.result = Unavailable(reason)
        return state.result

    def merge(self) -> Snapshot:
        """
        Build a Snapshot from the latest result of every family and publish it.

        Stale and Unavailable families carry their last fresh data, or the
        absent marker when they never produced any.
        """
        with self._lock:
            now = self._clock()
            timestamp = max(now, self._last_timestamp + _TIMESTAMP_EPSILON)
            self._last_timestamp = timestamp

            results = {family: state.result for family, state in self._families.items()}

            def last_good(family: SourceFamily) -> Any:
                fresh = self._families[family].last_fresh
                return None if fresh is None else fresh.data

            system: SystemSample | None = last_good(SourceFamily.SYSTEM)
            snapshot = Snapshot(
                timestamp=timestamp,
                cpu=system.cpu if system else None,
                memory=system.memory if system else None,
                disks=system.disks if system else (),
                networks=system.networks if system else (),
                battery=system.battery if system else None,
                processes=system.processes if system else (),
                gpus=last_good(SourceFamily.GPU) or (),
                containers=last_good(SourceFamily.CONTAINERS) or (),
                thermal=last_good(SourceFamily.THERMAL),
                sources=MappingProxyType(results),
                uptime_seconds=system.uptime_seconds if system else 0.0,
            )
            self._latest_snapshot = snapshot
            if self._publish is not None:
                self._publish(snapshot)
            return snapshot

    def _poll_loop(self, family: SourceFamily) -> None:
        """Polling loop for one family, running in its own thread."""
        state = self._families[family]
        while not self._stop_event.is_set():
            try:
                self.poll(family)
                self.merge()
            except Exception:
                logger.exception("Unexpected error in %s polling loop", family.value)

            self._stop_event.wait(timeout=state.current_interval)
