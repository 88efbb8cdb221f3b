"""Publication bus fanning snapshots and alerts out to consumers.

Publishing never blocks on a consumer. Each subscriber has its own
delivery thread, a single latest-wins snapshot slot and a bounded alert
queue: a slow consumer skips intermediate snapshots instead of building a
backlog, and only ever sees snapshot timestamps that strictly increase.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from typing import Protocol

from sentinel.log import get_logger
from sentinel.models import Alert, AlertSeverity, Snapshot

logger = get_logger(__name__)

DEFAULT_ALERT_CAPACITY = 256

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
    AlertSeverity.DANGER: logging.CRITICAL,
}


class PublicationSubscriber(Protocol):
    def on_snapshot(self, snapshot: Snapshot) -> None: ...

    def on_alert(self, alert: Alert) -> None: ...


class Subscription:
    """Delivery state for one subscriber."""

    def __init__(self, subscriber: PublicationSubscriber, name: str, alert_capacity: int) -> None:
        self.subscriber = subscriber
        self.name = name
        self.delivered_snapshots = 0
        self.dropped_alerts = 0
        self.last_timestamp: float | None = None

        self._cond = threading.Condition()
        self._pending: Snapshot | None = None
        self._alerts: deque[Alert] = deque(maxlen=alert_capacity)
        self._closed = False
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"Bus-{name}")

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def offer_snapshot(self, snapshot: Snapshot) -> None:
        with self._cond:
            if self._closed:
                return
            if self._pending is not None and snapshot.timestamp <= self._pending.timestamp:
                return
            self._pending = snapshot
            self._cond.notify()

    def offer_alerts(self, alerts: Iterable[Alert]) -> None:
        with self._cond:
            if self._closed:
                return
            for alert in alerts:
                if len(self._alerts) == self._alerts.maxlen:
                    self.dropped_alerts += 1
                    if self.dropped_alerts == 1:
                        logger.warning("Alert queue of subscriber %s is full, dropping oldest alerts", self.name)
                self._alerts.append(alert)
            self._cond.notify()

    def close(self, timeout: float | None) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._closed and self._pending is None and not self._alerts:
                    self._cond.wait()
                if self._closed:
                    return
                snapshot, self._pending = self._pending, None
                alerts = list(self._alerts)
                self._alerts.clear()

            if snapshot is not None and (self.last_timestamp is None or snapshot.timestamp > self.last_timestamp):
                self.last_timestamp = snapshot.timestamp
                self.delivered_snapshots += 1
                self._deliver("on_snapshot", snapshot)
            for alert in alerts:
                self._deliver("on_alert", alert)

    def _deliver(self, method: str, payload: Snapshot | Alert) -> None:
        try:
            getattr(self.subscriber, method)(payload)
        except Exception:
            logger.exception("Subscriber %s raised in %s", self.name, method)


class PublicationBus:
    """Fans Snapshots and Alerts out to subscribers without blocking publishers."""

    def __init__(self, alert_capacity: int = DEFAULT_ALERT_CAPACITY) -> None:
        self._alert_capacity = alert_capacity
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._closed = False

    @property
    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions)

    def subscribe(self, subscriber: PublicationSubscriber, name: str | None = None) -> Subscription:
        """
        Register a subscriber and start its delivery thread.

        Args:
            subscriber: Object with ``on_snapshot`` and ``on_alert`` callbacks.
            name: Label used in thread names and log messages.
        """
        subscription = Subscription(subscriber, name or type(subscriber).__name__, self._alert_capacity)
        with self._lock:
            if self._closed:
                raise RuntimeError("publication bus is closed")
            self._subscriptions.append(subscription)
        subscription.start()
        return subscription

    def unsubscribe(self, subscription: Subscription, timeout: float | None = 1.0) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.close(timeout)

    def publish_snapshot(self, snapshot: Snapshot) -> None:
        for subscription in self.subscriptions:
            subscription.offer_snapshot(snapshot)

    def publish_alerts(self, alerts: Iterable[Alert]) -> None:
        alerts = list(alerts)
        if not alerts:
            return
        for subscription in self.subscriptions:
            subscription.offer_alerts(alerts)

    def close(self, timeout: float | None = 2.0) -> None:
        """Stop every delivery thread. Pending items are discarded."""
        with self._lock:
            self._closed = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close(timeout)


class LoggingSubscriber:
    """Writes every published alert to the log."""

    def __init__(self, log_name: str = "sentinel.alerts.feed") -> None:
        self._logger = get_logger(log_name)

    def on_snapshot(self, snapshot: Snapshot) -> None:
        pass

    def on_alert(self, alert: Alert) -> None:
        self._logger.log(
            _LOG_LEVELS[alert.severity],
            "[%s] %s: %s",
            alert.severity.label,
            alert.category.value,
            alert.message,
        )
