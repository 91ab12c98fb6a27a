from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    url: str
    device_id: str | None = None
    kind: str = "alert"
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    def send(self, notification: Notification) -> None: ...


class Notifier(Protocol):
    def publish(self, notification: Notification) -> int: ...


class LoggingNotificationSink:
    def __init__(self) -> None:
        self._logger = logging.getLogger("app.notifications.log_sink")

    def send(self, notification: Notification) -> None:
        self._logger.info(
            "notification kind=%s device_id=%s title=%s body=%s url=%s",
            notification.kind,
            notification.device_id,
            notification.title,
            notification.body,
            notification.url,
        )


class NotificationHub:
    """Best-effort fanout to every registered sink.

    Push and live-stream transports register themselves as sinks. A failing
    sink is logged and skipped; ``publish`` never raises.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None) -> None:
        self._logger = logging.getLogger("app.notifications")
        self._lock = Lock()
        self._sinks: list[NotificationSink] = list(sinks or [])

    def register(self, sink: NotificationSink) -> None:
        with self._lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def unregister(self, sink: NotificationSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def publish(self, notification: Notification) -> int:
        with self._lock:
            sinks = list(self._sinks)
        delivered = 0
        for sink in sinks:
            try:
                sink.send(notification)
                delivered += 1
            except Exception:
                self._logger.exception(
                    "notification delivery failed sink=%s kind=%s device_id=%s",
                    type(sink).__name__,
                    notification.kind,
                    notification.device_id,
                )
        return delivered
