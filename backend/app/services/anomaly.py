"""Inline anomaly detection on every ingested health sample.

Voltage sag, voltage swell and low power factor are duration gated: the
predicate has to hold on contiguous samples for the required duration before
one event fires, after which the timer resets and must accumulate again.
Online/offline transitions fire immediately on the first change after a
device's first observation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from app.core.config import Settings
from app.core.time_windows import to_utc
from app.repositories.ports import AnomalyEventRecord, AnomalyEventRepository, HealthSample
from app.services.notifications import Notification, Notifier

CONDITION_VOLTAGE_SAG = "voltage_sag"
CONDITION_VOLTAGE_SWELL = "voltage_swell"
CONDITION_LOW_POWER_FACTOR = "low_power_factor"
CONDITION_CONNECTIVITY = "connectivity"

EVENT_ONLINE = "online"
EVENT_OFFLINE = "offline"


@dataclass(frozen=True)
class GatedCondition:
    kind: str
    metric: str
    unit: str
    threshold: float
    required_seconds: float
    fires_below: bool

    def holds(self, value: float) -> bool:
        if self.fires_below:
            return value < self.threshold
        return value > self.threshold


def gated_conditions_from_settings(settings: Settings) -> tuple[GatedCondition, ...]:
    return (
        GatedCondition(
            kind=CONDITION_VOLTAGE_SAG,
            metric="voltage_v",
            unit="V",
            threshold=settings.anomaly_sag_voltage_v,
            required_seconds=settings.anomaly_sag_duration_seconds,
            fires_below=True,
        ),
        GatedCondition(
            kind=CONDITION_VOLTAGE_SWELL,
            metric="voltage_v",
            unit="V",
            threshold=settings.anomaly_swell_voltage_v,
            required_seconds=settings.anomaly_swell_duration_seconds,
            fires_below=False,
        ),
        GatedCondition(
            kind=CONDITION_LOW_POWER_FACTOR,
            metric="power_factor",
            unit="",
            threshold=settings.anomaly_low_pf_threshold,
            required_seconds=settings.anomaly_low_pf_duration_seconds,
            fires_below=True,
        ),
    )


class AnomalyStateStore(Protocol):
    def get_condition_start(self, device_id: str, condition: str) -> datetime | None: ...

    def start_condition(self, device_id: str, condition: str, started_at: datetime) -> None: ...

    def clear_condition(self, device_id: str, condition: str) -> None: ...

    def swap_online_state(self, device_id: str, online: bool) -> bool | None:
        """Store ``online`` and return the previously observed value."""
        ...


class InMemoryAnomalyStateStore:
    """Process-local timers. Lost on restart and not shared between workers."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._condition_starts: dict[tuple[str, str], datetime] = {}
        self._online: dict[str, bool] = {}

    def get_condition_start(self, device_id: str, condition: str) -> datetime | None:
        with self._lock:
            return self._condition_starts.get((device_id, condition))

    def start_condition(self, device_id: str, condition: str, started_at: datetime) -> None:
        with self._lock:
            self._condition_starts[(device_id, condition)] = started_at

    def clear_condition(self, device_id: str, condition: str) -> None:
        with self._lock:
            self._condition_starts.pop((device_id, condition), None)

    def swap_online_state(self, device_id: str, online: bool) -> bool | None:
        with self._lock:
            previous = self._online.get(device_id)
            self._online[device_id] = online
            return previous

    def active_conditions(self) -> dict[str, dict[str, str]]:
        with self._lock:
            snapshot: dict[str, dict[str, str]] = {}
            for (device_id, condition), started_at in self._condition_starts.items():
                snapshot.setdefault(device_id, {})[condition] = started_at.isoformat()
            return snapshot


class AnomalyDetector:
    def __init__(
        self,
        *,
        events: AnomalyEventRepository,
        state_store: AnomalyStateStore,
        conditions: tuple[GatedCondition, ...],
        notifier: Notifier | None = None,
    ):
        self._events = events
        self._state = state_store
        self._conditions = conditions
        self._notifier = notifier
        self._logger = logging.getLogger("app.anomaly")

    def observe(self, sample: HealthSample) -> list[AnomalyEventRecord]:
        ts = to_utc(sample.ts)
        fired: list[AnomalyEventRecord] = []
        for condition in self._conditions:
            if not sample.online:
                # An outage breaks contiguity; zeroed offline readings never qualify.
                self._state.clear_condition(sample.device_id, condition.kind)
                continue
            value = getattr(sample, condition.metric)
            if value is None:
                continue
            try:
                event = self._advance_gated(condition, sample.device_id, float(value), ts)
            except Exception:
                self._logger.exception(
                    "anomaly evaluation failed device_id=%s condition=%s",
                    sample.device_id,
                    condition.kind,
                )
                continue
            if event is not None:
                fired.append(event)

        try:
            event = self._advance_connectivity(sample.device_id, sample.online, ts)
        except Exception:
            self._logger.exception("connectivity evaluation failed device_id=%s", sample.device_id)
            event = None
        if event is not None:
            fired.append(event)
        return fired

    def _advance_gated(
        self,
        condition: GatedCondition,
        device_id: str,
        value: float,
        ts: datetime,
    ) -> AnomalyEventRecord | None:
        if not condition.holds(value):
            self._state.clear_condition(device_id, condition.kind)
            return None

        started_at = self._state.get_condition_start(device_id, condition.kind)
        if started_at is None:
            self._state.start_condition(device_id, condition.kind, ts)
            return None

        elapsed = (ts - started_at).total_seconds()
        if elapsed < condition.required_seconds:
            return None

        event = self._events.insert_anomaly_event(
            AnomalyEventRecord(
                device_id=device_id,
                ts=ts,
                kind=condition.kind,
                observed_value=value,
                threshold=condition.threshold,
                duration_seconds=elapsed,
                payload={
                    "metric": condition.metric,
                    "value": value,
                    "threshold": condition.threshold,
                    "duration_seconds": elapsed,
                    "condition_start": started_at.isoformat(),
                },
            )
        )
        self._state.clear_condition(device_id, condition.kind)
        self._logger.info(
            "anomaly detected device_id=%s condition=%s value=%s threshold=%s duration_seconds=%s",
            device_id,
            condition.kind,
            value,
            condition.threshold,
            elapsed,
        )
        direction = "below" if condition.fires_below else "above"
        self._notify(
            event,
            body=(
                f"{device_id}: {condition.kind.replace('_', ' ')} {value:g}{condition.unit} "
                f"{direction} {condition.threshold:g}{condition.unit} for {elapsed:.0f}s"
            ),
        )
        return event

    def _advance_connectivity(self, device_id: str, online: bool, ts: datetime) -> AnomalyEventRecord | None:
        previous = self._state.swap_online_state(device_id, online)
        if previous is None or previous == online:
            return None

        kind = EVENT_ONLINE if online else EVENT_OFFLINE
        try:
            event = self._events.insert_anomaly_event(
                AnomalyEventRecord(
                    device_id=device_id,
                    ts=ts,
                    kind=kind,
                    observed_value=1.0 if online else 0.0,
                    threshold=None,
                    payload={"previous_state": previous, "new_state": online},
                )
            )
        except Exception:
            # Restore the prior flag so the next sample retries the transition.
            self._state.swap_online_state(device_id, previous)
            raise
        self._logger.info("connectivity transition device_id=%s %s -> %s", device_id, previous, online)
        self._notify(event, body=f"{device_id} went {kind}")
        return event

    def _notify(self, event: AnomalyEventRecord, *, body: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.publish(
                Notification(
                    title="Power anomaly",
                    body=body,
                    url="/events",
                    device_id=event.device_id,
                    kind=event.kind,
                    payload={"event_id": event.id, "ts": event.ts.isoformat()},
                )
            )
        except Exception:
            self._logger.exception("anomaly notification failed device_id=%s kind=%s", event.device_id, event.kind)
