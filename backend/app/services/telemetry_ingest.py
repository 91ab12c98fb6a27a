from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.time_windows import to_utc
from app.repositories.alerts import SqlAlertRuleRepository
from app.repositories.anomaly_events import SqlAnomalyEventRepository
from app.repositories.ports import (
    AlertEventRecord,
    AlertRuleRepository,
    AnomalyEventRecord,
    AnomalyEventRepository,
    EnergySample,
    HealthSample,
    RawSampleRepository,
)
from app.repositories.telemetry import SqlRawSampleRepository
from app.services.alert_rules import AlertRuleEvaluator
from app.services.anomaly import (
    AnomalyDetector,
    AnomalyStateStore,
    InMemoryAnomalyStateStore,
    gated_conditions_from_settings,
)
from app.services.notifications import Notifier


@dataclass(frozen=True)
class DeviceSnapshot:
    device_id: str
    ts: datetime
    online: bool
    power_w: float | None = None
    voltage_v: float | None = None
    current_a: float | None = None
    power_factor: float | None = None
    cumulative_energy_kwh: float | None = None


@dataclass
class IngestOutcome:
    device_id: str
    health_stored: bool = False
    energy_stored: bool = False
    anomalies: list[AnomalyEventRecord] = field(default_factory=list)
    alerts: list[AlertEventRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IngestRepositories:
    samples: RawSampleRepository
    rules: AlertRuleRepository
    anomaly_events: AnomalyEventRepository


def sql_ingest_repositories(db: Session) -> IngestRepositories:
    return IngestRepositories(
        samples=SqlRawSampleRepository(db),
        rules=SqlAlertRuleRepository(db),
        anomaly_events=SqlAnomalyEventRepository(db),
    )


class TelemetryIngestService:
    """Per-tick entry point: store raw samples, then run the anomaly detector
    and the device's alert rules inline.

    Each step is isolated so a failing alert rule never blocks anomaly
    detection, and one device never blocks the next.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        notifier: Notifier | None = None,
        state_store: AnomalyStateStore | None = None,
        repository_factory: Callable[[Any], IngestRepositories] = sql_ingest_repositories,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._notifier = notifier
        self._state_store = state_store or InMemoryAnomalyStateStore()
        self._repository_factory = repository_factory
        self._conditions = gated_conditions_from_settings(settings)
        self._logger = logging.getLogger("app.telemetry_ingest")
        self._lock = Lock()
        self._last_ingest_ts: datetime | None = None
        self._samples_processed = 0
        self._last_error: str | None = None

    @property
    def state_store(self) -> AnomalyStateStore:
        return self._state_store

    def process_tick(self, snapshots: list[DeviceSnapshot]) -> list[IngestOutcome]:
        outcomes: list[IngestOutcome] = []
        for snapshot in snapshots:
            try:
                outcomes.append(self.process_snapshot(snapshot))
            except Exception as exc:
                self._logger.exception("ingest failed device_id=%s", snapshot.device_id)
                self._record_error(str(exc))
                outcomes.append(IngestOutcome(device_id=snapshot.device_id, errors=[str(exc)]))
        return outcomes

    def process_snapshot(self, snapshot: DeviceSnapshot) -> IngestOutcome:
        ts = to_utc(snapshot.ts)
        outcome = IngestOutcome(device_id=snapshot.device_id)
        health = _health_sample_from_snapshot(snapshot, ts)

        with self._session_factory() as db:
            repositories = self._repository_factory(db)

            repositories.samples.insert_health_sample(health)
            outcome.health_stored = True

            if snapshot.online and snapshot.cumulative_energy_kwh is not None:
                try:
                    repositories.samples.insert_energy_sample(
                        EnergySample(
                            device_id=snapshot.device_id,
                            ts=ts,
                            cumulative_energy_kwh=float(snapshot.cumulative_energy_kwh),
                        )
                    )
                    outcome.energy_stored = True
                except Exception as exc:
                    self._logger.exception("energy sample insert failed device_id=%s", snapshot.device_id)
                    outcome.errors.append(f"energy: {exc}")

            if self._settings.anomaly_enabled:
                try:
                    detector = AnomalyDetector(
                        events=repositories.anomaly_events,
                        state_store=self._state_store,
                        conditions=self._conditions,
                        notifier=self._notifier,
                    )
                    outcome.anomalies = detector.observe(health)
                except Exception as exc:
                    self._logger.exception("anomaly detection failed device_id=%s", snapshot.device_id)
                    outcome.errors.append(f"anomaly: {exc}")

            if self._settings.alerts_enabled:
                try:
                    evaluator = AlertRuleEvaluator(
                        samples=repositories.samples,
                        rules=repositories.rules,
                        notifier=self._notifier,
                    )
                    outcome.alerts = evaluator.evaluate_device(snapshot.device_id, ts)
                except Exception as exc:
                    self._logger.exception("alert evaluation failed device_id=%s", snapshot.device_id)
                    outcome.errors.append(f"alerts: {exc}")

        with self._lock:
            self._last_ingest_ts = datetime.now(timezone.utc)
            self._samples_processed += 1
            if outcome.errors:
                self._last_error = "; ".join(outcome.errors)
        return outcome

    def get_status_snapshot(self) -> dict[str, Any]:
        active: dict[str, dict[str, str]] | None = None
        if isinstance(self._state_store, InMemoryAnomalyStateStore):
            active = self._state_store.active_conditions()
        with self._lock:
            return {
                "anomaly_enabled": self._settings.anomaly_enabled,
                "alerts_enabled": self._settings.alerts_enabled,
                "last_ingest_ts": self._last_ingest_ts.isoformat() if self._last_ingest_ts else None,
                "samples_processed": self._samples_processed,
                "last_error": self._last_error,
                "active_conditions": active,
            }

    def _record_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message


def _health_sample_from_snapshot(snapshot: DeviceSnapshot, ts: datetime) -> HealthSample:
    if not snapshot.online:
        # Offline devices are recorded as drawing nothing.
        return HealthSample(
            device_id=snapshot.device_id,
            ts=ts,
            power_w=0.0,
            voltage_v=0.0,
            current_a=0.0,
            power_factor=0.0,
            online=False,
        )
    return HealthSample(
        device_id=snapshot.device_id,
        ts=ts,
        power_w=snapshot.power_w,
        voltage_v=snapshot.voltage_v,
        current_a=snapshot.current_a,
        power_factor=snapshot.power_factor,
        online=True,
    )
