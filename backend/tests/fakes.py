from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from app.repositories.ports import (
    AlertEventRecord,
    AlertRuleSnapshot,
    AnomalyEventRecord,
    DailyEnergyRow,
    EnergySample,
    HealthSample,
    RetentionTarget,
    RollupResolution,
    RollupRow,
)
from app.services.notifications import Notification


@contextmanager
def _unused_session_context():
    yield object()


class UnusedSessionFactory:
    def __call__(self):
        return _unused_session_context()


class InMemorySampleRepository:
    def __init__(self) -> None:
        self.health: list[HealthSample] = []
        self.energy: list[EnergySample] = []

    def insert_health_sample(self, sample: HealthSample) -> None:
        self.health.append(sample)

    def insert_energy_sample(self, sample: EnergySample) -> None:
        self.energy.append(sample)

    def list_health_samples_in_window(self, *, from_ts: datetime, to_ts: datetime) -> list[HealthSample]:
        return sorted(
            (sample for sample in self.health if from_ts <= sample.ts < to_ts),
            key=lambda sample: sample.ts,
        )

    def list_device_health_samples(
        self,
        *,
        device_id: str,
        from_ts: datetime,
        to_ts: datetime,
    ) -> list[HealthSample]:
        return sorted(
            (
                sample
                for sample in self.health
                if sample.device_id == device_id and from_ts <= sample.ts <= to_ts
            ),
            key=lambda sample: sample.ts,
        )

    def list_energy_device_ids(self, *, from_ts: datetime, to_ts: datetime) -> list[str]:
        return sorted({sample.device_id for sample in self.energy if from_ts <= sample.ts < to_ts})

    def latest_energy_reading(
        self,
        *,
        device_id: str,
        at_or_before: datetime | None = None,
        before: datetime | None = None,
    ) -> float | None:
        if (at_or_before is None) == (before is None):
            raise ValueError("exactly one of at_or_before/before is required")
        candidates = [
            sample
            for sample in self.energy
            if sample.device_id == device_id
            and (sample.ts <= at_or_before if at_or_before is not None else sample.ts < before)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda sample: sample.ts).cumulative_energy_kwh


class InMemoryRollupRepository:
    def __init__(self) -> None:
        self.rows: dict[str, dict[tuple[str, datetime], RollupRow]] = {}
        self.create_calls = 0

    def latest_window_start(self, resolution: RollupResolution) -> datetime | None:
        table = self.rows.get(resolution.name, {})
        if not table:
            return None
        return max(window_start for _, window_start in table)

    def list_rollups(
        self,
        resolution: RollupResolution,
        *,
        from_ts: datetime,
        to_ts: datetime,
        device_id: str | None = None,
    ) -> list[RollupRow]:
        table = self.rows.get(resolution.name, {})
        return sorted(
            (
                row
                for row in table.values()
                if from_ts <= row.window_start < to_ts and (device_id is None or row.device_id == device_id)
            ),
            key=lambda row: (row.device_id, row.window_start),
        )

    def create_if_absent(self, resolution: RollupResolution, row: RollupRow) -> bool:
        self.create_calls += 1
        table = self.rows.setdefault(resolution.name, {})
        key = (row.device_id, row.window_start)
        if key in table:
            return False
        table[key] = row
        return True

    def table(self, name: str) -> list[RollupRow]:
        return sorted(self.rows.get(name, {}).values(), key=lambda row: (row.device_id, row.window_start))


class InMemoryDailyEnergyRepository:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, object], DailyEnergyRow] = {}
        self.fail_next = 0

    def upsert_daily_energy(self, row: DailyEnergyRow) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("could not serialize access due to concurrent update")
        self.rows[(row.device_id, row.local_day)] = row


class InMemoryAlertRuleRepository:
    def __init__(self, rules: list[AlertRuleSnapshot] | None = None) -> None:
        self.rules: dict[int, AlertRuleSnapshot] = {rule.id: rule for rule in rules or []}
        self.events: list[AlertEventRecord] = []

    def list_active_rules(self, *, device_id: str | None = None) -> list[AlertRuleSnapshot]:
        return [
            rule
            for rule in self.rules.values()
            if rule.is_active and (device_id is None or rule.device_id == device_id)
        ]

    def record_firing(self, *, rule_id: int, event: AlertEventRecord, fired_at: datetime) -> AlertEventRecord:
        stored = replace(event, id=len(self.events) + 1)
        self.events.append(stored)
        self.rules[rule_id] = replace(self.rules[rule_id], last_fired_at=fired_at)
        return stored


class InMemoryAnomalyEventRepository:
    def __init__(self) -> None:
        self.events: list[AnomalyEventRecord] = []
        self.fail_next = False

    def insert_anomaly_event(self, event: AnomalyEventRecord) -> AnomalyEventRecord:
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("database unavailable")
        stored = replace(event, id=len(self.events) + 1)
        self.events.append(stored)
        return stored


class InMemoryRetentionRepository:
    def __init__(self, *, failing_tables: set[str] | None = None, deleted_per_table: int = 3) -> None:
        self.calls: list[tuple[str, datetime]] = []
        self._failing_tables = failing_tables or set()
        self._deleted_per_table = deleted_per_table

    def delete_older_than(self, target: RetentionTarget, cutoff: datetime) -> int:
        self.calls.append((target.name, cutoff))
        if target.table_name in self._failing_tables:
            raise RuntimeError(f"lock timeout on {target.table_name}")
        return self._deleted_per_table


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.notifications: list[Notification] = []
        self._fail = fail

    def publish(self, notification: Notification) -> int:
        if self._fail:
            raise RuntimeError("push gateway down")
        self.notifications.append(notification)
        return 1
