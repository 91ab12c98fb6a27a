"""Storage-agnostic records and the narrow repository interfaces the jobs use.

The rollup, daily energy, retention, anomaly and alert services only talk to
these protocols. The sibling ``app.repositories`` modules implement them on a
SQLAlchemy session; tests use in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol


@dataclass(frozen=True)
class RollupResolution:
    name: str
    seconds: int
    table_name: str
    parent: str | None


RESOLUTION_1M = RollupResolution(name="1m", seconds=60, table_name="rollup_1m", parent=None)
RESOLUTION_15M = RollupResolution(name="15m", seconds=15 * 60, table_name="rollup_15m", parent="1m")
RESOLUTION_1H = RollupResolution(name="1h", seconds=60 * 60, table_name="rollup_1h", parent="15m")

ROLLUP_RESOLUTIONS: tuple[RollupResolution, ...] = (RESOLUTION_1M, RESOLUTION_15M, RESOLUTION_1H)
RESOLUTIONS_BY_NAME: dict[str, RollupResolution] = {item.name: item for item in ROLLUP_RESOLUTIONS}


def get_resolution(name: str) -> RollupResolution:
    resolution = RESOLUTIONS_BY_NAME.get(name)
    if resolution is None:
        raise ValueError("resolution must be one of 1m|15m|1h")
    return resolution


@dataclass(frozen=True)
class HealthSample:
    device_id: str
    ts: datetime
    power_w: float | None
    voltage_v: float | None
    current_a: float | None
    power_factor: float | None
    online: bool


@dataclass(frozen=True)
class EnergySample:
    device_id: str
    ts: datetime
    cumulative_energy_kwh: float


@dataclass(frozen=True)
class RollupRow:
    device_id: str
    window_start: datetime
    avg_power_w: float | None
    min_power_w: float | None
    max_power_w: float | None
    energy_kwh: float | None


@dataclass(frozen=True)
class DailyEnergyRow:
    device_id: str
    local_day: date
    energy_kwh: float
    baseline_kwh: float | None = None
    final_kwh: float | None = None


@dataclass(frozen=True)
class AlertRuleSnapshot:
    id: int
    name: str
    device_id: str
    metric: str
    comparator: str
    threshold: float
    sustained_for_seconds: int
    cooldown_seconds: int
    is_active: bool
    last_fired_at: datetime | None


@dataclass(frozen=True)
class AlertEventRecord:
    rule_id: int | None
    device_id: str
    ts: datetime
    observed_value: float | None
    message: str | None
    id: int | None = None


@dataclass(frozen=True)
class AnomalyEventRecord:
    device_id: str
    ts: datetime
    kind: str
    observed_value: float | None
    threshold: float | None
    duration_seconds: float | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass(frozen=True)
class RetentionTarget:
    name: str
    table_name: str
    ts_column: str


RETENTION_TARGETS: tuple[RetentionTarget, ...] = (
    RetentionTarget(name="raw_health", table_name="raw_health_samples", ts_column="ts"),
    RetentionTarget(name="raw_energy", table_name="raw_energy_samples", ts_column="ts"),
    RetentionTarget(name="rollup_1m", table_name="rollup_1m", ts_column="window_start"),
    RetentionTarget(name="rollup_15m", table_name="rollup_15m", ts_column="window_start"),
    RetentionTarget(name="rollup_1h", table_name="rollup_1h", ts_column="window_start"),
    RetentionTarget(name="daily_energy", table_name="daily_energy", ts_column="local_day"),
    RetentionTarget(name="anomaly_events", table_name="anomaly_events", ts_column="ts"),
    RetentionTarget(name="alert_events", table_name="alert_events", ts_column="ts"),
)


class RawSampleRepository(Protocol):
    def insert_health_sample(self, sample: HealthSample) -> None: ...

    def insert_energy_sample(self, sample: EnergySample) -> None: ...

    def list_health_samples_in_window(self, *, from_ts: datetime, to_ts: datetime) -> list[HealthSample]:
        """Samples of every device with ``from_ts <= ts < to_ts``, ordered by ts."""
        ...

    def list_device_health_samples(
        self,
        *,
        device_id: str,
        from_ts: datetime,
        to_ts: datetime,
    ) -> list[HealthSample]:
        """Samples of one device with ``from_ts <= ts <= to_ts``, ordered by ts."""
        ...

    def list_energy_device_ids(self, *, from_ts: datetime, to_ts: datetime) -> list[str]: ...

    def latest_energy_reading(
        self,
        *,
        device_id: str,
        at_or_before: datetime | None = None,
        before: datetime | None = None,
    ) -> float | None: ...


class RollupRepository(Protocol):
    def latest_window_start(self, resolution: RollupResolution) -> datetime | None: ...

    def list_rollups(
        self,
        resolution: RollupResolution,
        *,
        from_ts: datetime,
        to_ts: datetime,
        device_id: str | None = None,
    ) -> list[RollupRow]:
        """Rows with ``from_ts <= window_start < to_ts``."""
        ...

    def create_if_absent(self, resolution: RollupResolution, row: RollupRow) -> bool: ...


class DailyEnergyRepository(Protocol):
    def upsert_daily_energy(self, row: DailyEnergyRow) -> None: ...


class AlertRuleRepository(Protocol):
    def list_active_rules(self, *, device_id: str | None = None) -> list[AlertRuleSnapshot]: ...

    def record_firing(self, *, rule_id: int, event: AlertEventRecord, fired_at: datetime) -> AlertEventRecord:
        """Persist the event and stamp ``last_fired_at`` in one transaction."""
        ...


class AnomalyEventRepository(Protocol):
    def insert_anomaly_event(self, event: AnomalyEventRecord) -> AnomalyEventRecord: ...


class RetentionRepository(Protocol):
    def delete_older_than(self, target: RetentionTarget, cutoff: datetime) -> int: ...
