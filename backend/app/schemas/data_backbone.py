from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


RollupResolutionName = Literal["1m", "15m", "1h"]
JobName = Literal["rollup", "daily_energy", "retention"]


class RollupPointResponse(BaseModel):
    window_start: datetime
    avg_power_w: float | None = None
    min_power_w: float | None = None
    max_power_w: float | None = None
    energy_kwh: float | None = None


class RollupSeriesResponse(BaseModel):
    device_id: str
    resolution: RollupResolutionName
    points: list[RollupPointResponse] = Field(default_factory=list)


class DailyEnergyPointResponse(BaseModel):
    device_id: str
    local_day: date
    energy_kwh: float
    baseline_kwh: float | None = None
    final_kwh: float | None = None
    computed_at: datetime | None = None


class DailyEnergySeriesResponse(BaseModel):
    timezone: str
    from_day: date
    to_day: date
    points: list[DailyEnergyPointResponse] = Field(default_factory=list)


class JobRunSnapshotResponse(BaseModel):
    id: int
    job_name: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str
    affected_rows: int
    details_json: dict[str, Any] | list[Any] | None = None
    error_text: str | None = None


class RetentionDaysUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    raw_health: int | None = Field(default=None, ge=0, le=36500)
    raw_energy: int | None = Field(default=None, ge=0, le=36500)
    rollup_1m: int | None = Field(default=None, ge=0, le=36500)
    rollup_15m: int | None = Field(default=None, ge=0, le=36500)
    rollup_1h: int | None = Field(default=None, ge=0, le=36500)
    daily_energy: int | None = Field(default=None, ge=0, le=36500)
    anomaly_events: int | None = Field(default=None, ge=0, le=36500)
    alert_events: int | None = Field(default=None, ge=0, le=36500)


class PipelineConfigUpdate(BaseModel):
    """Live overrides persisted in ``runtime_preferences`` under ``data_pipeline``."""

    model_config = ConfigDict(extra="forbid")

    rollup_enabled: bool | None = None
    rollup_job_seconds: int | None = Field(default=None, ge=30, le=86400)
    rollup_resolutions: list[RollupResolutionName] | None = None
    daily_energy_enabled: bool | None = None
    daily_energy_run_after_local_time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    retention_enabled: bool | None = None
    retention_job_seconds: int | None = Field(default=None, ge=60, le=7 * 86400)
    retention_days: RetentionDaysUpdate | None = None

    @field_validator("rollup_resolutions")
    @classmethod
    def _dedupe_resolutions(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return list(dict.fromkeys(value))


class PipelineConfigResponse(BaseModel):
    rollup_enabled: bool
    rollup_job_seconds: int
    rollup_resolutions: list[RollupResolutionName]
    daily_energy_enabled: bool
    daily_energy_run_after_local_time: str
    daily_energy_backfill_days: int
    retention_enabled: bool
    retention_job_seconds: int
    retention_days: dict[str, int]
    local_timezone: str


class PipelineStatusResponse(BaseModel):
    running: bool
    last_error: str | None = None
    last_rollup_attempt_ts: datetime | None = None
    last_daily_energy_attempt_ts: datetime | None = None
    last_daily_energy_day: date | None = None
    daily_energy_retry_days: list[date] = Field(default_factory=list)
    last_retention_attempt_ts: datetime | None = None
    last_rollup_run: JobRunSnapshotResponse | None = None
    last_daily_energy_run: JobRunSnapshotResponse | None = None
    last_retention_run: JobRunSnapshotResponse | None = None
    raw_rows_24h: int = 0
    rollup_rows_24h: int = 0
    config: PipelineConfigResponse | None = None


class JobTriggerResponse(BaseModel):
    job_name: JobName
    status: str
    affected_rows: int
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSamplePointResponse(BaseModel):
    ts: datetime
    power_w: float | None = None
    voltage_v: float | None = None
    current_a: float | None = None
    power_factor: float | None = None
    online: bool


class HealthSeriesResponse(BaseModel):
    device_id: str
    points: list[HealthSamplePointResponse] = Field(default_factory=list)
