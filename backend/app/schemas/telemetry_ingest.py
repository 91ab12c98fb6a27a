from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class DeviceSnapshotRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)
    ts: datetime | None = None
    online: bool = True
    power_w: float | None = None
    voltage_v: float | None = None
    current_a: float | None = None
    power_factor: float | None = None
    cumulative_energy_kwh: float | None = Field(default=None, ge=0)

    @field_validator("device_id", mode="before")
    @classmethod
    def _trim_device_id(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value


class TelemetryTickRequest(BaseModel):
    ts: datetime | None = None
    devices: list[DeviceSnapshotRequest] = Field(min_length=1, max_length=500)


class IngestOutcomeResponse(BaseModel):
    device_id: str
    health_stored: bool
    energy_stored: bool
    anomalies: list[str] = Field(default_factory=list)
    alerts: list[int | None] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class TelemetryTickResponse(BaseModel):
    accepted: int
    received_ts: datetime
    outcomes: list[IngestOutcomeResponse] = Field(default_factory=list)


class AnomalyEventResponse(BaseModel):
    id: int
    device_id: str
    ts: datetime
    kind: str
    observed_value: float | None = None
    threshold: float | None = None
    duration_seconds: float | None = None
    payload_json: dict[str, Any] | None = None
