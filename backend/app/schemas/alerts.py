from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AlertMetric = Literal["power_w", "voltage_v", "current_a", "power_factor"]
AlertComparator = Literal[">", ">=", "<", "<=", "==", "!="]


def _normalize_required_text(value: str) -> str:
    cleaned = value.strip() if isinstance(value, str) else value
    if not cleaned:
        raise ValueError("must not be blank")
    return cleaned


class AlertRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    device_id: str = Field(min_length=1, max_length=128)
    metric: AlertMetric
    comparator: AlertComparator
    threshold: float
    sustained_for_seconds: int = Field(ge=0, le=86400)
    cooldown_seconds: int | None = Field(default=None, ge=0, le=86400 * 30)
    is_active: bool = True

    @field_validator("name", "device_id", mode="before")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        return _normalize_required_text(value)


class AlertRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    metric: AlertMetric | None = None
    comparator: AlertComparator | None = None
    threshold: float | None = None
    sustained_for_seconds: int | None = Field(default=None, ge=0, le=86400)
    cooldown_seconds: int | None = Field(default=None, ge=0, le=86400 * 30)
    is_active: bool | None = None


class AlertRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    device_id: str
    metric: AlertMetric
    comparator: AlertComparator
    threshold: float
    sustained_for_seconds: int
    cooldown_seconds: int
    is_active: bool
    last_fired_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AlertEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_id: int | None = None
    device_id: str
    ts: datetime
    observed_value: float | None = None
    message: str | None = None
