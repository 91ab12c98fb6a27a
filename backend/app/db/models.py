from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class RawHealthSample(Base):
    __tablename__ = "raw_health_samples"
    __table_args__ = (Index("ix_raw_health_samples_device_ts", "device_id", "ts"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    power_w: Mapped[float | None] = mapped_column(Float)
    voltage_v: Mapped[float | None] = mapped_column(Float)
    current_a: Mapped[float | None] = mapped_column(Float)
    power_factor: Mapped[float | None] = mapped_column(Float)
    online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class RawEnergySample(Base):
    __tablename__ = "raw_energy_samples"
    __table_args__ = (Index("ix_raw_energy_samples_device_ts", "device_id", "ts"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    cumulative_energy_kwh: Mapped[float] = mapped_column(Float, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class _RollupColumns:
    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    avg_power_w: Mapped[float | None] = mapped_column(Float)
    min_power_w: Mapped[float | None] = mapped_column(Float)
    max_power_w: Mapped[float | None] = mapped_column(Float)
    energy_kwh: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class Rollup1m(_RollupColumns, Base):
    __tablename__ = "rollup_1m"
    __table_args__ = (Index("ix_rollup_1m_window_start", "window_start"),)


class Rollup15m(_RollupColumns, Base):
    __tablename__ = "rollup_15m"
    __table_args__ = (Index("ix_rollup_15m_window_start", "window_start"),)


class Rollup1h(_RollupColumns, Base):
    __tablename__ = "rollup_1h"
    __table_args__ = (Index("ix_rollup_1h_window_start", "window_start"),)


class DailyEnergy(Base):
    __tablename__ = "daily_energy"
    __table_args__ = (CheckConstraint("energy_kwh >= 0", name="ck_daily_energy_non_negative"),)

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    local_day: Mapped[date] = mapped_column(Date, primary_key=True)
    energy_kwh: Mapped[float] = mapped_column(Float, nullable=False)
    baseline_kwh: Mapped[float | None] = mapped_column(Float)
    final_kwh: Mapped[float | None] = mapped_column(Float)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class AnomalyEvent(Base):
    __tablename__ = "anomaly_events"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('voltage_sag','voltage_swell','low_power_factor','online','offline')",
            name="ck_anomaly_events_kind",
        ),
        Index("ix_anomaly_events_device_ts", "device_id", "ts"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    observed_value: Mapped[float | None] = mapped_column(Float)
    threshold: Mapped[float | None] = mapped_column(Float)
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    payload_json: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (
        CheckConstraint(
            "metric IN ('power_w','voltage_v','current_a','power_factor')",
            name="ck_alert_rules_metric",
        ),
        CheckConstraint(
            "comparator IN ('>','>=','<','<=','==','!=')",
            name="ck_alert_rules_comparator",
        ),
        CheckConstraint("sustained_for_seconds >= 0", name="ck_alert_rules_sustained"),
        CheckConstraint("cooldown_seconds >= 0", name="ck_alert_rules_cooldown"),
        Index("ix_alert_rules_device_active", "device_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metric: Mapped[str] = mapped_column(String(32), nullable=False)
    comparator: Mapped[str] = mapped_column(String(4), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    sustained_for_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    cooldown_seconds: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=120,
        server_default="120",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    last_fired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class AlertEvent(Base):
    __tablename__ = "alert_events"
    __table_args__ = (Index("ix_alert_events_ts", "ts"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    rule_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("alert_rules.id", ondelete="SET NULL"),
    )
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    observed_value: Mapped[float | None] = mapped_column(Float)
    message: Mapped[str | None] = mapped_column(Text)


class DataJobRun(Base):
    __tablename__ = "data_job_runs"
    __table_args__ = (
        CheckConstraint(
            "job_name IN ('rollup','daily_energy','retention')",
            name="ck_data_job_runs_name",
        ),
        CheckConstraint("status IN ('ok','partial','error')", name="ck_data_job_runs_status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    affected_rows: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        server_default="0",
    )
    details_json: Mapped[dict | list | None] = mapped_column(JSONB)
    error_text: Mapped[str | None] = mapped_column(Text)


class RuntimePreference(Base):
    __tablename__ = "runtime_preferences"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value_json: Mapped[dict | list] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
