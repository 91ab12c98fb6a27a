"""power telemetry core: raw samples, rollup cascade, daily energy, events and job audit

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ROLLUP_TABLES = ("rollup_1m", "rollup_15m", "rollup_1h")


def upgrade() -> None:
    op.create_table(
        "raw_health_samples",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("power_w", sa.Float(), nullable=True),
        sa.Column("voltage_v", sa.Float(), nullable=True),
        sa.Column("current_a", sa.Float(), nullable=True),
        sa.Column("power_factor", sa.Float(), nullable=True),
        sa.Column("online", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_raw_health_samples_ts", "raw_health_samples", ["ts"], unique=False)
    op.create_index("ix_raw_health_samples_device_ts", "raw_health_samples", ["device_id", "ts"], unique=False)

    op.create_table(
        "raw_energy_samples",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cumulative_energy_kwh", sa.Float(), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_raw_energy_samples_ts", "raw_energy_samples", ["ts"], unique=False)
    op.create_index("ix_raw_energy_samples_device_ts", "raw_energy_samples", ["device_id", "ts"], unique=False)

    for table_name in ROLLUP_TABLES:
        op.create_table(
            table_name,
            sa.Column("device_id", sa.String(length=128), nullable=False),
            sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("avg_power_w", sa.Float(), nullable=True),
            sa.Column("min_power_w", sa.Float(), nullable=True),
            sa.Column("max_power_w", sa.Float(), nullable=True),
            sa.Column("energy_kwh", sa.Float(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("device_id", "window_start"),
        )
        op.create_index(f"ix_{table_name}_window_start", table_name, ["window_start"], unique=False)

    op.create_table(
        "daily_energy",
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("local_day", sa.Date(), nullable=False),
        sa.Column("energy_kwh", sa.Float(), nullable=False),
        sa.Column("baseline_kwh", sa.Float(), nullable=True),
        sa.Column("final_kwh", sa.Float(), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("energy_kwh >= 0", name="ck_daily_energy_non_negative"),
        sa.PrimaryKeyConstraint("device_id", "local_day"),
    )

    op.create_table(
        "anomaly_events",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("observed_value", sa.Float(), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "kind IN ('voltage_sag','voltage_swell','low_power_factor','online','offline')",
            name="ck_anomaly_events_kind",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_anomaly_events_device_ts", "anomaly_events", ["device_id", "ts"], unique=False)

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("metric", sa.String(length=32), nullable=False),
        sa.Column("comparator", sa.String(length=4), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("sustained_for_seconds", sa.Integer(), nullable=False),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default=sa.text("120")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_fired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "metric IN ('power_w','voltage_v','current_a','power_factor')",
            name="ck_alert_rules_metric",
        ),
        sa.CheckConstraint(
            "comparator IN ('>','>=','<','<=','==','!=')",
            name="ck_alert_rules_comparator",
        ),
        sa.CheckConstraint("sustained_for_seconds >= 0", name="ck_alert_rules_sustained"),
        sa.CheckConstraint("cooldown_seconds >= 0", name="ck_alert_rules_cooldown"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alert_rules_device_active", "alert_rules", ["device_id", "is_active"], unique=False)

    op.create_table(
        "alert_events",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("rule_id", sa.BigInteger(), nullable=True),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("observed_value", sa.Float(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["rule_id"], ["alert_rules.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alert_events_ts", "alert_events", ["ts"], unique=False)

    op.create_table(
        "data_job_runs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("affected_rows", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("details_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "job_name IN ('rollup','daily_energy','retention')",
            name="ck_data_job_runs_name",
        ),
        sa.CheckConstraint("status IN ('ok','partial','error')", name="ck_data_job_runs_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_data_job_runs_job_started",
        "data_job_runs",
        ["job_name", sa.text("started_at DESC")],
        unique=False,
    )

    op.create_table(
        "runtime_preferences",
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("runtime_preferences")
    op.drop_index("ix_data_job_runs_job_started", table_name="data_job_runs")
    op.drop_table("data_job_runs")
    op.drop_index("ix_alert_events_ts", table_name="alert_events")
    op.drop_table("alert_events")
    op.drop_index("ix_alert_rules_device_active", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_index("ix_anomaly_events_device_ts", table_name="anomaly_events")
    op.drop_table("anomaly_events")
    op.drop_table("daily_energy")
    for table_name in reversed(ROLLUP_TABLES):
        op.drop_index(f"ix_{table_name}_window_start", table_name=table_name)
        op.drop_table(table_name)
    op.drop_index("ix_raw_energy_samples_device_ts", table_name="raw_energy_samples")
    op.drop_index("ix_raw_energy_samples_ts", table_name="raw_energy_samples")
    op.drop_table("raw_energy_samples")
    op.drop_index("ix_raw_health_samples_device_ts", table_name="raw_health_samples")
    op.drop_index("ix_raw_health_samples_ts", table_name="raw_health_samples")
    op.drop_table("raw_health_samples")
