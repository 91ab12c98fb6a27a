from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.ports import EnergySample, HealthSample


class SessionRepository:
    """Rolls the session back when a statement fails so later items in the
    same job can keep using it."""

    def __init__(self, db: Session):
        self._db = db

    def _execute(self, statement, params: dict[str, Any] | None = None):
        try:
            return self._db.execute(statement, params or {})
        except Exception:
            self._db.rollback()
            raise

    def _commit(self) -> None:
        try:
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise


class SqlRawSampleRepository(SessionRepository):
    def insert_health_sample(self, sample: HealthSample) -> None:
        self._execute(
            text(
                """
                INSERT INTO raw_health_samples
                    (device_id, ts, power_w, voltage_v, current_a, power_factor, online, ingested_at)
                VALUES
                    (:device_id, :ts, :power_w, :voltage_v, :current_a, :power_factor, :online, now())
                """
            ),
            {
                "device_id": sample.device_id,
                "ts": sample.ts,
                "power_w": sample.power_w,
                "voltage_v": sample.voltage_v,
                "current_a": sample.current_a,
                "power_factor": sample.power_factor,
                "online": sample.online,
            },
        )
        self._commit()

    def insert_energy_sample(self, sample: EnergySample) -> None:
        self._execute(
            text(
                """
                INSERT INTO raw_energy_samples (device_id, ts, cumulative_energy_kwh, ingested_at)
                VALUES (:device_id, :ts, :cumulative_energy_kwh, now())
                """
            ),
            {
                "device_id": sample.device_id,
                "ts": sample.ts,
                "cumulative_energy_kwh": sample.cumulative_energy_kwh,
            },
        )
        self._commit()

    def list_health_samples_in_window(self, *, from_ts: datetime, to_ts: datetime) -> list[HealthSample]:
        rows = self._execute(
            text(
                """
                SELECT device_id, ts, power_w, voltage_v, current_a, power_factor, online
                FROM raw_health_samples
                WHERE ts >= :from_ts AND ts < :to_ts
                ORDER BY device_id ASC, ts ASC, id ASC
                """
            ),
            {"from_ts": from_ts, "to_ts": to_ts},
        ).mappings()
        return [_health_from_row(row) for row in rows]

    def list_device_health_samples(
        self,
        *,
        device_id: str,
        from_ts: datetime,
        to_ts: datetime,
    ) -> list[HealthSample]:
        rows = self._execute(
            text(
                """
                SELECT device_id, ts, power_w, voltage_v, current_a, power_factor, online
                FROM raw_health_samples
                WHERE device_id = :device_id
                  AND ts >= :from_ts
                  AND ts <= :to_ts
                ORDER BY ts ASC, id ASC
                """
            ),
            {"device_id": device_id, "from_ts": from_ts, "to_ts": to_ts},
        ).mappings()
        return [_health_from_row(row) for row in rows]

    def list_energy_device_ids(self, *, from_ts: datetime, to_ts: datetime) -> list[str]:
        rows = self._execute(
            text(
                """
                SELECT DISTINCT device_id
                FROM raw_energy_samples
                WHERE ts >= :from_ts AND ts < :to_ts
                ORDER BY device_id ASC
                """
            ),
            {"from_ts": from_ts, "to_ts": to_ts},
        ).all()
        return [str(row[0]) for row in rows]

    def latest_energy_reading(
        self,
        *,
        device_id: str,
        at_or_before: datetime | None = None,
        before: datetime | None = None,
    ) -> float | None:
        if (at_or_before is None) == (before is None):
            raise ValueError("provide exactly one of at_or_before or before")
        operator = "<=" if at_or_before is not None else "<"
        row = self._execute(
            text(
                f"""
                SELECT cumulative_energy_kwh
                FROM raw_energy_samples
                WHERE device_id = :device_id AND ts {operator} :bound
                ORDER BY ts DESC, id DESC
                LIMIT 1
                """
            ),
            {"device_id": device_id, "bound": at_or_before if at_or_before is not None else before},
        ).first()
        if row is None or row[0] is None:
            return None
        return float(row[0])

    def list_device_health_series(
        self,
        *,
        device_id: str,
        from_ts: datetime,
        to_ts: datetime,
        limit: int = 5000,
    ) -> list[dict[str, Any]]:
        rows = self._execute(
            text(
                """
                SELECT ts, power_w, voltage_v, current_a, power_factor, online
                FROM raw_health_samples
                WHERE device_id = :device_id
                  AND ts >= :from_ts
                  AND ts <= :to_ts
                ORDER BY ts ASC, id ASC
                LIMIT :limit
                """
            ),
            {"device_id": device_id, "from_ts": from_ts, "to_ts": to_ts, "limit": max(1, limit)},
        ).mappings()
        return [dict(row) for row in rows]


def _health_from_row(row) -> HealthSample:
    return HealthSample(
        device_id=str(row["device_id"]),
        ts=row["ts"],
        power_w=_as_float(row["power_w"]),
        voltage_v=_as_float(row["voltage_v"]),
        current_a=_as_float(row["current_a"]),
        power_factor=_as_float(row["power_factor"]),
        online=bool(row["online"]),
    )


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
