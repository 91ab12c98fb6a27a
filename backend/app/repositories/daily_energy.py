from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import text

from app.repositories.ports import DailyEnergyRow
from app.repositories.telemetry import SessionRepository


class SqlDailyEnergyRepository(SessionRepository):
    def upsert_daily_energy(self, row: DailyEnergyRow) -> None:
        self._execute(
            text(
                """
                INSERT INTO daily_energy
                    (device_id, local_day, energy_kwh, baseline_kwh, final_kwh, computed_at)
                VALUES
                    (:device_id, :local_day, :energy_kwh, :baseline_kwh, :final_kwh, now())
                ON CONFLICT (device_id, local_day)
                DO UPDATE SET
                    energy_kwh = EXCLUDED.energy_kwh,
                    baseline_kwh = EXCLUDED.baseline_kwh,
                    final_kwh = EXCLUDED.final_kwh,
                    computed_at = now()
                """
            ),
            {
                "device_id": row.device_id,
                "local_day": row.local_day,
                "energy_kwh": row.energy_kwh,
                "baseline_kwh": row.baseline_kwh,
                "final_kwh": row.final_kwh,
            },
        )
        self._commit()

    def list_daily_energy(
        self,
        *,
        from_day: date,
        to_day: date,
        device_id: str | None = None,
    ) -> list[dict[str, Any]]:
        device_filter = "AND device_id = :device_id" if device_id is not None else ""
        rows = self._execute(
            text(
                f"""
                SELECT device_id, local_day, energy_kwh, baseline_kwh, final_kwh, computed_at
                FROM daily_energy
                WHERE local_day >= :from_day
                  AND local_day <= :to_day
                  {device_filter}
                ORDER BY local_day ASC, device_id ASC
                """
            ),
            {"from_day": from_day, "to_day": to_day, "device_id": device_id},
        ).mappings()
        return [dict(row) for row in rows]
