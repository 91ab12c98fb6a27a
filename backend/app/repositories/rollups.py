from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import text

from app.repositories.ports import ROLLUP_RESOLUTIONS, RollupResolution, RollupRow
from app.repositories.telemetry import SessionRepository

_ALLOWED_TABLES = frozenset(item.table_name for item in ROLLUP_RESOLUTIONS)


class SqlRollupRepository(SessionRepository):
    def latest_window_start(self, resolution: RollupResolution) -> datetime | None:
        table_name = _table_for(resolution)
        latest = self._execute(text(f"SELECT MAX(window_start) FROM {table_name}")).scalar()
        if latest is None:
            return None
        if latest.tzinfo is None:
            latest = latest.replace(tzinfo=timezone.utc)
        return latest

    def list_rollups(
        self,
        resolution: RollupResolution,
        *,
        from_ts: datetime,
        to_ts: datetime,
        device_id: str | None = None,
    ) -> list[RollupRow]:
        table_name = _table_for(resolution)
        device_filter = "AND device_id = :device_id" if device_id is not None else ""
        rows = self._execute(
            text(
                f"""
                SELECT device_id, window_start, avg_power_w, min_power_w, max_power_w, energy_kwh
                FROM {table_name}
                WHERE window_start >= :from_ts
                  AND window_start < :to_ts
                  {device_filter}
                ORDER BY device_id ASC, window_start ASC
                """
            ),
            {"from_ts": from_ts, "to_ts": to_ts, "device_id": device_id},
        ).mappings()
        return [
            RollupRow(
                device_id=str(row["device_id"]),
                window_start=row["window_start"],
                avg_power_w=row["avg_power_w"],
                min_power_w=row["min_power_w"],
                max_power_w=row["max_power_w"],
                energy_kwh=row["energy_kwh"],
            )
            for row in rows
        ]

    def create_if_absent(self, resolution: RollupResolution, row: RollupRow) -> bool:
        table_name = _table_for(resolution)
        result = self._execute(
            text(
                f"""
                INSERT INTO {table_name}
                    (device_id, window_start, avg_power_w, min_power_w, max_power_w, energy_kwh, created_at)
                VALUES
                    (:device_id, :window_start, :avg_power_w, :min_power_w, :max_power_w, :energy_kwh, now())
                ON CONFLICT (device_id, window_start) DO NOTHING
                """
            ),
            {
                "device_id": row.device_id,
                "window_start": row.window_start,
                "avg_power_w": row.avg_power_w,
                "min_power_w": row.min_power_w,
                "max_power_w": row.max_power_w,
                "energy_kwh": row.energy_kwh,
            },
        )
        self._commit()
        return (result.rowcount or 0) > 0


def _table_for(resolution: RollupResolution) -> str:
    if resolution.table_name not in _ALLOWED_TABLES:
        raise ValueError(f"Unsupported rollup resolution: {resolution.name}")
    return resolution.table_name
