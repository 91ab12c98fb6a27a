from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from app.core.time_windows import local_day_bounds, local_day_of
from app.repositories.ports import DailyEnergyRepository, DailyEnergyRow, RawSampleRepository


@dataclass
class DailyEnergyResult:
    local_day: date
    devices_processed: int = 0
    rows_upserted: int = 0
    totals_kwh: dict[str, float] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def as_details(self) -> dict[str, object]:
        return {
            "local_day": self.local_day.isoformat(),
            "devices_processed": self.devices_processed,
            "rows_upserted": self.rows_upserted,
            "errors": list(self.errors),
        }


class DailyEnergyAggregator:
    """Per-device energy per local calendar day from the cumulative counter.

    The daily total is ``max(0, final - baseline)`` where the baseline is the
    last counter reading at or before local midnight (0 without one) and the
    final value is the last reading before the next local midnight. A counter
    that resets during the day therefore clamps to 0 instead of going
    negative.
    """

    def __init__(
        self,
        *,
        samples: RawSampleRepository,
        daily_energy: DailyEnergyRepository,
        tz: ZoneInfo,
    ):
        self._samples = samples
        self._daily_energy = daily_energy
        self._tz = tz
        self._logger = logging.getLogger("app.daily_energy")

    def compute_daily_energy(self, local_day: date) -> DailyEnergyResult:
        day_start, day_end = local_day_bounds(local_day, self._tz)
        result = DailyEnergyResult(local_day=local_day)

        device_ids = self._samples.list_energy_device_ids(from_ts=day_start, to_ts=day_end)
        for device_id in device_ids:
            result.devices_processed += 1
            try:
                row = self._compute_device_day(device_id, local_day, day_start, day_end)
                if row is None:
                    continue
                self._daily_energy.upsert_daily_energy(row)
                result.rows_upserted += 1
                result.totals_kwh[device_id] = row.energy_kwh
            except Exception as exc:
                self._logger.exception(
                    "daily energy failed device_id=%s local_day=%s",
                    device_id,
                    local_day.isoformat(),
                )
                result.errors.append(f"{device_id}: {exc}")

        self._logger.info(
            "daily energy done local_day=%s devices=%s upserted=%s errors=%s",
            local_day.isoformat(),
            result.devices_processed,
            result.rows_upserted,
            len(result.errors),
        )
        return result

    def compute_previous_day(self, now: datetime) -> DailyEnergyResult:
        return self.compute_daily_energy(local_day_of(now, self._tz) - timedelta(days=1))

    def _compute_device_day(
        self,
        device_id: str,
        local_day: date,
        day_start: datetime,
        day_end: datetime,
    ) -> DailyEnergyRow | None:
        final_kwh = self._samples.latest_energy_reading(device_id=device_id, before=day_end)
        if final_kwh is None:
            return None
        baseline_kwh = self._samples.latest_energy_reading(device_id=device_id, at_or_before=day_start)
        baseline = baseline_kwh if baseline_kwh is not None else 0.0
        energy_kwh = max(0.0, final_kwh - baseline)
        self._logger.debug(
            "daily energy device_id=%s local_day=%s baseline=%s final=%s energy_kwh=%s",
            device_id,
            local_day.isoformat(),
            baseline,
            final_kwh,
            energy_kwh,
        )
        return DailyEnergyRow(
            device_id=device_id,
            local_day=local_day,
            energy_kwh=energy_kwh,
            baseline_kwh=baseline_kwh,
            final_kwh=final_kwh,
        )
