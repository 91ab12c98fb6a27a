from __future__ import annotations

from datetime import date, datetime, timezone
from unittest import TestCase

from app.core.time_windows import resolve_timezone
from app.repositories.ports import EnergySample
from app.services.daily_energy import DailyEnergyAggregator
from fakes import InMemoryDailyEnergyRepository, InMemorySampleRepository

IST = resolve_timezone("Asia/Kolkata")
DAY = date(2026, 3, 10)
# 2026-03-10 in IST spans 2026-03-09T18:30Z .. 2026-03-10T18:30Z.


def _energy(device_id: str, ts: datetime, kwh: float) -> EnergySample:
    return EnergySample(device_id=device_id, ts=ts, cumulative_energy_kwh=kwh)


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


class DailyEnergyAggregatorTests(TestCase):
    def setUp(self) -> None:
        self.samples = InMemorySampleRepository()
        self.daily = InMemoryDailyEnergyRepository()
        self.aggregator = DailyEnergyAggregator(samples=self.samples, daily_energy=self.daily, tz=IST)

    def test_energy_is_final_minus_baseline(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-1", _utc(9, 18, 0), 100.0))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 2), 101.5))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 18, 0), 105.25))
        # Next local day, must not count.
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 19, 0), 109.0))

        result = self.aggregator.compute_daily_energy(DAY)

        row = self.daily.rows[("dev-1", DAY)]
        self.assertAlmostEqual(row.energy_kwh, 5.25)
        self.assertEqual(row.baseline_kwh, 100.0)
        self.assertEqual(row.final_kwh, 105.25)
        self.assertEqual(result.rows_upserted, 1)

    def test_counter_reset_clamps_to_zero(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-1", _utc(9, 18, 0), 100.0))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 6), 102.0))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 12), 0.4))

        self.aggregator.compute_daily_energy(DAY)

        self.assertEqual(self.daily.rows[("dev-1", DAY)].energy_kwh, 0.0)

    def test_missing_baseline_counts_from_zero(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-new", _utc(10, 4), 3.5))

        self.aggregator.compute_daily_energy(DAY)

        row = self.daily.rows[("dev-new", DAY)]
        self.assertEqual(row.energy_kwh, 3.5)
        self.assertIsNone(row.baseline_kwh)

    def test_reading_exactly_at_local_midnight_is_the_baseline(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-1", _utc(9, 18, 30), 50.0))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 9), 52.0))

        self.aggregator.compute_daily_energy(DAY)

        self.assertEqual(self.daily.rows[("dev-1", DAY)].energy_kwh, 2.0)

    def test_recompute_overwrites_existing_row(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-1", _utc(9, 18), 10.0))
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 3), 11.0))
        self.aggregator.compute_daily_energy(DAY)

        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 17), 14.0))
        self.aggregator.compute_daily_energy(DAY)

        self.assertEqual(len(self.daily.rows), 1)
        self.assertEqual(self.daily.rows[("dev-1", DAY)].energy_kwh, 4.0)

    def test_devices_without_samples_that_day_are_skipped(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-idle", _utc(8, 10), 7.0))

        result = self.aggregator.compute_daily_energy(DAY)

        self.assertEqual(result.devices_processed, 0)
        self.assertEqual(self.daily.rows, {})

    def test_previous_day_uses_local_calendar(self) -> None:
        self.samples.insert_energy_sample(_energy("dev-1", _utc(10, 3), 1.0))

        # 2026-03-10T18:40Z is already 2026-03-11 00:10 in IST.
        result = self.aggregator.compute_previous_day(_utc(10, 18, 40))

        self.assertEqual(result.local_day, DAY)
        self.assertIn(("dev-1", DAY), self.daily.rows)
