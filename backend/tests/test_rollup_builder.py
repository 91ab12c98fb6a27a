from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from app.core.config import Settings
from app.core.time_windows import is_window_aligned
from app.repositories.ports import (
    RESOLUTIONS_BY_NAME,
    HealthSample,
    RollupResolution,
    RollupRow,
)
from app.services.rollup_builder import (
    RollupBuilder,
    aggregate_child_rollups,
    aggregate_raw_window,
    lookbacks_from_settings,
)
from fakes import InMemoryRollupRepository, InMemorySampleRepository

HOUR_START = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
ONE_HOUR_LOOKBACKS = {
    "1m": timedelta(minutes=60),
    "15m": timedelta(minutes=60),
    "1h": timedelta(minutes=60),
}


def _sample(device_id: str, ts: datetime, power_w: float | None) -> HealthSample:
    return HealthSample(
        device_id=device_id,
        ts=ts,
        power_w=power_w,
        voltage_v=230.0,
        current_a=None,
        power_factor=0.95,
        online=True,
    )


def _builder(
    samples: InMemorySampleRepository,
    rollups: InMemoryRollupRepository,
) -> RollupBuilder:
    return RollupBuilder(samples=samples, rollups=rollups, lookbacks=ONE_HOUR_LOOKBACKS)


class _FailingWriteRollupRepository(InMemoryRollupRepository):
    def create_if_absent(self, resolution: RollupResolution, row: RollupRow) -> bool:
        if row.device_id == "dev-broken":
            raise RuntimeError("constraint violation")
        return super().create_if_absent(resolution, row)


class _FailingReadSampleRepository(InMemorySampleRepository):
    def __init__(self, failing_window: datetime) -> None:
        super().__init__()
        self._failing_window = failing_window

    def list_health_samples_in_window(self, *, from_ts: datetime, to_ts: datetime) -> list[HealthSample]:
        if from_ts == self._failing_window:
            raise RuntimeError("statement timeout")
        return super().list_health_samples_in_window(from_ts=from_ts, to_ts=to_ts)


class RollupAggregationTests(TestCase):
    def test_hour_of_constant_power_cascades_to_expected_energy(self) -> None:
        samples = InMemorySampleRepository()
        for minute in range(60):
            samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=minute, seconds=5), 120.0))
        rollups = InMemoryRollupRepository()

        results = _builder(samples, rollups).build_rollups(HOUR_START + timedelta(hours=1))

        self.assertEqual([item.resolution for item in results], ["1m", "15m", "1h"])
        self.assertEqual(len(rollups.table("1m")), 60)
        self.assertEqual(len(rollups.table("15m")), 4)
        hourly = rollups.table("1h")
        self.assertEqual(len(hourly), 1)
        self.assertEqual(hourly[0].window_start, HOUR_START)
        self.assertAlmostEqual(hourly[0].avg_power_w or 0.0, 120.0)
        self.assertAlmostEqual(hourly[0].energy_kwh or 0.0, 0.12, places=9)
        self.assertEqual(hourly[0].min_power_w, 120.0)
        self.assertEqual(hourly[0].max_power_w, 120.0)

    def test_minute_aggregate_uses_mean_min_max(self) -> None:
        ts = HOUR_START
        row = aggregate_raw_window(
            "dev-1",
            ts,
            [_sample("dev-1", ts, 100.0), _sample("dev-1", ts, 200.0), _sample("dev-1", ts, None)],
        )

        self.assertIsNotNone(row)
        assert row is not None
        self.assertEqual(row.avg_power_w, 150.0)
        self.assertEqual(row.min_power_w, 100.0)
        self.assertEqual(row.max_power_w, 200.0)
        self.assertAlmostEqual(row.energy_kwh or 0.0, 150.0 / 60 / 1000)

    def test_minute_with_only_null_power_writes_nothing(self) -> None:
        self.assertIsNone(aggregate_raw_window("dev-1", HOUR_START, [_sample("dev-1", HOUR_START, None)]))

    def test_child_aggregate_is_mean_of_means(self) -> None:
        children = [
            RollupRow("dev-1", HOUR_START, 100.0, 50.0, 150.0, 0.025),
            RollupRow("dev-1", HOUR_START + timedelta(minutes=15), 300.0, 250.0, 400.0, 0.075),
        ]

        row = aggregate_child_rollups("dev-1", HOUR_START, children)

        assert row is not None
        self.assertEqual(row.avg_power_w, 200.0)
        self.assertEqual(row.min_power_w, 50.0)
        self.assertEqual(row.max_power_w, 400.0)
        self.assertAlmostEqual(row.energy_kwh or 0.0, 0.1)

    def test_no_children_writes_nothing(self) -> None:
        self.assertIsNone(aggregate_child_rollups("dev-1", HOUR_START, []))


class RollupBuilderTests(TestCase):
    def test_rerun_is_idempotent(self) -> None:
        samples = InMemorySampleRepository()
        for minute in range(30):
            samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=minute), 80.0))
        rollups = InMemoryRollupRepository()
        now = HOUR_START + timedelta(hours=1)

        _builder(samples, rollups).build_rollups(now)
        snapshot = {name: rollups.table(name) for name in ("1m", "15m", "1h")}
        second = _builder(samples, rollups).build_rollups(now)

        self.assertEqual(sum(item.rows_created for item in second), 0)
        self.assertEqual({name: rollups.table(name) for name in ("1m", "15m", "1h")}, snapshot)

    def test_overlapping_window_insert_never_overwrites(self) -> None:
        rollups = InMemoryRollupRepository()
        resolution = RESOLUTIONS_BY_NAME["1m"]
        original = RollupRow("dev-1", HOUR_START, 100.0, 100.0, 100.0, 0.001)

        self.assertTrue(rollups.create_if_absent(resolution, original))
        self.assertFalse(rollups.create_if_absent(resolution, RollupRow("dev-1", HOUR_START, 5.0, 5.0, 5.0, 0.0)))
        self.assertEqual(rollups.table("1m"), [original])

    def test_every_row_is_window_aligned(self) -> None:
        samples = InMemorySampleRepository()
        for second in range(0, 3600, 7):
            samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(seconds=second), 50.0))
        rollups = InMemoryRollupRepository()

        _builder(samples, rollups).build_rollups(HOUR_START + timedelta(hours=1, minutes=3, seconds=20))

        for name in ("1m", "15m", "1h"):
            seconds = RESOLUTIONS_BY_NAME[name].seconds
            for row in rollups.table(name):
                self.assertTrue(is_window_aligned(row.window_start, seconds), f"{name} {row.window_start}")

    def test_open_window_is_not_rolled_up(self) -> None:
        samples = InMemorySampleRepository()
        samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=59, seconds=30), 90.0))
        rollups = InMemoryRollupRepository()

        _builder(samples, rollups).build_rollups(HOUR_START + timedelta(minutes=59, seconds=45))

        self.assertEqual(rollups.table("1m"), [])

    def test_minutes_without_samples_produce_no_rows(self) -> None:
        samples = InMemorySampleRepository()
        samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=1), 10.0))
        samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=4), 10.0))
        rollups = InMemoryRollupRepository()

        _builder(samples, rollups).build_rollups(HOUR_START + timedelta(minutes=10), resolutions=["1m"])

        self.assertEqual(
            [row.window_start for row in rollups.table("1m")],
            [HOUR_START + timedelta(minutes=1), HOUR_START + timedelta(minutes=4)],
        )

    def test_resumes_from_watermark(self) -> None:
        samples = InMemorySampleRepository()
        for minute in range(10):
            samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=minute), 10.0))
        rollups = InMemoryRollupRepository()
        builder = _builder(samples, rollups)

        builder.build_rollups(HOUR_START + timedelta(minutes=5), resolutions=["1m"])
        second = builder.build_rollups(HOUR_START + timedelta(minutes=10), resolutions=["1m"])

        self.assertEqual(second[0].from_ts, HOUR_START + timedelta(minutes=5))
        self.assertEqual(second[0].rows_created, 5)
        self.assertEqual(len(rollups.table("1m")), 10)

    def test_devices_are_rolled_up_independently(self) -> None:
        samples = InMemorySampleRepository()
        samples.insert_health_sample(_sample("dev-1", HOUR_START, 10.0))
        samples.insert_health_sample(_sample("dev-2", HOUR_START + timedelta(seconds=30), 30.0))
        rollups = InMemoryRollupRepository()

        _builder(samples, rollups).build_rollups(HOUR_START + timedelta(minutes=1), resolutions=["1m"])

        by_device = {row.device_id: row.avg_power_w for row in rollups.table("1m")}
        self.assertEqual(by_device, {"dev-1": 10.0, "dev-2": 30.0})

    def test_write_failure_for_one_device_does_not_block_others(self) -> None:
        samples = InMemorySampleRepository()
        samples.insert_health_sample(_sample("dev-broken", HOUR_START, 10.0))
        samples.insert_health_sample(_sample("dev-ok", HOUR_START, 20.0))
        rollups = _FailingWriteRollupRepository()

        results = _builder(samples, rollups).build_rollups(HOUR_START + timedelta(minutes=1), resolutions=["1m"])

        self.assertEqual([row.device_id for row in rollups.table("1m")], ["dev-ok"])
        self.assertEqual(results[0].rows_created, 1)
        self.assertEqual(len(results[0].errors), 1)

    def test_read_failure_for_one_window_does_not_block_the_next(self) -> None:
        samples = _FailingReadSampleRepository(failing_window=HOUR_START)
        samples.insert_health_sample(_sample("dev-1", HOUR_START, 10.0))
        samples.insert_health_sample(_sample("dev-1", HOUR_START + timedelta(minutes=1), 20.0))
        rollups = InMemoryRollupRepository()

        results = _builder(samples, rollups).build_rollups(HOUR_START + timedelta(minutes=2), resolutions=["1m"])

        self.assertEqual([row.window_start for row in rollups.table("1m")], [HOUR_START + timedelta(minutes=1)])
        self.assertEqual(len(results[0].errors), 1)

    def test_unknown_resolution_is_rejected(self) -> None:
        builder = _builder(InMemorySampleRepository(), InMemoryRollupRepository())

        with self.assertRaises(ValueError):
            builder.build_rollups(HOUR_START, resolutions=["5m"])

    def test_lookbacks_default_from_settings(self) -> None:
        lookbacks = lookbacks_from_settings(Settings())

        self.assertEqual(lookbacks["1m"], timedelta(hours=1))
        self.assertEqual(lookbacks["15m"], timedelta(hours=4))
        self.assertEqual(lookbacks["1h"], timedelta(hours=24))
