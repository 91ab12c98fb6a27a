from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from app.core.config import Settings
from app.services.retention import RetentionSweeper, retention_days_from_settings
from fakes import InMemoryRetentionRepository

NOW = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


class RetentionSweeperTests(TestCase):
    def test_each_table_gets_its_own_cutoff(self) -> None:
        repository = InMemoryRetentionRepository()
        sweeper = RetentionSweeper(
            repository=repository,
            retention_days={"raw_health": 90, "rollup_1m": 395, "rollup_1h": 2555},
        )

        result = sweeper.sweep(NOW)

        cutoffs = dict(repository.calls)
        self.assertEqual(cutoffs["raw_health"], NOW - timedelta(days=90))
        self.assertEqual(cutoffs["rollup_1m"], NOW - timedelta(days=395))
        self.assertEqual(cutoffs["rollup_1h"], NOW - timedelta(days=2555))
        self.assertEqual(result.total_deleted, 9)

    def test_zero_or_missing_retention_keeps_table(self) -> None:
        repository = InMemoryRetentionRepository()
        sweeper = RetentionSweeper(repository=repository, retention_days={"raw_health": 0, "raw_energy": 30})

        result = sweeper.sweep(NOW)

        self.assertEqual([name for name, _ in repository.calls], ["raw_energy"])
        self.assertIsNone(result.cutoffs["raw_health"])
        self.assertEqual(result.deleted["alert_events"], 0)

    def test_failure_on_one_table_does_not_stop_the_rest(self) -> None:
        repository = InMemoryRetentionRepository(failing_tables={"raw_health_samples"})
        sweeper = RetentionSweeper(repository=repository, retention_days=retention_days_from_settings(Settings()))

        result = sweeper.sweep(NOW)

        self.assertEqual(len(repository.calls), 8)
        self.assertEqual(result.deleted["raw_health"], 0)
        self.assertEqual(result.deleted["raw_energy"], 3)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("raw_health", result.errors[0])

    def test_default_retention_windows(self) -> None:
        days = retention_days_from_settings(Settings())

        self.assertEqual(days["raw_health"], 90)
        self.assertEqual(days["rollup_1m"], 395)
        self.assertEqual(days["rollup_15m"], 1825)
        self.assertEqual(days["rollup_1h"], 2555)
        self.assertEqual(days["daily_energy"], 2555)
