from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from app.repositories.ports import AlertRuleSnapshot, HealthSample
from app.services.alert_rules import AlertRuleEvaluator, compare, format_alert_message, metric_value
from fakes import InMemoryAlertRuleRepository, InMemorySampleRepository, RecordingNotifier

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _rule(**overrides) -> AlertRuleSnapshot:
    values = {
        "id": 1,
        "name": "Geyser overload",
        "device_id": "dev-1",
        "metric": "power_w",
        "comparator": ">",
        "threshold": 2000.0,
        "sustained_for_seconds": 10,
        "cooldown_seconds": 120,
        "is_active": True,
        "last_fired_at": None,
    }
    values.update(overrides)
    return AlertRuleSnapshot(**values)


def _sample(ts: datetime, power_w: float | None, device_id: str = "dev-1") -> HealthSample:
    return HealthSample(
        device_id=device_id,
        ts=ts,
        power_w=power_w,
        voltage_v=230.0,
        current_a=None,
        power_factor=0.99,
        online=True,
    )


class _FailingRuleRepository(InMemoryAlertRuleRepository):
    def record_firing(self, *, rule_id, event, fired_at):
        if rule_id == 1:
            raise RuntimeError("deadlock detected")
        return super().record_firing(rule_id=rule_id, event=event, fired_at=fired_at)


class AlertRuleEvaluatorTests(TestCase):
    def setUp(self) -> None:
        self.samples = InMemorySampleRepository()
        self.rules = InMemoryAlertRuleRepository([_rule()])
        self.notifier = RecordingNotifier()
        self.evaluator = AlertRuleEvaluator(samples=self.samples, rules=self.rules, notifier=self.notifier)

    def _feed(self, start: datetime, end: datetime, power_w: float) -> None:
        cursor = start
        while cursor <= end:
            self.samples.insert_health_sample(_sample(cursor, power_w))
            cursor += timedelta(seconds=2)

    def test_cooldown_suppresses_refire(self) -> None:
        self._feed(T0 - timedelta(seconds=10), T0 + timedelta(seconds=121), 2500.0)

        first = self.evaluator.evaluate_device("dev-1", T0)
        suppressed = self.evaluator.evaluate_device("dev-1", T0 + timedelta(seconds=60))
        again = self.evaluator.evaluate_device("dev-1", T0 + timedelta(seconds=121))

        self.assertEqual(len(first), 1)
        self.assertEqual(suppressed, [])
        self.assertEqual(len(again), 1)
        self.assertEqual(len(self.rules.events), 2)
        self.assertEqual(self.rules.rules[1].last_fired_at, T0 + timedelta(seconds=121))

    def test_single_breaching_sample_is_not_enough(self) -> None:
        for offset in (-10, -8, -6, -4):
            self.samples.insert_health_sample(_sample(T0 + timedelta(seconds=offset), 2500.0))
        self.samples.insert_health_sample(_sample(T0, 1800.0))

        self.assertEqual(self.evaluator.evaluate_device("dev-1", T0), [])
        self.assertEqual(self.rules.events, [])

    def test_empty_window_does_not_fire(self) -> None:
        self.samples.insert_health_sample(_sample(T0 - timedelta(seconds=30), 2500.0))

        self.assertEqual(self.evaluator.evaluate_device("dev-1", T0), [])

    def test_event_records_latest_value_and_message(self) -> None:
        self.samples.insert_health_sample(_sample(T0 - timedelta(seconds=5), 2100.0))
        self.samples.insert_health_sample(_sample(T0, 2400.0))

        fired = self.evaluator.evaluate_device("dev-1", T0)

        self.assertEqual(len(fired), 1)
        self.assertEqual(fired[0].observed_value, 2400.0)
        self.assertEqual(fired[0].message, "Geyser overload: power_w > 2000 (got 2400)")
        self.assertEqual(fired[0].ts, T0)

    def test_fired_alert_is_pushed(self) -> None:
        self.samples.insert_health_sample(_sample(T0, 2400.0))

        self.evaluator.evaluate_device("dev-1", T0)

        self.assertEqual(len(self.notifier.notifications), 1)
        self.assertEqual(self.notifier.notifications[0].title, "Power alert")
        self.assertEqual(self.notifier.notifications[0].url, "/alerts")

    def test_notifier_failure_still_records_event(self) -> None:
        evaluator = AlertRuleEvaluator(
            samples=self.samples,
            rules=self.rules,
            notifier=RecordingNotifier(fail=True),
        )
        self.samples.insert_health_sample(_sample(T0, 2400.0))

        fired = evaluator.evaluate_device("dev-1", T0)

        self.assertEqual(len(fired), 1)
        self.assertIsNotNone(self.rules.rules[1].last_fired_at)

    def test_inactive_rule_is_ignored(self) -> None:
        self.rules.rules[1] = _rule(is_active=False)
        self.samples.insert_health_sample(_sample(T0, 2400.0))

        self.assertEqual(self.evaluator.evaluate_device("dev-1", T0), [])
        self.assertIsNone(self.evaluator.evaluate_rule(_rule(is_active=False), T0))

    def test_missing_metric_counts_as_zero(self) -> None:
        self.rules.rules[1] = _rule(comparator="<", threshold=5.0)
        self.samples.insert_health_sample(_sample(T0, None))

        fired = self.evaluator.evaluate_device("dev-1", T0)

        self.assertEqual(len(fired), 1)
        self.assertEqual(fired[0].observed_value, 0.0)

    def test_rule_failure_does_not_block_other_rules(self) -> None:
        rules = _FailingRuleRepository([_rule(id=1), _rule(id=2, name="Second")])
        evaluator = AlertRuleEvaluator(samples=self.samples, rules=rules)
        self.samples.insert_health_sample(_sample(T0, 2400.0))

        fired = evaluator.evaluate_device("dev-1", T0)

        self.assertEqual([event.rule_id for event in fired], [2])

    def test_other_devices_samples_are_ignored(self) -> None:
        self.samples.insert_health_sample(_sample(T0, 2400.0, device_id="dev-2"))

        self.assertEqual(self.evaluator.evaluate_device("dev-1", T0), [])


class ComparatorTests(TestCase):
    def test_comparators(self) -> None:
        self.assertTrue(compare(">", 2.0, 1.0))
        self.assertTrue(compare(">=", 1.0, 1.0))
        self.assertTrue(compare("<", 0.5, 1.0))
        self.assertTrue(compare("<=", 1.0, 1.0))
        self.assertTrue(compare("==", 1.0, 1.0))
        self.assertTrue(compare("!=", 1.0, 2.0))
        self.assertFalse(compare(">", 1.0, 1.0))

    def test_unknown_comparator_never_matches(self) -> None:
        self.assertFalse(compare("=>", 5.0, 1.0))

    def test_unknown_metric_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            metric_value(_sample(T0, 1.0), "temperature")

    def test_message_format(self) -> None:
        self.assertEqual(
            format_alert_message(_rule(comparator="<=", threshold=0.85, metric="power_factor"), 0.7),
            "Geyser overload: power_factor <= 0.85 (got 0.7)",
        )

    def test_message_keeps_full_precision(self) -> None:
        self.assertEqual(
            format_alert_message(_rule(threshold=1000000.0), 1234567.0),
            "Geyser overload: power_w > 1000000 (got 1234567)",
        )
        self.assertEqual(
            format_alert_message(_rule(threshold=2000.5), 2000.123456789),
            "Geyser overload: power_w > 2000.5 (got 2000.123456789)",
        )
