from __future__ import annotations

import logging
import operator
from datetime import datetime, timedelta
from typing import Callable

from app.core.time_windows import to_utc
from app.repositories.ports import (
    AlertEventRecord,
    AlertRuleRepository,
    AlertRuleSnapshot,
    HealthSample,
    RawSampleRepository,
)
from app.services.notifications import Notification, Notifier

ALERT_METRICS: tuple[str, ...] = ("power_w", "voltage_v", "current_a", "power_factor")

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def compare(comparator: str, value: float, threshold: float) -> bool:
    fn = _COMPARATORS.get(comparator)
    if fn is None:
        return False
    return fn(value, threshold)


def metric_value(sample: HealthSample, metric: str) -> float:
    if metric not in ALERT_METRICS:
        raise ValueError(f"Unsupported alert metric: {metric}")
    value = getattr(sample, metric)
    return float(value) if value is not None else 0.0


def _format_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def format_alert_message(rule: AlertRuleSnapshot, value: float) -> str:
    return (
        f"{rule.name}: {rule.metric} {rule.comparator} "
        f"{_format_number(rule.threshold)} (got {_format_number(value)})"
    )


class AlertRuleEvaluator:
    """All-or-nothing sustained threshold rules with a cooldown gate.

    A rule fires only when every sample of its device inside
    ``[now - sustained_for_seconds, now]`` satisfies the comparator, and no
    earlier firing happened within ``cooldown_seconds``.
    """

    def __init__(
        self,
        *,
        samples: RawSampleRepository,
        rules: AlertRuleRepository,
        notifier: Notifier | None = None,
    ):
        self._samples = samples
        self._rules = rules
        self._notifier = notifier
        self._logger = logging.getLogger("app.alert_rules")

    def evaluate_device(self, device_id: str, now: datetime) -> list[AlertEventRecord]:
        fired: list[AlertEventRecord] = []
        for rule in self._rules.list_active_rules(device_id=device_id):
            try:
                event = self.evaluate_rule(rule, now)
            except Exception:
                self._logger.exception("alert rule evaluation failed rule_id=%s device_id=%s", rule.id, device_id)
                continue
            if event is not None:
                fired.append(event)
        return fired

    def evaluate_rule(self, rule: AlertRuleSnapshot, now: datetime) -> AlertEventRecord | None:
        if not rule.is_active:
            return None

        now_utc = to_utc(now)
        since = now_utc - timedelta(seconds=max(0, rule.sustained_for_seconds))
        samples = self._samples.list_device_health_samples(
            device_id=rule.device_id,
            from_ts=since,
            to_ts=now_utc,
        )
        if not samples:
            return None

        if not all(compare(rule.comparator, metric_value(sample, rule.metric), rule.threshold) for sample in samples):
            return None

        if rule.last_fired_at is not None:
            elapsed = (now_utc - to_utc(rule.last_fired_at)).total_seconds()
            if elapsed < rule.cooldown_seconds:
                self._logger.debug(
                    "alert suppressed by cooldown rule_id=%s elapsed=%s cooldown=%s",
                    rule.id,
                    elapsed,
                    rule.cooldown_seconds,
                )
                return None

        value = metric_value(samples[-1], rule.metric)
        event = self._rules.record_firing(
            rule_id=rule.id,
            event=AlertEventRecord(
                rule_id=rule.id,
                device_id=rule.device_id,
                ts=now_utc,
                observed_value=value,
                message=format_alert_message(rule, value),
            ),
            fired_at=now_utc,
        )
        self._logger.info(
            "alert fired rule_id=%s device_id=%s metric=%s value=%s threshold=%s",
            rule.id,
            rule.device_id,
            rule.metric,
            value,
            rule.threshold,
        )
        self._notify(event)
        return event

    def _notify(self, event: AlertEventRecord) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.publish(
                Notification(
                    title="Power alert",
                    body=event.message or f"Alert on {event.device_id}",
                    url="/alerts",
                    device_id=event.device_id,
                    kind="alert",
                    payload={"event_id": event.id, "rule_id": event.rule_id},
                )
            )
        except Exception:
            self._logger.exception("alert notification failed rule_id=%s", event.rule_id)
