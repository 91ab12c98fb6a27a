from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models import AlertEvent, AlertRule
from app.repositories.ports import AlertEventRecord, AlertRuleSnapshot
from app.repositories.telemetry import SessionRepository
from app.schemas.alerts import AlertRuleCreate, AlertRuleUpdate


class SqlAlertRuleRepository(SessionRepository):
    def list_active_rules(self, *, device_id: str | None = None) -> list[AlertRuleSnapshot]:
        statement = select(AlertRule).where(AlertRule.is_active.is_(True))
        if device_id is not None:
            statement = statement.where(AlertRule.device_id == device_id)
        rules = self._execute(statement.order_by(AlertRule.id)).scalars()
        return [to_rule_snapshot(rule) for rule in rules]

    def record_firing(self, *, rule_id: int, event: AlertEventRecord, fired_at: datetime) -> AlertEventRecord:
        row = AlertEvent(
            rule_id=rule_id,
            device_id=event.device_id,
            ts=event.ts,
            observed_value=event.observed_value,
            message=event.message,
        )
        try:
            self._db.add(row)
            self._db.execute(update(AlertRule).where(AlertRule.id == rule_id).values(last_fired_at=fired_at))
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        return AlertEventRecord(
            id=row.id,
            rule_id=row.rule_id,
            device_id=row.device_id,
            ts=row.ts,
            observed_value=row.observed_value,
            message=row.message,
        )


def to_rule_snapshot(rule: AlertRule) -> AlertRuleSnapshot:
    return AlertRuleSnapshot(
        id=int(rule.id),
        name=rule.name,
        device_id=rule.device_id,
        metric=rule.metric,
        comparator=rule.comparator,
        threshold=float(rule.threshold),
        sustained_for_seconds=int(rule.sustained_for_seconds),
        cooldown_seconds=int(rule.cooldown_seconds),
        is_active=bool(rule.is_active),
        last_fired_at=rule.last_fired_at,
    )


def list_alert_rules(db: Session, *, device_id: str | None = None) -> list[AlertRule]:
    statement = select(AlertRule)
    if device_id is not None:
        statement = statement.where(AlertRule.device_id == device_id)
    return list(db.scalars(statement.order_by(AlertRule.updated_at.desc(), AlertRule.id.desc())))


def get_alert_rule_by_id(db: Session, rule_id: int) -> AlertRule | None:
    return db.get(AlertRule, rule_id)


def create_alert_rule(db: Session, payload: AlertRuleCreate, *, default_cooldown_seconds: int) -> AlertRule:
    rule = AlertRule(
        name=payload.name,
        device_id=payload.device_id,
        metric=payload.metric,
        comparator=payload.comparator,
        threshold=payload.threshold,
        sustained_for_seconds=payload.sustained_for_seconds,
        cooldown_seconds=(
            payload.cooldown_seconds if payload.cooldown_seconds is not None else default_cooldown_seconds
        ),
        is_active=payload.is_active,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_alert_rule(db: Session, rule: AlertRule, payload: AlertRuleUpdate) -> AlertRule:
    updates = payload.model_dump(exclude_unset=True)
    for key, value in updates.items():
        if value is None:
            continue
        setattr(rule, key, value)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def delete_alert_rule(db: Session, rule: AlertRule) -> None:
    db.delete(rule)
    db.commit()


def list_alert_events(
    db: Session,
    *,
    device_id: str | None = None,
    rule_id: int | None = None,
    limit: int = 200,
) -> list[AlertEvent]:
    statement = select(AlertEvent)
    if device_id is not None:
        statement = statement.where(AlertEvent.device_id == device_id)
    if rule_id is not None:
        statement = statement.where(AlertEvent.rule_id == rule_id)
    statement = statement.order_by(AlertEvent.ts.desc(), AlertEvent.id.desc()).limit(max(1, limit))
    return list(db.scalars(statement))
