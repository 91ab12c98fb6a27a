from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.db.models import AlertEvent, AlertRule
from app.db.session import get_db
from app.dependencies import get_settings_from_app
from app.repositories.alerts import (
    create_alert_rule,
    delete_alert_rule,
    get_alert_rule_by_id,
    list_alert_events,
    list_alert_rules,
    update_alert_rule,
)
from app.schemas.alerts import AlertEventResponse, AlertRuleCreate, AlertRuleResponse, AlertRuleUpdate


router = APIRouter(prefix="/api/alerts", tags=["alerts"])
logger = logging.getLogger("app.alerts_api")


def _raise_conflict(exc: IntegrityError) -> None:
    logger.warning("alert rule rejected by database constraints: %s", getattr(exc, "orig", exc))
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Alert rule violates database constraints")


@router.get("/rules", response_model=list[AlertRuleResponse])
def get_alert_rules(
    device_id: str | None = Query(default=None, min_length=1, max_length=128),
    db: Session = Depends(get_db),
) -> list[AlertRule]:
    return list_alert_rules(db, device_id=device_id)


@router.get("/rules/{rule_id}", response_model=AlertRuleResponse)
def get_alert_rule(rule_id: int, db: Session = Depends(get_db)) -> AlertRule:
    rule = get_alert_rule_by_id(db, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert rule not found")
    return rule


@router.post("/rules", response_model=AlertRuleResponse, status_code=status.HTTP_201_CREATED)
def create_alert_rule_endpoint(
    payload: AlertRuleCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_from_app),
) -> AlertRule:
    try:
        rule = create_alert_rule(
            db,
            payload,
            default_cooldown_seconds=settings.alert_default_cooldown_seconds,
        )
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc)
    logger.info("alert rule created rule_id=%s device_id=%s metric=%s", rule.id, rule.device_id, rule.metric)
    return rule


@router.put("/rules/{rule_id}", response_model=AlertRuleResponse)
def update_alert_rule_endpoint(
    rule_id: int,
    payload: AlertRuleUpdate,
    db: Session = Depends(get_db),
) -> AlertRule:
    rule = get_alert_rule_by_id(db, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert rule not found")

    try:
        updated = update_alert_rule(db, rule, payload)
    except IntegrityError as exc:
        db.rollback()
        _raise_conflict(exc)
    return updated


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_alert_rule_endpoint(rule_id: int, db: Session = Depends(get_db)) -> Response:
    rule = get_alert_rule_by_id(db, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert rule not found")

    delete_alert_rule(db, rule)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/events", response_model=list[AlertEventResponse])
def get_alert_events(
    device_id: str | None = Query(default=None, min_length=1, max_length=128),
    rule_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=200, ge=1, le=2000),
    db: Session = Depends(get_db),
) -> list[AlertEvent]:
    return list_alert_events(db, device_id=device_id, rule_id=rule_id, limit=limit)
