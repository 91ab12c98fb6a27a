from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.repositories.anomaly_events import list_anomaly_events
from app.schemas.telemetry_ingest import AnomalyEventResponse


router = APIRouter(prefix="/api/anomalies", tags=["anomalies"])

AnomalyKind = Literal["voltage_sag", "voltage_swell", "low_power_factor", "online", "offline"]


@router.get("/events", response_model=list[AnomalyEventResponse])
def get_anomaly_events(
    device_id: str | None = Query(default=None, min_length=1, max_length=128),
    kind: AnomalyKind | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=2000),
    db: Session = Depends(get_db),
) -> list[AnomalyEventResponse]:
    rows = list_anomaly_events(db, device_id=device_id, kind=kind, limit=limit)
    return [AnomalyEventResponse.model_validate(row) for row in rows]
