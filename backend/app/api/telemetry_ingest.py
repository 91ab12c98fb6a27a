from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status

from app.dependencies import get_telemetry_ingest_service
from app.schemas.telemetry_ingest import (
    IngestOutcomeResponse,
    TelemetryTickRequest,
    TelemetryTickResponse,
)
from app.services.telemetry_ingest import DeviceSnapshot, TelemetryIngestService


router = APIRouter(prefix="/api/telemetry", tags=["telemetry-ingest"])


@router.post("/ingest", response_model=TelemetryTickResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_tick(
    payload: TelemetryTickRequest,
    ingest_service: TelemetryIngestService = Depends(get_telemetry_ingest_service),
) -> TelemetryTickResponse:
    received_ts = datetime.now(timezone.utc)
    tick_ts = payload.ts or received_ts
    snapshots = [
        DeviceSnapshot(
            device_id=device.device_id,
            ts=device.ts or tick_ts,
            online=device.online,
            power_w=device.power_w,
            voltage_v=device.voltage_v,
            current_a=device.current_a,
            power_factor=device.power_factor,
            cumulative_energy_kwh=device.cumulative_energy_kwh,
        )
        for device in payload.devices
    ]
    outcomes = ingest_service.process_tick(snapshots)
    return TelemetryTickResponse(
        accepted=sum(1 for outcome in outcomes if outcome.health_stored),
        received_ts=received_ts,
        outcomes=[
            IngestOutcomeResponse(
                device_id=outcome.device_id,
                health_stored=outcome.health_stored,
                energy_stored=outcome.energy_stored,
                anomalies=[event.kind for event in outcome.anomalies],
                alerts=[event.rule_id for event in outcome.alerts],
                errors=outcome.errors,
            )
            for outcome in outcomes
        ],
    )
