from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.time_windows import local_day_of, resolve_timezone
from app.db.session import get_db
from app.dependencies import get_data_pipeline_service
from app.repositories.daily_energy import SqlDailyEnergyRepository
from app.repositories.ports import get_resolution
from app.repositories.rollups import SqlRollupRepository
from app.repositories.telemetry import SqlRawSampleRepository
from app.schemas.data_backbone import (
    DailyEnergyPointResponse,
    DailyEnergySeriesResponse,
    HealthSamplePointResponse,
    HealthSeriesResponse,
    JobName,
    JobRunSnapshotResponse,
    JobTriggerResponse,
    PipelineConfigResponse,
    PipelineConfigUpdate,
    PipelineStatusResponse,
    RollupPointResponse,
    RollupResolutionName,
    RollupSeriesResponse,
)
from app.services.data_pipeline import DataPipelineService


router = APIRouter(prefix="/api/data", tags=["data-backbone"])


@router.get("/health-series", response_model=HealthSeriesResponse)
def get_health_series(
    device_id: str = Query(min_length=1, max_length=128),
    from_ts: datetime | None = Query(default=None, alias="from"),
    to_ts: datetime | None = Query(default=None, alias="to"),
    limit: int = Query(default=5000, ge=1, le=50000),
    db: Session = Depends(get_db),
) -> HealthSeriesResponse:
    from_value = from_ts or (datetime.now(timezone.utc) - timedelta(hours=1))
    to_value = to_ts or datetime.now(timezone.utc)
    if from_value >= to_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'from' must be before 'to'",
        )

    rows = SqlRawSampleRepository(db).list_device_health_series(
        device_id=device_id,
        from_ts=from_value,
        to_ts=to_value,
        limit=limit,
    )
    return HealthSeriesResponse(
        device_id=device_id,
        points=[HealthSamplePointResponse.model_validate(row) for row in rows],
    )


@router.get("/rollups", response_model=list[RollupSeriesResponse])
def get_rollups(
    device_id: str | None = Query(default=None, min_length=1, max_length=128),
    resolution: RollupResolutionName = Query(default="15m"),
    from_ts: datetime | None = Query(default=None, alias="from"),
    to_ts: datetime | None = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
) -> list[RollupSeriesResponse]:
    from_value = from_ts or (datetime.now(timezone.utc) - timedelta(hours=24))
    to_value = to_ts or datetime.now(timezone.utc)
    if from_value >= to_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'from' must be before 'to'",
        )

    try:
        rows = SqlRollupRepository(db).list_rollups(
            get_resolution(resolution),
            from_ts=from_value,
            to_ts=to_value,
            device_id=device_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    series: dict[str, RollupSeriesResponse] = {}
    for row in rows:
        item = series.get(row.device_id)
        if item is None:
            item = RollupSeriesResponse(device_id=row.device_id, resolution=resolution, points=[])
            series[row.device_id] = item
        item.points.append(
            RollupPointResponse(
                window_start=row.window_start,
                avg_power_w=row.avg_power_w,
                min_power_w=row.min_power_w,
                max_power_w=row.max_power_w,
                energy_kwh=row.energy_kwh,
            )
        )
    return list(series.values())


@router.get("/daily-energy", response_model=DailyEnergySeriesResponse)
def get_daily_energy(
    device_id: str | None = Query(default=None, min_length=1, max_length=128),
    from_day: date | None = Query(default=None),
    to_day: date | None = Query(default=None),
    db: Session = Depends(get_db),
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> DailyEnergySeriesResponse:
    tz_name = pipeline_service.current_config().local_timezone
    today = local_day_of(datetime.now(timezone.utc), resolve_timezone(tz_name))
    to_value = to_day or today
    from_value = from_day or (to_value - timedelta(days=30))
    if from_value > to_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'from_day' must not be after 'to_day'",
        )

    rows = SqlDailyEnergyRepository(db).list_daily_energy(
        from_day=from_value,
        to_day=to_value,
        device_id=device_id,
    )
    return DailyEnergySeriesResponse(
        timezone=tz_name,
        from_day=from_value,
        to_day=to_value,
        points=[DailyEnergyPointResponse.model_validate(row) for row in rows],
    )


@router.get("/pipeline/status", response_model=PipelineStatusResponse)
def get_pipeline_status(
    db: Session = Depends(get_db),
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> PipelineStatusResponse:
    snapshot = pipeline_service.get_status_snapshot(db)
    return PipelineStatusResponse(
        running=bool(snapshot.get("running", False)),
        last_error=snapshot.get("last_error"),
        last_rollup_attempt_ts=snapshot.get("last_rollup_attempt_ts"),
        last_daily_energy_attempt_ts=snapshot.get("last_daily_energy_attempt_ts"),
        last_daily_energy_day=snapshot.get("last_daily_energy_day"),
        daily_energy_retry_days=snapshot.get("daily_energy_retry_days") or [],
        last_retention_attempt_ts=snapshot.get("last_retention_attempt_ts"),
        last_rollup_run=_job_run_or_none(snapshot.get("last_rollup_run")),
        last_daily_energy_run=_job_run_or_none(snapshot.get("last_daily_energy_run")),
        last_retention_run=_job_run_or_none(snapshot.get("last_retention_run")),
        raw_rows_24h=int(snapshot.get("raw_rows_24h", 0)),
        rollup_rows_24h=int(snapshot.get("rollup_rows_24h", 0)),
        config=PipelineConfigResponse.model_validate(snapshot["config"]) if snapshot.get("config") else None,
    )


@router.get("/pipeline/config", response_model=PipelineConfigResponse)
def get_pipeline_config(
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> PipelineConfigResponse:
    return PipelineConfigResponse.model_validate(pipeline_service.refresh_config().as_dict())


@router.put("/pipeline/config", response_model=PipelineConfigResponse)
def put_pipeline_config(
    payload: PipelineConfigUpdate,
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> PipelineConfigResponse:
    try:
        config = pipeline_service.update_config(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return PipelineConfigResponse.model_validate(config.as_dict())


@router.post("/pipeline/run/{job_name}", response_model=JobTriggerResponse)
def run_pipeline_job(
    job_name: JobName,
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> JobTriggerResponse:
    try:
        job_status, affected_rows, details = pipeline_service.run_job(job_name)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"{job_name} failed: {exc}")
    return JobTriggerResponse(
        job_name=job_name,
        status=job_status,
        affected_rows=affected_rows,
        details=details,
    )


def _job_run_or_none(value: object) -> JobRunSnapshotResponse | None:
    if not value:
        return None
    return JobRunSnapshotResponse.model_validate(value)
