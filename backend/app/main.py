from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.alerts import router as alerts_router
from app.api.anomalies import router as anomalies_router
from app.api.data_backbone import router as data_backbone_router
from app.api.telemetry_ingest import router as telemetry_ingest_router
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db, get_engine
from app.services.data_pipeline import DataPipelineService
from app.services.notifications import LoggingNotificationSink, NotificationHub
from app.services.telemetry_ingest import TelemetryIngestService


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    get_engine()

    notification_hub = NotificationHub(sinks=[LoggingNotificationSink()])
    telemetry_ingest_service = TelemetryIngestService(
        settings=settings,
        session_factory=SessionLocal,
        notifier=notification_hub,
    )
    data_pipeline_service = DataPipelineService(settings=settings, session_factory=SessionLocal)

    app.state.settings = settings
    app.state.notification_hub = notification_hub
    app.state.telemetry_ingest_service = telemetry_ingest_service
    app.state.data_pipeline_service = data_pipeline_service

    data_pipeline_service.start()
    try:
        yield
    finally:
        data_pipeline_service.stop()


app = FastAPI(title="Power Telemetry Backend", lifespan=lifespan)
app.include_router(telemetry_ingest_router)
app.include_router(data_backbone_router)
app.include_router(anomalies_router)
app.include_router(alerts_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    data_pipeline_service: DataPipelineService | None = getattr(
        request.app.state,
        "data_pipeline_service",
        None,
    )
    telemetry_ingest_service: TelemetryIngestService | None = getattr(
        request.app.state,
        "telemetry_ingest_service",
        None,
    )
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if data_pipeline_service is None:
        data_pipeline_status: dict[str, object] = {
            "running": False,
            "last_error": "Data pipeline service not initialized",
            "last_rollup_run": None,
            "last_daily_energy_run": None,
            "last_retention_run": None,
            "raw_rows_24h": 0,
            "rollup_rows_24h": 0,
        }
    else:
        try:
            data_pipeline_status = data_pipeline_service.get_status_snapshot(db)
        except Exception as exc:
            db.rollback()
            data_pipeline_status = {"running": False, "last_error": str(exc)}

    if telemetry_ingest_service is None:
        ingest_status: dict[str, object] = {
            "anomaly_enabled": False,
            "alerts_enabled": False,
            "last_ingest_ts": None,
            "samples_processed": 0,
            "last_error": "Telemetry ingest service not initialized",
        }
    else:
        ingest_status = telemetry_ingest_service.get_status_snapshot()

    return {
        "status": "working",
        "service": "backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "ingest": ingest_status,
        "data_pipeline": {
            "running": data_pipeline_status.get("running"),
            "last_error": data_pipeline_status.get("last_error"),
            "last_rollup_run": data_pipeline_status.get("last_rollup_run"),
            "last_daily_energy_run": data_pipeline_status.get("last_daily_energy_run"),
            "last_retention_run": data_pipeline_status.get("last_retention_run"),
            "raw_rows_24h": data_pipeline_status.get("raw_rows_24h"),
            "rollup_rows_24h": data_pipeline_status.get("rollup_rows_24h"),
        },
        "config": {
            "local_timezone": settings.local_timezone if settings else None,
            "anomaly_sag_voltage_v": settings.anomaly_sag_voltage_v if settings else None,
            "anomaly_swell_voltage_v": settings.anomaly_swell_voltage_v if settings else None,
            "anomaly_low_pf_threshold": settings.anomaly_low_pf_threshold if settings else None,
            "alert_default_cooldown_seconds": (
                settings.alert_default_cooldown_seconds if settings else None
            ),
            "pipeline": (
                data_pipeline_service.current_config().as_dict() if data_pipeline_service else None
            ),
        },
    }
