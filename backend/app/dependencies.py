from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from app.core.config import Settings

if TYPE_CHECKING:
    from app.services.data_pipeline import DataPipelineService
    from app.services.telemetry_ingest import TelemetryIngestService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_data_pipeline_service(request: Request) -> "DataPipelineService":
    service = getattr(request.app.state, "data_pipeline_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Data pipeline service is not initialized")
    return service


def get_telemetry_ingest_service(request: Request) -> "TelemetryIngestService":
    service = getattr(request.app.state, "telemetry_ingest_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Telemetry ingest service is not initialized")
    return service
