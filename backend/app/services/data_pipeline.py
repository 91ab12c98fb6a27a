from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.time_windows import local_day_of, parse_local_time, resolve_timezone, to_utc
from app.repositories.daily_energy import SqlDailyEnergyRepository
from app.repositories.data_jobs import (
    JobRunSnapshot,
    SqlRetentionRepository,
    count_recent_rows,
    get_job_snapshot,
    insert_job_run,
)
from app.repositories.ports import (
    ROLLUP_RESOLUTIONS,
    DailyEnergyRepository,
    RawSampleRepository,
    RetentionRepository,
    RollupRepository,
)
from app.repositories.rollups import SqlRollupRepository
from app.repositories.runtime_preferences import get_runtime_preference, upsert_runtime_preference
from app.repositories.telemetry import SqlRawSampleRepository
from app.schemas.data_backbone import PipelineConfigUpdate
from app.services.daily_energy import DailyEnergyAggregator
from app.services.retention import RetentionSweeper, retention_days_from_settings
from app.services.rollup_builder import RollupBuilder, lookbacks_from_settings

PIPELINE_PREFERENCE_KEY = "data_pipeline"


@dataclass(frozen=True)
class PipelineConfig:
    rollup_enabled: bool
    rollup_job_seconds: int
    rollup_resolutions: tuple[str, ...]
    daily_energy_enabled: bool
    daily_energy_run_after: time
    daily_energy_backfill_days: int
    retention_enabled: bool
    retention_job_seconds: int
    retention_days: dict[str, int] = field(default_factory=dict)
    local_timezone: str = "UTC"

    def as_dict(self) -> dict[str, Any]:
        return {
            "rollup_enabled": self.rollup_enabled,
            "rollup_job_seconds": self.rollup_job_seconds,
            "rollup_resolutions": list(self.rollup_resolutions),
            "daily_energy_enabled": self.daily_energy_enabled,
            "daily_energy_run_after_local_time": self.daily_energy_run_after.strftime("%H:%M"),
            "daily_energy_backfill_days": self.daily_energy_backfill_days,
            "retention_enabled": self.retention_enabled,
            "retention_job_seconds": self.retention_job_seconds,
            "retention_days": dict(self.retention_days),
            "local_timezone": self.local_timezone,
        }


@dataclass(frozen=True)
class PipelineRepositories:
    samples: RawSampleRepository
    rollups: RollupRepository
    daily_energy: DailyEnergyRepository
    retention: RetentionRepository


def sql_pipeline_repositories(db: Session) -> PipelineRepositories:
    return PipelineRepositories(
        samples=SqlRawSampleRepository(db),
        rollups=SqlRollupRepository(db),
        daily_energy=SqlDailyEnergyRepository(db),
        retention=SqlRetentionRepository(db),
    )


def resolve_pipeline_config(settings: Settings, overrides: Any | None = None) -> PipelineConfig:
    """Settings defaults overlaid with the persisted live overrides.

    Invalid override payloads are ignored as a whole so a bad write can never
    stop the pipeline.
    """
    level_flags = {
        "1m": settings.rollup_1m_enabled,
        "15m": settings.rollup_15m_enabled,
        "1h": settings.rollup_1h_enabled,
    }
    resolutions = tuple(item.name for item in ROLLUP_RESOLUTIONS if level_flags[item.name])
    retention_days = retention_days_from_settings(settings)
    values: dict[str, Any] = {
        "rollup_enabled": settings.rollup_enabled,
        "rollup_job_seconds": settings.rollup_job_seconds,
        "rollup_resolutions": resolutions,
        "daily_energy_enabled": settings.daily_energy_enabled,
        "daily_energy_run_after": parse_local_time(settings.daily_energy_run_after_local_time),
        "daily_energy_backfill_days": settings.daily_energy_backfill_days,
        "retention_enabled": settings.retention_enabled,
        "retention_job_seconds": settings.retention_job_seconds,
        "retention_days": retention_days,
        "local_timezone": settings.local_timezone,
    }

    if overrides:
        try:
            update = PipelineConfigUpdate.model_validate(overrides)
        except ValidationError as exc:
            logging.getLogger("app.data_pipeline").warning("ignoring invalid pipeline overrides: %s", exc)
            update = None
        if update is not None:
            for key in ("rollup_enabled", "rollup_job_seconds", "daily_energy_enabled", "retention_enabled",
                        "retention_job_seconds"):
                value = getattr(update, key)
                if value is not None:
                    values[key] = value
            if update.rollup_resolutions is not None:
                wanted = set(update.rollup_resolutions)
                values["rollup_resolutions"] = tuple(
                    item.name for item in ROLLUP_RESOLUTIONS if item.name in wanted
                )
            if update.daily_energy_run_after_local_time is not None:
                values["daily_energy_run_after"] = parse_local_time(update.daily_energy_run_after_local_time)
            if update.retention_days is not None:
                merged = dict(retention_days)
                merged.update(update.retention_days.model_dump(exclude_none=True))
                values["retention_days"] = merged

    return PipelineConfig(**values)


def merge_pipeline_overrides(existing: Any | None, update: PipelineConfigUpdate) -> dict[str, Any]:
    merged: dict[str, Any] = dict(existing) if isinstance(existing, dict) else {}
    payload = update.model_dump(exclude_none=True)
    retention_update = payload.pop("retention_days", None)
    merged.update(payload)
    if retention_update:
        current = merged.get("retention_days")
        retention = dict(current) if isinstance(current, dict) else {}
        retention.update(retention_update)
        merged["retention_days"] = retention
    return merged


class DataPipelineService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        repository_factory: Callable[[Any], PipelineRepositories] = sql_pipeline_repositories,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._repository_factory = repository_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("app.data_pipeline")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._lock = Lock()
        self._running = False
        self._config: PipelineConfig = resolve_pipeline_config(settings)
        self._last_rollup_attempt_ts: datetime | None = None
        self._last_daily_energy_attempt_ts: datetime | None = None
        self._last_daily_energy_day: date | None = None
        self._daily_energy_retry_days: set[date] = set()
        self._last_retention_attempt_ts: datetime | None = None
        self._last_error: str | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="data-pipeline", daemon=True)
        self._thread.start()
        self._logger.info(
            "started data pipeline rollup_job_seconds=%s retention_job_seconds=%s timezone=%s",
            self._config.rollup_job_seconds,
            self._config.retention_job_seconds,
            self._config.local_timezone,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def current_config(self) -> PipelineConfig:
        with self._lock:
            return self._config

    def refresh_config(self) -> PipelineConfig:
        overrides: Any | None = None
        try:
            with self._session_factory() as db:
                preference = get_runtime_preference(db, key=PIPELINE_PREFERENCE_KEY)
                if preference is not None:
                    overrides = preference.value_json
        except Exception as exc:
            self._logger.warning("failed to read pipeline overrides, using settings: %s", exc)
        config = resolve_pipeline_config(self._settings, overrides)
        with self._lock:
            self._config = config
        return config

    def update_config(self, update: PipelineConfigUpdate) -> PipelineConfig:
        with self._session_factory() as db:
            existing = get_runtime_preference(db, key=PIPELINE_PREFERENCE_KEY)
            merged = merge_pipeline_overrides(existing.value_json if existing else None, update)
            upsert_runtime_preference(db, key=PIPELINE_PREFERENCE_KEY, value_json=merged)
        config = self.refresh_config()
        self._logger.info("pipeline config updated source=api config=%s", config.as_dict())
        return config

    def run_job(self, job_name: str) -> tuple[str, int, dict[str, Any]]:
        if job_name == "rollup":
            return self.run_rollup_once()
        if job_name == "retention":
            return self.run_retention_once()
        if job_name == "daily_energy":
            config = self.current_config()
            now = self._clock()
            target = local_day_of(now, resolve_timezone(config.local_timezone)) - timedelta(days=1)
            return self.run_daily_energy_once(target)
        raise ValueError("job_name must be one of rollup|daily_energy|retention")

    def run_rollup_once(self, now: datetime | None = None) -> tuple[str, int, dict[str, Any]]:
        config = self.current_config()
        now_utc = to_utc(now or self._clock())
        started_at = datetime.now(timezone.utc)
        details: dict[str, Any] = {}
        try:
            with self._session_factory() as db:
                repositories = self._repository_factory(db)
                builder = RollupBuilder(
                    samples=repositories.samples,
                    rollups=repositories.rollups,
                    lookbacks=lookbacks_from_settings(self._settings),
                )
                results = builder.build_rollups(now_utc, resolutions=config.rollup_resolutions)
            affected_rows = sum(item.rows_created for item in results)
            status = "partial" if any(item.errors for item in results) else "ok"
            details = {item.resolution: item.as_details() for item in results}
            self._record_run("rollup", started_at, status, affected_rows, details, None)
            return status, affected_rows, details
        except Exception as exc:
            self._record_run("rollup", started_at, "error", 0, details, str(exc))
            raise
        finally:
            with self._lock:
                self._last_rollup_attempt_ts = now_utc

    def run_daily_energy_once(self, local_day: date) -> tuple[str, int, dict[str, Any]]:
        config = self.current_config()
        started_at = datetime.now(timezone.utc)
        details: dict[str, Any] = {"local_day": local_day.isoformat()}
        try:
            with self._session_factory() as db:
                repositories = self._repository_factory(db)
                aggregator = DailyEnergyAggregator(
                    samples=repositories.samples,
                    daily_energy=repositories.daily_energy,
                    tz=resolve_timezone(config.local_timezone),
                )
                result = aggregator.compute_daily_energy(local_day)
            status = "partial" if result.errors else "ok"
            details = result.as_details()
            self._record_run("daily_energy", started_at, status, result.rows_upserted, details, None)
            self._mark_daily_energy_day(local_day, complete=not result.errors)
            return status, result.rows_upserted, details
        except Exception as exc:
            self._record_run("daily_energy", started_at, "error", 0, details, str(exc))
            self._mark_daily_energy_day(local_day, complete=False)
            raise
        finally:
            with self._lock:
                self._last_daily_energy_attempt_ts = to_utc(self._clock())

    def _mark_daily_energy_day(self, local_day: date, *, complete: bool) -> None:
        # Incomplete days are retried on the rollup interval; later days still proceed.
        with self._lock:
            if self._last_daily_energy_day is None or local_day > self._last_daily_energy_day:
                self._last_daily_energy_day = local_day
            if complete:
                self._daily_energy_retry_days.discard(local_day)
            else:
                self._daily_energy_retry_days.add(local_day)

    def run_retention_once(self, now: datetime | None = None) -> tuple[str, int, dict[str, Any]]:
        config = self.current_config()
        now_utc = to_utc(now or self._clock())
        started_at = datetime.now(timezone.utc)
        details: dict[str, Any] = {}
        try:
            with self._session_factory() as db:
                repositories = self._repository_factory(db)
                sweeper = RetentionSweeper(
                    repository=repositories.retention,
                    retention_days=config.retention_days,
                )
                result = sweeper.sweep(now_utc)
            status = "partial" if result.errors else "ok"
            details = result.as_details()
            self._record_run("retention", started_at, status, result.total_deleted, details, None)
            return status, result.total_deleted, details
        except Exception as exc:
            self._record_run("retention", started_at, "error", 0, details, str(exc))
            raise
        finally:
            with self._lock:
                self._last_retention_attempt_ts = now_utc

    def pending_daily_energy_days(self, now: datetime, config: PipelineConfig) -> list[date]:
        tz = resolve_timezone(config.local_timezone)
        local_now = to_utc(now).astimezone(tz)
        latest_ready = local_now.date() - timedelta(days=1)
        if local_now.time() < config.daily_energy_run_after:
            latest_ready -= timedelta(days=1)

        with self._lock:
            last_done = self._last_daily_energy_day
        if last_done is None:
            first = latest_ready - timedelta(days=max(1, config.daily_energy_backfill_days) - 1)
        else:
            first = last_done + timedelta(days=1)

        days: list[date] = []
        cursor = first
        while cursor <= latest_ready:
            days.append(cursor)
            cursor += timedelta(days=1)
        return days

    def run_cycle(self, now: datetime) -> None:
        """One scheduler pass. Configuration is re-read first so interval and
        enable changes apply on the next pass without a restart."""
        config = self.refresh_config()
        had_error = False

        with self._lock:
            last_rollup = self._last_rollup_attempt_ts
            last_retention = self._last_retention_attempt_ts
            last_daily = self._last_daily_energy_attempt_ts
            retry_days = sorted(self._daily_energy_retry_days)

        if config.rollup_enabled and _is_due(last_rollup, config.rollup_job_seconds, now):
            try:
                self.run_rollup_once(now)
            except Exception as exc:
                had_error = True
                self._logger.exception("rollup job failed")
                self._set_error(f"rollup: {exc}")

        if config.daily_energy_enabled:
            for local_day in self.pending_daily_energy_days(now, config):
                try:
                    self.run_daily_energy_once(local_day)
                except Exception as exc:
                    had_error = True
                    self._logger.exception("daily energy job failed local_day=%s", local_day.isoformat())
                    self._set_error(f"daily_energy: {exc}")
                    break
            if retry_days and _is_due(last_daily, config.rollup_job_seconds, now):
                for local_day in retry_days:
                    try:
                        self.run_daily_energy_once(local_day)
                    except Exception as exc:
                        had_error = True
                        self._logger.exception("daily energy retry failed local_day=%s", local_day.isoformat())
                        self._set_error(f"daily_energy: {exc}")
                        break

        if config.retention_enabled and _is_due(last_retention, config.retention_job_seconds, now):
            try:
                self.run_retention_once(now)
            except Exception as exc:
                had_error = True
                self._logger.exception("retention job failed")
                self._set_error(f"retention: {exc}")

        if not had_error:
            self._set_error(None)

    def get_status_snapshot(self, db: Session) -> dict[str, object]:
        counts = count_recent_rows(db)
        last_rollup_run = get_job_snapshot(db, job_name="rollup")
        last_daily_run = get_job_snapshot(db, job_name="daily_energy")
        last_retention_run = get_job_snapshot(db, job_name="retention")
        with self._lock:
            return {
                "running": self._running and not self._stop_event.is_set(),
                "last_error": self._last_error,
                "last_rollup_attempt_ts": _to_iso(self._last_rollup_attempt_ts),
                "last_daily_energy_attempt_ts": _to_iso(self._last_daily_energy_attempt_ts),
                "last_daily_energy_day": (
                    self._last_daily_energy_day.isoformat() if self._last_daily_energy_day else None
                ),
                "daily_energy_retry_days": [day.isoformat() for day in sorted(self._daily_energy_retry_days)],
                "last_retention_attempt_ts": _to_iso(self._last_retention_attempt_ts),
                "last_rollup_run": _job_snapshot_to_dict(last_rollup_run),
                "last_daily_energy_run": _job_snapshot_to_dict(last_daily_run),
                "last_retention_run": _job_snapshot_to_dict(last_retention_run),
                "raw_rows_24h": counts["raw_rows_24h"],
                "rollup_rows_24h": counts["rollup_rows_24h"],
                "config": self._config.as_dict(),
            }

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle(self._clock())
            except Exception as exc:
                self._logger.exception("data pipeline loop iteration failed")
                self._set_error(str(exc))

            self._stop_event.wait(1.0)

    def _record_run(
        self,
        job_name: str,
        started_at: datetime,
        status: str,
        affected_rows: int,
        details: dict[str, Any],
        error_text: str | None,
    ) -> None:
        try:
            with self._session_factory() as db:
                insert_job_run(
                    db,
                    job_name=job_name,
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                    status=status,
                    affected_rows=affected_rows,
                    details_json=details,
                    error_text=error_text,
                )
        except Exception:
            self._logger.exception("failed to record job run job_name=%s status=%s", job_name, status)

    def _set_error(self, message: str | None) -> None:
        with self._lock:
            self._last_error = message


def _is_due(last_attempt: datetime | None, interval_seconds: int, now: datetime) -> bool:
    if last_attempt is None:
        return True
    return to_utc(now) >= last_attempt + timedelta(seconds=interval_seconds)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _job_snapshot_to_dict(snapshot: JobRunSnapshot | None) -> dict[str, object] | None:
    if snapshot is None:
        return None
    return {
        "id": snapshot.id,
        "job_name": snapshot.job_name,
        "started_at": _to_iso(snapshot.started_at),
        "finished_at": _to_iso(snapshot.finished_at),
        "status": snapshot.status,
        "affected_rows": snapshot.affected_rows,
        "details_json": snapshot.details_json,
        "error_text": snapshot.error_text,
    }
