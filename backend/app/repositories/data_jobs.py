from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.ports import RETENTION_TARGETS, RetentionTarget
from app.repositories.telemetry import SessionRepository

_ALLOWED_RETENTION_COLUMNS = frozenset((item.table_name, item.ts_column) for item in RETENTION_TARGETS)


@dataclass(frozen=True)
class JobRunSnapshot:
    id: int
    job_name: str
    started_at: datetime
    finished_at: datetime | None
    status: str
    affected_rows: int
    details_json: dict[str, Any] | list[Any] | None
    error_text: str | None


class SqlRetentionRepository(SessionRepository):
    def delete_older_than(self, target: RetentionTarget, cutoff: datetime) -> int:
        if (target.table_name, target.ts_column) not in _ALLOWED_RETENTION_COLUMNS:
            raise ValueError(f"Unsupported retention target: {target.name}")
        bound: Any = cutoff.date() if target.ts_column == "local_day" else cutoff
        result = self._execute(
            text(f"DELETE FROM {target.table_name} WHERE {target.ts_column} < :cutoff"),
            {"cutoff": bound},
        )
        self._commit()
        return max(0, result.rowcount or 0)


def insert_job_run(
    db: Session,
    *,
    job_name: str,
    started_at: datetime,
    finished_at: datetime,
    status: str,
    affected_rows: int,
    details_json: dict[str, Any],
    error_text: str | None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO data_job_runs
                (job_name, started_at, finished_at, status, affected_rows, details_json, error_text)
            VALUES
                (:job_name, :started_at, :finished_at, :status, :affected_rows, CAST(:details_json AS JSONB), :error_text)
            """
        ),
        {
            "job_name": job_name,
            "started_at": started_at,
            "finished_at": finished_at,
            "status": status,
            "affected_rows": affected_rows,
            "details_json": json.dumps(details_json, separators=(",", ":"), ensure_ascii=True, default=str),
            "error_text": error_text,
        },
    )
    db.commit()


def get_job_snapshot(db: Session, *, job_name: str) -> JobRunSnapshot | None:
    row = db.execute(
        text(
            """
            SELECT id, job_name, started_at, finished_at, status, affected_rows, details_json, error_text
            FROM data_job_runs
            WHERE job_name = :job_name
            ORDER BY started_at DESC, id DESC
            LIMIT 1
            """
        ),
        {"job_name": job_name},
    ).mappings().first()
    if row is None:
        return None
    return JobRunSnapshot(
        id=int(row["id"]),
        job_name=str(row["job_name"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        status=str(row["status"]),
        affected_rows=int(row["affected_rows"]),
        details_json=row["details_json"],
        error_text=row["error_text"],
    )


def count_recent_rows(db: Session) -> dict[str, int]:
    raw_rows_24h = int(
        db.scalar(text("SELECT COUNT(*) FROM raw_health_samples WHERE ts >= (now() - INTERVAL '24 hour')"))
        or 0
    )
    rollup_rows_24h = int(
        db.scalar(
            text(
                """
                SELECT
                    (SELECT COUNT(*) FROM rollup_1m WHERE window_start >= (now() - INTERVAL '24 hour')) +
                    (SELECT COUNT(*) FROM rollup_15m WHERE window_start >= (now() - INTERVAL '24 hour')) +
                    (SELECT COUNT(*) FROM rollup_1h WHERE window_start >= (now() - INTERVAL '24 hour'))
                """
            )
        )
        or 0
    )
    return {"raw_rows_24h": raw_rows_24h, "rollup_rows_24h": rollup_rows_24h}
