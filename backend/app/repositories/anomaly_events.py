from __future__ import annotations

import json
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.ports import AnomalyEventRecord
from app.repositories.telemetry import SessionRepository


class SqlAnomalyEventRepository(SessionRepository):
    def insert_anomaly_event(self, event: AnomalyEventRecord) -> AnomalyEventRecord:
        row = self._execute(
            text(
                """
                INSERT INTO anomaly_events
                    (device_id, ts, kind, observed_value, threshold, duration_seconds, payload_json, created_at)
                VALUES
                    (:device_id, :ts, :kind, :observed_value, :threshold, :duration_seconds,
                     CAST(:payload_json AS JSONB), now())
                RETURNING id
                """
            ),
            {
                "device_id": event.device_id,
                "ts": event.ts,
                "kind": event.kind,
                "observed_value": event.observed_value,
                "threshold": event.threshold,
                "duration_seconds": event.duration_seconds,
                "payload_json": json.dumps(event.payload, separators=(",", ":"), ensure_ascii=True),
            },
        ).first()
        if row is None:
            raise RuntimeError(f"failed to insert anomaly event for {event.device_id}")
        self._commit()
        return AnomalyEventRecord(
            id=int(row[0]),
            device_id=event.device_id,
            ts=event.ts,
            kind=event.kind,
            observed_value=event.observed_value,
            threshold=event.threshold,
            duration_seconds=event.duration_seconds,
            payload=dict(event.payload),
        )


def list_anomaly_events(
    db: Session,
    *,
    device_id: str | None = None,
    kind: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    filters: list[str] = []
    params: dict[str, Any] = {"limit": max(1, limit)}
    if device_id is not None:
        filters.append("device_id = :device_id")
        params["device_id"] = device_id
    if kind is not None:
        filters.append("kind = :kind")
        params["kind"] = kind
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
    rows = db.execute(
        text(
            f"""
            SELECT id, device_id, ts, kind, observed_value, threshold, duration_seconds, payload_json
            FROM anomaly_events
            {where_clause}
            ORDER BY ts DESC, id DESC
            LIMIT :limit
            """
        ),
        params,
    ).mappings()
    return [dict(row) for row in rows]
