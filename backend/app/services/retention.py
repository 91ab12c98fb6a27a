from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.core.config import Settings
from app.core.time_windows import to_utc
from app.repositories.ports import RETENTION_TARGETS, RetentionRepository, RetentionTarget


@dataclass
class RetentionResult:
    deleted: dict[str, int] = field(default_factory=dict)
    cutoffs: dict[str, str | None] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def as_details(self) -> dict[str, object]:
        return {
            "deleted": dict(self.deleted),
            "cutoffs": dict(self.cutoffs),
            "errors": list(self.errors),
        }


def retention_days_from_settings(settings: Settings) -> dict[str, int]:
    return {
        "raw_health": settings.retention_raw_health_days,
        "raw_energy": settings.retention_raw_energy_days,
        "rollup_1m": settings.retention_rollup_1m_days,
        "rollup_15m": settings.retention_rollup_15m_days,
        "rollup_1h": settings.retention_rollup_1h_days,
        "daily_energy": settings.retention_daily_energy_days,
        "anomaly_events": settings.retention_anomaly_events_days,
        "alert_events": settings.retention_alert_events_days,
    }


class RetentionSweeper:
    """Age-based deletion, one independent cutoff per table.

    A retention of ``0`` days (or a table missing from ``retention_days``)
    keeps that table forever.
    """

    def __init__(
        self,
        *,
        repository: RetentionRepository,
        retention_days: dict[str, int],
        targets: tuple[RetentionTarget, ...] = RETENTION_TARGETS,
    ):
        self._repository = repository
        self._retention_days = retention_days
        self._targets = targets
        self._logger = logging.getLogger("app.retention")

    def sweep(self, now: datetime) -> RetentionResult:
        now_utc = to_utc(now)
        result = RetentionResult()
        for target in self._targets:
            days = int(self._retention_days.get(target.name, 0) or 0)
            if days <= 0:
                result.deleted[target.name] = 0
                result.cutoffs[target.name] = None
                continue

            cutoff = now_utc - timedelta(days=days)
            result.cutoffs[target.name] = cutoff.isoformat()
            try:
                deleted = self._repository.delete_older_than(target, cutoff)
            except Exception as exc:
                self._logger.exception("retention sweep failed table=%s", target.table_name)
                result.deleted[target.name] = 0
                result.errors.append(f"{target.name}: {exc}")
                continue
            result.deleted[target.name] = deleted
            self._logger.info(
                "retention deleted table=%s rows=%s older_than_days=%s cutoff=%s",
                target.table_name,
                deleted,
                days,
                cutoff.isoformat(),
            )
        return result
