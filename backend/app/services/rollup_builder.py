"""Cascading power rollups: raw health samples -> 1m -> 15m -> 1h.

Each level resumes from its own watermark (the newest window already stored
at that level) and walks forward one aligned window at a time up to, but not
including, the window that is still open at ``now``. Rows are written with a
create-if-absent insert, so repeated or overlapping runs never duplicate a
(device, window) pair and never rewrite one.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from app.core.config import Settings
from app.core.time_windows import floor_to_window, iter_windows, to_utc
from app.repositories.ports import (
    RESOLUTIONS_BY_NAME,
    ROLLUP_RESOLUTIONS,
    HealthSample,
    RawSampleRepository,
    RollupRepository,
    RollupResolution,
    RollupRow,
)

_MINUTES_PER_HOUR = 60.0
_WATTS_PER_KILOWATT = 1000.0


@dataclass
class RollupLevelResult:
    resolution: str
    from_ts: datetime | None = None
    to_ts: datetime | None = None
    windows_scanned: int = 0
    rows_created: int = 0
    errors: list[str] = field(default_factory=list)

    def as_details(self) -> dict[str, object]:
        return {
            "from_ts": self.from_ts.isoformat() if self.from_ts else None,
            "to_ts": self.to_ts.isoformat() if self.to_ts else None,
            "windows_scanned": self.windows_scanned,
            "rows_created": self.rows_created,
            "errors": list(self.errors),
        }


def lookbacks_from_settings(settings: Settings) -> dict[str, timedelta]:
    return {
        "1m": timedelta(minutes=settings.rollup_1m_initial_lookback_minutes),
        "15m": timedelta(minutes=settings.rollup_15m_initial_lookback_minutes),
        "1h": timedelta(minutes=settings.rollup_1h_initial_lookback_minutes),
    }


class RollupBuilder:
    def __init__(
        self,
        *,
        samples: RawSampleRepository,
        rollups: RollupRepository,
        lookbacks: dict[str, timedelta],
    ):
        self._samples = samples
        self._rollups = rollups
        self._lookbacks = lookbacks
        self._logger = logging.getLogger("app.rollup_builder")

    def build_rollups(
        self,
        now: datetime,
        *,
        resolutions: Iterable[str] | None = None,
    ) -> list[RollupLevelResult]:
        wanted = set(resolutions) if resolutions is not None else set(RESOLUTIONS_BY_NAME)
        unknown = wanted - set(RESOLUTIONS_BY_NAME)
        if unknown:
            raise ValueError(f"Unsupported rollup resolution(s): {sorted(unknown)}")

        results: list[RollupLevelResult] = []
        # Order matters: each level reads the rows the previous level just wrote.
        for resolution in ROLLUP_RESOLUTIONS:
            if resolution.name not in wanted:
                continue
            results.append(self.build_level(resolution, now))
        return results

    def build_level(self, resolution: RollupResolution, now: datetime) -> RollupLevelResult:
        now_utc = to_utc(now)
        end = floor_to_window(now_utc, resolution.seconds)
        start = self._resume_from(resolution, now_utc)
        result = RollupLevelResult(resolution=resolution.name, from_ts=start, to_ts=end)

        for window_start in iter_windows(start, end, resolution.seconds):
            result.windows_scanned += 1
            window_end = window_start + timedelta(seconds=resolution.seconds)
            try:
                rows = self._aggregate_window(resolution, window_start, window_end)
            except Exception as exc:
                self._logger.exception(
                    "rollup source read failed resolution=%s window_start=%s",
                    resolution.name,
                    window_start.isoformat(),
                )
                result.errors.append(f"{window_start.isoformat()}: {exc}")
                continue

            for row in rows:
                try:
                    if self._rollups.create_if_absent(resolution, row):
                        result.rows_created += 1
                except Exception as exc:
                    self._logger.exception(
                        "rollup write failed resolution=%s device_id=%s window_start=%s",
                        resolution.name,
                        row.device_id,
                        window_start.isoformat(),
                    )
                    result.errors.append(f"{row.device_id}@{window_start.isoformat()}: {exc}")

        self._logger.info(
            "rollup level done resolution=%s from=%s to=%s windows=%s created=%s errors=%s",
            resolution.name,
            start.isoformat(),
            end.isoformat(),
            result.windows_scanned,
            result.rows_created,
            len(result.errors),
        )
        return result

    def _resume_from(self, resolution: RollupResolution, now: datetime) -> datetime:
        latest = self._rollups.latest_window_start(resolution)
        if latest is not None:
            return floor_to_window(latest, resolution.seconds) + timedelta(seconds=resolution.seconds)
        lookback = self._lookbacks.get(resolution.name, timedelta(seconds=resolution.seconds))
        return floor_to_window(now - lookback, resolution.seconds)

    def _aggregate_window(
        self,
        resolution: RollupResolution,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RollupRow]:
        if resolution.parent is None:
            samples = self._samples.list_health_samples_in_window(from_ts=window_start, to_ts=window_end)
            by_device: dict[str, list[HealthSample]] = defaultdict(list)
            for sample in samples:
                by_device[sample.device_id].append(sample)
            rows = [aggregate_raw_window(device_id, window_start, items) for device_id, items in by_device.items()]
        else:
            child = RESOLUTIONS_BY_NAME[resolution.parent]
            children = self._rollups.list_rollups(child, from_ts=window_start, to_ts=window_end)
            by_device_children: dict[str, list[RollupRow]] = defaultdict(list)
            for item in children:
                by_device_children[item.device_id].append(item)
            rows = [
                aggregate_child_rollups(device_id, window_start, items)
                for device_id, items in by_device_children.items()
            ]
        return [row for row in rows if row is not None]


def aggregate_raw_window(
    device_id: str,
    window_start: datetime,
    samples: Iterable[HealthSample],
) -> RollupRow | None:
    powers = [sample.power_w for sample in samples if sample.power_w is not None]
    if not powers:
        return None
    avg_power_w = sum(powers) / len(powers)
    return RollupRow(
        device_id=device_id,
        window_start=window_start,
        avg_power_w=avg_power_w,
        min_power_w=min(powers),
        max_power_w=max(powers),
        # One minute of the average power, W*min -> kWh.
        energy_kwh=avg_power_w / _MINUTES_PER_HOUR / _WATTS_PER_KILOWATT,
    )


def aggregate_child_rollups(
    device_id: str,
    window_start: datetime,
    children: Iterable[RollupRow],
) -> RollupRow | None:
    items = list(children)
    if not items:
        return None
    averages = [item.avg_power_w for item in items if item.avg_power_w is not None]
    minimums = [item.min_power_w for item in items if item.min_power_w is not None]
    maximums = [item.max_power_w for item in items if item.max_power_w is not None]
    energies = [item.energy_kwh for item in items if item.energy_kwh is not None]
    return RollupRow(
        device_id=device_id,
        window_start=window_start,
        # Mean of child means, not sample-weighted; historical numbers depend on it.
        avg_power_w=(sum(averages) / len(averages)) if averages else None,
        min_power_w=min(minimums) if minimums else None,
        max_power_w=max(maximums) if maximums else None,
        energy_kwh=sum(energies) if energies else None,
    )
