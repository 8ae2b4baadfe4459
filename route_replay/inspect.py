"""Inspect a tracking CSV and export a readable per-point time series."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from route_replay.ingest import IngestSummary
from route_replay.models import GeoPoint
from route_replay.timeutils import DeltaStats, day_key, delta_stats, dt_from_epoch_ms


@dataclass(frozen=True, slots=True)
class InspectResult:
    """High-level CSV inspection result."""

    fieldnames: Sequence[str]
    rows_total: int
    rows_parsed: int
    rows_skipped: int
    rows_corrupted: int
    min_time_ms: int | None
    max_time_ms: int | None
    delta: DeltaStats | None
    min_lat: float | None
    max_lat: float | None
    min_lon: float | None
    max_lon: float | None
    duplicate_timestamps: int
    points_by_source: dict[str, int]
    devices: int
    days: tuple[str, ...]


def inspect_points(
    points: Sequence[GeoPoint],
    tz_name: str,
    summary: IngestSummary | None = None,
) -> InspectResult:
    """Inspect already-loaded points (optionally with the ingestion summary)."""

    fieldnames: Sequence[str] = summary.fieldnames if summary else ()
    rows_total = summary.rows_total if summary else len(points)
    rows_skipped = summary.rows_skipped if summary else 0
    rows_corrupted = summary.rows_corrupted if summary else 0

    if not points:
        return InspectResult(
            fieldnames=fieldnames,
            rows_total=rows_total,
            rows_parsed=0,
            rows_skipped=rows_skipped,
            rows_corrupted=rows_corrupted,
            min_time_ms=None,
            max_time_ms=None,
            delta=None,
            min_lat=None,
            max_lat=None,
            min_lon=None,
            max_lon=None,
            duplicate_timestamps=0,
            points_by_source={},
            devices=0,
            days=(),
        )

    times = sorted(p.timestamp_ms for p in points)
    dupe = 0
    for i in range(1, len(times)):
        if times[i] == times[i - 1]:
            dupe += 1

    by_source: dict[str, int] = {}
    devices = set()
    for p in points:
        by_source[p.source.value] = by_source.get(p.source.value, 0) + 1
        devices.add(p.device_key)

    lats = [p.latitude for p in points]
    lons = [p.longitude for p in points]
    return InspectResult(
        fieldnames=fieldnames,
        rows_total=rows_total,
        rows_parsed=len(points),
        rows_skipped=rows_skipped,
        rows_corrupted=rows_corrupted,
        min_time_ms=times[0],
        max_time_ms=times[-1],
        delta=delta_stats(times),
        min_lat=min(lats),
        max_lat=max(lats),
        min_lon=min(lons),
        max_lon=max(lons),
        duplicate_timestamps=dupe,
        points_by_source=dict(sorted(by_source.items())),
        devices=len(devices),
        days=tuple(sorted({day_key(t, tz_name) for t in times})),
    )


def export_readable_csv(points: Iterable[GeoPoint], out_path: str | Path, tz_name: str) -> None:
    """Export points to a human-readable CSV.

    Output columns:
        - time_local: ISO datetime (local timezone)
        - epoch_ms, latitude, longitude, accuracy_m, source, device_tag
    """

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "time_local",
                "epoch_ms",
                "latitude",
                "longitude",
                "accuracy_m",
                "source",
                "device_tag",
            ],
        )
        w.writeheader()
        for pt in points:
            w.writerow(
                {
                    "time_local": dt_from_epoch_ms(pt.timestamp_ms, tz_name).isoformat(sep=" "),
                    "epoch_ms": pt.timestamp_ms,
                    "latitude": pt.latitude,
                    "longitude": pt.longitude,
                    "accuracy_m": pt.accuracy_m,
                    "source": pt.source.value,
                    "device_tag": pt.device_tag or "",
                }
            )
