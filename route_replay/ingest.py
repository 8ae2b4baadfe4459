"""Ingestion of raw, sourced location readings (CSV export of the tracking pipeline)."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from route_replay.geo import is_plausible_coordinate
from route_replay.models import GeoPoint, PointSource, Track

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("timestamp", "latitude", "longitude")


@dataclass(frozen=True, slots=True)
class IngestSummary:
    """Quick summary of ingestion."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    rows_corrupted: int
    fieldnames: Sequence[str]


def _parse_int(value: str) -> int:
    return int(float(value.strip()))


def _parse_float(value: str) -> float:
    return float(value.strip())


def point_from_record(row: Mapping[str, str]) -> GeoPoint | None:
    """Build a GeoPoint from one raw record.

    Expected keys (observed in the tracking export):
      - timestamp: epoch milliseconds
      - latitude/longitude: decimal degrees
      - accuracy (optional), source (optional, feed name), deviceTag (optional)

    Returns:
        The point, or None if its coordinates are corrupted.

    Raises:
        KeyError: If a required key is missing.
        ValueError: If a value cannot be parsed or the source is unknown.
    """

    lat = _parse_float(row["latitude"])
    lon = _parse_float(row["longitude"])
    if not is_plausible_coordinate(lat, lon):
        return None
    device_tag = (row.get("deviceTag") or "").strip() or None
    return GeoPoint(
        timestamp_ms=_parse_int(row["timestamp"]),
        latitude=lat,
        longitude=lon,
        accuracy_m=_parse_float(row.get("accuracy", "0") or "0"),
        source=PointSource.parse(row.get("source")),
        device_tag=device_tag,
    )


def load_geo_points(csv_path: str | Path) -> tuple[list[GeoPoint], IngestSummary]:
    """Load all valid points into memory.

    Args:
        csv_path: Path to the exported CSV.

    Returns:
        (points, summary)

    Raises:
        KeyError: If a required column is missing from the header.
    """

    p = Path(csv_path)
    rows_total = 0
    corrupted = 0
    parsed: list[GeoPoint] = []
    fieldnames: Sequence[str] = ()

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        missing = [c for c in REQUIRED_COLUMNS if c not in fieldnames]
        if fieldnames and missing:
            raise KeyError(f"CSV is missing required columns: {missing}. Columns: {list(fieldnames)}")
        for row in reader:
            rows_total += 1
            try:
                pt = point_from_record(row)
            except (KeyError, ValueError, TypeError):
                continue
            if pt is None:
                corrupted += 1
                continue
            parsed.append(pt)

    summary = IngestSummary(
        rows_total=rows_total,
        rows_parsed=len(parsed),
        rows_skipped=rows_total - len(parsed) - corrupted,
        rows_corrupted=corrupted,
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("Skipped %s unparseable rows in %s", summary.rows_skipped, p)
    if summary.rows_corrupted > 0:
        logger.info("Dropped %s rows with corrupted coordinates", summary.rows_corrupted)
    return parsed, summary


def build_track(points: Iterable[GeoPoint], subject_id: str, day: str) -> Track:
    """Sort points by timestamp and freeze them into a Track."""

    pts = sorted(points, key=lambda p: p.timestamp_ms)
    return Track(subject_id=subject_id, day=day, points=tuple(pts))
