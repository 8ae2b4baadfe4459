"""Break (inactivity window) detection and reporting."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from route_replay.models import BreakAnnotation, BreakPeriod, GeoPoint, PointSource
from route_replay.timeutils import day_key, dt_from_epoch_ms, format_hhmmss, parse_dt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BreakParams:
    """Parameters controlling break detection."""

    tz_name: str
    # Consecutive primary-device points at least this far apart in time form a break (inclusive).
    inactivity_threshold_ms: int = 20 * 60 * 1000

    def __post_init__(self) -> None:
        if self.inactivity_threshold_ms <= 0:
            raise ValueError("inactivity_threshold_ms must be positive")


def detect_breaks(points: Sequence[GeoPoint], params: BreakParams) -> list[BreakPeriod]:
    """Detect inactivity windows from primary-device points.

    Points of other sources are ignored: secondary feeds keep reporting while
    the field worker's own device is idle.

    Args:
        points: Track points (can be unsorted, any source).
        params: Detection parameters.

    Returns:
        Breaks in time order, centred on the mean of their bounding points.
    """

    primary = sorted(
        (p for p in points if p.source is PointSource.PRIMARY_DEVICE),
        key=lambda p: p.timestamp_ms,
    )
    breaks: list[BreakPeriod] = []
    for prev, cur in zip(primary, primary[1:]):
        if cur.timestamp_ms - prev.timestamp_ms >= params.inactivity_threshold_ms:
            breaks.append(
                BreakPeriod(
                    start_ms=prev.timestamp_ms,
                    end_ms=cur.timestamp_ms,
                    center_lat=(prev.latitude + cur.latitude) / 2.0,
                    center_lng=(prev.longitude + cur.longitude) / 2.0,
                )
            )
    return breaks


def resolve_breaks(
    computed: Sequence[BreakPeriod],
    authoritative: Sequence[BreakPeriod] | None,
    *,
    day: str | None = None,
    tz_name: str = "UTC",
) -> list[BreakPeriod]:
    """Pick the break list to show.

    An authoritative list (from the annotation service or an edited breaks
    CSV) replaces the computed one entirely; the two are never merged.
    Authoritative entries starting on another day are ignored, and when none
    are left the computed list is the fallback.
    """

    if authoritative is None:
        return list(computed)
    chosen = list(authoritative)
    if day is not None:
        chosen = [b for b in chosen if day_key(b.start_ms, tz_name) == day]
        if not chosen and authoritative:
            logger.warning("Authoritative break list does not cover %s; using detected breaks", day)
            return list(computed)
    return sorted(chosen, key=lambda b: b.start_ms)


def break_at(breaks: Iterable[BreakPeriod], timestamp_ms: float) -> BreakPeriod | None:
    """Return the break containing timestamp_ms, if any."""

    for b in breaks:
        if b.contains(timestamp_ms):
            return b
    return None


def write_breaks_csv(breaks: Sequence[BreakPeriod], out_path: str | Path, tz_name: str) -> None:
    """Write breaks to CSV for manual editing."""

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "break_id",
                "start_time",
                "end_time",
                "duration_seconds",
                "duration_hhmmss",
                "center_lat",
                "center_lng",
                "place_name",
                "had_conversation",
                "start_epoch_ms",
                "end_epoch_ms",
                "method",
            ],
        )
        w.writeheader()
        for i, b in enumerate(breaks, start=1):
            first = b.annotations[0] if b.annotations else BreakAnnotation()
            w.writerow(
                {
                    "break_id": i,
                    "start_time": dt_from_epoch_ms(b.start_ms, tz_name).isoformat(sep=" "),
                    "end_time": dt_from_epoch_ms(b.end_ms, tz_name).isoformat(sep=" "),
                    "duration_seconds": f"{b.duration_ms / 1000.0:.3f}",
                    "duration_hhmmss": format_hhmmss(b.duration_ms / 1000.0),
                    "center_lat": f"{b.center_lat:.7f}",
                    "center_lng": f"{b.center_lng:.7f}",
                    "place_name": first.place_name,
                    "had_conversation": "1" if first.had_conversation else "0",
                    "start_epoch_ms": b.start_ms,
                    "end_epoch_ms": b.end_ms,
                    "method": b.method,
                }
            )


def iter_breaks_from_csv(csv_path: str | Path, tz_name: str) -> Iterator[BreakPeriod]:
    """Read a breaks CSV (possibly manually edited or externally supplied).

    Manual editing guidance:
        - You may edit start_time/end_time columns directly.
        - If you do, start_epoch_ms/end_epoch_ms will be ignored and recomputed.
    """

    p = Path(csv_path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            start_ms = int(parse_dt(row["start_time"], tz_name).timestamp() * 1000)
            end_ms = int(parse_dt(row["end_time"], tz_name).timestamp() * 1000)
            place = (row.get("place_name") or "").strip()
            conversation = (row.get("had_conversation") or "").strip().lower() in ("1", "true", "yes")
            annotations: tuple[BreakAnnotation, ...] = ()
            if place or conversation:
                annotations = (BreakAnnotation(place_name=place, had_conversation=conversation),)
            yield BreakPeriod(
                start_ms=start_ms,
                end_ms=end_ms,
                center_lat=float(row.get("center_lat", "0") or "0"),
                center_lng=float(row.get("center_lng", "0") or "0"),
                annotations=annotations,
                method=row.get("method", "manual_or_imported") or "manual_or_imported",
            )


@dataclass(frozen=True, slots=True)
class BreaksTotal:
    """Total duration summary."""

    breaks: int
    total_seconds: float

    @property
    def total_hhmmss(self) -> str:
        return format_hhmmss(self.total_seconds)


def sum_breaks(breaks: Iterable[BreakPeriod]) -> BreaksTotal:
    """Sum break durations."""

    total = 0.0
    count = 0
    for b in breaks:
        total += b.duration_ms / 1000.0
        count += 1
    return BreaksTotal(breaks=count, total_seconds=total)
