"""Trajectory segmentation and driving/walking interval detection."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from route_replay.geo import distance_m, speed_kmh
from route_replay.models import DRIVING, WALKING, ActivityInterval, GeoPoint, Segment, Track
from route_replay.timeutils import dt_from_epoch_ms, format_hhmmss


@dataclass(frozen=True, slots=True)
class SegmenterParams:
    """Parameters controlling segmentation and activity classification."""

    # Consecutive points at least this far apart start a new drawable segment.
    gap_threshold_m: float = 50.0
    driving_speed_kmh: float = 8.0
    # Fast runs closer than this are merged (traffic-light stops).
    merge_window_ms: int = 10 * 60 * 1000
    # A merged driving run must get this far from its first point, otherwise it is GPS jitter.
    min_driving_displacement_m: float = 50.0
    # Sampling gaps of at least this length end a walking interval (the subject was inactive).
    walking_max_gap_ms: int = 20 * 60 * 1000
    min_walking_ms: int = 60 * 1000

    def __post_init__(self) -> None:
        if self.gap_threshold_m <= 0:
            raise ValueError("gap_threshold_m must be positive")
        if self.driving_speed_kmh <= 0:
            raise ValueError("driving_speed_kmh must be positive")


def _make_segment(points: list[GeoPoint]) -> Segment:
    first = points[0]
    return Segment(source=first.source, device_tag=first.device_tag, points=tuple(points))


def split_segments(points: Sequence[GeoPoint], params: SegmenterParams | None = None) -> list[Segment]:
    """Split a time-sorted point list into gap-free, single-source segments.

    A new segment starts whenever two consecutive points are at least
    ``gap_threshold_m`` apart or the source/device changes. The segments are
    ordered, do not overlap and together contain every input point once.

    Args:
        points: Points (sorted here by timestamp, stable for equal stamps).
        params: Segmentation parameters.

    Returns:
        Segments in time order.
    """

    params = params or SegmenterParams()
    if not points:
        return []

    pts = sorted(points, key=lambda p: p.timestamp_ms)
    segments: list[Segment] = []
    current = [pts[0]]
    for prev, cur in zip(pts, pts[1:]):
        if cur.device_key != prev.device_key or distance_m(prev, cur) >= params.gap_threshold_m:
            segments.append(_make_segment(current))
            current = [cur]
        else:
            current.append(cur)
    segments.append(_make_segment(current))
    return segments


def segment_track(track: Track, params: SegmenterParams | None = None) -> list[Segment]:
    """Segment each device partition of a track separately, merged back in time order."""

    out: list[Segment] = []
    for device_points in track.partition_by_device().values():
        out.extend(split_segments(device_points, params))
    out.sort(key=lambda s: (s.start_ms, s.source.value, s.device_tag or ""))
    return out


def detect_driving_intervals(
    points: Sequence[GeoPoint],
    params: SegmenterParams | None = None,
) -> list[ActivityInterval]:
    """Find windows where the subject was driving.

    Consecutive pairs faster than ``driving_speed_kmh`` form raw runs; runs
    separated by less than ``merge_window_ms`` are merged; merged runs whose
    points never get ``min_driving_displacement_m`` away from the run's first
    point are discarded as jitter.
    """

    params = params or SegmenterParams()
    pts = sorted(points, key=lambda p: p.timestamp_ms)
    if len(pts) < 2:
        return []

    runs: list[list[int]] = []
    for i in range(1, len(pts)):
        if speed_kmh(pts[i - 1], pts[i]) <= params.driving_speed_kmh:
            continue
        if runs and runs[-1][1] == i - 1:
            runs[-1][1] = i
        else:
            runs.append([i - 1, i])
    if not runs:
        return []

    merged: list[list[int]] = [runs[0]]
    for start, end in runs[1:]:
        gap_ms = pts[start].timestamp_ms - pts[merged[-1][1]].timestamp_ms
        if gap_ms < params.merge_window_ms:
            merged[-1][1] = end
        else:
            merged.append([start, end])

    out: list[ActivityInterval] = []
    for start, end in merged:
        origin = pts[start]
        if any(distance_m(origin, pts[k]) >= params.min_driving_displacement_m for k in range(start + 1, end + 1)):
            out.append(ActivityInterval(kind=DRIVING, start_ms=origin.timestamp_ms, end_ms=pts[end].timestamp_ms))
    return out


def detect_walking_intervals(
    points: Sequence[GeoPoint],
    driving: Iterable[ActivityInterval],
    params: SegmenterParams | None = None,
) -> list[ActivityInterval]:
    """Complement of the driving intervals within continuously sampled stretches."""

    params = params or SegmenterParams()
    pts = sorted(points, key=lambda p: p.timestamp_ms)
    if len(pts) < 2:
        return []

    blocks: list[tuple[int, int]] = []
    block_start = pts[0].timestamp_ms
    for prev, cur in zip(pts, pts[1:]):
        if cur.timestamp_ms - prev.timestamp_ms >= params.walking_max_gap_ms:
            blocks.append((block_start, prev.timestamp_ms))
            block_start = cur.timestamp_ms
    blocks.append((block_start, pts[-1].timestamp_ms))

    drives = sorted(driving, key=lambda d: d.start_ms)
    out: list[ActivityInterval] = []
    for block_start, block_end in blocks:
        cursor = block_start
        for d in drives:
            if d.end_ms <= block_start or d.start_ms >= block_end:
                continue
            if d.start_ms > cursor:
                out.append(ActivityInterval(kind=WALKING, start_ms=cursor, end_ms=d.start_ms))
            cursor = max(cursor, d.end_ms)
        if block_end > cursor:
            out.append(ActivityInterval(kind=WALKING, start_ms=cursor, end_ms=block_end))
    return [w for w in out if w.duration_ms >= params.min_walking_ms]


@dataclass(frozen=True, slots=True)
class ActivitySummary:
    driving_ms: int
    walking_ms: int
    driving_count: int
    walking_count: int


def summarize_activity(intervals: Iterable[ActivityInterval]) -> ActivitySummary:
    """Total driving/walking time."""

    driving_ms = walking_ms = driving_n = walking_n = 0
    for iv in intervals:
        if iv.kind == DRIVING:
            driving_ms += iv.duration_ms
            driving_n += 1
        elif iv.kind == WALKING:
            walking_ms += iv.duration_ms
            walking_n += 1
    return ActivitySummary(
        driving_ms=driving_ms,
        walking_ms=walking_ms,
        driving_count=driving_n,
        walking_count=walking_n,
    )


def write_segments_csv(segments: Sequence[Segment], out_path: str | Path, tz_name: str) -> None:
    """Write segment boundaries to CSV."""

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "segment_index",
                "source",
                "device_tag",
                "start_time",
                "end_time",
                "duration_hhmmss",
                "points",
                "start_epoch_ms",
                "end_epoch_ms",
            ],
        )
        w.writeheader()
        for i, s in enumerate(segments, start=1):
            w.writerow(
                {
                    "segment_index": i,
                    "source": s.source.value,
                    "device_tag": s.device_tag or "",
                    "start_time": dt_from_epoch_ms(s.start_ms, tz_name).isoformat(sep=" "),
                    "end_time": dt_from_epoch_ms(s.end_ms, tz_name).isoformat(sep=" "),
                    "duration_hhmmss": format_hhmmss((s.end_ms - s.start_ms) / 1000.0),
                    "points": len(s.points),
                    "start_epoch_ms": s.start_ms,
                    "end_epoch_ms": s.end_ms,
                }
            )
