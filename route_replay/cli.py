"""Command-line interface for route_replay.

Run:
    python -m route_replay inspect --csv track.csv
    python -m route_replay replay --csv track.csv --day 2025-10-14
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from time import perf_counter

from route_replay.breaks import (
    BreakParams,
    BreaksTotal,
    detect_breaks,
    iter_breaks_from_csv,
    resolve_breaks,
    sum_breaks,
    write_breaks_csv,
)
from route_replay.camera import CameraParams
from route_replay.clock import ClockParams
from route_replay.ingest import build_track, load_geo_points
from route_replay.inspect import export_readable_csv, inspect_points
from route_replay.models import DEFAULT_TZ, Track
from route_replay.replay import ReplayConfig, ReplayFrame, ReplaySession, motion_points, parse_event_times, run_loop
from route_replay.segments import (
    SegmenterParams,
    detect_driving_intervals,
    detect_walking_intervals,
    segment_track,
    summarize_activity,
    write_segments_csv,
)
from route_replay.snapping import (
    SOURCE_FILTER_ALL,
    DirectoryBackup,
    RoadsApiConfig,
    RoadSnapper,
    SnapCacheStore,
    normalize_source_filter,
)
from route_replay.timeutils import day_key, dt_from_epoch_ms, format_hhmmss, parse_dt

logger = logging.getLogger(__name__)


class InputError(Exception):
    """User input that cannot be processed (reported with exit code 2)."""


def _configure_logging(log_level: str) -> None:
    level_name = (log_level or "WARNING").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise ValueError(
            f"Invalid --log-level: {log_level!r}. "
            "Allowed values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        )
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", force=True)


def _load_track(args: argparse.Namespace) -> Track:
    """Load the CSV and cut out one day (the first day when --day is omitted)."""

    if not Path(args.csv).exists():
        raise InputError(f"CSV not found: {args.csv}")
    points, _ = load_geo_points(args.csv)
    if not points:
        raise InputError(f"No valid points in {args.csv}")
    day = args.day or day_key(min(p.timestamp_ms for p in points), args.tz)
    day_points = [p for p in points if day_key(p.timestamp_ms, args.tz) == day]
    if not day_points:
        raise InputError(f"No points on {day} in {args.csv}")
    return build_track(day_points, args.subject, day)


def _segmenter_params(args: argparse.Namespace) -> SegmenterParams:
    return SegmenterParams(
        gap_threshold_m=args.gap_m,
        driving_speed_kmh=args.driving_speed_kmh,
        merge_window_ms=int(args.merge_window_minutes * 60_000),
        min_driving_displacement_m=args.min_driving_displacement_m,
        # walking stretches end where breaks begin
        walking_max_gap_ms=int(args.threshold_minutes * 60_000),
    )


def _authoritative_breaks(args: argparse.Namespace):
    if not getattr(args, "authoritative_breaks", None):
        return None
    if not Path(args.authoritative_breaks).exists():
        raise InputError(f"Breaks CSV not found: {args.authoritative_breaks}")
    return list(iter_breaks_from_csv(args.authoritative_breaks, args.tz))


def _fmt_ms(epoch_ms: float, tz_name: str) -> str:
    return dt_from_epoch_ms(epoch_ms, tz_name).strftime("%Y-%m-%d %H:%M:%S")


def _cmd_inspect(args: argparse.Namespace) -> int:
    if not Path(args.csv).exists():
        raise InputError(f"CSV not found: {args.csv}")
    points, summary = load_geo_points(args.csv)
    res = inspect_points(points, args.tz, summary)

    print("### CSV columns")
    print(", ".join(summary.fieldnames))
    print()

    print("### Rows")
    print(
        f"total_rows={summary.rows_total}, parsed={summary.rows_parsed}, "
        f"skipped={summary.rows_skipped}, corrupted={summary.rows_corrupted}"
    )
    print()

    if res.min_time_ms is not None and res.max_time_ms is not None:
        print("### Time range (local time zone)")
        print(f"start={_fmt_ms(res.min_time_ms, args.tz)}, end={_fmt_ms(res.max_time_ms, args.tz)}")
        print(f"days={', '.join(res.days)}")
        print()

    if res.delta is not None:
        print("### Sampling interval (seconds)")
        print(
            f"count={res.delta.count}, min={res.delta.min_s:.3f}, median={res.delta.median_s:.3f}, "
            f"p95={res.delta.p95_s:.3f}, max={res.delta.max_s:.3f}"
        )
        print()

    print("### Sources")
    for source, n in res.points_by_source.items():
        print(f"{source}={n}")
    print(f"devices={res.devices}")
    print()

    print("### Bounding box")
    print(f"lat=[{res.min_lat}, {res.max_lat}], lon=[{res.min_lon}, {res.max_lon}]")
    print()

    print("### Duplicate timestamps")
    print(res.duplicate_timestamps)
    print()

    if args.json:
        payload = asdict(res) | {"fieldnames": list(res.fieldnames), "days": list(res.days)}
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_export_readable(args: argparse.Namespace) -> int:
    if not Path(args.csv).exists():
        raise InputError(f"CSV not found: {args.csv}")
    points, _ = load_geo_points(args.csv)
    export_readable_csv(sorted(points, key=lambda p: p.timestamp_ms), args.out, args.tz)
    print(f"Exported: {args.out}")
    return 0


def _cmd_segments(args: argparse.Namespace) -> int:
    track = _load_track(args)
    params = _segmenter_params(args)
    segments = segment_track(track, params)
    motion = motion_points(track.partition_by_device())
    driving = detect_driving_intervals(motion, params)
    walking = detect_walking_intervals(motion, driving, params)
    activity = summarize_activity(driving + walking)

    write_segments_csv(segments, args.out, args.tz)
    print(f"{track.day}: points={len(track.points)}, segments={len(segments)}")
    print(
        f"driving={activity.driving_count} ({format_hhmmss(activity.driving_ms / 1000.0)}), "
        f"walking={activity.walking_count} ({format_hhmmss(activity.walking_ms / 1000.0)})"
    )
    for iv in sorted(driving + walking, key=lambda a: a.start_ms):
        print(f"  {iv.kind:<8} {_fmt_ms(iv.start_ms, args.tz)} -> {_fmt_ms(iv.end_ms, args.tz)}")
    print(f"Exported: {args.out}")
    return 0


def _cmd_breaks(args: argparse.Namespace) -> int:
    track = _load_track(args)
    params = BreakParams(tz_name=args.tz, inactivity_threshold_ms=int(args.threshold_minutes * 60_000))
    computed = detect_breaks(track.points, params)
    breaks = resolve_breaks(computed, _authoritative_breaks(args), day=track.day, tz_name=args.tz)
    write_breaks_csv(breaks, args.out, args.tz)
    total = sum_breaks(breaks)
    print(f"{track.day}: breaks={total.breaks}, total={total.total_hhmmss} ({total.total_seconds:.1f}s)")
    print(f"Exported: {args.out} (start_time/end_time may be edited by hand before sum-breaks)")
    return 0


def _cmd_sum_breaks(args: argparse.Namespace) -> int:
    if not Path(args.breaks).exists():
        raise InputError(f"Breaks CSV not found: {args.breaks}")
    breaks = list(iter_breaks_from_csv(args.breaks, args.tz))

    if args.range_start is not None or args.range_end is not None:
        start_ms = parse_dt(args.range_start, args.tz).timestamp() * 1000 if args.range_start else None
        end_ms = parse_dt(args.range_end, args.tz).timestamp() * 1000 if args.range_end else None

        def clipped_seconds(b_start: int, b_end: int) -> float:
            lo = b_start if start_ms is None else max(b_start, int(start_ms))
            hi = b_end if end_ms is None else min(b_end, int(end_ms))
            return max(0.0, (hi - lo) / 1000.0)

        total = BreaksTotal(breaks=len(breaks), total_seconds=sum(clipped_seconds(b.start_ms, b.end_ms) for b in breaks))
    else:
        total = sum_breaks(breaks)

    print(f"breaks={total.breaks}, total={total.total_hhmmss} ({total.total_seconds:.1f}s)")
    return 0


def _build_snapper(args: argparse.Namespace) -> RoadSnapper:
    backup = DirectoryBackup(args.backup_dir) if args.backup_dir else None
    store = SnapCacheStore(args.cache_dir, backup, tz_name=args.tz)
    store.init()
    overrides: dict[str, object] = {"max_points_per_call": args.max_points_per_call}
    if args.api_key:
        overrides["api_key"] = args.api_key
    return RoadSnapper(store, RoadsApiConfig.from_env(**overrides))


def _cmd_snap(args: argparse.Namespace) -> int:
    track = _load_track(args)
    source_filter = normalize_source_filter(args.source)
    snapper = _build_snapper(args)
    try:
        info = snapper.cache_info(track.subject_id, track.day, source_filter)
        print(
            f"Cache: segments={info['cachedSegmentCount']}, api_calls={info['apiCallsUsed']}, "
            f"cost={info['costCents']:.2f}ct",
            file=sys.stderr,
            flush=True,
        )
        started = perf_counter()
        result = snapper.snap(track.subject_id, track.day, track.points, source_filter)
        elapsed = perf_counter() - started
    finally:
        snapper.close()
        snapper.store.dispose()

    print(
        f"{track.day} [{source_filter}]: segments={result.total_segments}, cached={result.cached_segments}, "
        f"hit_ratio={result.cache_hit_ratio:.0%}, api_calls={result.api_calls_used}, "
        f"cost={result.cost_cents:.2f}ct, elapsed={elapsed:.1f}s"
    )
    if result.status_message:
        print(result.status_message, file=sys.stderr)
    return 0


def _print_progress(frame: ReplayFrame, tz_name: str) -> None:
    s = frame.state
    span = max(1, s.track_end_ms - s.track_start_ms)
    pct = 100.0 * (s.current_ms - s.track_start_ms) / span
    highlighted = sum(1 for b in frame.breaks if b.highlighted)
    flash = " flash" if s.active_event_ms is not None else ""
    msg = (
        f"\r{_fmt_ms(s.current_ms, tz_name)} ({pct:5.1f}%) {s.phase.value:<8} "
        f"markers={len(frame.positions)} activity={frame.activity or '-':<8} in_break={highlighted}{flash}"
    )
    print(msg, end="", file=sys.stderr, flush=True)


def _cmd_replay(args: argparse.Namespace) -> int:
    track = _load_track(args)
    config = ReplayConfig(
        tz_name=args.tz,
        segmenter=_segmenter_params(args),
        inactivity_threshold_ms=int(args.threshold_minutes * 60_000),
        clock=ClockParams(rate_seconds_per_hour=args.rate),
        camera=CameraParams(),
        dwell_on_breaks=args.dwell_on_breaks,
    )
    events = parse_event_times(args.events, args.tz) if args.events else []
    session = ReplaySession(track, config, authoritative_breaks=_authoritative_breaks(args), events=events)

    if args.snap:
        snapper = _build_snapper(args)
        try:
            future = snapper.submit(track.subject_id, track.day, track.points, args.source)
            result = future.result()
            session.apply_snap_result(result, snapper.tracker)
        finally:
            snapper.close()
            snapper.store.dispose()

    if args.focus_break is not None:
        if not 0 <= args.focus_break < len(session.breaks):
            raise InputError(f"--focus-break must be within [0, {len(session.breaks) - 1}]")
        session.focus_break(args.focus_break)
    elif args.start:
        session.seek(parse_dt(args.start, args.tz).timestamp() * 1000)

    print(
        f"{track.day}: points={len(track.points)}, segments={len(session.segments)}, "
        f"breaks={len(session.breaks)}, rate={args.rate}s/h",
        file=sys.stderr,
        flush=True,
    )
    last_print = {"at": 0.0}
    flashed: set[int] = set()

    def on_frame(frame: ReplayFrame) -> None:
        if frame.state.active_event_ms is not None:
            flashed.add(frame.state.active_event_ms)
        now = perf_counter()
        if now - last_print["at"] >= args.print_every:
            _print_progress(frame, args.tz)
            last_print["at"] = now

    try:
        frame = run_loop(session, args.fps, on_frame, max_ticks=args.max_ticks)
    except KeyboardInterrupt:
        session.stop()
        frame = session.frame()
        print("\nInterrupted; playback stopped.", file=sys.stderr, flush=True)
    _print_progress(frame, args.tz)
    print(file=sys.stderr)

    print(
        f"stopped at {_fmt_ms(frame.state.current_ms, args.tz)} ({frame.state.phase.value}, "
        f"{frame.state.pause_reason.value}); camera recomputes={session.camera.recompute_count}; "
        f"snap api_calls={frame.snap.api_calls_used} cost={frame.snap.cost_cents:.2f}ct"
        f"; event flashes={len(flashed)}/{len(session.events)}"
    )
    return 0


def _add_track_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--csv", type=str, default="track.csv", help="Input CSV path")
    p.add_argument("--day", type=str, default=None, help="Day to use (YYYY-MM-DD); default: first day in the CSV")
    p.add_argument("--subject", type=str, default="default", help="Subject id (part of the snap cache key)")
    p.add_argument("--tz", type=str, default=DEFAULT_TZ, help=f"Time zone (IANA), default {DEFAULT_TZ}")


def _add_segmenter_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--gap-m", type=float, default=50.0, help="Distance that splits segments (meters)")
    p.add_argument("--driving-speed-kmh", type=float, default=8.0, help="Speed above which a pair counts as driving")
    p.add_argument(
        "--merge-window-minutes",
        type=float,
        default=10.0,
        help="Driving runs closer than this are merged (traffic-light stops)",
    )
    p.add_argument(
        "--min-driving-displacement-m",
        type=float,
        default=50.0,
        help="Driving runs that never get this far from their start are GPS jitter",
    )


def _add_snap_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--source", type=str, default=SOURCE_FILTER_ALL, help="Source filter: all or a source name")
    p.add_argument("--cache-dir", type=str, default="snap_cache", help="Directory of the month cache files")
    p.add_argument("--backup-dir", type=str, default=None, help="Optional mirror directory (e.g. a synced drive)")
    p.add_argument("--api-key", type=str, default=None, help="Road snapping API key (default: $ROADS_API_KEY)")
    p.add_argument("--max-points-per-call", type=int, default=100, help="Coordinates per API call (<= 100)")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="route_replay")
    p.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_ins = sub.add_parser("inspect", help="Columns, time range, sampling interval and sources of a tracking CSV")
    p_ins.add_argument("--csv", type=str, default="track.csv", help="Input CSV path")
    p_ins.add_argument("--tz", type=str, default=DEFAULT_TZ, help=f"Time zone (IANA), default {DEFAULT_TZ}")
    p_ins.add_argument("--json", action="store_true", help="Also print JSON (for post-processing)")
    p_ins.set_defaults(func=_cmd_inspect)

    p_exp = sub.add_parser("export-readable", help="Export points with readable local times")
    p_exp.add_argument("--csv", type=str, default="track.csv", help="Input CSV path")
    p_exp.add_argument("--out", type=str, default="readable.csv", help="Output CSV path")
    p_exp.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Time zone (IANA)")
    p_exp.set_defaults(func=_cmd_export_readable)

    p_seg = sub.add_parser("segments", help="Split a day into drawable segments and driving/walking intervals")
    _add_track_args(p_seg)
    _add_segmenter_args(p_seg)
    p_seg.add_argument(
        "--threshold-minutes",
        type=float,
        default=20.0,
        help="Sampling gaps of at least this length are breaks, not walking",
    )
    p_seg.add_argument("--out", type=str, default="segments.csv", help="Output segments.csv path")
    p_seg.set_defaults(func=_cmd_segments)

    p_br = sub.add_parser("breaks", help="Detect inactivity breaks of a day and export breaks.csv")
    _add_track_args(p_br)
    p_br.add_argument(
        "--threshold-minutes",
        type=float,
        default=20.0,
        help="Primary-device gaps of at least this length are breaks",
    )
    p_br.add_argument(
        "--authoritative-breaks",
        type=str,
        default=None,
        help="Breaks CSV that replaces the detected breaks (e.g. from the annotation service)",
    )
    p_br.add_argument("--out", type=str, default="breaks.csv", help="Output breaks.csv path")
    p_br.set_defaults(func=_cmd_breaks)

    p_sb = sub.add_parser("sum-breaks", help="Sum a breaks.csv (manual edits allowed)")
    p_sb.add_argument("--breaks", type=str, default="breaks.csv", help="breaks.csv path")
    p_sb.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Time zone (IANA)")
    p_sb.add_argument("--range-start", type=str, default=None, help="Only count overlap after this time")
    p_sb.add_argument("--range-end", type=str, default=None, help="Only count overlap before this time")
    p_sb.set_defaults(func=_cmd_sum_breaks)

    p_sn = sub.add_parser("snap", help="Snap large gaps of a day to roads (cached per month)")
    _add_track_args(p_sn)
    _add_snap_args(p_sn)
    p_sn.set_defaults(func=_cmd_snap)

    p_rp = sub.add_parser("replay", help="Play a day back headless and report progress")
    _add_track_args(p_rp)
    _add_segmenter_args(p_rp)
    _add_snap_args(p_rp)
    p_rp.add_argument("--rate", type=float, default=5.0, help="Wall seconds per hour of track time")
    p_rp.add_argument("--fps", type=float, default=30.0, help="Ticks per second")
    p_rp.add_argument("--threshold-minutes", type=float, default=20.0, help="Break threshold (minutes)")
    p_rp.add_argument("--authoritative-breaks", type=str, default=None, help="Breaks CSV replacing detected breaks")
    p_rp.add_argument("--snap", action="store_true", help="Snap gaps to roads before playing")
    p_rp.add_argument("--dwell-on-breaks", action="store_true", help="Pause briefly at every break start")
    p_rp.add_argument("--focus-break", type=int, default=None, help="Only play the break with this index")
    p_rp.add_argument(
        "--events",
        type=str,
        default=None,
        help="Comma-separated event times (epoch ms or local datetimes) to flash and dwell on",
    )
    p_rp.add_argument("--start", type=str, default=None, help="Start time (e.g. 2025-10-14 09:30:00)")
    p_rp.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks")
    p_rp.add_argument("--print-every", type=float, default=1.0, help="Progress output interval (seconds)")
    p_rp.set_defaults(func=_cmd_replay)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        _configure_logging(args.log_level)
        return int(args.func(args))
    except (InputError, KeyError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
