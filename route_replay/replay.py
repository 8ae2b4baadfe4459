"""Replay session: one subject-day wired into clock, camera, interpolation and snapping.

The session is the single owner of playback state. A cooperative loop
(:func:`run_loop`, or a UI refresh callback) calls :meth:`ReplaySession.tick`;
everything asynchronous (viewport fits, snap requests) reports back through the
framing signal or :meth:`ReplaySession.apply_snap_result`.
"""

from __future__ import annotations

import logging
import time
from bisect import bisect_right
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Sequence

from route_replay.breaks import BreakParams, detect_breaks, resolve_breaks
from route_replay.camera import CameraFramingController, CameraParams, FramingDecision, FramingSignal, ViewportSurface
from route_replay.clock import ClockParams, PlaybackClock
from route_replay.geo import bearing_deg
from route_replay.interpolate import SnappedChain, TrackInterpolator
from route_replay.models import (
    DEFAULT_TZ,
    FULL_ROUTE_COLOR,
    SOURCE_POLICIES,
    ActivityInterval,
    BreakPeriod,
    GeoPoint,
    PlaybackState,
    PointSource,
    SnapStats,
    SourcePolicy,
    Track,
)
from route_replay.segments import SegmenterParams, detect_driving_intervals, detect_walking_intervals, segment_track
from route_replay.snapping import SnapRequestTracker, SnapResult
from route_replay.timeutils import parse_dt

logger = logging.getLogger(__name__)

DeviceKey = tuple[PointSource, "str | None"]


@dataclass(frozen=True, slots=True)
class ReplayConfig:
    """All tunables of a replay session."""

    tz_name: str = DEFAULT_TZ
    segmenter: SegmenterParams = field(default_factory=SegmenterParams)
    inactivity_threshold_ms: int = 20 * 60 * 1000
    clock: ClockParams = field(default_factory=ClockParams)
    camera: CameraParams = field(default_factory=CameraParams)
    # Pause on every break start like on other significant moments.
    dwell_on_breaks: bool = False

    @property
    def break_params(self) -> BreakParams:
        return BreakParams(tz_name=self.tz_name, inactivity_threshold_ms=self.inactivity_threshold_ms)

    @property
    def activity_params(self) -> SegmenterParams:
        """Segmenter params whose walking stretches end where breaks begin."""

        return replace(self.segmenter, walking_max_gap_ms=self.inactivity_threshold_ms)


@dataclass(frozen=True, slots=True)
class MarkerPosition:
    """Current position of one source/device."""

    source: PointSource
    device_tag: str | None
    point: GeoPoint
    policy: SourcePolicy
    heading_deg: float | None = None

    @property
    def label(self) -> str:
        return self.device_tag or self.source.value


@dataclass(frozen=True, slots=True)
class Polyline:
    """Draw request for one path piece."""

    coords: tuple[tuple[float, float], ...]
    color: str
    opacity: float
    weight: int
    # "segment", "snapped" or "straight" (snap fallback)
    kind: str = "segment"


@dataclass(frozen=True, slots=True)
class BreakMarker:
    index: int
    period: BreakPeriod
    highlighted: bool
    focused: bool


@dataclass(frozen=True, slots=True)
class EventMarker:
    """A significant moment (e.g. a photo taken) placed on the lead device's path."""

    timestamp_ms: int
    latitude: float
    longitude: float
    # true while playback dwells on this moment
    flashing: bool = False


@dataclass(frozen=True, slots=True)
class ReplayFrame:
    """Everything the consumer layer needs to draw one instant."""

    state: PlaybackState
    positions: tuple[MarkerPosition, ...]
    polylines: tuple[Polyline, ...]
    breaks: tuple[BreakMarker, ...]
    snap: SnapStats
    activity: str | None = None
    framing: FramingDecision | None = None
    events: tuple[EventMarker, ...] = ()


def motion_points(partitions: dict[DeviceKey, list[GeoPoint]]) -> list[GeoPoint]:
    """Points that drive activity detection and camera framing.

    The primary device when it reported anything, otherwise the busiest partition.
    """

    primary: list[GeoPoint] = []
    for (source, _tag), pts in partitions.items():
        if source is PointSource.PRIMARY_DEVICE:
            primary.extend(pts)
    if primary:
        return sorted(primary, key=lambda p: p.timestamp_ms)
    return max(partitions.values(), key=len)


def parse_event_times(text: str, tz_name: str) -> list[int]:
    """Parse event times separated by commas or newlines.

    Each item is epoch milliseconds or a local datetime such as
    "2025-10-14 09:30:00".

    Raises:
        ValueError: If an item cannot be parsed.
    """

    out: list[int] = []
    for item in text.replace("\n", ",").split(","):
        s = item.strip()
        if not s:
            continue
        if s.isdigit():
            out.append(int(s))
        else:
            out.append(int(parse_dt(s, tz_name).timestamp() * 1000))
    return sorted(out)


class ReplaySession:
    """Replay of one track.

    Args:
        track: The subject-day to replay (must contain points).
        config: Tunables.
        surface: Map surface receiving viewport fits.
        authoritative_breaks: Break list from the annotation service; None when
            none was supplied.
        events: Significant moments to dwell on.
        wall_clock: Monotonic seconds source shared by clock and camera.
    """

    def __init__(
        self,
        track: Track,
        config: ReplayConfig | None = None,
        *,
        surface: ViewportSurface | None = None,
        authoritative_breaks: Sequence[BreakPeriod] | None = None,
        events: Iterable[int] = (),
        wall_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not track.points:
            raise ValueError(f"No points for {track.subject_id} on {track.day}")
        self.track = track
        self.config = config or ReplayConfig()
        self._wall_clock = wall_clock
        cfg = self.config

        self.segments = segment_track(track, cfg.segmenter)
        partitions = track.partition_by_device()
        motion = motion_points(partitions)
        activity_params = cfg.activity_params
        self.driving = detect_driving_intervals(motion, activity_params)
        self.walking = detect_walking_intervals(motion, self.driving, activity_params)
        self.activity: list[ActivityInterval] = sorted(self.driving + self.walking, key=lambda a: a.start_ms)

        computed = detect_breaks(track.points, cfg.break_params)
        self.breaks = resolve_breaks(computed, authoritative_breaks, day=track.day, tz_name=cfg.tz_name)

        self._interpolators = {key: TrackInterpolator(pts) for key, pts in partitions.items()}
        self._device_timestamps = {key: {p.timestamp_ms for p in pts} for key, pts in partitions.items()}

        self.signal = FramingSignal(cfg.camera.busy_timeout_s)
        self.camera = CameraFramingController(cfg.camera, surface, self.signal, wall_clock)
        self.camera.reset(motion)
        self._lead_key = motion[0].device_key

        self.clock = PlaybackClock(
            track.start_ms,
            track.end_ms,
            cfg.clock,
            timestamps=[p.timestamp_ms for p in track.points],
            framing=self.signal,
            wall_clock=wall_clock,
        )
        self.events: list[int] = sorted({int(ts) for ts in events if track.start_ms <= ts <= track.end_ms})
        for ts in self.events:
            self.clock.register_event(ts)
        if cfg.dwell_on_breaks:
            for b in self.breaks:
                self.clock.register_event(b.start_ms)

        self._snap_stats = SnapStats()
        self._snap_request_id = 0
        self._chains: list[tuple[DeviceKey, SnappedChain, bool]] = []

        logger.info(
            "Replay %s %s: %d points, %d segments, %d breaks, %d driving intervals",
            track.subject_id,
            track.day,
            len(track.points),
            len(self.segments),
            len(self.breaks),
            len(self.driving),
        )

    # -------------------------------------------------------------- controls

    def play(self, now: float | None = None) -> None:
        self.clock.play(now)

    def pause(self) -> None:
        self.clock.pause()

    def stop(self) -> None:
        self.clock.stop()

    def seek(self, timestamp_ms: float, now: float | None = None) -> None:
        self.clock.seek(timestamp_ms, now)
        self.camera.force()

    def step(self, direction: int) -> None:
        self.clock.step(direction)
        self.camera.force()

    def set_rate(self, rate_seconds_per_hour: float, now: float | None = None) -> None:
        self.clock.set_rate(rate_seconds_per_hour, now)

    def focus_break(self, index: int, now: float | None = None) -> BreakPeriod:
        """Bound playback to one break and jump to its start."""

        b = self.breaks[index]
        self.clock.focus_window(b.start_ms, b.end_ms, now)
        self.camera.force()
        return b

    def clear_focus(self) -> None:
        self.clock.clear_focus()
        self.camera.force()

    # --------------------------------------------------------------- snapping

    @property
    def snap_stats(self) -> SnapStats:
        return self._snap_stats

    def apply_snap_result(self, result: SnapResult, tracker: SnapRequestTracker | None = None) -> bool:
        """Attach snapped chains to the devices they belong to.

        Results of superseded requests are discarded. Returns True when applied.
        """

        if tracker is not None and not tracker.is_current(result.request_id):
            logger.debug("Discarding stale snap result %d (latest %d)", result.request_id, tracker.latest)
            return False
        if result.request_id < self._snap_request_id:
            logger.debug("Discarding snap result %d older than applied %d", result.request_id, self._snap_request_id)
            return False

        per_device: dict[DeviceKey, list[SnappedChain]] = {key: [] for key in self._interpolators}
        chains: list[tuple[DeviceKey, SnappedChain, bool]] = []
        for entry in result.entries:
            owner = None
            for key, stamps in self._device_timestamps.items():
                if entry.start_ms in stamps and entry.end_ms in stamps:
                    owner = key
                    break
            if owner is None:
                continue
            chain = SnappedChain.from_entry(entry)
            per_device[owner].append(chain)
            chains.append((owner, chain, entry.fallback))

        for key, interp in self._interpolators.items():
            interp.set_chains(per_device[key])
        self._chains = chains
        self._snap_request_id = result.request_id
        self._snap_stats = result.stats()
        return True

    # ------------------------------------------------------------------ frame

    def tick(self, now: float | None = None) -> ReplayFrame:
        """One cooperative loop iteration: frame the camera, then advance the clock."""

        if now is None:
            now = self._wall_clock()
        decision: FramingDecision | None = None
        lead = self._interpolators[self._lead_key].position_at(self.clock.current_ms)
        if lead is not None:
            decision = self.camera.update(
                lead.latitude,
                lead.longitude,
                self.clock.current_ms,
                self.clock.sim_ms_per_wall_second,
                now,
            )
        state = self.clock.tick(now)
        return self.frame(state, decision)

    def frame(self, state: PlaybackState | None = None, framing: FramingDecision | None = None) -> ReplayFrame:
        """Build the frame for the current (or given) playback state without advancing."""

        if state is None:
            state = self.clock.state
        t = state.current_ms
        window = self.clock.window
        breaks = tuple(
            BreakMarker(
                index=i,
                period=b,
                highlighted=b.contains(t),
                focused=window is not None and window == (max(b.start_ms, self.track.start_ms), min(b.end_ms, self.track.end_ms)),
            )
            for i, b in enumerate(self.breaks)
        )
        return ReplayFrame(
            state=state,
            positions=tuple(self.positions_at(t)),
            polylines=tuple(self.polylines_at(t)),
            breaks=breaks,
            snap=self._snap_stats,
            activity=self.activity_at(t),
            framing=framing,
            events=tuple(self.event_markers(state.active_event_ms)),
        )

    def event_markers(self, active_event_ms: int | None = None) -> list[EventMarker]:
        """Event markers at the lead device's interpolated position; the active one flashes."""

        interp = self._interpolators[self._lead_key]
        out: list[EventMarker] = []
        for ts in self.events:
            pos = interp.position_at(ts)
            if pos is None:
                continue
            out.append(EventMarker(ts, pos.latitude, pos.longitude, flashing=ts == active_event_ms))
        return out

    def activity_at(self, timestamp_ms: float) -> str | None:
        for iv in self.activity:
            if iv.start_ms <= timestamp_ms <= iv.end_ms:
                return iv.kind
        return None

    def positions_at(self, timestamp_ms: float) -> list[MarkerPosition]:
        """Markers per source/device that has started reporting by timestamp_ms.

        Sources that do not allow multiple instances show only their most
        recently reporting device.
        """

        candidates: list[tuple[int, MarkerPosition]] = []
        for (source, tag), interp in self._interpolators.items():
            pts = interp.points
            if timestamp_ms < pts[0].timestamp_ms:
                continue
            pos = interp.position_at(timestamp_ms)
            if pos is None:
                continue
            policy = SOURCE_POLICIES[source]
            i = bisect_right(interp.timestamps, timestamp_ms) - 1
            heading = None
            if policy.show_direction_icon and len(pts) > 1:
                a, b = (pts[i], pts[i + 1]) if i + 1 < len(pts) else (pts[i - 1], pts[i])
                heading = bearing_deg(a, b)
            candidates.append((pts[i].timestamp_ms, MarkerPosition(source, tag, pos, policy, heading)))

        latest: dict[PointSource, tuple[int, MarkerPosition]] = {}
        out: list[MarkerPosition] = []
        for last_seen, marker in candidates:
            if marker.policy.multi_instance:
                out.append(marker)
                continue
            kept = latest.get(marker.source)
            if kept is None or last_seen > kept[0]:
                latest[marker.source] = (last_seen, marker)
        out.extend(marker for _, marker in latest.values())
        out.sort(key=lambda m: (m.source.value, m.device_tag or ""))
        return out

    def polylines_at(self, timestamp_ms: float) -> list[Polyline]:
        """Drawn-so-far paths: segments and snapped gap chains up to timestamp_ms."""

        out: list[Polyline] = []
        for seg in self.segments:
            if seg.start_ms > timestamp_ms:
                continue
            coords = [(p.latitude, p.longitude) for p in seg.points if p.timestamp_ms <= timestamp_ms]
            if seg.end_ms > timestamp_ms:
                pos = self._interpolators[(seg.source, seg.device_tag)].position_at(timestamp_ms)
                if pos is not None:
                    coords.append((pos.latitude, pos.longitude))
            policy = SOURCE_POLICIES[seg.source]
            out.append(Polyline(tuple(coords), policy.color, policy.opacity, policy.weight))

        for owner, chain, fallback in self._chains:
            if chain.start_ms > timestamp_ms:
                continue
            if chain.end_ms <= timestamp_ms:
                coords = list(chain.coords)
            else:
                n = len(chain.coords)
                span = chain.end_ms - chain.start_ms
                reached = int((timestamp_ms - chain.start_ms) / span * (n - 1)) if span > 0 else 0
                coords = list(chain.coords[: reached + 1])
                coords.append(chain.coordinate_at(timestamp_ms))
            policy = SOURCE_POLICIES[owner[0]]
            out.append(
                Polyline(
                    tuple(coords),
                    policy.color,
                    policy.opacity * (0.5 if fallback else 1.0),
                    policy.weight,
                    kind="straight" if fallback else "snapped",
                )
            )
        return out

    def full_route(self) -> list[Polyline]:
        """The whole day as faint background paths."""

        return [
            Polyline(tuple((p.latitude, p.longitude) for p in seg.points), FULL_ROUTE_COLOR, 0.4, 2)
            for seg in self.segments
        ]


def run_loop(
    session: ReplaySession,
    fps: float = 30.0,
    on_frame: Callable[[ReplayFrame], None] | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    max_ticks: int | None = None,
) -> ReplayFrame:
    """Play a session to its end (or until stopped) on the calling thread.

    ``on_frame`` may call ``session.stop()``/``pause()``; the loop ends after
    the frame in which playback stopped.
    """

    if fps <= 0:
        raise ValueError("fps must be positive")
    interval = 1.0 / fps
    session.play()
    ticks = 0
    while True:
        frame = session.tick()
        if on_frame is not None:
            on_frame(frame)
        ticks += 1
        if not session.clock.is_playing:
            return frame
        if max_ticks is not None and ticks >= max_ticks:
            return frame
        sleep(interval)
