"""Auto-framing camera controller with look-ahead and rate limiting."""

from __future__ import annotations

import logging
import time
from bisect import bisect_right
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from route_replay.geo import meters_to_lat_deg, meters_to_lng_deg
from route_replay.models import GeoPoint

logger = logging.getLogger(__name__)


class FramingSignal:
    """Busy flag shared by the camera controller (writer) and the playback clock (reader).

    Every fit request gets a new, monotonically increasing id; only the
    completion of the latest request clears the flag. A request that is never
    confirmed stops counting as busy after ``timeout_s``.
    """

    def __init__(self, timeout_s: float = 0.8) -> None:
        self.timeout_s = timeout_s
        self._busy = False
        self._since = 0.0
        self._request_id = 0

    @property
    def request_id(self) -> int:
        return self._request_id

    def begin(self, now: float) -> int:
        self._request_id += 1
        self._busy = True
        self._since = now
        return self._request_id

    def complete(self, request_id: int) -> bool:
        """Mark a fit request done. Returns False for superseded requests."""

        if request_id != self._request_id:
            return False
        self._busy = False
        return True

    def is_busy(self, now: float) -> bool:
        if self._busy and now - self._since >= self.timeout_s:
            logger.debug("Viewport fit %s not confirmed after %.2fs; releasing", self._request_id, self.timeout_s)
            self._busy = False
        return self._busy


@dataclass(frozen=True, slots=True)
class Viewport:
    """Map viewport: center plus full spans in degrees."""

    center_lat: float
    center_lng: float
    lat_span: float
    lng_span: float

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """(south, west, north, east)."""

        half_lat = self.lat_span / 2.0
        half_lng = self.lng_span / 2.0
        return (
            self.center_lat - half_lat,
            self.center_lng - half_lng,
            self.center_lat + half_lat,
            self.center_lng + half_lng,
        )


class ViewportSurface(Protocol):
    """The map rendering surface, as far as framing is concerned.

    ``on_done`` is called once the surface finished fitting; some surfaces
    never call it.
    """

    def fit_bounds(
        self,
        viewport: Viewport,
        padding: tuple[int, int, int, int],
        on_done: Callable[[], None],
    ) -> None: ...


class ImmediateSurface:
    """Headless surface that applies every fit at once."""

    def __init__(self) -> None:
        self.fits: list[Viewport] = []

    def fit_bounds(
        self,
        viewport: Viewport,
        padding: tuple[int, int, int, int],
        on_done: Callable[[], None],
    ) -> None:
        self.fits.append(viewport)
        on_done()


@dataclass(frozen=True, slots=True)
class CameraParams:
    """Parameters controlling automatic framing."""

    # Look ahead as much trajectory time as this many wall seconds of playback cover.
    lookahead_wall_seconds: float = 3.0
    min_lookahead_points: int = 15
    fallback_lookahead_points: int = 25
    # The farthest anticipated point stays within this fraction of the span from the edge.
    edge_ratio: float = 0.30
    min_span_m: float = 100.0
    recompute_interval_s: float = 3.0
    emergency_ratio: float = 0.60
    span_change_ratio: float = 0.25
    busy_timeout_s: float = 0.8
    # top, right, bottom, left in pixels; bottom leaves room for the playback panel
    padding_px: tuple[int, int, int, int] = (60, 40, 180, 40)


@dataclass(frozen=True, slots=True)
class FramingDecision:
    recomputed: bool
    reason: str
    viewport: Viewport | None = None


class CameraFramingController:
    """Decide when and how to refit the map around the moving position."""

    def __init__(
        self,
        params: CameraParams | None = None,
        surface: ViewportSurface | None = None,
        signal: FramingSignal | None = None,
        wall_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.params = params or CameraParams()
        self.surface = surface if surface is not None else ImmediateSurface()
        self.signal = signal if signal is not None else FramingSignal(self.params.busy_timeout_s)
        self._wall_clock = wall_clock
        self._points: list[GeoPoint] = []
        self._timestamps: list[int] = []
        self._last_viewport: Viewport | None = None
        self._last_at: float | None = None
        self._forced = False
        self.recompute_count = 0

    @property
    def last_viewport(self) -> Viewport | None:
        return self._last_viewport

    def reset(self, points: Sequence[GeoPoint]) -> None:
        """Load a new dataset; the next update frames it unconditionally."""

        self._points = sorted(points, key=lambda p: p.timestamp_ms)
        self._timestamps = [p.timestamp_ms for p in self._points]
        self._last_viewport = None
        self._last_at = None
        self._forced = False

    def force(self) -> None:
        """Request a recompute on the next update (e.g. after a mode change)."""

        self._forced = True

    def lookahead_window(self, current_ms: float, sim_ms_per_wall_second: float) -> list[GeoPoint]:
        """Points expected on screen soon, by time horizon or by count."""

        p = self.params
        start = bisect_right(self._timestamps, current_ms)
        horizon = current_ms + p.lookahead_wall_seconds * sim_ms_per_wall_second
        end = bisect_right(self._timestamps, horizon)
        window = self._points[start:end]
        if len(window) < p.min_lookahead_points:
            window = self._points[start : start + p.fallback_lookahead_points]
        return window

    def required_spans(self, lat: float, lng: float, window: Sequence[GeoPoint]) -> tuple[float, float]:
        """Visible (lat, lng) spans keeping every window point off the frame edge."""

        p = self.params
        max_lat_diff = max((abs(pt.latitude - lat) for pt in window), default=0.0)
        max_lng_diff = max((abs(pt.longitude - lng) for pt in window), default=0.0)
        factor = (1.0 / p.edge_ratio) * 2.0
        lat_span = max(max_lat_diff * factor, meters_to_lat_deg(p.min_span_m))
        lng_span = max(max_lng_diff * factor, meters_to_lng_deg(p.min_span_m, lat))
        return lat_span, lng_span

    def _is_emergency(self, lat: float, lng: float) -> bool:
        last = self._last_viewport
        if last is None:
            return False
        r = self.params.emergency_ratio
        return (
            abs(lat - last.center_lat) > r * last.lat_span / 2.0
            or abs(lng - last.center_lng) > r * last.lng_span / 2.0
        )

    def _span_changed(self, lat_span: float, lng_span: float) -> bool:
        last = self._last_viewport
        if last is None:
            return True
        d_lat = abs(lat_span - last.lat_span) / last.lat_span if last.lat_span > 0 else 1.0
        d_lng = abs(lng_span - last.lng_span) / last.lng_span if last.lng_span > 0 else 1.0
        return max(d_lat, d_lng) >= self.params.span_change_ratio

    def update(
        self,
        lat: float,
        lng: float,
        current_ms: float,
        sim_ms_per_wall_second: float,
        now: float | None = None,
    ) -> FramingDecision:
        """Recompute the viewport if needed.

        Precedence: first framing of a dataset, then the emergency override
        (position about to leave the frame), then a forced request, then the
        recompute interval, then the span-change threshold.
        """

        if now is None:
            now = self._wall_clock()
        if self.signal.is_busy(now):
            return FramingDecision(False, "busy")

        window = self.lookahead_window(current_ms, sim_ms_per_wall_second)
        lat_span, lng_span = self.required_spans(lat, lng, window)

        if self._last_viewport is None:
            reason = "initial"
        elif self._is_emergency(lat, lng):
            reason = "emergency"
        elif self._forced:
            reason = "forced"
        elif self._last_at is not None and now - self._last_at < self.params.recompute_interval_s:
            return FramingDecision(False, "rate_limited")
        elif not self._span_changed(lat_span, lng_span):
            return FramingDecision(False, "span_unchanged")
        else:
            reason = "interval"

        viewport = Viewport(center_lat=lat, center_lng=lng, lat_span=lat_span, lng_span=lng_span)
        self._apply(viewport, now)
        return FramingDecision(True, reason, viewport)

    def _apply(self, viewport: Viewport, now: float) -> None:
        request_id = self.signal.begin(now)
        self._last_viewport = viewport
        self._last_at = now
        self._forced = False
        self.recompute_count += 1
        try:
            self.surface.fit_bounds(viewport, self.params.padding_px, lambda: self.signal.complete(request_id))
        except Exception as exc:  # surface failures only cost the auto-zoom
            logger.warning("Viewport fit failed, keeping current view: %s", exc)
            self.signal.complete(request_id)
