"""Resolve a trajectory timestamp to a position."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from route_replay.models import GeoPoint, SnapCacheEntry


@dataclass(frozen=True, slots=True)
class SnappedChain:
    """Road-snapped coordinates covering the window [start_ms, end_ms]."""

    start_ms: int
    end_ms: int
    coords: tuple[tuple[float, float], ...]

    @classmethod
    def from_entry(cls, entry: SnapCacheEntry) -> "SnappedChain":
        return cls(
            start_ms=entry.start_ms,
            end_ms=entry.end_ms,
            coords=tuple((p.latitude, p.longitude) for p in entry.points),
        )

    def coordinate_at(self, timestamp_ms: float) -> tuple[float, float]:
        """Walk the chain by point index, proportionally to elapsed time."""

        n = len(self.coords)
        if n == 1:
            return self.coords[0]
        span = self.end_ms - self.start_ms
        ratio = (timestamp_ms - self.start_ms) / span if span > 0 else 0.0
        ratio = min(max(ratio, 0.0), 1.0)
        f = ratio * (n - 1)
        i = min(int(f), n - 2)
        frac = f - i
        (lat1, lng1), (lat2, lng2) = self.coords[i], self.coords[i + 1]
        return (lat1 + (lat2 - lat1) * frac, lng1 + (lng2 - lng1) * frac)


class TrackInterpolator:
    """Position lookup over one device's time-sorted points.

    Snapped chains, when present for a window containing the timestamp, win
    over straight two-point interpolation.
    """

    def __init__(self, points: Sequence[GeoPoint], chains: Iterable[SnappedChain] = ()) -> None:
        self._points = sorted(points, key=lambda p: p.timestamp_ms)
        self._timestamps = [p.timestamp_ms for p in self._points]
        self._chains: list[SnappedChain] = []
        self._chain_starts: list[int] = []
        self.set_chains(chains)

    @property
    def points(self) -> list[GeoPoint]:
        return self._points

    @property
    def timestamps(self) -> list[int]:
        return self._timestamps

    def set_chains(self, chains: Iterable[SnappedChain]) -> None:
        self._chains = sorted((c for c in chains if c.coords), key=lambda c: c.start_ms)
        self._chain_starts = [c.start_ms for c in self._chains]

    def _chain_for(self, timestamp_ms: float) -> SnappedChain | None:
        i = bisect_right(self._chain_starts, timestamp_ms) - 1
        if i < 0:
            return None
        chain = self._chains[i]
        return chain if timestamp_ms <= chain.end_ms else None

    def position_at(self, timestamp_ms: float) -> GeoPoint | None:
        """Interpolated position, clamped to the first/last point outside the range."""

        if not self._points:
            return None
        first, last = self._points[0], self._points[-1]
        if timestamp_ms <= first.timestamp_ms:
            return first
        if timestamp_ms >= last.timestamp_ms:
            return last

        i = bisect_right(self._timestamps, timestamp_ms) - 1
        before, after = self._points[i], self._points[i + 1]
        span = after.timestamp_ms - before.timestamp_ms
        ratio = (timestamp_ms - before.timestamp_ms) / span if span > 0 else 0.0
        pos = GeoPoint(
            timestamp_ms=int(timestamp_ms),
            latitude=before.latitude + (after.latitude - before.latitude) * ratio,
            longitude=before.longitude + (after.longitude - before.longitude) * ratio,
            accuracy_m=before.accuracy_m + (after.accuracy_m - before.accuracy_m) * ratio,
            source=before.source,
            device_tag=before.device_tag,
        )

        chain = self._chain_for(timestamp_ms)
        if chain is not None:
            lat, lng = chain.coordinate_at(timestamp_ms)
            pos = replace(pos, latitude=lat, longitude=lng)
        return pos


def interpolate_position(timestamp_ms: float, points: Sequence[GeoPoint]) -> GeoPoint | None:
    """One-off interpolation over raw points (no snapped chains)."""

    return TrackInterpolator(points).position_at(timestamp_ms)
