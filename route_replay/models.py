"""Data models for sourced track points, segments, breaks and playback state."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Final, Sequence


class PointSource(str, Enum):
    """Which device or data feed produced a point."""

    PRIMARY_DEVICE = "primary_device"
    SERVICE_A = "service_a"
    SERVICE_B = "service_b"
    EXTERNAL_APP = "external_app"

    @classmethod
    def parse(cls, text: str | None) -> "PointSource":
        """Parse a source name, accepting the feed names of the ingestion pipeline.

        Args:
            text: Source name. Empty or None means the primary device.

        Raises:
            ValueError: If the name is unknown.
        """

        s = (text or "").strip().lower()
        if not s:
            return cls.PRIMARY_DEVICE
        try:
            return _SOURCE_ALIASES[s]
        except KeyError:
            pass
        try:
            return cls(s)
        except ValueError as exc:
            raise ValueError(f"Unknown point source: {text!r}") from exc


_SOURCE_ALIASES: Final[dict[str, PointSource]] = {
    "native": PointSource.PRIMARY_DEVICE,
    "followmee": PointSource.SERVICE_A,
    "external": PointSource.SERVICE_B,
    "external_app": PointSource.EXTERNAL_APP,
}


@dataclass(frozen=True, slots=True)
class SourcePolicy:
    """Render policy carried by each source variant."""

    color: str
    opacity: float
    weight: int
    show_direction_icon: bool
    multi_instance: bool


SOURCE_POLICIES: Final[dict[PointSource, SourcePolicy]] = {
    PointSource.PRIMARY_DEVICE: SourcePolicy("#3b82f6", 0.9, 4, True, False),
    PointSource.SERVICE_A: SourcePolicy("#a855f7", 0.8, 3, False, True),
    PointSource.SERVICE_B: SourcePolicy("#f97316", 0.8, 3, False, True),
    PointSource.EXTERNAL_APP: SourcePolicy("#22c55e", 0.7, 2, False, False),
}

FULL_ROUTE_COLOR: Final[str] = "#9ca3af"
EVENT_COLOR: Final[str] = "#fde68a"
EVENT_FLASH_COLOR: Final[str] = "#fbbf24"


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """A single timestamped, sourced location reading.

    Attributes:
        timestamp_ms: Unix epoch milliseconds.
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        accuracy_m: Horizontal accuracy in meters (0.0 when unknown).
        source: Originating device or feed.
        device_tag: Optional device identifier when several devices report for one subject.
    """

    timestamp_ms: int
    latitude: float
    longitude: float
    accuracy_m: float = 0.0
    source: PointSource = PointSource.PRIMARY_DEVICE
    device_tag: str | None = None

    @property
    def device_key(self) -> tuple[PointSource, str | None]:
        return (self.source, self.device_tag)


@dataclass(frozen=True, slots=True)
class Track:
    """All points of one subject for one day, sorted by timestamp."""

    subject_id: str
    day: str
    points: tuple[GeoPoint, ...]

    @property
    def start_ms(self) -> int:
        return self.points[0].timestamp_ms if self.points else 0

    @property
    def end_ms(self) -> int:
        return self.points[-1].timestamp_ms if self.points else 0

    @property
    def signature(self) -> str:
        """Stable hash of the point set; changes whenever the points change."""

        h = hashlib.sha1()
        for p in self.points:
            h.update(
                f"{p.timestamp_ms}|{p.latitude:.7f}|{p.longitude:.7f}|{p.source.value}|{p.device_tag or ''}\n".encode()
            )
        return h.hexdigest()

    def partition_by_device(self) -> dict[tuple[PointSource, str | None], list[GeoPoint]]:
        """Split points into per-(source, device_tag) lists, keeping time order."""

        out: dict[tuple[PointSource, str | None], list[GeoPoint]] = {}
        for p in self.points:
            out.setdefault(p.device_key, []).append(p)
        return out


@dataclass(frozen=True, slots=True)
class Segment:
    """Maximal gap-free, single-source run of points."""

    source: PointSource
    device_tag: str | None
    points: tuple[GeoPoint, ...]

    @property
    def start_ms(self) -> int:
        return self.points[0].timestamp_ms

    @property
    def end_ms(self) -> int:
        return self.points[-1].timestamp_ms

    @property
    def segment_id(self) -> tuple[int, int]:
        return (self.start_ms, self.end_ms)


@dataclass(frozen=True, slots=True)
class BreakAnnotation:
    """Metadata supplied by the break/POI annotation service."""

    place_name: str = ""
    had_conversation: bool = False
    category: str = ""


@dataclass(frozen=True, slots=True)
class BreakPeriod:
    """A detected or authoritative inactivity window.

    Note:
        ``method`` records where the period came from: "gap" for detected
        periods, anything else for externally supplied ones.
    """

    start_ms: int
    end_ms: int
    center_lat: float
    center_lng: float
    annotations: tuple[BreakAnnotation, ...] = ()
    method: str = "gap"

    @property
    def duration_ms(self) -> int:
        return max(0, self.end_ms - self.start_ms)

    def contains(self, timestamp_ms: float) -> bool:
        return self.start_ms <= timestamp_ms <= self.end_ms


DRIVING: Final[str] = "driving"
WALKING: Final[str] = "walking"


@dataclass(frozen=True, slots=True)
class ActivityInterval:
    """A driving or walking window."""

    kind: str
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return max(0, self.end_ms - self.start_ms)


class PauseReason(str, Enum):
    NONE = "none"
    FRAMING = "framing"
    EVENT_DWELL = "event_dwell"
    WINDOW_END = "window_end"


class ClockPhase(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    SEEKING = "seeking"


@dataclass(frozen=True, slots=True)
class PlaybackState:
    """Snapshot of the playback clock. Only the clock produces these."""

    current_ms: float
    is_playing: bool
    sim_seconds_per_wall_second: float
    pause_reason: PauseReason = PauseReason.NONE
    phase: ClockPhase = ClockPhase.IDLE
    active_event_ms: int | None = None
    track_start_ms: int = 0
    track_end_ms: int = 0


@dataclass(frozen=True, slots=True)
class SnappedPoint:
    """A road-snapped coordinate attributed to a trajectory timestamp."""

    latitude: float
    longitude: float
    timestamp_ms: int
    place_id: str = ""


@dataclass(frozen=True, slots=True)
class SnapCacheEntry:
    """Snapped coordinate chain for one gap segment. Immutable once written."""

    segment_id: str
    start_ms: int
    end_ms: int
    distance_m: float
    points: tuple[SnappedPoint, ...]
    created_at_ms: int
    updated_at_ms: int
    fallback: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "segmentId": self.segment_id,
            "startTimestamp": self.start_ms,
            "endTimestamp": self.end_ms,
            "distanceMeters": self.distance_m,
            "points": [
                {
                    "latitude": p.latitude,
                    "longitude": p.longitude,
                    "timestamp": p.timestamp_ms,
                    "placeId": p.place_id,
                }
                for p in self.points
            ],
            "createdAt": self.created_at_ms,
            "updatedAt": self.updated_at_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> "SnapCacheEntry":
        pts: Sequence[dict[str, object]] = raw.get("points") or []  # type: ignore[assignment]
        return cls(
            segment_id=str(raw["segmentId"]),
            start_ms=int(raw["startTimestamp"]),  # type: ignore[arg-type]
            end_ms=int(raw["endTimestamp"]),  # type: ignore[arg-type]
            distance_m=float(raw.get("distanceMeters", 0.0) or 0.0),  # type: ignore[arg-type]
            points=tuple(
                SnappedPoint(
                    latitude=float(p["latitude"]),  # type: ignore[arg-type]
                    longitude=float(p["longitude"]),  # type: ignore[arg-type]
                    timestamp_ms=int(p["timestamp"]),  # type: ignore[arg-type]
                    place_id=str(p.get("placeId", "") or ""),
                )
                for p in pts
            ),
            created_at_ms=int(raw.get("createdAt", 0) or 0),  # type: ignore[arg-type]
            updated_at_ms=int(raw.get("updatedAt", 0) or 0),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class SnapStats:
    """Snap-cache statistics surfaced to the consumer layer."""

    api_calls_used: int = 0
    cost_cents: float = 0.0
    segment_count: int = 0
    cached_segments: int = 0
    status_message: str = ""


DEFAULT_TZ: Final[str] = "Europe/Berlin"
