"""Road snapping of large gaps with a month-partitioned, persistent segment cache.

HTTP and storage use only the Python standard library.

Important:
    - The snapping service bills every call; the cache exists to keep the
      number of calls (and the cost) minimal. Cached entries are never
      recomputed.
    - Failures of the service degrade to straight lines for that response and
      are not cached, so the next request retries them.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
import urllib.parse
import urllib.request
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

from route_replay.geo import distance_m
from route_replay.models import DEFAULT_TZ, GeoPoint, PointSource, SnapCacheEntry, SnappedPoint, SnapStats
from route_replay.timeutils import month_key, month_of_day

logger = logging.getLogger(__name__)

SOURCE_FILTER_ALL = "all"


def _now_ms() -> int:
    return int(time.time() * 1000)


# --------------------------------------------------------------------------- storage


class CacheBackup(Protocol):
    """Remote mirror for month cache files (best-effort)."""

    def restore(self, name: str) -> str | None: ...

    def upload(self, name: str, text: str) -> None: ...


class DirectoryBackup:
    """Backup that mirrors cache files into another directory (e.g. a synced drive)."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def restore(self, name: str) -> str | None:
        p = self._root / name
        if not p.exists():
            return None
        return p.read_text(encoding="utf-8")

    def upload(self, name: str, text: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        tmp = self._root / f"{name}.tmp"
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(self._root / name)


def _route_key(subject_id: str, day: str, source_filter: str) -> list[str]:
    return [subject_id, day, source_filter]


class MonthlySnapCache:
    """One month of snapped segments persisted as a JSON document.

    Layout: ``{"month": "YYYY-MM", "routes": [route, ...]}`` where each route
    holds the segments of one (subject, day, source filter) keyed by segment id
    plus running call/cost totals.
    """

    def __init__(self, path: str | Path, month: str, now_ms: Callable[[], int] = _now_ms) -> None:
        self._path = Path(path)
        # Write-ahead journal for crash-safe incremental persistence.
        # Example: 2025-10.json -> 2025-10.journal.jsonl
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self.month = month
        self._now_ms = now_ms
        self._data: dict[str, Any] = {"month": month, "routes": []}
        self._loaded = False
        self.dirty = False
        self.origin = "empty"

    @property
    def path(self) -> Path:
        return self._path

    @property
    def file_name(self) -> str:
        return self._path.name

    def load(self, restore: Callable[[str], str | None] | None = None) -> None:
        """Load from disk, else from the remote backup, else start empty."""

        if self._loaded:
            return
        text = ""
        if self._path.exists():
            text = self._path.read_text(encoding="utf-8").strip()
            self.origin = "local"
        elif restore is not None:
            try:
                text = (restore(self.file_name) or "").strip()
            except Exception as exc:  # remote backup is best-effort
                logger.warning("Could not restore %s from backup: %s", self.file_name, exc)
                text = ""
            if text:
                self.origin = "remote"
                # the local copy is missing, so the next flush writes it
                self.dirty = True

        if text:
            try:
                data = json.loads(text)
                if not isinstance(data, dict) or not isinstance(data.get("routes"), list):
                    raise ValueError("unexpected cache layout")
                self._data = data
            except (json.JSONDecodeError, ValueError):
                # Cache file corrupted: keep a backup and start fresh
                logger.warning("Snap cache %s is corrupted; starting empty", self.file_name)
                if self._path.exists():
                    backup = self._path.with_suffix(self._path.suffix + ".broken")
                    backup.write_text(text, encoding="utf-8")
                self._data = {"month": self.month, "routes": []}
                self.origin = "corrupt"
                self.dirty = False

        # Replay journal (if any) so that even if the program crashed, we keep the latest results.
        self._replay_journal()
        self._loaded = True
        logger.info("Snap cache %s loaded (%s, %d routes)", self.month, self.origin, len(self._data["routes"]))

    # ------------------------------------------------------------ routes

    def _find_route(self, subject_id: str, day: str, source_filter: str) -> dict[str, Any] | None:
        for route in self._data["routes"]:
            if route.get("userId") == subject_id and route.get("date") == day and route.get("source") == source_filter:
                return route
        return None

    def _route(self, subject_id: str, day: str, source_filter: str) -> dict[str, Any]:
        route = self._find_route(subject_id, day, source_filter)
        if route is None:
            now = self._now_ms()
            route = {
                "userId": subject_id,
                "date": day,
                "source": source_filter,
                "lastProcessedTimestamp": 0,
                "segments": {},
                "totalApiCallsUsed": 0,
                "totalCostCents": 0.0,
                "createdAt": now,
                "updatedAt": now,
            }
            self._data["routes"].append(route)
        return route

    def get_entry(self, subject_id: str, day: str, source_filter: str, segment_id: str) -> SnapCacheEntry | None:
        self.load()
        route = self._find_route(subject_id, day, source_filter)
        if route is None:
            return None
        raw = route["segments"].get(segment_id)
        return SnapCacheEntry.from_dict(raw) if raw is not None else None

    def put_entry(self, subject_id: str, day: str, source_filter: str, entry: SnapCacheEntry) -> bool:
        """Store a new entry. Existing entries are immutable; returns False for them."""

        self.load()
        route = self._route(subject_id, day, source_filter)
        if entry.segment_id in route["segments"]:
            return False
        value = entry.to_dict()
        route["segments"][entry.segment_id] = value
        route["updatedAt"] = self._now_ms()
        self.dirty = True
        self._append_journal({"op": "entry", "route": _route_key(subject_id, day, source_filter), "v": value})
        return True

    def record_usage(
        self,
        subject_id: str,
        day: str,
        source_filter: str,
        api_calls: int,
        cost_cents: float,
        last_processed_ms: int,
    ) -> None:
        self.load()
        route = self._route(subject_id, day, source_filter)
        route["totalApiCallsUsed"] = int(route.get("totalApiCallsUsed", 0)) + api_calls
        route["totalCostCents"] = float(route.get("totalCostCents", 0.0)) + cost_cents
        route["lastProcessedTimestamp"] = max(int(route.get("lastProcessedTimestamp", 0)), last_processed_ms)
        route["updatedAt"] = self._now_ms()
        self.dirty = True
        # absolute totals, so replaying the journal twice is harmless
        self._append_journal(
            {
                "op": "usage",
                "route": _route_key(subject_id, day, source_filter),
                "totalApiCallsUsed": route["totalApiCallsUsed"],
                "totalCostCents": route["totalCostCents"],
                "lastProcessedTimestamp": route["lastProcessedTimestamp"],
            }
        )

    def route_info(self, subject_id: str, day: str, source_filter: str) -> dict[str, Any]:
        self.load()
        route = self._find_route(subject_id, day, source_filter)
        if route is None:
            return {
                "cached": False,
                "cachedSegmentCount": 0,
                "lastProcessedTimestamp": None,
                "apiCallsUsed": 0,
                "costCents": 0.0,
                "segmentKeys": [],
            }
        keys = sorted(route["segments"].keys())
        return {
            "cached": bool(keys),
            "cachedSegmentCount": len(keys),
            "lastProcessedTimestamp": route.get("lastProcessedTimestamp") or None,
            "apiCallsUsed": int(route.get("totalApiCallsUsed", 0)),
            "costCents": float(route.get("totalCostCents", 0.0)),
            "segmentKeys": keys,
        }

    def totals(self) -> tuple[int, float, int]:
        """(api calls, cost cents, segment count) over all routes of the month."""

        self.load()
        calls = 0
        cost = 0.0
        segments = 0
        for route in self._data["routes"]:
            calls += int(route.get("totalApiCallsUsed", 0))
            cost += float(route.get("totalCostCents", 0.0))
            segments += len(route.get("segments", {}))
        return calls, cost, segments

    # ------------------------------------------------------------ persistence

    def to_text(self) -> str:
        return json.dumps(self._data, ensure_ascii=False, indent=2)

    def flush(self) -> bool:
        """Persist to disk (atomic-ish) if modified. Returns True when written."""

        self.load()
        if not self.dirty:
            return False
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(self.to_text(), encoding="utf-8")
        tmp.replace(self._path)
        # After we persisted the full snapshot, it's safe to clear the journal.
        self._clear_journal()
        self.dirty = False
        return True

    def _append_journal(self, record: dict[str, Any]) -> None:
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

    def _replay_journal(self) -> None:
        """Replay journal entries into memory (best-effort)."""

        if not self._journal_path.exists():
            return
        replayed = 0
        try:
            with self._journal_path.open("r", encoding="utf-8") as f:
                for line in f:
                    s = line.strip()
                    if not s:
                        continue
                    try:
                        rec = json.loads(s)
                    except json.JSONDecodeError:
                        # ignore broken tail lines
                        continue
                    key = rec.get("route")
                    if not (isinstance(key, list) and len(key) == 3):
                        continue
                    route = self._route(*[str(k) for k in key])
                    if rec.get("op") == "entry" and isinstance(rec.get("v"), dict):
                        route["segments"].setdefault(str(rec["v"].get("segmentId")), rec["v"])
                    elif rec.get("op") == "usage":
                        route["totalApiCallsUsed"] = int(rec.get("totalApiCallsUsed", 0))
                        route["totalCostCents"] = float(rec.get("totalCostCents", 0.0))
                        route["lastProcessedTimestamp"] = int(rec.get("lastProcessedTimestamp", 0))
                    else:
                        continue
                    replayed += 1
        except OSError:
            # If journal cannot be read, do not fail the whole run.
            return
        if replayed:
            self.dirty = True

    def _clear_journal(self) -> None:
        try:
            if self._journal_path.exists():
                self._journal_path.unlink()
        except OSError:
            return


class SnapCacheStore:
    """Owns the month caches: explicit init / flush / dispose lifecycle.

    A lock per month key serialises mutation, local writes and the backup
    mirror of the same month.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        backup: CacheBackup | None = None,
        *,
        tz_name: str = DEFAULT_TZ,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._dir = Path(cache_dir)
        self._backup = backup
        self._tz_name = tz_name
        self._now_ms = now_ms
        self._caches: dict[str, MonthlySnapCache] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._stop_autoflush: threading.Event | None = None
        self._autoflush_thread: threading.Thread | None = None

    @property
    def cache_dir(self) -> Path:
        return self._dir

    def init(self, month: str | None = None) -> MonthlySnapCache:
        """Create the cache directory and load the current (or given) month."""

        self._dir.mkdir(parents=True, exist_ok=True)
        return self.month(month or month_key(self._now_ms(), self._tz_name))

    def lock(self, month: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(month, threading.Lock())

    def month(self, month: str) -> MonthlySnapCache:
        with self._registry_lock:
            cache = self._caches.get(month)
            if cache is None:
                cache = MonthlySnapCache(self._dir / f"{month}.json", month, now_ms=self._now_ms)
                self._caches[month] = cache
                self._locks.setdefault(month, threading.Lock())
        with self.lock(month):
            cache.load(self._backup.restore if self._backup is not None else None)
        return cache

    def months(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._caches)

    def flush(self) -> int:
        """Write modified months locally and mirror them. Returns months written."""

        written = 0
        for month in self.months():
            cache = self._caches[month]
            with self.lock(month):
                if not cache.flush():
                    continue
                written += 1
                logger.info("Snap cache %s saved to %s", month, cache.path)
                if self._backup is None:
                    continue
                try:
                    self._backup.upload(cache.file_name, cache.to_text())
                except Exception as exc:  # remote backup is best-effort
                    logger.warning("Could not mirror %s to backup: %s", cache.file_name, exc)
        return written

    def start_autoflush(self, interval_s: float = 60.0) -> None:
        """Flush periodically on a background thread until :meth:`dispose`."""

        if self._autoflush_thread is not None:
            return
        stop = threading.Event()

        def _run() -> None:
            while not stop.wait(interval_s):
                self.flush()

        self._stop_autoflush = stop
        self._autoflush_thread = threading.Thread(target=_run, name="snap-cache-autoflush", daemon=True)
        self._autoflush_thread.start()

    def dispose(self) -> None:
        """Stop periodic flushing and write everything (graceful shutdown)."""

        if self._stop_autoflush is not None and self._autoflush_thread is not None:
            self._stop_autoflush.set()
            self._autoflush_thread.join()
        self._stop_autoflush = None
        self._autoflush_thread = None
        self.flush()


# --------------------------------------------------------------------------- service


@dataclass(frozen=True, slots=True)
class RoadsApiConfig:
    """Configuration for the road-snapping API."""

    base_url: str = "https://roads.googleapis.com/v1/snapToRoads"
    api_key: str = ""
    interpolate: bool = True
    timeout_seconds: float = 20.0
    max_points_per_call: int = 100
    cost_cents_per_call: float = 0.5
    min_gap_m: float = 50.0

    def __post_init__(self) -> None:
        if not 2 <= self.max_points_per_call <= 100:
            raise ValueError("max_points_per_call must be within [2, 100]")

    @classmethod
    def from_env(cls, **overrides: Any) -> "RoadsApiConfig":
        """Config with the API key taken from ROADS_API_KEY unless given."""

        overrides.setdefault("api_key", os.environ.get("ROADS_API_KEY", ""))
        return cls(**overrides)


def roads_snap_raw(coords: Sequence[tuple[float, float]], cfg: RoadsApiConfig) -> dict[str, Any] | None:
    """Call the snap-to-roads API and return raw JSON dict.

    This is a pure function (no cache, no accounting state).

    Returns:
        Parsed JSON dict on success, otherwise None.
    """

    if not cfg.api_key:
        logger.warning("ROADS_API_KEY not configured; cannot snap")
        return None
    path = "|".join(f"{lat:.6f},{lng:.6f}" for lat, lng in coords)
    params = {
        "path": path,
        "interpolate": "true" if cfg.interpolate else "false",
        "key": cfg.api_key,
    }
    url = f"{cfg.base_url}?{urllib.parse.urlencode(params, safe=',|')}"
    req = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=cfg.timeout_seconds) as resp:  # noqa: S310
            body = resp.read().decode("utf-8", errors="replace")
        raw: dict[str, Any] = json.loads(body)
    except Exception as exc:
        logger.warning("Road snapping request failed (%d points): %s", len(coords), exc)
        return None
    return raw


def parse_snapped_points(raw: dict[str, Any], batch: Sequence[GeoPoint]) -> list[SnappedPoint]:
    """Convert an API response into timestamped snapped points.

    Points echoing an input carry that input's timestamp; points the service
    interpolated in between get a timestamp interpolated between their
    neighbouring inputs. An empty response yields the inputs unchanged.
    """

    items = raw.get("snappedPoints") or []
    if not items:
        return [SnappedPoint(p.latitude, p.longitude, p.timestamp_ms) for p in batch]

    known: list[tuple[int, int]] = []
    for k, item in enumerate(items):
        idx = item.get("originalIndex")
        if isinstance(idx, int) and 0 <= idx < len(batch):
            known.append((k, batch[idx].timestamp_ms))

    out: list[SnappedPoint] = []
    j = 0
    for k, item in enumerate(items):
        while j < len(known) and known[j][0] < k:
            j += 1
        if j < len(known) and known[j][0] == k:
            ts = known[j][1]
        else:
            prev = known[j - 1] if j > 0 else None
            nxt = known[j] if j < len(known) else None
            if prev is not None and nxt is not None:
                ts = round(prev[1] + (nxt[1] - prev[1]) * (k - prev[0]) / (nxt[0] - prev[0]))
            elif prev is not None:
                ts = prev[1]
            elif nxt is not None:
                ts = nxt[1]
            else:
                ts = batch[0].timestamp_ms
        loc = item.get("location") or {}
        out.append(
            SnappedPoint(
                latitude=float(loc["latitude"]),
                longitude=float(loc["longitude"]),
                timestamp_ms=int(ts),
                place_id=str(item.get("placeId", "") or ""),
            )
        )
    return out


@dataclass(frozen=True, slots=True)
class GapSegment:
    """Two consecutive points far enough apart to be worth snapping."""

    segment_id: str
    start: GeoPoint
    end: GeoPoint
    distance_m: float


def build_segment_id(start: GeoPoint, end: GeoPoint) -> str:
    return f"{start.timestamp_ms}-{end.timestamp_ms}"


def compute_gap_segments(points: Sequence[GeoPoint], min_gap_m: float = 50.0) -> list[GapSegment]:
    """Consecutive point pairs at least min_gap_m apart."""

    pts = sorted(points, key=lambda p: p.timestamp_ms)
    out: list[GapSegment] = []
    for start, end in zip(pts, pts[1:]):
        d = distance_m(start, end)
        if d >= min_gap_m:
            out.append(GapSegment(build_segment_id(start, end), start, end, d))
    return out


def normalize_gap_segments(
    pairs: Iterable[tuple[GeoPoint, GeoPoint]],
    min_gap_m: float = 50.0,
) -> list[GapSegment]:
    """Validate caller-supplied gap segments: drop short or non-finite ones, sort by start."""

    out: list[GapSegment] = []
    for start, end in pairs:
        d = distance_m(start, end)
        if not math.isfinite(d) or d < min_gap_m:
            continue
        out.append(GapSegment(build_segment_id(start, end), start, end, d))
    return sorted(out, key=lambda g: g.start.timestamp_ms)


def _point_key(p: GeoPoint) -> tuple[int, float, float]:
    return (p.timestamp_ms, p.latitude, p.longitude)


def _pack_batches(gaps: Sequence[GapSegment], size: int) -> tuple[list[list[GeoPoint]], list[int]]:
    """Pack whole gaps into request batches of at most size coordinates.

    Chained gaps share their common endpoint within a batch; a gap never spans
    two batches, so a new batch repeats the shared endpoint.

    Returns:
        (batches, batch index of each gap)
    """

    batches: list[list[GeoPoint]] = []
    placement: list[int] = []
    for gap in gaps:
        batch = batches[-1] if batches else None
        chained = batch is not None and _point_key(batch[-1]) == _point_key(gap.start)
        need = 1 if chained else 2
        if batch is None or len(batch) + need > size:
            batches.append([gap.start, gap.end])
        elif chained:
            batch.append(gap.end)
        else:
            batch.extend((gap.start, gap.end))
        placement.append(len(batches) - 1)
    return batches, placement


def normalize_source_filter(source_filter: str | PointSource | None) -> str:
    if source_filter is None:
        return SOURCE_FILTER_ALL
    if isinstance(source_filter, PointSource):
        return source_filter.value
    s = source_filter.strip().lower()
    if not s or s == SOURCE_FILTER_ALL:
        return SOURCE_FILTER_ALL
    return PointSource.parse(s).value


class SnapRequestTracker:
    """Monotonic request ids; only the latest request's result may be applied."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest = 0

    @property
    def latest(self) -> int:
        return self._latest

    def next_id(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_current(self, request_id: int) -> bool:
        return request_id == self._latest


@dataclass(frozen=True, slots=True)
class SnapResult:
    """Outcome of one snap request."""

    entries: tuple[SnapCacheEntry, ...]
    api_calls_used: int
    cost_cents: float
    total_segments: int
    cached_segments: int
    request_id: int
    status_message: str = ""

    @property
    def segment_count(self) -> int:
        return len(self.entries)

    @property
    def from_cache(self) -> bool:
        return self.api_calls_used == 0

    @property
    def cache_hit_ratio(self) -> float:
        return 1.0 if self.total_segments == 0 else self.cached_segments / self.total_segments

    @property
    def fallback_segment_ids(self) -> list[str]:
        return [e.segment_id for e in self.entries if e.fallback]

    def stats(self) -> SnapStats:
        return SnapStats(
            api_calls_used=self.api_calls_used,
            cost_cents=self.cost_cents,
            segment_count=self.segment_count,
            cached_segments=self.cached_segments,
            status_message=self.status_message,
        )


SnapClient = Callable[[Sequence[GeoPoint]], "list[SnappedPoint] | None"]


class RoadSnapper:
    """Snap large gaps to roads, serving known segments from the cache."""

    def __init__(
        self,
        store: SnapCacheStore,
        config: RoadsApiConfig | None = None,
        client: SnapClient | None = None,
        *,
        max_workers: int = 2,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.config = config or RoadsApiConfig.from_env()
        self._client = client or self._call_api
        self._now_ms = now_ms
        self.tracker = SnapRequestTracker()
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    def _call_api(self, batch: Sequence[GeoPoint]) -> list[SnappedPoint] | None:
        raw = roads_snap_raw([(p.latitude, p.longitude) for p in batch], self.config)
        if raw is None:
            return None
        return parse_snapped_points(raw, batch)

    def calculate_cost(self, segment_count: int) -> tuple[int, float]:
        """Upper bound of (requests, cost cents) for snapping this many novel segments."""

        # worst case: no gaps chained, two coordinates each
        per_call = self.config.max_points_per_call // 2
        requests = math.ceil(max(0, segment_count) / per_call)
        return requests, requests * self.config.cost_cents_per_call

    def cache_info(self, subject_id: str, day: str, source_filter: str | PointSource = SOURCE_FILTER_ALL) -> dict[str, Any]:
        cache = self.store.month(month_of_day(day))
        return cache.route_info(subject_id, day, normalize_source_filter(source_filter))

    def _straight(self, gap: GapSegment, fallback: bool) -> SnapCacheEntry:
        now = self._now_ms()
        return SnapCacheEntry(
            segment_id=gap.segment_id,
            start_ms=gap.start.timestamp_ms,
            end_ms=gap.end.timestamp_ms,
            distance_m=gap.distance_m,
            points=(
                SnappedPoint(gap.start.latitude, gap.start.longitude, gap.start.timestamp_ms),
                SnappedPoint(gap.end.latitude, gap.end.longitude, gap.end.timestamp_ms),
            ),
            created_at_ms=now,
            updated_at_ms=now,
            fallback=fallback,
        )

    def snap(
        self,
        subject_id: str,
        day: str,
        points: Sequence[GeoPoint],
        source_filter: str | PointSource = SOURCE_FILTER_ALL,
        segments: Iterable[tuple[GeoPoint, GeoPoint]] | None = None,
        *,
        request_id: int | None = None,
    ) -> SnapResult:
        """Return snapped chains for the large gaps of a day.

        Args:
            subject_id: Whose track.
            day: "YYYY-MM-DD"; selects the month cache.
            points: The day's points (filtered here by source_filter).
            source_filter: "all" or a source name; part of the cache key.
            segments: Explicit (start, end) gap pairs overriding gap detection.
            request_id: Id from :attr:`tracker`; a new one is taken when omitted.
        """

        if request_id is None:
            request_id = self.tracker.next_id()
        filter_key = normalize_source_filter(source_filter)
        if filter_key != SOURCE_FILTER_ALL:
            points = [p for p in points if p.source.value == filter_key]

        manual = normalize_gap_segments(segments, self.config.min_gap_m) if segments is not None else []
        gaps = manual if manual else compute_gap_segments(points, self.config.min_gap_m)
        if not gaps:
            return SnapResult((), 0, 0.0, 0, 0, request_id)

        month = month_of_day(day)
        cache = self.store.month(month)
        lock = self.store.lock(month)

        entries: list[SnapCacheEntry] = []
        novel: list[GapSegment] = []
        with lock:
            for gap in gaps:
                cached = cache.get_entry(subject_id, day, filter_key, gap.segment_id)
                if cached is not None:
                    entries.append(cached)
                else:
                    novel.append(gap)
        cached_count = len(entries)

        api_calls = 0
        status = ""
        if novel:
            batches, placement = _pack_batches(novel, self.config.max_points_per_call)
            logger.info(
                "Snapping %d points (%d segments) in %d call(s)",
                sum(len(b) for b in batches),
                len(novel),
                len(batches),
            )

            snapped: list[list[SnappedPoint]] = []
            failed = False
            for batch in batches:
                api_calls += 1
                try:
                    result = self._client(batch)
                except Exception as exc:  # external service boundary
                    logger.warning("Road snapping client raised: %s", exc)
                    result = None
                if result is None:
                    failed = True
                    break
                snapped.append(result)

            if failed:
                entries.extend(self._straight(gap, fallback=True) for gap in novel)
                status = f"Road snapping unavailable; {len(novel)} segment(s) drawn as straight lines"
            else:
                new_entries: list[SnapCacheEntry] = []
                now = self._now_ms()
                for gap, batch_index in zip(novel, placement):
                    lo, hi = gap.start.timestamp_ms, gap.end.timestamp_ms
                    mine = tuple(sp for sp in snapped[batch_index] if lo <= sp.timestamp_ms <= hi)
                    if mine:
                        new_entries.append(
                            SnapCacheEntry(
                                segment_id=gap.segment_id,
                                start_ms=lo,
                                end_ms=hi,
                                distance_m=gap.distance_m,
                                points=mine,
                                created_at_ms=now,
                                updated_at_ms=now,
                            )
                        )
                    else:
                        new_entries.append(self._straight(gap, fallback=False))
                with lock:
                    for entry in new_entries:
                        cache.put_entry(subject_id, day, filter_key, entry)
                entries.extend(new_entries)

        cost = api_calls * self.config.cost_cents_per_call
        last_ms = max(g.end.timestamp_ms for g in gaps)
        with lock:
            cache.record_usage(subject_id, day, filter_key, api_calls, cost, last_ms)

        logger.info(
            "Snapped %d segments (%d cached, %d new); cost %.2f ct",
            len(gaps),
            cached_count,
            len(gaps) - cached_count,
            cost,
        )
        return SnapResult(
            entries=tuple(sorted(entries, key=lambda e: e.start_ms)),
            api_calls_used=api_calls,
            cost_cents=cost,
            total_segments=len(gaps),
            cached_segments=cached_count,
            request_id=request_id,
            status_message=status,
        )

    def submit(
        self,
        subject_id: str,
        day: str,
        points: Sequence[GeoPoint],
        source_filter: str | PointSource = SOURCE_FILTER_ALL,
        segments: Iterable[tuple[GeoPoint, GeoPoint]] | None = None,
    ) -> Future[SnapResult]:
        """Run :meth:`snap` on a worker thread under a fresh request id.

        Callers apply the result only if ``tracker.is_current(result.request_id)``.
        """

        request_id = self.tracker.next_id()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="road-snap")
        pairs = list(segments) if segments is not None else None
        return self._executor.submit(
            self.snap,
            subject_id,
            day,
            list(points),
            source_filter,
            pairs,
            request_id=request_id,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
