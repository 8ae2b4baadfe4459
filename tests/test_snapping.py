from __future__ import annotations

from pathlib import Path
import json
import os
import sys
import tempfile
import time
import unittest
from unittest import mock


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from route_replay.models import GeoPoint, PointSource, SnappedPoint
from route_replay.snapping import (
    DirectoryBackup,
    RoadSnapper,
    RoadsApiConfig,
    SnapCacheStore,
    SnapRequestTracker,
    _pack_batches,
    compute_gap_segments,
    normalize_gap_segments,
    normalize_source_filter,
    parse_snapped_points,
    roads_snap_raw,
)


DAY = "2025-10-14"
BASE_TS = 1_760_428_800_000  # 2025-10-14 08:00 UTC


def _pt(k: int, step_deg: float = 0.001, source: PointSource = PointSource.PRIMARY_DEVICE) -> GeoPoint:
    # ~111 m per step northwards, one minute apart
    return GeoPoint(BASE_TS + k * 60_000, 52.5 + k * step_deg, 13.4, source=source)


class FakeRoads:
    """Snaps every coordinate slightly east; optionally fails or raises."""

    def __init__(self, fail: bool = False, raise_exc: bool = False) -> None:
        self.fail = fail
        self.raise_exc = raise_exc
        self.batches: list[list[GeoPoint]] = []

    def __call__(self, batch):
        self.batches.append(list(batch))
        if self.raise_exc:
            raise ConnectionError("network down")
        if self.fail:
            return None
        return [SnappedPoint(p.latitude, p.longitude + 0.0001, p.timestamp_ms, place_id=f"pl{i}") for i, p in enumerate(batch)]


class FailingBackup:
    def restore(self, name: str) -> str | None:
        return None

    def upload(self, name: str, text: str) -> None:
        raise OSError("drive offline")


def _snapper(cache_dir: str | Path, client, backup=None, **cfg) -> RoadSnapper:
    store = SnapCacheStore(cache_dir, backup, tz_name="UTC", now_ms=lambda: 1_000)
    store.init("2025-10")
    return RoadSnapper(store, RoadsApiConfig(api_key="test", **cfg), client, now_ms=lambda: 1_000)


class GapSegmentsTest(unittest.TestCase):
    def test_only_large_gaps_are_segments(self) -> None:
        points = [_pt(0), _pt(1), GeoPoint(BASE_TS + 120_500, 52.5011, 13.4), _pt(3)]
        gaps = compute_gap_segments(points, 50.0)
        self.assertEqual(len(gaps), 2)
        self.assertEqual(gaps[0].segment_id, f"{BASE_TS}-{BASE_TS + 60_000}")
        self.assertGreater(gaps[0].distance_m, 100.0)

    def test_normalize_drops_short_pairs_and_sorts(self) -> None:
        pairs = [(_pt(2), _pt(3)), (_pt(0), _pt(1)), (_pt(0), GeoPoint(BASE_TS + 1, 52.5, 13.4))]
        gaps = normalize_gap_segments(pairs)
        self.assertEqual([g.start.timestamp_ms for g in gaps], [BASE_TS, BASE_TS + 120_000])

    def test_source_filter_names(self) -> None:
        self.assertEqual(normalize_source_filter(None), "all")
        self.assertEqual(normalize_source_filter("ALL"), "all")
        self.assertEqual(normalize_source_filter("native"), "primary_device")
        self.assertEqual(normalize_source_filter(PointSource.SERVICE_B), "service_b")
        with self.assertRaises(ValueError):
            normalize_source_filter("nope")


class ParseSnappedPointsTest(unittest.TestCase):
    def test_interpolated_points_get_interpolated_timestamps(self) -> None:
        batch = [_pt(0), _pt(1)]
        raw = {
            "snappedPoints": [
                {"location": {"latitude": 52.5, "longitude": 13.4001}, "originalIndex": 0, "placeId": "a"},
                {"location": {"latitude": 52.5003, "longitude": 13.4002}, "placeId": "b"},
                {"location": {"latitude": 52.5006, "longitude": 13.4002}, "placeId": "c"},
                {"location": {"latitude": 52.501, "longitude": 13.4001}, "originalIndex": 1, "placeId": "d"},
            ]
        }
        points = parse_snapped_points(raw, batch)
        self.assertEqual(
            [p.timestamp_ms for p in points],
            [BASE_TS, BASE_TS + 20_000, BASE_TS + 40_000, BASE_TS + 60_000],
        )
        self.assertEqual(points[1].place_id, "b")

    def test_empty_response_keeps_inputs(self) -> None:
        batch = [_pt(0), _pt(1)]
        points = parse_snapped_points({}, batch)
        self.assertEqual([(p.latitude, p.longitude) for p in points], [(b.latitude, b.longitude) for b in batch])
        self.assertEqual([p.timestamp_ms for p in points], [BASE_TS, BASE_TS + 60_000])


class RoadSnapperTest(unittest.TestCase):
    def test_one_uncached_segment_costs_one_call(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = FakeRoads()
            snapper = _snapper(tmp, client)
            result = snapper.snap("s1", DAY, [_pt(0), _pt(1)])

            self.assertEqual(result.api_calls_used, 1)
            self.assertEqual(result.cost_cents, 0.5)
            self.assertEqual(result.segment_count, 1)
            self.assertFalse(result.from_cache)
            self.assertEqual(snapper.cache_info("s1", DAY)["cachedSegmentCount"], 1)
            self.assertEqual(len(client.batches), 1)
            self.assertEqual(len(client.batches[0]), 2)

    def test_cached_segment_is_not_requested_again(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = FakeRoads()
            snapper = _snapper(tmp, client)
            first = snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            second = snapper.snap("s1", DAY, [_pt(0), _pt(1)])

            self.assertEqual(second.api_calls_used, 0)
            self.assertEqual(second.cost_cents, 0.0)
            self.assertTrue(second.from_cache)
            self.assertEqual(second.cache_hit_ratio, 1.0)
            self.assertEqual(second.entries, first.entries)
            self.assertEqual(len(client.batches), 1)

            info = snapper.cache_info("s1", DAY)
            self.assertEqual(info["apiCallsUsed"], 1)
            self.assertEqual(info["costCents"], 0.5)

    def test_cache_key_includes_subject_and_source_filter(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = FakeRoads()
            snapper = _snapper(tmp, client)
            snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            self.assertEqual(snapper.snap("s2", DAY, [_pt(0), _pt(1)]).api_calls_used, 1)
            self.assertEqual(snapper.snap("s1", DAY, [_pt(0), _pt(1)], "native").api_calls_used, 1)
            self.assertEqual(len(client.batches), 3)

    def test_source_filter_selects_points(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            points = [_pt(0), _pt(1, source=PointSource.SERVICE_A), _pt(2)]
            result = snapper.snap("s1", DAY, points, "native")
            self.assertEqual([e.segment_id for e in result.entries], [f"{BASE_TS}-{BASE_TS + 120_000}"])

    def test_shared_endpoints_and_batching(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = FakeRoads()
            snapper = _snapper(tmp, client)
            points = [_pt(k) for k in range(120)]
            result = snapper.snap("s1", DAY, points)

            self.assertEqual(result.total_segments, 119)
            self.assertEqual(result.api_calls_used, 2)
            self.assertEqual([len(b) for b in client.batches], [100, 21])
            self.assertEqual(result.cost_cents, 1.0)
            for entry in result.entries:
                self.assertEqual([p.timestamp_ms for p in entry.points], [entry.start_ms, entry.end_ms])
                self.assertFalse(entry.fallback)

    def test_batch_split_keeps_each_gap_whole(self) -> None:
        batches: list[list[GeoPoint]] = []

        def with_midpoints(batch):
            batches.append(list(batch))
            out = [SnappedPoint(batch[0].latitude, batch[0].longitude, batch[0].timestamp_ms)]
            for a, b in zip(batch, batch[1:]):
                mid = SnappedPoint((a.latitude + b.latitude) / 2, a.longitude, (a.timestamp_ms + b.timestamp_ms) // 2)
                out.append(mid)
                out.append(SnappedPoint(b.latitude, b.longitude, b.timestamp_ms))
            return out

        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, with_midpoints)
            result = snapper.snap("s1", DAY, [_pt(k) for k in range(101)])

        self.assertEqual([len(b) for b in batches], [100, 2])
        self.assertEqual(batches[1][0].timestamp_ms, batches[0][-1].timestamp_ms)
        self.assertEqual(len(result.entries), 100)
        for entry in result.entries:
            self.assertEqual(len(entry.points), 3, entry.segment_id)
            self.assertEqual(entry.points[0].timestamp_ms, entry.start_ms)
            self.assertEqual(entry.points[-1].timestamp_ms, entry.end_ms)

    def test_pack_batches_shares_only_chained_endpoints(self) -> None:
        points = [_pt(0), _pt(1), GeoPoint(BASE_TS + 120_000, 52.501, 13.4), _pt(3), _pt(4)]
        gaps = compute_gap_segments(points, 50.0)
        batches, placement = _pack_batches(gaps, 4)
        self.assertEqual(
            [[p.timestamp_ms for p in b] for b in batches],
            [
                [BASE_TS, BASE_TS + 60_000, BASE_TS + 120_000, BASE_TS + 180_000],
                [BASE_TS + 180_000, BASE_TS + 240_000],
            ],
        )
        self.assertEqual(placement, [0, 0, 1])

    def test_explicit_segments_override_detection(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            points = [_pt(k) for k in range(5)]
            result = snapper.snap("s1", DAY, points, segments=[(_pt(1), _pt(3))])
            self.assertEqual([e.segment_id for e in result.entries], [f"{BASE_TS + 60_000}-{BASE_TS + 180_000}"])

    def test_failure_falls_back_without_caching(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads(fail=True))
            result = snapper.snap("s1", DAY, [_pt(0), _pt(1)])

            self.assertEqual(result.fallback_segment_ids, [f"{BASE_TS}-{BASE_TS + 60_000}"])
            self.assertTrue(result.status_message)
            self.assertEqual(result.entries[0].points[0].latitude, 52.5)
            self.assertEqual(result.api_calls_used, 1)
            self.assertEqual(snapper.cache_info("s1", DAY)["cachedSegmentCount"], 0)

            snapper._client = FakeRoads()
            retry = snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            self.assertEqual(retry.api_calls_used, 1)
            self.assertEqual(retry.fallback_segment_ids, [])

    def test_client_exception_is_contained(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads(raise_exc=True))
            with self.assertLogs("route_replay.snapping", level="WARNING"):
                result = snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            self.assertEqual(len(result.fallback_segment_ids), 1)

    def test_no_gaps_means_no_calls(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = FakeRoads()
            snapper = _snapper(tmp, client)
            result = snapper.snap("s1", DAY, [_pt(0, step_deg=0.0), _pt(1, step_deg=0.0)])
            self.assertEqual(result.segment_count, 0)
            self.assertEqual(result.cache_hit_ratio, 1.0)
            self.assertEqual(client.batches, [])

    def test_submit_marks_only_latest_request_current(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            try:
                first = snapper.submit("s1", DAY, [_pt(0), _pt(1)]).result()
                second = snapper.submit("s1", DAY, [_pt(0), _pt(1)], "native").result()
            finally:
                snapper.close()
            self.assertFalse(snapper.tracker.is_current(first.request_id))
            self.assertTrue(snapper.tracker.is_current(second.request_id))

    def test_calculate_cost(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            self.assertEqual(snapper.calculate_cost(0), (0, 0.0))
            self.assertEqual(snapper.calculate_cost(1), (1, 0.5))
            self.assertEqual(snapper.calculate_cost(60), (2, 1.0))


class CachePersistenceTest(unittest.TestCase):
    def test_flush_writes_month_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            self.assertEqual(snapper.store.flush(), 1)
            self.assertEqual(snapper.store.flush(), 0)

            data = json.loads((Path(tmp) / "2025-10.json").read_text(encoding="utf-8"))
            self.assertEqual(data["month"], "2025-10")
            route = data["routes"][0]
            self.assertEqual((route["userId"], route["date"], route["source"]), ("s1", DAY, "all"))
            self.assertEqual(route["totalApiCallsUsed"], 1)
            self.assertIn(f"{BASE_TS}-{BASE_TS + 60_000}", route["segments"])
            self.assertFalse((Path(tmp) / "2025-10.journal.jsonl").exists())

            client = FakeRoads()
            reloaded = _snapper(tmp, client)
            self.assertEqual(reloaded.snap("s1", DAY, [_pt(0), _pt(1)]).api_calls_used, 0)

    def test_autoflush_writes_before_dispose(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            snapper.store.start_autoflush(0.05)
            try:
                snapper.snap("s1", DAY, [_pt(0), _pt(1)])
                month_file = Path(tmp) / "2025-10.json"
                deadline = time.monotonic() + 2.0
                while not month_file.exists() and time.monotonic() < deadline:
                    time.sleep(0.01)
                self.assertTrue(month_file.exists())
            finally:
                snapper.store.dispose()

    def test_journal_survives_missing_flush(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            _snapper(tmp, FakeRoads()).snap("s1", DAY, [_pt(0), _pt(1)])
            self.assertFalse((Path(tmp) / "2025-10.json").exists())

            client = FakeRoads()
            recovered = _snapper(tmp, client)
            self.assertEqual(recovered.snap("s1", DAY, [_pt(0), _pt(1)]).api_calls_used, 0)
            self.assertEqual(recovered.cache_info("s1", DAY)["apiCallsUsed"], 1)

    def test_corrupted_cache_is_kept_aside(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "2025-10.json").write_text("{not json", encoding="utf-8")
            with self.assertLogs("route_replay.snapping", level="WARNING"):
                snapper = _snapper(tmp, FakeRoads())
            self.assertTrue((Path(tmp) / "2025-10.json.broken").exists())
            self.assertEqual(snapper.store.month("2025-10").origin, "corrupt")
            self.assertEqual(snapper.snap("s1", DAY, [_pt(0), _pt(1)]).api_calls_used, 1)

    def test_restore_from_backup_when_local_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            backup = DirectoryBackup(Path(tmp) / "drive")
            first = _snapper(Path(tmp) / "a", FakeRoads(), backup)
            first.snap("s1", DAY, [_pt(0), _pt(1)])
            first.store.dispose()
            self.assertTrue((Path(tmp) / "drive" / "2025-10.json").exists())

            client = FakeRoads()
            second = _snapper(Path(tmp) / "b", client, backup)
            self.assertEqual(second.store.month("2025-10").origin, "remote")
            self.assertEqual(second.snap("s1", DAY, [_pt(0), _pt(1)]).api_calls_used, 0)
            second.store.flush()
            self.assertTrue((Path(tmp) / "b" / "2025-10.json").exists())

    def test_backup_failure_keeps_local_copy(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads(), FailingBackup())
            snapper.snap("s1", DAY, [_pt(0), _pt(1)])
            with self.assertLogs("route_replay.snapping", level="WARNING"):
                self.assertEqual(snapper.store.flush(), 1)
            self.assertTrue((Path(tmp) / "2025-10.json").exists())

    def test_day_selects_month_partition(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapper = _snapper(tmp, FakeRoads())
            snapper.snap("s1", "2025-11-02", [_pt(0), _pt(1)])
            self.assertEqual(snapper.store.months(), ["2025-10", "2025-11"])


class ConfigTest(unittest.TestCase):
    def test_api_key_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"ROADS_API_KEY": "from-env"}):
            self.assertEqual(RoadsApiConfig.from_env().api_key, "from-env")
            self.assertEqual(RoadsApiConfig.from_env(api_key="explicit").api_key, "explicit")

    def test_max_points_per_call_is_bounded(self) -> None:
        with self.assertRaises(ValueError):
            RoadsApiConfig(max_points_per_call=101)

    def test_missing_api_key_returns_none(self) -> None:
        with self.assertLogs("route_replay.snapping", level="WARNING"):
            self.assertIsNone(roads_snap_raw([(52.5, 13.4), (52.6, 13.4)], RoadsApiConfig(api_key="")))

    def test_request_tracker(self) -> None:
        tracker = SnapRequestTracker()
        a = tracker.next_id()
        b = tracker.next_id()
        self.assertLess(a, b)
        self.assertTrue(tracker.is_current(b))
        self.assertFalse(tracker.is_current(a))


if __name__ == "__main__":
    unittest.main()
