from __future__ import annotations

from datetime import datetime
from pathlib import Path
import sys
import tempfile
import unittest

from zoneinfo import ZoneInfo


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from route_replay.breaks import (
    BreakParams,
    break_at,
    detect_breaks,
    iter_breaks_from_csv,
    resolve_breaks,
    sum_breaks,
    write_breaks_csv,
)
from route_replay.models import BreakAnnotation, BreakPeriod, GeoPoint, PointSource


TZ = "Europe/Berlin"
DAY_START = int(datetime(2025, 10, 14, 10, 0, tzinfo=ZoneInfo(TZ)).timestamp() * 1000)
THRESHOLD = 20 * 60 * 1000


def _pt(ts: int, lat: float = 52.52, lng: float = 13.405, source: PointSource = PointSource.PRIMARY_DEVICE) -> GeoPoint:
    return GeoPoint(ts, lat, lng, source=source)


class DetectBreaksTest(unittest.TestCase):
    def setUp(self) -> None:
        self.params = BreakParams(tz_name=TZ)

    def test_close_points_have_no_break(self) -> None:
        points = [_pt(0), _pt(60_000), _pt(130_000)]
        self.assertEqual(detect_breaks(points, self.params), [])

    def test_single_long_gap_is_one_break(self) -> None:
        breaks = detect_breaks([_pt(0, 52.52, 13.40), _pt(1_500_000, 52.54, 13.42)], self.params)
        self.assertEqual(len(breaks), 1)
        self.assertEqual(breaks[0].duration_ms, 1_500_000)
        self.assertAlmostEqual(breaks[0].center_lat, 52.53)
        self.assertAlmostEqual(breaks[0].center_lng, 13.41)
        self.assertEqual(breaks[0].method, "gap")

    def test_threshold_boundary(self) -> None:
        self.assertEqual(len(detect_breaks([_pt(0), _pt(THRESHOLD)], self.params)), 1)
        self.assertEqual(detect_breaks([_pt(0), _pt(THRESHOLD - 1)], self.params), [])

    def test_only_primary_device_counts(self) -> None:
        points = [
            _pt(0),
            _pt(600_000, source=PointSource.SERVICE_A),
            _pt(1_200_000, source=PointSource.SERVICE_A),
            _pt(1_500_000),
            _pt(5_000_000, source=PointSource.EXTERNAL_APP),
        ]
        breaks = detect_breaks(points, self.params)
        self.assertEqual([(b.start_ms, b.end_ms) for b in breaks], [(0, 1_500_000)])

    def test_unsorted_input(self) -> None:
        breaks = detect_breaks([_pt(1_500_000), _pt(0)], self.params)
        self.assertEqual(len(breaks), 1)
        self.assertEqual(breaks[0].start_ms, 0)

    def test_invalid_threshold(self) -> None:
        with self.assertRaises(ValueError):
            BreakParams(tz_name=TZ, inactivity_threshold_ms=0)


class ResolveBreaksTest(unittest.TestCase):
    def setUp(self) -> None:
        self.computed = [BreakPeriod(DAY_START, DAY_START + THRESHOLD, 52.5, 13.4)]
        self.authoritative = [
            BreakPeriod(
                DAY_START + 3_600_000,
                DAY_START + 7_200_000,
                52.6,
                13.5,
                annotations=(BreakAnnotation(place_name="Bakery", had_conversation=True),),
                method="annotation_service",
            )
        ]

    def test_no_authoritative_list_uses_computed(self) -> None:
        self.assertEqual(resolve_breaks(self.computed, None, day="2025-10-14", tz_name=TZ), self.computed)

    def test_authoritative_list_supersedes(self) -> None:
        chosen = resolve_breaks(self.computed, self.authoritative, day="2025-10-14", tz_name=TZ)
        self.assertEqual(chosen, self.authoritative)

    def test_authoritative_list_for_other_day_falls_back(self) -> None:
        with self.assertLogs("route_replay.breaks", level="WARNING"):
            chosen = resolve_breaks(self.computed, self.authoritative, day="2025-10-15", tz_name=TZ)
        self.assertEqual(chosen, self.computed)

    def test_break_at(self) -> None:
        b = self.computed[0]
        self.assertIs(break_at(self.computed, b.start_ms), b)
        self.assertIs(break_at(self.computed, b.end_ms), b)
        self.assertIsNone(break_at(self.computed, b.end_ms + 1))


class BreaksCsvTest(unittest.TestCase):
    def test_write_then_read_keeps_times_and_annotations(self) -> None:
        breaks = [
            BreakPeriod(DAY_START, DAY_START + 1_500_000, 52.53, 13.41),
            BreakPeriod(
                DAY_START + 7_200_000,
                DAY_START + 9_000_000,
                52.54,
                13.42,
                annotations=(BreakAnnotation(place_name="Depot", had_conversation=True),),
            ),
        ]
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "breaks.csv"
            write_breaks_csv(breaks, out, TZ)
            loaded = list(iter_breaks_from_csv(out, TZ))

        self.assertEqual([(b.start_ms, b.end_ms) for b in loaded], [(b.start_ms, b.end_ms) for b in breaks])
        self.assertEqual(loaded[0].annotations, ())
        self.assertEqual(loaded[1].annotations[0].place_name, "Depot")
        self.assertTrue(loaded[1].annotations[0].had_conversation)

        total = sum_breaks(loaded)
        self.assertEqual(total.breaks, 2)
        self.assertAlmostEqual(total.total_seconds, 3_300.0)
        self.assertEqual(total.total_hhmmss, "00:55:00")


if __name__ == "__main__":
    unittest.main()
