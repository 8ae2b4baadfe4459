from __future__ import annotations

from pathlib import Path
import sys
import tempfile
import unittest


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from route_replay.ingest import build_track, load_geo_points, point_from_record
from route_replay.models import GeoPoint, PointSource


CSV_TEXT = """timestamp,latitude,longitude,accuracy,source,deviceTag
60000,52.5201,13.4051,5,native,
0,52.5200,13.4050,4,native,
120000,0.0,0.0,5,native,
abc,52.52,13.40,5,native,
180000,52.5300,13.4100,,followmee,van-1
240000,52.5300,13.4100,12,external_app,
"""


class IngestTest(unittest.TestCase):
    def _write(self, tmp: str, text: str) -> Path:
        p = Path(tmp) / "track.csv"
        p.write_text(text, encoding="utf-8")
        return p

    def test_load_filters_bad_and_corrupted_rows(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            points, summary = load_geo_points(self._write(tmp, CSV_TEXT))

        self.assertEqual(summary.rows_total, 6)
        self.assertEqual(summary.rows_parsed, 4)
        self.assertEqual(summary.rows_corrupted, 1)
        self.assertEqual(summary.rows_skipped, 1)
        self.assertEqual([p.timestamp_ms for p in points], [60000, 0, 180000, 240000])
        self.assertEqual(points[2].source, PointSource.SERVICE_A)
        self.assertEqual(points[2].device_tag, "van-1")
        self.assertEqual(points[2].accuracy_m, 0.0)
        self.assertEqual(points[3].source, PointSource.EXTERNAL_APP)

    def test_missing_required_column_raises_key_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(tmp, "timestamp,latitude\n0,52.52\n")
            with self.assertRaises(KeyError):
                load_geo_points(path)

    def test_point_from_record_parses_source_aliases(self) -> None:
        pt = point_from_record({"timestamp": "1000", "latitude": "52.5", "longitude": "13.4", "source": "external"})
        self.assertIsNotNone(pt)
        self.assertEqual(pt.source, PointSource.SERVICE_B)
        self.assertIsNone(pt.device_tag)

    def test_unknown_source_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PointSource.parse("carrier-pigeon")
        self.assertEqual(PointSource.parse(""), PointSource.PRIMARY_DEVICE)

    def test_build_track_sorts_points(self) -> None:
        track = build_track([GeoPoint(2, 52.5, 13.4), GeoPoint(1, 52.5, 13.4)], "s1", "2025-10-14")
        self.assertEqual([p.timestamp_ms for p in track.points], [1, 2])
        self.assertEqual((track.start_ms, track.end_ms), (1, 2))

    def test_signature_changes_with_points(self) -> None:
        a = build_track([GeoPoint(1, 52.5, 13.4)], "s1", "2025-10-14")
        b = build_track([GeoPoint(1, 52.5, 13.4001)], "s1", "2025-10-14")
        self.assertNotEqual(a.signature, b.signature)
        self.assertEqual(a.signature, build_track([GeoPoint(1, 52.5, 13.4)], "s2", "x").signature)


if __name__ == "__main__":
    unittest.main()
