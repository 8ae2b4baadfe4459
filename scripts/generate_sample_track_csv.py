from __future__ import annotations

import argparse
import csv
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final

from zoneinfo import ZoneInfo


TZ: Final[str] = "Europe/Berlin"
FIELDNAMES: Final[list[str]] = ["timestamp", "latitude", "longitude", "accuracy", "source", "deviceTag"]


@dataclass(frozen=True, slots=True)
class Stop:
    name: str
    lat: float
    lon: float


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _row(dt: datetime, lat: float, lon: float, acc: float, source: str, tag: str = "") -> dict[str, str]:
    return {
        "timestamp": str(_epoch_ms(dt)),
        "latitude": f"{lat:.7f}",
        "longitude": f"{lon:.7f}",
        "accuracy": f"{acc:.1f}",
        "source": source,
        "deviceTag": tag,
    }


def generate_day(*, seed: int, start_local: datetime, stops: list[Stop]) -> list[dict[str, str]]:
    """Generate one privacy-safe field-work day.

    The primary device drives between stops (sampled every ~15 s), walks
    around each stop, and goes silent for 25-40 minutes at some stops (breaks).
    A vehicle tracker feed follows the drives, and an external app reports
    sparse check-ins.
    """

    rng = random.Random(seed)
    tz = ZoneInfo(TZ)
    cur = start_local.replace(tzinfo=tz)
    out: list[dict[str, str]] = []

    for i, stop in enumerate(stops):
        # walk around the stop
        for _ in range(rng.randint(20, 40)):
            cur += timedelta(seconds=rng.uniform(20, 40))
            lat = stop.lat + rng.uniform(-0.0004, 0.0004)
            lon = stop.lon + rng.uniform(-0.0004, 0.0004)
            out.append(_row(cur, lat, lon, rng.choice([4.0, 6.0, 10.0]), "native"))
        if rng.random() < 0.5:
            out.append(_row(cur, stop.lat, stop.lon, 15.0, "external_app", "checkin"))

        # device idle: a break
        if i % 2 == 1:
            cur += timedelta(minutes=rng.uniform(25, 40))

        if i + 1 >= len(stops):
            break
        nxt = stops[i + 1]
        dist_deg = math.hypot(nxt.lat - stop.lat, nxt.lon - stop.lon)
        steps = max(10, int(dist_deg / 0.0015))
        for k in range(1, steps + 1):
            cur += timedelta(seconds=rng.uniform(12, 18))
            f = k / steps
            lat = stop.lat + (nxt.lat - stop.lat) * f + rng.uniform(-0.00005, 0.00005)
            lon = stop.lon + (nxt.lon - stop.lon) * f + rng.uniform(-0.00005, 0.00005)
            # occasional dropouts leave gaps worth snapping
            if rng.random() < 0.1:
                continue
            out.append(_row(cur, lat, lon, rng.choice([5.0, 8.0]), "native"))
            if k % 4 == 0:
                out.append(_row(cur + timedelta(seconds=2), lat, lon, 20.0, "followmee", "van-1"))

    out.sort(key=lambda r: int(r["timestamp"]))
    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake tracking CSV for demo/testing (privacy-safe).")
    p.add_argument("--out", type=str, default="sample_data/track.csv", help="Output CSV path")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument(
        "--start",
        type=str,
        default="2025-10-14 08:00:00",
        help="Start local time in Europe/Berlin, e.g. '2025-10-14 08:00:00'",
    )
    args = p.parse_args()

    stops = [
        Stop("depot", 52.5200000, 13.4050000),
        Stop("customer_a", 52.5310000, 13.3850000),
        Stop("customer_b", 52.5075000, 13.3900000),
        Stop("customer_c", 52.4980000, 13.4300000),
        Stop("depot_return", 52.5200000, 13.4050000),
    ]
    rows = generate_day(seed=args.seed, start_local=datetime.fromisoformat(args.start), stops=stops)

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=FIELDNAMES)
        w.writeheader()
        w.writerows(rows)

    print(f"Generated: {out_path} (rows={len(rows)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
