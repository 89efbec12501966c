from __future__ import annotations

import argparse
import csv
import json
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Final

OFFSET: Final[timezone] = timezone(timedelta(hours=8))
OFFSET_TEXT: Final[str] = "+08:00"


@dataclass(frozen=True, slots=True)
class Cluster:
    name: str
    lat: float
    lon: float


def _iso_z(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _e7(value: float) -> int:
    return round(value * 10_000_000)


def _dms(value: float, is_latitude: bool) -> str:
    """exiftool-style text, e.g. 31 deg 13' 49.44" N."""

    ref = ("N" if value >= 0 else "S") if is_latitude else ("E" if value >= 0 else "W")
    v = abs(value)
    d = int(v)
    m = int((v - d) * 60)
    s = (v - d - m / 60.0) * 3600.0
    return f"{d} deg {m}' {s:.2f}\" {ref}"


def generate_timeline(
    *,
    rows: int,
    seed: int,
    start_local: datetime,
    clusters: list[Cluster],
) -> tuple[dict[str, object], list[tuple[datetime, float, float]]]:
    """Generate a fake timeline document with realistic-ish movement/stays.

    Returns:
        (document, fixes) where fixes are (aware datetime, lat, lon) in time order.
    """

    rng = random.Random(seed)
    cur = start_local.replace(tzinfo=OFFSET)
    cluster = rng.choice(clusters)

    edits: list[dict[str, object]] = []
    fixes: list[tuple[datetime, float, float]] = []
    for i in range(rows):
        if rng.random() < 0.03:
            cluster = rng.choice(clusters)

        lat = cluster.lat + rng.uniform(-0.0015, 0.0015)
        lon = cluster.lon + rng.uniform(-0.0015, 0.0015)

        # usually 1-10 minutes, sometimes a multi-hour hole in coverage
        if rng.random() < 0.05:
            cur = cur + timedelta(hours=rng.uniform(2, 6))
        else:
            cur = cur + timedelta(seconds=rng.uniform(60, 600))
        fixes.append((cur, lat, lon))

        edits.append(
            {
                "deviceId": "sample-phone",
                "rawSignal": {
                    "signal": {
                        "position": {
                            "point": {"latE7": _e7(lat), "lngE7": _e7(lon)},
                            "timestamp": _iso_z(cur),
                            "accuracyMm": rng.choice([5000, 12000, 35000]),
                            "altitudeMeters": round(rng.uniform(0, 600), 1),
                            "source": rng.choice(["GPS", "WIFI", "CELL"]),
                        }
                    }
                },
            }
        )
        if i % 50 == 49:
            edits.append(
                {
                    "deviceId": "sample-phone",
                    "placeAggregates": {
                        "processWindow": {"startTime": _iso_z(cur)},
                        "placeAggregateInfo": [
                            {"point": {"latE7": _e7(cluster.lat), "lngE7": _e7(cluster.lon)}, "score": 1.0, "placeId": cluster.name}
                        ],
                    },
                }
            )
    return {"timelineEdits": edits}, fixes


def generate_manifest(
    *,
    images: int,
    seed: int,
    fixes: list[tuple[datetime, float, float]],
) -> list[dict[str, str]]:
    """Generate exiftool -csv rows: some geotagged, some not, a burst and a few out-of-range shots."""

    rng = random.Random(seed + 1)
    out: list[dict[str, str]] = []
    first, last = fixes[0][0], fixes[-1][0]

    def row(name: str, when: datetime, lat: float | None, lon: float | None) -> dict[str, str]:
        local = when.astimezone(OFFSET)
        return {
            "SourceFile": f"photos/{name}",
            "DateTimeOriginal": local.strftime("%Y:%m:%d %H:%M:%S"),
            "OffsetTimeOriginal": OFFSET_TEXT,
            "GPSLatitude": "" if lat is None else _dms(lat, True),
            "GPSLongitude": "" if lon is None else _dms(lon, False),
        }

    for i in range(images):
        when, lat, lon = rng.choice(fixes)
        when = when + timedelta(minutes=rng.uniform(-20, 20))
        if rng.random() < 0.3:
            out.append(row(f"IMG_{i:04d}.jpg", when, lat + rng.uniform(-0.0005, 0.0005), lon))
        else:
            out.append(row(f"IMG_{i:04d}.jpg", when, None, None))

    burst_at = first - timedelta(days=1)
    for j in range(5):
        out.append(row(f"BURST_{j:02d}.jpg", burst_at, None, None))
    out.append(row("LATE_0001.jpg", last + timedelta(days=2), None, None))
    return out


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Generate a fake timeline + image manifest for demo/testing (privacy-safe).")
    p.add_argument("--out-dir", type=str, default="sample_data", help="Output directory")
    p.add_argument("--rows", type=int, default=500, help="Number of timeline positions")
    p.add_argument("--images", type=int, default=60, help="Number of photos in the manifest")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument(
        "--start",
        type=str,
        default="2025-01-01 08:00:00",
        help="Start local time (UTC+08:00), e.g. '2025-01-01 08:00:00'",
    )
    args = p.parse_args(argv)

    clusters = [
        Cluster("shanghai_office", 31.2304000, 121.4737000),
        Cluster("shanghai_home", 31.2222000, 121.4588000),
        Cluster("beijing_trip", 39.9042000, 116.4074000),
        Cluster("shenzhen_trip", 22.5431000, 114.0579000),
    ]
    document, fixes = generate_timeline(
        rows=args.rows, seed=args.seed, start_local=datetime.fromisoformat(args.start), clusters=clusters
    )
    manifest = generate_manifest(images=args.images, seed=args.seed, fixes=fixes)

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    timeline_path = out_dir / "Timeline.json"
    timeline_path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")

    manifest_path = out_dir / "manifest.csv"
    with manifest_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["SourceFile", "DateTimeOriginal", "OffsetTimeOriginal", "GPSLatitude", "GPSLongitude"])
        w.writeheader()
        w.writerows(manifest)

    print(f"Generated: {timeline_path} (positions={len(fixes)}), {manifest_path} (images={len(manifest)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
