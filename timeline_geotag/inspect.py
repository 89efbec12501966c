"""Timeline statistics and readable CSV export."""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from timeline_geotag.models import PositionRecord
from timeline_geotag.timeutils import DeltaStats, delta_stats, local_dt_from_epoch_ms


@dataclass(frozen=True, slots=True)
class TimelineStatistics:
    """High-level timeline inspection result."""

    total: int
    located: int
    placeholders: int
    by_source: dict[str, int] = field(default_factory=dict)
    by_signal: dict[str, int] = field(default_factory=dict)
    by_device: dict[str, int] = field(default_factory=dict)
    min_time_ms: int | None = None
    max_time_ms: int | None = None
    delta: DeltaStats | None = None
    min_lat: float | None = None
    max_lat: float | None = None
    min_lon: float | None = None
    max_lon: float | None = None
    duplicate_timestamps: int = 0


def _count(keys: Iterable[str]) -> dict[str, int]:
    out: dict[str, int] = {}
    for k in keys:
        out[k] = out.get(k, 0) + 1
    return dict(sorted(out.items(), key=lambda kv: (-kv[1], kv[0])))


def timeline_statistics(records: Sequence[PositionRecord]) -> TimelineStatistics:
    """Inspect already-parsed records.

    Sampling intervals and the coordinate extent are computed over located
    records only; the time range covers placeholders too.
    """

    if not records:
        return TimelineStatistics(total=0, located=0, placeholders=0)

    located = [r for r in records if not r.is_placeholder]
    times = sorted(r.timestamp_ms for r in records)
    located_times = sorted(r.timestamp_ms for r in located)
    dupe = 0
    for i in range(1, len(located_times)):
        if located_times[i] == located_times[i - 1]:
            dupe += 1

    lats = [r.latitude for r in located]
    lons = [r.longitude for r in located]
    return TimelineStatistics(
        total=len(records),
        located=len(located),
        placeholders=len(records) - len(located),
        by_source=_count(r.source.value for r in records),
        by_signal=_count(r.signal_source for r in records if r.signal_source),
        by_device=_count(r.device_id or "unknown" for r in records),
        min_time_ms=times[0],
        max_time_ms=times[-1],
        delta=delta_stats(located_times),
        min_lat=min(lats) if lats else None,  # type: ignore[type-var]
        max_lat=max(lats) if lats else None,  # type: ignore[type-var]
        min_lon=min(lons) if lons else None,  # type: ignore[type-var]
        max_lon=max(lons) if lons else None,  # type: ignore[type-var]
        duplicate_timestamps=dupe,
    )


def export_readable_csv(records: Iterable[PositionRecord], out_path: str | Path, tz_name: str | None = None) -> int:
    """Export records to a human-readable CSV.

    Output columns:
        - time_local: ISO datetime in tz_name (system timezone when None)
        - epoch_ms, latitude, longitude, accuracy_m, altitude_m, source, signal_source, device_id
        - image_count/file_names: placeholders only

    Returns:
        Number of rows written.
    """

    p = Path(out_path)
    n = 0
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "time_local",
                "epoch_ms",
                "latitude",
                "longitude",
                "accuracy_m",
                "altitude_m",
                "source",
                "signal_source",
                "device_id",
                "image_count",
                "file_names",
            ],
        )
        w.writeheader()
        for r in records:
            w.writerow(
                {
                    "time_local": local_dt_from_epoch_ms(r.timestamp_ms, tz_name).isoformat(sep=" "),
                    "epoch_ms": r.timestamp_ms,
                    "latitude": "" if r.latitude is None else r.latitude,
                    "longitude": "" if r.longitude is None else r.longitude,
                    "accuracy_m": "" if r.accuracy_m is None else r.accuracy_m,
                    "altitude_m": "" if r.altitude_m is None else r.altitude_m,
                    "source": r.source.value,
                    "signal_source": r.signal_source or "",
                    "device_id": r.device_id or "",
                    "image_count": len(r.file_paths) if r.is_placeholder else "",
                    "file_names": ";".join(r.file_names),
                }
            )
            n += 1
    return n
