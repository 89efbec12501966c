from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from timeline_geotag.models import GpsFix, ImageMetadata

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


def iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def position_edit(
    when: datetime,
    lat: float,
    lon: float,
    device: str = "phone",
    source: str = "GPS",
    accuracy_mm: int | None = None,
) -> dict[str, Any]:
    position: dict[str, Any] = {
        "point": {"latE7": round(lat * 1e7), "lngE7": round(lon * 1e7)},
        "timestamp": iso(when),
        "source": source,
    }
    if accuracy_mm is not None:
        position["accuracyMm"] = accuracy_mm
    return {"deviceId": device, "rawSignal": {"signal": {"position": position}}}


def placeholder_edit(when: datetime, paths: list[str] | None = None) -> dict[str, Any]:
    paths = paths or []
    return {
        "deviceId": "image_timestamp_extension",
        "placeholderEntry": {
            "timestamp": iso(when),
            "imageCount": len(paths),
            "filePaths": paths,
            "fileNames": [Path(p).name for p in paths],
        },
    }


def photo(
    name: str,
    when: datetime | None,
    lat: float | None = None,
    lon: float | None = None,
    offset: str | None = "+00:00",
) -> ImageMetadata:
    """ImageMetadata with a naive EXIF-style timestamp taken from an aware UTC datetime."""

    naive = when.astimezone(UTC).replace(tzinfo=None) if when is not None else None
    gps = GpsFix(latitude=lat, longitude=lon) if lat is not None and lon is not None else None
    return ImageMetadata(file_path=f"/photos/{name}", file_name=name, timestamp=naive, timezone_offset=offset, gps=gps)



def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)
