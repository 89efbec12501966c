"""CSV input/output: the image manifest in, GPS results out.

The manifest is what ``exiftool -csv`` prints, e.g.::

    exiftool -csv -DateTimeOriginal -CreateDate -OffsetTimeOriginal -OffsetTime \\
        -GPSLatitude -GPSLongitude -GPSAltitude -r photos/ > manifest.csv

Coordinates may be signed decimals (``-n``) or exiftool's DMS text such as
``40 deg 26' 46.00" N``. The results CSV can be applied with
``exiftool -csv=results.csv photos/``.
"""

from __future__ import annotations

import csv
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from timeline_geotag.geo import decimal_to_dms, dms_to_decimal, is_valid_coordinate_pair
from timeline_geotag.models import GpsFix, ImageMetadata
from timeline_geotag.timeutils import parse_exif_datetime

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMNS = ("DateTimeOriginal", "CreateDate", "ModifyDate")
OFFSET_COLUMNS = ("OffsetTimeOriginal", "OffsetTime")
RESULT_FIELDS = ["SourceFile", "GPSLatitude", "GPSLatitudeRef", "GPSLongitude", "GPSLongitudeRef", "GPSAltitude"]

_DMS_RE = re.compile(
    r"""^\s*(\d+(?:\.\d+)?)\s*deg\s*(\d+(?:\.\d+)?)'\s*(\d+(?:\.\d+)?)"?\s*([NSEW])?\s*$""",
    re.IGNORECASE,
)
_DECIMAL_RE = re.compile(r"^\s*([+-]?\d+(?:\.\d+)?)\s*([NSEW])?\s*$", re.IGNORECASE)
_LEADING_FLOAT_RE = re.compile(r"^\s*([+-]?\d+(?:\.\d+)?)")


@dataclass(frozen=True, slots=True)
class ManifestSummary:
    """Quick summary of manifest parsing."""

    rows_total: int
    images: int
    with_timestamp: int
    with_gps: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _ref_letter(value: str | None) -> str | None:
    s = (value or "").strip()
    return s[0].upper() if s else None


def parse_coordinate(text: str | None, ref: str | None = None) -> float | None:
    """Parse one exiftool coordinate value (decimal or DMS text).

    Returns:
        Signed decimal degrees, or None for an empty cell.

    Raises:
        ValueError: If the text is not a coordinate.
    """

    if text is None or not text.strip():
        return None
    m = _DMS_RE.match(text)
    if m is not None:
        value = dms_to_decimal([float(m.group(1)), float(m.group(2)), float(m.group(3))])
        inline_ref = m.group(4)
    else:
        m = _DECIMAL_RE.match(text)
        if m is None:
            raise ValueError(f"无法解析坐标：{text!r}")
        value = float(m.group(1))
        inline_ref = m.group(2)
    hemisphere = _ref_letter(inline_ref) or _ref_letter(ref)
    if hemisphere in ("S", "W"):
        value = -abs(value)
    return value


def parse_altitude(text: str | None, ref: str | None = None) -> float | None:
    """Parse "12.3", "12.3 m" or "12.3 m Below Sea Level"."""

    if text is None or not text.strip():
        return None
    m = _LEADING_FLOAT_RE.match(text)
    if m is None:
        return None
    value = float(m.group(1))
    below = "below" in text.lower() or (ref or "").strip().lower() in ("1", "below sea level")
    return -abs(value) if below else value


def _first(row: dict[str, str], columns: Sequence[str]) -> str | None:
    for col in columns:
        v = (row.get(col) or "").strip()
        if v:
            return v
    return None


def image_from_row(row: dict[str, str]) -> ImageMetadata:
    """Build ImageMetadata from one manifest row.

    Unparsable timestamps or coordinates leave the field empty.

    Raises:
        KeyError: If SourceFile is missing.
    """

    source = (row["SourceFile"] or "").strip()
    if not source:
        raise KeyError("SourceFile")

    timestamp = None
    raw_ts = _first(row, TIMESTAMP_COLUMNS)
    if raw_ts is not None:
        try:
            timestamp = parse_exif_datetime(raw_ts)
        except ValueError:
            logger.debug("无法解析时间 %r：%s", raw_ts, source)

    gps = None
    try:
        lat = parse_coordinate(row.get("GPSLatitude"), row.get("GPSLatitudeRef"))
        lon = parse_coordinate(row.get("GPSLongitude"), row.get("GPSLongitudeRef"))
    except ValueError as exc:
        logger.warning("%s 的 GPS 无法解析：%s", source, exc)
        lat = lon = None
    if lat is not None and lon is not None:
        if is_valid_coordinate_pair(lat, lon):
            gps = GpsFix(
                latitude=lat,
                longitude=lon,
                altitude=parse_altitude(row.get("GPSAltitude"), row.get("GPSAltitudeRef")),
            )
        else:
            logger.warning("%s 的 GPS 超出范围：%s, %s", source, lat, lon)

    return ImageMetadata(
        file_path=source,
        file_name=Path(source).name,
        timestamp=timestamp,
        timezone_offset=_first(row, OFFSET_COLUMNS),
        gps=gps,
    )


def load_image_manifest(csv_path: str | Path) -> tuple[list[ImageMetadata], ManifestSummary]:
    """Load all manifest rows into memory.

    Args:
        csv_path: Path to the exiftool CSV.

    Returns:
        (images, summary)

    Raises:
        KeyError: If the SourceFile column is missing.
    """

    p = Path(csv_path)
    rows_total = 0
    images: list[ImageMetadata] = []
    fieldnames: Sequence[str] = ()

    with p.open("r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        if "SourceFile" not in fieldnames:
            raise KeyError(f"CSV缺少必要字段：SourceFile. 实际字段：{list(fieldnames)}")
        for row in reader:
            rows_total += 1
            try:
                images.append(image_from_row(row))
            except KeyError:
                continue

    summary = ManifestSummary(
        rows_total=rows_total,
        images=len(images),
        with_timestamp=sum(1 for i in images if i.has_valid_timestamp),
        with_gps=sum(1 for i in images if i.has_gps_coordinates),
        rows_skipped=rows_total - len(images),
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("清单中有 %s 行缺少 SourceFile 已跳过", summary.rows_skipped)
    return images, summary


def _format_coordinate(value: float, is_latitude: bool) -> tuple[str, str]:
    return f"{abs(value):.7f}", decimal_to_dms(value, is_latitude).ref


class GpsResultsWriter:
    """Thread-safe collector usable as the engine's GPS writer callable.

    Rows are kept in memory; ``write`` saves them as exiftool-importable CSV.
    The same file written twice keeps the latest coordinates.
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def __call__(self, file_path: str, latitude: float, longitude: float, altitude: float | None = None) -> bool:
        if not is_valid_coordinate_pair(latitude, longitude):
            return False
        lat, lat_ref = _format_coordinate(latitude, True)
        lon, lon_ref = _format_coordinate(longitude, False)
        row = {
            "SourceFile": file_path,
            "GPSLatitude": lat,
            "GPSLatitudeRef": lat_ref,
            "GPSLongitude": lon,
            "GPSLongitudeRef": lon_ref,
            "GPSAltitude": "" if altitude is None else f"{altitude:.2f}",
        }
        with self._lock:
            self._rows[file_path] = row
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def rows(self) -> list[dict[str, str]]:
        with self._lock:
            return [self._rows[k] for k in sorted(self._rows)]

    def write(self, out_path: str | Path) -> int:
        """Write collected rows, sorted by file path. Returns the row count."""

        rows = self.rows()
        p = Path(out_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("w", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=RESULT_FIELDS)
            w.writeheader()
            w.writerows(rows)
        return len(rows)
