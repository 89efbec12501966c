"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius in meters
METERS_PER_DEGREE_LAT = 111_320.0
E7 = 10_000_000


def _is_real(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_valid_latitude(lat: object) -> bool:
    """Latitude must be a finite number within [-90, 90]."""

    return _is_real(lat) and -90.0 <= lat <= 90.0  # type: ignore[operator]


def is_valid_longitude(lon: object) -> bool:
    """Longitude must be a finite number within [-180, 180]."""

    return _is_real(lon) and -180.0 <= lon <= 180.0  # type: ignore[operator]


def is_valid_coordinate_pair(lat: object, lon: object) -> bool:
    return is_valid_latitude(lat) and is_valid_longitude(lon)


def e7_to_decimal(value: int | float) -> float:
    """Convert an E7 integer (degrees * 1e7) to decimal degrees.

    Raises:
        ValueError: If value is not numeric.
    """

    if not _is_real(value):
        raise ValueError(f"E7 值必须是数字：{value!r}")
    return value / E7


def decimal_to_e7(value: float) -> int:
    """Convert decimal degrees to E7. Round trips drift by at most 1e-7 degrees."""

    if not _is_real(value):
        raise ValueError(f"经纬度必须是数字：{value!r}")
    return round(value * E7)


def dms_to_decimal(dms: Sequence[float], ref: str | None = None) -> float:
    """Convert [degrees, minutes, seconds] to decimal degrees.

    Args:
        dms: Exactly three numbers.
        ref: Hemisphere reference; "S" and "W" negate the result.

    Raises:
        ValueError: If dms does not hold three values.
    """

    if len(dms) != 3:
        raise ValueError(f"DMS 必须是 [度, 分, 秒] 三个值：{dms!r}")
    degrees, minutes, seconds = (float(v) for v in dms)
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if ref is not None and ref.strip().upper() in ("S", "W"):
        decimal = -decimal
    return decimal


@dataclass(frozen=True, slots=True)
class Dms:
    degrees: int
    minutes: int
    seconds: float
    ref: str


def decimal_to_dms(value: float, is_latitude: bool = True) -> Dms:
    """Convert decimal degrees to DMS with hemisphere reference."""

    abs_v = abs(value)
    degrees = int(abs_v)
    minutes_f = (abs_v - degrees) * 60.0
    minutes = int(minutes_f)
    seconds = (minutes_f - minutes) * 60.0
    if is_latitude:
        ref = "N" if value >= 0 else "S"
    else:
        ref = "E" if value >= 0 else "W"
    return Dms(degrees=degrees, minutes=minutes, seconds=seconds, ref=ref)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, in [0, 360)."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lon2 - lon1)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


@dataclass(frozen=True, slots=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float


def bounding_box(center_lat: float, center_lon: float, radius_m: float) -> BoundingBox:
    """Approximate box around a center point.

    Uses 1/111320 degrees per meter for latitude, corrected by cos(lat) for longitude.
    """

    lat_offset = radius_m / METERS_PER_DEGREE_LAT
    lon_offset = radius_m / (METERS_PER_DEGREE_LAT * math.cos(math.radians(center_lat)))
    return BoundingBox(
        north=center_lat + lat_offset,
        south=center_lat - lat_offset,
        east=center_lon + lon_offset,
        west=center_lon - lon_offset,
    )


def is_within_bounds(lat: float, lon: float, box: BoundingBox) -> bool:
    return box.south <= lat <= box.north and box.west <= lon <= box.east


def is_inside_circle(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle."""

    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def centroid(points: Iterable[tuple[float, float]]) -> tuple[float, float]:
    """Arithmetic mean of (lat, lon) pairs.

    Raises:
        ValueError: If points is empty or holds an invalid pair.
    """

    total_lat = 0.0
    total_lon = 0.0
    n = 0
    for lat, lon in points:
        if not is_valid_coordinate_pair(lat, lon):
            raise ValueError(f"无效坐标：{lat!r}, {lon!r}")
        total_lat += lat
        total_lon += lon
        n += 1
    if n == 0:
        raise ValueError("坐标列表为空")
    return total_lat / n, total_lon / n
