"""Location inference for images: timeline lookup first, nearby photos second."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Sequence

from timeline_geotag.geo import haversine_m, is_valid_coordinate_pair
from timeline_geotag.models import (
    RESULT_SOURCES,
    ImageInterpolated,
    ImageInterpolatedRefined,
    ImageMetadata,
    InterpolationResult,
    ReferenceImage,
    TimelineDirect,
    TimelineInterpolated,
)
from timeline_geotag.timeline import MS_PER_MINUTE, TimelineStore, interpolate_position
from timeline_geotag.timeutils import epoch_ms_from_dt, normalize_to_utc

logger = logging.getLogger(__name__)

Strategy = Callable[[], InterpolationResult | None]


@dataclass(frozen=True, slots=True)
class GeotagConfig:
    """Tunables for location inference.

    Attributes:
        timeline_tolerance_minutes: Max gap for a direct timeline match; bracketing allows twice this.
        secondary_radius_m: Spatial refinement radius around the provisional point.
        secondary_time_window_hours: Sibling images further apart in time are ignored.
        max_reference_images: Siblings used for the provisional average.
        temporal_weight: Share of the temporal weight in the refined average.
        spatial_weight: Share of the spatial weight in the refined average.
        timeline_fallback_hours: Enables the widening timeline search up to this many hours.
        allow_unbounded_fallback: Let the widening search accept any gap (inaccurate at large gaps).
        tz_name: IANA zone for naive image times without an EXIF offset; system zone when None.
    """

    timeline_tolerance_minutes: float = 30.0
    secondary_radius_m: float = 2000.0
    secondary_time_window_hours: float = 4.0
    max_reference_images: int = 5
    temporal_weight: float = 0.6
    spatial_weight: float = 0.4
    timeline_fallback_hours: float | None = None
    allow_unbounded_fallback: bool = False
    tz_name: str | None = None

    def __post_init__(self) -> None:
        if self.timeline_tolerance_minutes < 0:
            raise ValueError("timeline_tolerance_minutes 必须 >= 0")
        if self.secondary_radius_m <= 0:
            raise ValueError("secondary_radius_m 必须 > 0")
        if self.secondary_time_window_hours <= 0:
            raise ValueError("secondary_time_window_hours 必须 > 0")
        if self.max_reference_images < 1:
            raise ValueError("max_reference_images 必须 >= 1")


def image_timestamp_utc(image: ImageMetadata, tz_name: str | None = None) -> datetime | None:
    """Capture time of an image in UTC, or None when it has no plausible timestamp."""

    if not image.has_valid_timestamp:
        return None
    return normalize_to_utc(image.timestamp, image.timezone_offset, tz_name)  # type: ignore[arg-type]


def primary_interpolation(
    image: ImageMetadata,
    timeline: TimelineStore,
    config: GeotagConfig = GeotagConfig(),
) -> TimelineDirect | TimelineInterpolated | None:
    """Infer a location from the position timeline.

    Tries, in order: the closest record within tolerance, a linear blend of
    the records bracketing the capture time (each within twice the
    tolerance), and the widening search when ``timeline_fallback_hours`` is
    configured.
    """

    ts = image_timestamp_utc(image, config.tz_name)
    if ts is None or not timeline.located_records:
        return None
    t = epoch_ms_from_dt(ts)

    closest = timeline.find_closest_record(t, config.timeline_tolerance_minutes)
    if closest is not None:
        return TimelineDirect(
            latitude=closest.latitude,  # type: ignore[arg-type]
            longitude=closest.longitude,  # type: ignore[arg-type]
            time_difference=abs(closest.timestamp_ms - t) / MS_PER_MINUTE,
            record=closest,
            accuracy=closest.accuracy_m,
        )

    pair = timeline.find_bracketing_records(t, config.timeline_tolerance_minutes * 2)
    if pair is not None:
        before, after = pair
        blended = interpolate_position(before, after, t)
        return TimelineInterpolated(
            latitude=blended.record.latitude,  # type: ignore[arg-type]
            longitude=blended.record.longitude,  # type: ignore[arg-type]
            time_difference=min(t - before.timestamp_ms, after.timestamp_ms - t) / MS_PER_MINUTE,
            before=before,
            after=after,
            factor=blended.factor,
        )

    if config.timeline_fallback_hours is not None:
        match = timeline.find_closest_record_with_fallback(
            t,
            initial_tolerance_minutes=config.timeline_tolerance_minutes,
            max_tolerance_hours=config.timeline_fallback_hours,
            allow_unbounded=config.allow_unbounded_fallback,
        )
        if match is not None:
            return TimelineDirect(
                latitude=match.record.latitude,  # type: ignore[arg-type]
                longitude=match.record.longitude,  # type: ignore[arg-type]
                time_difference=match.time_difference_minutes,
                record=match.record,
                accuracy=match.record.accuracy_m,
                fallback_tolerance_hours=match.fallback_tolerance_hours,
            )

    logger.debug("%s：%.0f 分钟内没有时间线记录", image.file_name, config.timeline_tolerance_minutes)
    return None


@dataclass(frozen=True, slots=True)
class _Weighted:
    image: ImageMetadata
    latitude: float
    longitude: float
    time_diff_ms: int
    weight: float


def _weighted_siblings(t: int, siblings: Iterable[ImageMetadata], config: GeotagConfig) -> list[_Weighted]:
    window_ms = config.secondary_time_window_hours * 3_600_000
    out: list[_Weighted] = []
    for sib in siblings:
        if not sib.has_gps_coordinates:
            continue
        sib_ts = image_timestamp_utc(sib, config.tz_name)
        if sib_ts is None:
            continue
        diff = abs(epoch_ms_from_dt(sib_ts) - t)
        if diff > window_ms:
            continue
        weight = max(0.0, 1.0 - diff / window_ms)
        if weight <= 0:
            continue
        out.append(_Weighted(sib, sib.gps.latitude, sib.gps.longitude, diff, weight))  # type: ignore[union-attr]
    # weight desc, then closer in time, then path: stable across input orders
    out.sort(key=lambda w: (-w.weight, w.time_diff_ms, w.image.file_path))
    return out


def _reference(w: _Weighted, distance_m: float | None = None, combined: float | None = None) -> ReferenceImage:
    return ReferenceImage(
        file_path=w.image.file_path,
        file_name=w.image.file_name,
        latitude=w.latitude,
        longitude=w.longitude,
        time_diff_minutes=w.time_diff_ms / MS_PER_MINUTE,
        temporal_weight=w.weight,
        distance_m=distance_m,
        combined_weight=combined,
    )


def _refine(
    center: tuple[float, float], weighted: Sequence[_Weighted], config: GeotagConfig
) -> ImageInterpolatedRefined | None:
    radius = config.secondary_radius_m
    refs: list[ReferenceImage] = []
    total = lat_acc = lon_acc = 0.0
    for w in weighted:
        distance = haversine_m(center[0], center[1], w.latitude, w.longitude)
        if distance > radius:
            continue
        spatial = max(0.0, 1.0 - distance / radius)
        combined = config.temporal_weight * w.weight + config.spatial_weight * spatial
        if combined <= 0:
            continue
        total += combined
        lat_acc += w.latitude * combined
        lon_acc += w.longitude * combined
        refs.append(_reference(w, distance, combined))
    if not refs or total <= 0:
        return None
    lat, lon = lat_acc / total, lon_acc / total
    if not is_valid_coordinate_pair(lat, lon):
        return None
    return ImageInterpolatedRefined(
        latitude=lat,
        longitude=lon,
        confidence=total / len(refs),
        references=tuple(refs),
        radius_m=radius,
    )


def secondary_interpolation(
    image: ImageMetadata,
    siblings: Iterable[ImageMetadata],
    config: GeotagConfig = GeotagConfig(),
) -> ImageInterpolated | ImageInterpolatedRefined | None:
    """Infer a location from geotagged photos taken around the same time.

    The top ``max_reference_images`` siblings by temporal weight give a
    provisional point; every weighted sibling within ``secondary_radius_m``
    of it then contributes to a refined temporal+spatial average. The
    provisional result is returned when nothing falls inside the radius.
    """

    ts = image_timestamp_utc(image, config.tz_name)
    if ts is None:
        return None
    t = epoch_ms_from_dt(ts)
    weighted = [w for w in _weighted_siblings(t, siblings, config) if w.image.file_path != image.file_path]
    if not weighted:
        logger.debug("%s：%.1f 小时内没有带 GPS 的照片", image.file_name, config.secondary_time_window_hours)
        return None

    top = weighted[: config.max_reference_images]
    total = sum(w.weight for w in top)
    lat = sum(w.latitude * w.weight for w in top) / total
    lon = sum(w.longitude * w.weight for w in top) / total
    if not is_valid_coordinate_pair(lat, lon):
        return None

    refined = _refine((lat, lon), weighted, config)
    if refined is not None:
        return refined
    return ImageInterpolated(
        latitude=lat,
        longitude=lon,
        confidence=total / len(top),
        references=tuple(_reference(w) for w in top),
    )


def validate_interpolation_result(result: object) -> bool:
    """Numeric, finite, in-range coordinates and a known source tag."""

    lat = getattr(result, "latitude", None)
    lon = getattr(result, "longitude", None)
    source = getattr(result, "source", None)
    if not isinstance(source, str) or source not in RESULT_SOURCES:
        return False
    if not is_valid_coordinate_pair(lat, lon):
        return False
    confidence = getattr(result, "confidence", None)
    if confidence is not None and not (isinstance(confidence, (int, float)) and math.isfinite(confidence)):
        return False
    return True


def try_in_order(strategies: Iterable[Strategy]) -> InterpolationResult | None:
    """Run strategies in order; the first valid result wins."""

    for strategy in strategies:
        result = strategy()
        if result is None:
            continue
        if validate_interpolation_result(result):
            return result
        logger.warning("丢弃无效的插值结果：%r", result)
    return None


def resolve_geolocation(
    image: ImageMetadata,
    timeline: TimelineStore | None,
    siblings: Sequence[ImageMetadata],
    config: GeotagConfig = GeotagConfig(),
) -> InterpolationResult | None:
    """Best-guess location for one image: timeline first, nearby images second."""

    strategies: list[Strategy] = []
    if timeline is not None:
        strategies.append(lambda: primary_interpolation(image, timeline, config))
    strategies.append(lambda: secondary_interpolation(image, siblings, config))
    return try_in_order(strategies)


@dataclass(slots=True)
class InterpolationStatistics:
    total: int
    successful: int
    failed: int
    by_source: dict[str, int]
    average_confidence: float | None
    average_time_difference: float | None

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0


def interpolation_statistics(results: Iterable[InterpolationResult | None]) -> InterpolationStatistics:
    """Aggregate a batch of results (None counts as failed)."""

    items = list(results)
    ok = [r for r in items if r is not None]
    by_source: dict[str, int] = {}
    for r in ok:
        by_source[r.source] = by_source.get(r.source, 0) + 1
    confidences = [r.confidence for r in ok if r.confidence is not None]
    diffs = [r.time_difference for r in ok if r.time_difference is not None]
    return InterpolationStatistics(
        total=len(items),
        successful=len(ok),
        failed=len(items) - len(ok),
        by_source=by_source,
        average_confidence=sum(confidences) / len(confidences) if confidences else None,
        average_time_difference=sum(diffs) / len(diffs) if diffs else None,
    )
