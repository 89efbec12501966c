from __future__ import annotations

import math

import pytest
from helpers import T0, minutes, photo

from timeline_geotag.geo import haversine_m
from timeline_geotag.interpolation import (
    GeotagConfig,
    image_timestamp_utc,
    interpolation_statistics,
    primary_interpolation,
    resolve_geolocation,
    secondary_interpolation,
    try_in_order,
    validate_interpolation_result,
)
from timeline_geotag.models import (
    ImageInterpolated,
    ImageInterpolatedRefined,
    PositionRecord,
    TimelineDirect,
    TimelineInterpolated,
)
from timeline_geotag.timeline import TimelineStore
from timeline_geotag.timeutils import epoch_ms_from_dt


def _record(dt, lat, lon) -> PositionRecord:
    return PositionRecord(timestamp_ms=epoch_ms_from_dt(dt), latitude=lat, longitude=lon)


@pytest.fixture
def two_point_timeline() -> TimelineStore:
    return TimelineStore([_record(T0 - minutes(10), 40.0, -74.0), _record(T0 + minutes(10), 40.1, -74.1)])


def test_bracketing_gives_midpoint(two_point_timeline):
    result = primary_interpolation(photo("a.jpg", T0), two_point_timeline, GeotagConfig(timeline_tolerance_minutes=5))
    assert isinstance(result, TimelineInterpolated)
    assert result.source == "timeline_interpolated"
    assert result.latitude == pytest.approx(40.05)
    assert result.longitude == pytest.approx(-74.05)
    assert result.time_difference == pytest.approx(10.0)
    assert result.factor == pytest.approx(0.5)
    assert result.confidence is None


def test_direct_match_within_tolerance(two_point_timeline):
    result = primary_interpolation(photo("a.jpg", T0), two_point_timeline, GeotagConfig())
    assert isinstance(result, TimelineDirect)
    assert (result.latitude, result.longitude) == (40.0, -74.0)
    assert result.time_difference == pytest.approx(10.0)
    assert result.interpolation_details()["method"] == "closest_record"


def test_no_match_outside_both_windows(two_point_timeline):
    far = photo("a.jpg", T0 + minutes(120))
    assert primary_interpolation(far, two_point_timeline, GeotagConfig()) is None


def test_exif_offset_is_applied():
    store = TimelineStore([_record(T0, 10.0, 20.0), _record(T0 + minutes(120), 11.0, 21.0)])
    # 14:00 local at UTC+02:00 is 12:00Z
    local = photo("a.jpg", T0 + minutes(120), offset="+02:00")
    result = primary_interpolation(local, store, GeotagConfig(timeline_tolerance_minutes=1))
    assert isinstance(result, TimelineDirect)
    assert result.latitude == 10.0
    assert image_timestamp_utc(local) == T0


def test_implausible_timestamp_is_not_located(two_point_timeline):
    img = photo("a.jpg", T0)
    img.timestamp = img.timestamp.replace(year=1970)
    assert image_timestamp_utc(img) is None
    assert primary_interpolation(img, two_point_timeline) is None


def test_widening_search_only_when_configured():
    store = TimelineStore([_record(T0 + minutes(300), 5.0, 5.0)])
    img = photo("a.jpg", T0)
    assert primary_interpolation(img, store, GeotagConfig()) is None

    result = primary_interpolation(img, store, GeotagConfig(timeline_fallback_hours=24))
    assert isinstance(result, TimelineDirect)
    assert result.fallback_tolerance_hours == pytest.approx(6.0)
    assert result.interpolation_details()["fallbackToleranceHours"] == pytest.approx(6.0)


def test_nearby_images_inside_hull_and_refined():
    siblings = [
        photo("a.jpg", T0 + minutes(10), 40.000, -74.000),
        photo("b.jpg", T0 + minutes(60), 40.005, -74.005),
        photo("c.jpg", T0 + minutes(120), 40.010, -74.000),
    ]
    result = resolve_geolocation(photo("x.jpg", T0), None, siblings, GeotagConfig())
    assert result is not None
    assert result.source.startswith("image_interpolated")
    assert isinstance(result, ImageInterpolatedRefined)
    assert 40.000 <= result.latitude <= 40.010
    assert -74.005 <= result.longitude <= -74.000
    # weighted toward the sibling closest in time
    assert haversine_m(result.latitude, result.longitude, 40.0, -74.0) < haversine_m(
        result.latitude, result.longitude, 40.010, -74.000
    )
    assert 0.0 < result.confidence <= 1.0
    assert len(result.references) == 3


def test_refined_confidence_single_sibling():
    siblings = [photo("a.jpg", T0 + minutes(120), 40.0, -74.0)]
    result = secondary_interpolation(photo("x.jpg", T0), siblings)
    assert isinstance(result, ImageInterpolatedRefined)
    # temporal 0.5 (2h of a 4h window), spatial 1.0 -> 0.6 * 0.5 + 0.4 * 1.0
    assert result.confidence == pytest.approx(0.7)
    assert (result.latitude, result.longitude) == pytest.approx((40.0, -74.0))


def test_falls_back_to_unrefined_when_radius_empty():
    siblings = [
        photo("a.jpg", T0 - minutes(60), 40.0, -74.0),
        photo("b.jpg", T0 + minutes(60), 40.0, -73.88),
    ]
    result = secondary_interpolation(photo("x.jpg", T0), siblings, GeotagConfig(secondary_radius_m=1000))
    assert isinstance(result, ImageInterpolated)
    assert result.source == "image_interpolated"
    assert result.longitude == pytest.approx(-73.94)
    assert result.confidence == pytest.approx(0.75)
    assert result.interpolation_details()["referenceCount"] == 2


def test_refinement_uses_all_weighted_siblings():
    siblings = [photo(f"s{i}.jpg", T0 + minutes(10 * (i + 1)), 40.0, -74.0) for i in range(7)]
    result = secondary_interpolation(photo("x.jpg", T0), siblings)
    assert isinstance(result, ImageInterpolatedRefined)
    assert len(result.references) == 7


def test_top_references_are_limited():
    far_apart = [photo(f"s{i}.jpg", T0 + minutes(10 * (i + 1)), 40.0 + i * 0.5, -74.0) for i in range(7)]
    result = secondary_interpolation(photo("x.jpg", T0), far_apart, GeotagConfig(secondary_radius_m=10))
    assert isinstance(result, ImageInterpolated)
    assert [r.file_name for r in result.references] == ["s0.jpg", "s1.jpg", "s2.jpg", "s3.jpg", "s4.jpg"]


def test_secondary_ignores_out_of_window_and_self():
    target = photo("x.jpg", T0, 1.0, 1.0)
    siblings = [target, photo("old.jpg", T0 - minutes(5 * 60), 40.0, -74.0), photo("nogps.jpg", T0)]
    assert secondary_interpolation(target, siblings) is None


def test_timeline_wins_over_nearby_images(two_point_timeline):
    siblings = [photo("a.jpg", T0, 10.0, 10.0)]
    result = resolve_geolocation(photo("x.jpg", T0), two_point_timeline, siblings)
    assert isinstance(result, TimelineDirect)


def test_validate_interpolation_result():
    record = PositionRecord(timestamp_ms=0, latitude=1.0, longitude=1.0)
    assert validate_interpolation_result(TimelineDirect(1.0, 1.0, 0.0, record))
    assert not validate_interpolation_result(TimelineDirect(math.nan, 1.0, 0.0, record))
    assert not validate_interpolation_result(TimelineDirect(91.0, 1.0, 0.0, record))
    assert not validate_interpolation_result(ImageInterpolated(1.0, 1.0, math.inf, ()))
    assert not validate_interpolation_result(object())
    assert not validate_interpolation_result(None)


def test_try_in_order_skips_invalid_and_stops_at_first_valid():
    record = PositionRecord(timestamp_ms=0, latitude=1.0, longitude=1.0)
    calls: list[str] = []

    def bad():
        calls.append("bad")
        return TimelineDirect(math.nan, 0.0, 0.0, record)

    def good():
        calls.append("good")
        return TimelineDirect(2.0, 2.0, 0.0, record)

    def never():
        calls.append("never")
        return None

    result = try_in_order([lambda: None, bad, good, never])
    assert result is not None and result.latitude == 2.0
    assert calls == ["bad", "good"]
    assert try_in_order([lambda: None]) is None


def test_interpolation_statistics():
    record = PositionRecord(timestamp_ms=0, latitude=1.0, longitude=1.0)
    stats = interpolation_statistics(
        [
            TimelineDirect(1.0, 1.0, 4.0, record),
            ImageInterpolated(1.0, 1.0, 0.5, ()),
            None,
        ]
    )
    assert (stats.total, stats.successful, stats.failed) == (3, 2, 1)
    assert stats.by_source == {"timeline_direct": 1, "image_interpolated": 1}
    assert stats.average_confidence == pytest.approx(0.5)
    assert stats.average_time_difference == pytest.approx(4.0)
    assert stats.success_rate == pytest.approx(2 / 3)


def test_config_validation():
    with pytest.raises(ValueError):
        GeotagConfig(secondary_radius_m=0)
    with pytest.raises(ValueError):
        GeotagConfig(max_reference_images=0)
