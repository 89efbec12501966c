"""Data models for timeline records, images, inference results and GPS memo records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Final, Mapping

from timeline_geotag.geo import is_valid_coordinate_pair
from timeline_geotag.timeutils import dt_from_epoch_ms


class RecordSource(str, Enum):
    """Where a position record came from."""

    POSITION = "position"
    PLACE_AGGREGATE = "place_aggregate"
    INTERPOLATED = "interpolated"
    EXISTING = "existing"
    EXTENSION_PLACEHOLDER = "extension_placeholder"
    IMAGE_EXIF = "image_exif"
    IMAGE_DERIVED = "image_derived"


@dataclass(frozen=True, slots=True)
class PositionRecord:
    """A single location fix from the timeline.

    Attributes:
        timestamp_ms: UTC epoch milliseconds.
        latitude: Decimal degrees, None only for placeholders.
        longitude: Decimal degrees, None only for placeholders.
        accuracy_m: Horizontal accuracy in meters (document stores millimeters).
        altitude_m: Altitude in meters.
        speed_mps: Speed in meters/second.
        source: Record kind.
        device_id: Device that produced the record.
        is_placeholder: True for coordinate-less range-extension entries.
        signal_source: Raw ``position.source`` string (e.g. "WIFI", "GPS").
        score: Place aggregate score.
        place_id: Place aggregate id.
        file_paths: Images behind a placeholder.
        file_names: Image file names behind a placeholder.
    """

    timestamp_ms: int
    latitude: float | None
    longitude: float | None
    accuracy_m: float | None = None
    altitude_m: float | None = None
    speed_mps: float | None = None
    source: RecordSource = RecordSource.POSITION
    device_id: str | None = None
    is_placeholder: bool = False
    signal_source: str | None = None
    score: float | None = None
    place_id: str | None = None
    file_paths: tuple[str, ...] = ()
    file_names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.is_placeholder:
            if self.latitude is not None or self.longitude is not None:
                raise ValueError("placeholder record must not carry coordinates")
        elif not is_valid_coordinate_pair(self.latitude, self.longitude):
            raise ValueError(f"invalid coordinate pair: {self.latitude!r}, {self.longitude!r}")

    @property
    def timestamp(self) -> datetime:
        """Timestamp as an aware UTC datetime."""

        return dt_from_epoch_ms(self.timestamp_ms)


@dataclass(frozen=True, slots=True)
class GpsFix:
    """A GPS coordinate as found in (or written to) an image."""

    latitude: float
    longitude: float
    altitude: float | None = None
    bearing: float | None = None
    accuracy: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "bearing": self.bearing,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GpsFix:
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            altitude=_opt_float(data.get("altitude")),
            bearing=_opt_float(data.get("bearing")),
            accuracy=_opt_float(data.get("accuracy")),
        )


MIN_PLAUSIBLE_YEAR: Final[int] = 1970
MAX_PLAUSIBLE_YEAR: Final[int] = 2100


@dataclass(slots=True)
class ImageMetadata:
    """Per-file facts needed for inference.

    ``gps`` is filled in place when a location is discovered during a run.
    """

    file_path: str
    file_name: str
    timestamp: datetime | None = None
    timezone_offset: str | None = None
    gps: GpsFix | None = None

    @property
    def has_valid_timestamp(self) -> bool:
        return self.timestamp is not None and MIN_PLAUSIBLE_YEAR < self.timestamp.year < MAX_PLAUSIBLE_YEAR

    @property
    def has_gps_coordinates(self) -> bool:
        return self.gps is not None and is_valid_coordinate_pair(self.gps.latitude, self.gps.longitude)

    @property
    def needs_geolocation(self) -> bool:
        return not self.has_gps_coordinates and self.has_valid_timestamp


@dataclass(frozen=True, slots=True)
class ReferenceImage:
    """A geotagged sibling image weighted for nearby-image interpolation."""

    file_path: str
    file_name: str
    latitude: float
    longitude: float
    time_diff_minutes: float
    temporal_weight: float
    distance_m: float | None = None
    combined_weight: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "fileName": self.file_name,
            "filePath": self.file_path,
            "coordinates": {"latitude": self.latitude, "longitude": self.longitude},
            "weight": self.temporal_weight,
            "timeDiff": self.time_diff_minutes,
        }
        if self.distance_m is not None:
            out["distance"] = self.distance_m
        if self.combined_weight is not None:
            out["combinedWeight"] = self.combined_weight
        return out


def _record_summary(record: PositionRecord) -> dict[str, Any]:
    return {
        "timestamp": record.timestamp.isoformat(),
        "latitude": record.latitude,
        "longitude": record.longitude,
        "source": record.source.value,
        "deviceId": record.device_id,
    }


@dataclass(frozen=True, slots=True)
class TimelineDirect:
    """A timeline record close enough in time to be used as-is."""

    source: ClassVar[str] = "timeline_direct"

    latitude: float
    longitude: float
    time_difference: float
    record: PositionRecord
    accuracy: float | None = None
    fallback_tolerance_hours: float | None = None

    @property
    def confidence(self) -> float | None:
        return None

    def interpolation_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"method": "closest_record", "sourceRecord": _record_summary(self.record)}
        if self.fallback_tolerance_hours is not None:
            details["fallbackToleranceHours"] = self.fallback_tolerance_hours
        return details


@dataclass(frozen=True, slots=True)
class TimelineInterpolated:
    """Linear blend between the records bracketing the image time."""

    source: ClassVar[str] = "timeline_interpolated"

    latitude: float
    longitude: float
    time_difference: float
    before: PositionRecord
    after: PositionRecord
    factor: float

    @property
    def confidence(self) -> float | None:
        return None

    @property
    def accuracy(self) -> float | None:
        return None

    def interpolation_details(self) -> dict[str, Any]:
        return {
            "method": "linear_bracketing",
            "beforeRecord": _record_summary(self.before),
            "afterRecord": _record_summary(self.after),
            "factor": self.factor,
        }


@dataclass(frozen=True, slots=True)
class ImageInterpolated:
    """Temporal-weighted average of nearby geotagged images."""

    source: ClassVar[str] = "image_interpolated"

    latitude: float
    longitude: float
    confidence: float
    references: tuple[ReferenceImage, ...]

    @property
    def time_difference(self) -> float | None:
        return min((r.time_diff_minutes for r in self.references), default=None)

    @property
    def accuracy(self) -> float | None:
        return None

    def interpolation_details(self) -> dict[str, Any]:
        return {
            "method": "temporal_weighted",
            "referenceCount": len(self.references),
            "referenceImages": [r.to_dict() for r in self.references],
        }


@dataclass(frozen=True, slots=True)
class ImageInterpolatedRefined:
    """Temporal + spatial weighted average of nearby geotagged images."""

    source: ClassVar[str] = "image_interpolated_refined"

    latitude: float
    longitude: float
    confidence: float
    references: tuple[ReferenceImage, ...]
    radius_m: float

    @property
    def time_difference(self) -> float | None:
        return min((r.time_diff_minutes for r in self.references), default=None)

    @property
    def accuracy(self) -> float | None:
        return None

    def interpolation_details(self) -> dict[str, Any]:
        return {
            "method": "temporal_spatial_weighted",
            "spatialRadius": self.radius_m,
            "referenceCount": len(self.references),
            "referenceImages": [r.to_dict() for r in self.references],
        }


InterpolationResult = TimelineDirect | TimelineInterpolated | ImageInterpolated | ImageInterpolatedRefined

RESULT_SOURCES: Final[frozenset[str]] = frozenset(
    {
        TimelineDirect.source,
        TimelineInterpolated.source,
        ImageInterpolated.source,
        ImageInterpolatedRefined.source,
    }
)


class GpsSource(str, Enum):
    """GPS provenance, declared highest priority first."""

    DATABASE = "DATABASE"
    EXIF_GPS = "EXIF_GPS"
    TIMELINE_INTERPOLATED = "TIMELINE_INTERPOLATED"
    NEARBY_INTERPOLATED = "NEARBY_INTERPOLATED"

    @property
    def priority(self) -> int:
        """0 is the highest priority."""

        return _SOURCE_ORDER.index(self)


_SOURCE_ORDER: Final[tuple[GpsSource, ...]] = tuple(GpsSource)


class GpsConfidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


def confidence_for(source: GpsSource, prior: GpsConfidence | None = None) -> GpsConfidence:
    """Derive the confidence level from the GPS source.

    DATABASE hits inherit whatever confidence was stored with them.
    """

    if source is GpsSource.EXIF_GPS:
        return GpsConfidence.HIGH
    if source is GpsSource.TIMELINE_INTERPOLATED:
        return GpsConfidence.MEDIUM
    if source is GpsSource.NEARBY_INTERPOLATED:
        return GpsConfidence.LOW
    return prior if prior is not None else GpsConfidence.MEDIUM


@dataclass(frozen=True, slots=True)
class GpsRecord:
    """Durable memo of resolved GPS for one file."""

    file_path: str
    file_name: str
    coordinates: GpsFix
    source: GpsSource
    confidence: GpsConfidence
    interpolation_details: dict[str, Any] | None = None
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.file_path,
            "fileName": self.file_name,
            "coordinates": self.coordinates.to_dict(),
            "source": self.source.value,
            "confidence": self.confidence.value,
            "interpolationDetails": self.interpolation_details,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GpsRecord:
        """Rebuild a record from its persisted form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an unexpected value.
        """

        source = GpsSource(data["source"])
        raw_conf = data.get("confidence")
        confidence = GpsConfidence(raw_conf) if raw_conf else confidence_for(source)
        now = datetime.now(UTC).isoformat()
        return cls(
            file_path=str(data["filePath"]),
            file_name=str(data.get("fileName") or ""),
            coordinates=GpsFix.from_dict(data["coordinates"]),
            source=source,
            confidence=confidence,
            interpolation_details=data.get("interpolationDetails"),
            created_at=str(data.get("createdAt") or now),
            updated_at=str(data.get("updatedAt") or now),
        )


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)
