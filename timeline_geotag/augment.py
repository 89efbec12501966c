"""Fold image GPS and image timestamps back into a timeline document.

Two kinds of entries are added:

- ``image_derived`` raw-signal positions for geotagged images that are not
  already represented in the timeline (exact/proximity duplicates are skipped);
- ``image_timestamp_extension`` placeholders for capture times outside the
  timeline's covered range, one per distinct timestamp however many photos
  share it.
"""

from __future__ import annotations

import logging
import shutil
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

from timeline_geotag.geo import decimal_to_e7, haversine_m, is_valid_coordinate_pair
from timeline_geotag.interpolation import image_timestamp_utc
from timeline_geotag.models import ImageMetadata, PositionRecord, RecordSource
from timeline_geotag.timeline import (
    IMAGE_EXIF_SIGNAL,
    MS_PER_MINUTE,
    extract_position_records,
    read_timeline_document,
    write_timeline_document,
)
from timeline_geotag.timeutils import epoch_ms_from_dt, format_iso_ms, parse_iso_timestamp

logger = logging.getLogger(__name__)

IMAGE_DERIVED_DEVICE = "image_derived"
EXTENSION_DEVICE = "image_timestamp_extension"

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@dataclass(frozen=True, slots=True)
class AugmentationConfig:
    exact_time_tolerance_minutes: float = 2.0
    exact_distance_tolerance_m: float = 10.0
    proximity_time_tolerance_minutes: float = 10.0
    proximity_distance_tolerance_m: float = 50.0
    create_backup: bool = True
    backup_suffix: str = "_backup_before_augmentation"
    extend_range: bool = True
    tz_name: str | None = None


@dataclass(slots=True)
class AugmentationReport:
    images_processed: int = 0
    images_with_gps: int = 0
    exact_duplicates_skipped: int = 0
    proximity_duplicates_skipped: int = 0
    placeholders_skipped: int = 0
    new_records_added: int = 0
    extensions_created: int = 0
    candidates_before_consolidation: int = 0
    consolidation_savings: int = 0
    edits_without_timestamp: int = 0
    backup_path: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def total_skipped(self) -> int:
        return self.exact_duplicates_skipped + self.proximity_duplicates_skipped + self.placeholders_skipped

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["total_skipped"] = self.total_skipped
        return out


class DuplicateKind(str, Enum):
    EXACT = "exact"
    PROXIMITY = "proximity"
    NEW = "new"


@dataclass(frozen=True, slots=True)
class DuplicateCheck:
    kind: DuplicateKind
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Candidate:
    """A record waiting to be merged; a placeholder when it has no coordinates."""

    timestamp_ms: int
    latitude: float | None = None
    longitude: float | None = None
    altitude_m: float | None = None
    accuracy_m: float | None = None
    file_paths: tuple[str, ...] = ()
    file_names: tuple[str, ...] = ()

    @property
    def is_placeholder(self) -> bool:
        return self.latitude is None

    @property
    def iso_timestamp(self) -> str:
        return format_iso_ms(self.timestamp_ms)

    def to_record(self) -> PositionRecord:
        if self.is_placeholder:
            return PositionRecord(
                timestamp_ms=self.timestamp_ms,
                latitude=None,
                longitude=None,
                source=RecordSource.EXTENSION_PLACEHOLDER,
                device_id=EXTENSION_DEVICE,
                is_placeholder=True,
                file_paths=self.file_paths,
                file_names=self.file_names,
            )
        return PositionRecord(
            timestamp_ms=self.timestamp_ms,
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_m=self.accuracy_m,
            altitude_m=self.altitude_m,
            source=RecordSource.IMAGE_DERIVED,
            device_id=IMAGE_DERIVED_DEVICE,
            signal_source=IMAGE_EXIF_SIGNAL,
        )

    def to_edit(self, extracted_at: str) -> dict[str, Any]:
        """Timeline edit in the document's native encoding (E7, ISO-8601 Z)."""

        if self.is_placeholder:
            return {
                "deviceId": EXTENSION_DEVICE,
                "placeholderEntry": {
                    "timestamp": self.iso_timestamp,
                    "consolidatedImages": len(self.file_paths) > 1,
                    "imageCount": len(self.file_paths),
                    "filePaths": list(self.file_paths),
                    "fileNames": list(self.file_names),
                },
            }
        position: dict[str, Any] = {
            "point": {"latE7": decimal_to_e7(self.latitude), "lngE7": decimal_to_e7(self.longitude)},  # type: ignore[arg-type]
            "timestamp": self.iso_timestamp,
        }
        if self.accuracy_m is not None:
            position["accuracyMm"] = round(self.accuracy_m * 1000)
        if self.altitude_m is not None:
            position["altitudeMeters"] = self.altitude_m
        position["source"] = IMAGE_EXIF_SIGNAL
        return {
            "deviceId": IMAGE_DERIVED_DEVICE,
            "rawSignal": {"signal": {"position": position}},
            "imageMetadata": {
                "filePath": self.file_paths[0] if self.file_paths else None,
                "fileName": self.file_names[0] if self.file_names else None,
                "extractedAt": extracted_at,
            },
        }


def _images(image_index: Iterable[ImageMetadata] | Mapping[Any, ImageMetadata]) -> list[ImageMetadata]:
    if isinstance(image_index, Mapping):
        return list(image_index.values())
    return list(image_index)


def extract_gps_candidates(
    images: Iterable[ImageMetadata],
    report: AugmentationReport,
    config: AugmentationConfig = AugmentationConfig(),
) -> list[Candidate]:
    """One candidate per image that has both GPS and a plausible timestamp."""

    out: list[Candidate] = []
    for image in images:
        if image.gps is None:
            continue
        report.images_with_gps += 1
        if not image.has_valid_timestamp:
            continue
        gps = image.gps
        if not is_valid_coordinate_pair(gps.latitude, gps.longitude):
            msg = f"{image.file_name} 的坐标无效：{gps.latitude}, {gps.longitude}"
            report.errors.append(msg)
            logger.warning(msg)
            continue
        ts = image_timestamp_utc(image, config.tz_name)
        out.append(
            Candidate(
                timestamp_ms=epoch_ms_from_dt(ts),  # type: ignore[arg-type]
                latitude=gps.latitude,
                longitude=gps.longitude,
                altitude_m=gps.altitude,
                accuracy_m=gps.accuracy,
                file_paths=(image.file_path,),
                file_names=(image.file_name,),
            )
        )
    return out


def extract_timestamp_candidates(
    images: Iterable[ImageMetadata], config: AugmentationConfig = AugmentationConfig()
) -> list[Candidate]:
    """Placeholder candidates for every image with a plausible timestamp, GPS or not."""

    out: list[Candidate] = []
    for image in images:
        ts = image_timestamp_utc(image, config.tz_name)
        if ts is None:
            continue
        out.append(Candidate(epoch_ms_from_dt(ts), file_paths=(image.file_path,), file_names=(image.file_name,)))
    return out


def consolidate_placeholders(items: Iterable[Candidate]) -> list[Candidate]:
    """Collapse placeholders sharing an ISO timestamp into one entry each.

    File lists are merged in first-seen order and a path is never listed
    twice, so consolidating an already consolidated list changes nothing.
    """

    groups: dict[str, dict[str, str]] = {}
    stamps: dict[str, int] = {}
    for item in items:
        key = item.iso_timestamp
        files = groups.setdefault(key, {})
        stamps.setdefault(key, item.timestamp_ms)
        for i, path in enumerate(item.file_paths):
            name = item.file_names[i] if i < len(item.file_names) else Path(path).name
            files.setdefault(path, name)

    out = [
        Candidate(stamps[key], file_paths=tuple(files), file_names=tuple(files.values()))
        for key, files in groups.items()
    ]
    out.sort(key=lambda c: c.timestamp_ms)
    return out


def classify_candidate(
    candidate: Candidate,
    existing: Sequence[PositionRecord],
    config: AugmentationConfig = AugmentationConfig(),
) -> DuplicateCheck:
    """Compare a candidate against existing records.

    An exact match anywhere wins over a proximity match found earlier.
    Placeholder candidates are compared by time only, against every record.
    """

    exact_ms = config.exact_time_tolerance_minutes * MS_PER_MINUTE
    proximity_ms = config.proximity_time_tolerance_minutes * MS_PER_MINUTE

    if candidate.is_placeholder:
        for record in existing:
            diff = abs(record.timestamp_ms - candidate.timestamp_ms)
            if diff <= exact_ms:
                return DuplicateCheck(DuplicateKind.EXACT, f"同一时间已有记录（相差 {diff / 1000:.0f} 秒）")
        return DuplicateCheck(DuplicateKind.NEW)

    proximity: DuplicateCheck | None = None
    for record in existing:
        if record.is_placeholder:
            continue
        diff = abs(record.timestamp_ms - candidate.timestamp_ms)
        if diff > exact_ms and (proximity is not None or diff > proximity_ms):
            continue
        distance = haversine_m(candidate.latitude, candidate.longitude, record.latitude, record.longitude)  # type: ignore[arg-type]
        if diff <= exact_ms and distance <= config.exact_distance_tolerance_m:
            return DuplicateCheck(
                DuplicateKind.EXACT, f"时间相差 {diff / 1000:.0f} 秒，距离 {distance:.0f} 米"
            )
        if proximity is None and diff <= proximity_ms and distance <= config.proximity_distance_tolerance_m:
            proximity = DuplicateCheck(
                DuplicateKind.PROXIMITY, f"时间相差 {diff / MS_PER_MINUTE:.0f} 分钟，距离 {distance:.0f} 米"
            )
    return proximity or DuplicateCheck(DuplicateKind.NEW)


def _nested(value: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def edit_timestamp_ms(edit: Any) -> int | None:
    """Effective time of an edit: raw signal, then placeholder, then aggregate window start."""

    if not isinstance(edit, dict):
        return None
    candidates = (
        _nested(edit, "rawSignal", "signal", "position", "timestamp"),
        _nested(edit, "placeholderEntry", "timestamp"),
        _nested(edit, "placeAggregates", "processWindow", "startTime"),
    )
    for value in candidates:
        if not value:
            continue
        try:
            return epoch_ms_from_dt(parse_iso_timestamp(value))
        except ValueError:
            continue
    return None


def sort_edits(edits: Iterable[Any]) -> tuple[list[Any], int]:
    """Sort edits by effective time; edits without one keep their order at the end.

    Returns:
        (sorted_edits, count_without_timestamp)
    """

    keyed = [(edit_timestamp_ms(e), e) for e in edits]
    missing = sum(1 for ts, _ in keyed if ts is None)
    if missing:
        logger.warning("%s 条时间线条目没有可识别的时间戳，已放在末尾", missing)
    keyed.sort(key=lambda pair: (pair[0] is None, pair[0] or 0))
    return [e for _, e in keyed], missing


def backup_timeline(path: Path, suffix: str = "_backup_before_augmentation") -> Path:
    """Copy the timeline next to itself with a timestamped name.

    Raises:
        OSError: If the copy fails.
    """

    stamp = format_iso_ms(epoch_ms_from_dt(datetime.now(UTC))).replace(":", "-").replace(".", "-")
    backup = path.with_name(f"{path.stem}{suffix}_{stamp}{path.suffix}")
    shutil.copy2(path, backup)
    logger.info("已备份时间线：%s", backup.name)
    return backup


@contextmanager
def _exclusive(path: Path) -> Iterator[None]:
    key = str(path.expanduser().resolve())
    with _locks_guard:
        lock = _locks.setdefault(key, threading.Lock())
    with lock:
        yield


def augment_timeline(
    path: str | Path,
    image_index: Iterable[ImageMetadata] | Mapping[Any, ImageMetadata],
    config: AugmentationConfig = AugmentationConfig(),
) -> AugmentationReport:
    """Merge image GPS and out-of-range capture times into a timeline file.

    A missing file is treated as an empty timeline. Nothing is written (and no
    backup is made) when no new entry was accepted.

    Raises:
        OSError: If reading, the backup or the write fails.
        TimelineFormatError: If the existing document is malformed.
    """

    p = Path(path)
    images = _images(image_index)
    report = AugmentationReport(images_processed=len(images))

    with _exclusive(p):
        if p.exists():
            document = read_timeline_document(p)
            existing, _ = extract_position_records(document)
        else:
            logger.info("时间线文件不存在，将新建：%s", p)
            document = {"timelineEdits": []}
            existing = []

        pool: list[PositionRecord] = list(existing)
        accepted: list[Candidate] = []

        for cand in extract_gps_candidates(images, report, config):
            check = classify_candidate(cand, pool, config)
            if check.kind is DuplicateKind.EXACT:
                report.exact_duplicates_skipped += 1
                logger.debug("跳过完全重复：%s（%s）", cand.file_names[0], check.reason)
            elif check.kind is DuplicateKind.PROXIMITY:
                report.proximity_duplicates_skipped += 1
                logger.debug("跳过邻近重复：%s（%s）", cand.file_names[0], check.reason)
            else:
                accepted.append(cand)
                pool.append(cand.to_record())
                report.new_records_added += 1

        if config.extend_range:
            lo = min((r.timestamp_ms for r in existing), default=None)
            hi = max((r.timestamp_ms for r in existing), default=None)
            outside = [
                c
                for c in extract_timestamp_candidates(images, config)
                if lo is None or c.timestamp_ms < lo or c.timestamp_ms > hi  # type: ignore[operator]
            ]
            placeholders = consolidate_placeholders(outside)
            report.candidates_before_consolidation = len(outside)
            report.consolidation_savings = len(outside) - len(placeholders)
            for ph in placeholders:
                if classify_candidate(ph, pool, config).kind is not DuplicateKind.NEW:
                    report.placeholders_skipped += 1
                    continue
                accepted.append(ph)
                pool.append(ph.to_record())
                report.extensions_created += 1

        if not accepted:
            logger.info("没有需要加入时间线的新记录")
            return report

        if config.create_backup and p.exists():
            report.backup_path = str(backup_timeline(p, config.backup_suffix))

        extracted_at = datetime.now(UTC).isoformat()
        edits = list(document.get("timelineEdits") or [])
        edits.extend(c.to_edit(extracted_at) for c in accepted)
        document["timelineEdits"], report.edits_without_timestamp = sort_edits(edits)
        write_timeline_document(p, document)

    logger.info(
        "时间线增强完成：新增 %s 条位置、%s 条扩展占位，跳过 %s 条重复",
        report.new_records_added,
        report.extensions_created,
        report.total_skipped,
    )
    return report
