"""Timeline document parsing and the queryable position-record store.

The timeline document is a location-history export of the form::

    {"timelineEdits": [
        {"deviceId": ..., "rawSignal": {"signal": {"position": {
            "point": {"latE7": ..., "lngE7": ...}, "timestamp": ...,
            "accuracyMm": ..., "altitudeMeters": ..., "source": ...}}}},
        {"deviceId": ..., "placeholderEntry": {"timestamp": ..., "imageCount": ...,
            "filePaths": [...], "fileNames": [...]}},
        {"deviceId": ..., "placeAggregates": {"processWindow": {"startTime": ...},
            "placeAggregateInfo": [{"point": {...}, "score": ..., "placeId": ...}]}},
    ]}
"""

from __future__ import annotations

import bisect
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

from timeline_geotag.geo import e7_to_decimal, is_valid_coordinate_pair
from timeline_geotag.models import PositionRecord, RecordSource
from timeline_geotag.timeutils import epoch_ms_from_dt, parse_iso_timestamp

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000
FALLBACK_WINDOWS_MINUTES: tuple[float, ...] = (60.0, 360.0, 1440.0)
IMAGE_EXIF_SIGNAL = "IMAGE_EXIF"


class TimelineFormatError(ValueError):
    """The timeline document does not have the expected structure."""


def read_timeline_document(path: str | Path) -> dict[str, Any]:
    """Read and decode a timeline JSON document.

    Raises:
        OSError: If the file cannot be read.
        TimelineFormatError: If the content is not a JSON object.
    """

    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise TimelineFormatError(f"时间线文件不是 UTF-8 编码：{p}（{exc}）") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TimelineFormatError(f"时间线文件不是有效的 JSON：{p}（{exc}）") from exc
    if not isinstance(data, dict):
        raise TimelineFormatError(f"时间线文件顶层必须是对象：{p}")
    return data


def write_timeline_document(path: str | Path, document: dict[str, Any]) -> None:
    """Persist a timeline document (atomic-ish: temp file then replace)."""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(p)


@dataclass(slots=True)
class TimelineSummary:
    """Quick summary of timeline parsing."""

    edits_total: int = 0
    records_parsed: int = 0
    records_dropped: int = 0
    duplicates_removed: int = 0
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.records_dropped += 1
        self.warnings.append(message)
        logger.warning(message)


def _timestamp_ms(value: Any) -> int:
    return epoch_ms_from_dt(parse_iso_timestamp(value))


def _e7_pair(point: Any) -> tuple[float, float] | None:
    if not isinstance(point, dict):
        return None
    lat_e7 = point.get("latE7")
    lng_e7 = point.get("lngE7")
    if not isinstance(lat_e7, (int, float)) or not isinstance(lng_e7, (int, float)):
        return None
    return e7_to_decimal(lat_e7), e7_to_decimal(lng_e7)


def _opt_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _position_from_edit(edit: dict[str, Any], summary: TimelineSummary) -> PositionRecord | None:
    raw = edit.get("rawSignal")
    if raw is None:
        return None
    signal = raw.get("signal") if isinstance(raw, dict) else None
    position = signal.get("position") if isinstance(signal, dict) else None
    if position is None and isinstance(signal, dict):
        # 其他类型的信号（如 wifiScan）不含位置
        return None
    if not isinstance(position, dict):
        summary.warn(f"跳过结构无效的 rawSignal：{raw!r}")
        return None
    pair = _e7_pair(position.get("point"))
    if pair is None or not position.get("timestamp"):
        summary.warn(f"跳过缺少坐标或时间的位置记录：{position!r}")
        return None
    lat, lon = pair
    if not is_valid_coordinate_pair(lat, lon):
        summary.warn(f"跳过无效坐标：{lat}, {lon}")
        return None
    try:
        ts = _timestamp_ms(position["timestamp"])
    except ValueError as exc:
        summary.warn(f"跳过无效时间戳：{exc}")
        return None

    accuracy_mm = _opt_number(position.get("accuracyMm"))
    signal_source = position.get("source")
    return PositionRecord(
        timestamp_ms=ts,
        latitude=lat,
        longitude=lon,
        accuracy_m=accuracy_mm / 1000.0 if accuracy_mm is not None else None,
        altitude_m=_opt_number(position.get("altitudeMeters")),
        speed_mps=_opt_number(position.get("speedMetersPerSecond")),
        source=RecordSource.IMAGE_EXIF if signal_source == IMAGE_EXIF_SIGNAL else RecordSource.POSITION,
        device_id=edit.get("deviceId"),
        signal_source=signal_source if isinstance(signal_source, str) else None,
    )


def _str_tuple(value: Any) -> tuple[str, ...]:
    return tuple(str(v) for v in value) if isinstance(value, list) else ()


def _placeholder_from_edit(edit: dict[str, Any], summary: TimelineSummary) -> PositionRecord | None:
    entry = edit.get("placeholderEntry")
    if entry is None:
        return None
    if not isinstance(entry, dict):
        summary.warn(f"跳过结构无效的占位记录：{entry!r}")
        return None
    try:
        ts = _timestamp_ms(entry.get("timestamp"))
    except ValueError as exc:
        summary.warn(f"跳过无效占位记录：{exc}")
        return None
    return PositionRecord(
        timestamp_ms=ts,
        latitude=None,
        longitude=None,
        source=RecordSource.EXTENSION_PLACEHOLDER,
        device_id=edit.get("deviceId"),
        is_placeholder=True,
        file_paths=_str_tuple(entry.get("filePaths")),
        file_names=_str_tuple(entry.get("fileNames")),
    )


def _aggregates_from_edit(edit: dict[str, Any], summary: TimelineSummary) -> list[PositionRecord]:
    aggregates = edit.get("placeAggregates")
    if aggregates is None:
        return []
    if not isinstance(aggregates, dict):
        summary.warn(f"跳过结构无效的地点聚合：{aggregates!r}")
        return []
    infos = aggregates.get("placeAggregateInfo")
    if not isinstance(infos, list) or not infos:
        return []
    window = aggregates.get("processWindow")
    if not isinstance(window, dict):
        window = {}
    try:
        ts = _timestamp_ms(window.get("startTime"))
    except ValueError:
        # 没有时间窗口起点就无法定位在时间线上，丢弃而不是记为“当前时间”
        summary.warn(f"跳过缺少 processWindow.startTime 的地点聚合（{len(infos)} 条）")
        return []

    out: list[PositionRecord] = []
    for info in infos:
        pair = _e7_pair(info.get("point") if isinstance(info, dict) else None)
        if pair is None or not is_valid_coordinate_pair(*pair):
            summary.warn(f"跳过无效的地点聚合坐标：{info!r}")
            continue
        place_id = info.get("placeId")
        out.append(
            PositionRecord(
                timestamp_ms=ts,
                latitude=pair[0],
                longitude=pair[1],
                source=RecordSource.PLACE_AGGREGATE,
                device_id=edit.get("deviceId"),
                score=_opt_number(info.get("score")),
                place_id=str(place_id) if place_id is not None else None,
            )
        )
    return out


def dedup_key(record: PositionRecord) -> tuple[int, Any, Any]:
    """Composite key used to drop duplicate records on parse."""

    if record.is_placeholder:
        return (record.timestamp_ms, "placeholder", None)
    return (record.timestamp_ms, round(record.latitude, 6), round(record.longitude, 6))  # type: ignore[arg-type]


def extract_position_records(document: dict[str, Any]) -> tuple[list[PositionRecord], TimelineSummary]:
    """Turn a timeline document into sorted, deduplicated position records.

    Malformed edits are dropped with a warning; they never abort parsing.

    Raises:
        TimelineFormatError: If ``timelineEdits`` is missing or not a list.
    """

    edits = document.get("timelineEdits") if isinstance(document, dict) else None
    if not isinstance(edits, list):
        raise TimelineFormatError("时间线数据结构无效：缺少 timelineEdits 数组")

    summary = TimelineSummary(edits_total=len(edits))
    parsed: list[PositionRecord] = []
    for edit in edits:
        if not isinstance(edit, dict):
            summary.warn(f"跳过非对象的时间线条目：{edit!r}")
            continue
        record = _position_from_edit(edit, summary)
        if record is not None:
            parsed.append(record)
        placeholder = _placeholder_from_edit(edit, summary)
        if placeholder is not None:
            parsed.append(placeholder)
        parsed.extend(_aggregates_from_edit(edit, summary))

    seen: set[tuple[int, Any, Any]] = set()
    unique: list[PositionRecord] = []
    for record in parsed:
        key = dedup_key(record)
        if key in seen:
            summary.duplicates_removed += 1
            continue
        seen.add(key)
        unique.append(record)

    unique.sort(key=lambda r: r.timestamp_ms)
    summary.records_parsed = len(unique)
    return unique, summary


@dataclass(frozen=True, slots=True)
class FallbackMatch:
    """Result of the widening closest-record search."""

    record: PositionRecord
    fallback_used: bool
    time_difference_minutes: float
    fallback_tolerance_hours: float | None = None


@dataclass(frozen=True, slots=True)
class InterpolatedPosition:
    """An interpolated record plus the pair it was blended from."""

    record: PositionRecord
    before: PositionRecord
    after: PositionRecord
    factor: float


def interpolate_position(before: PositionRecord, after: PositionRecord, target: datetime | int) -> InterpolatedPosition:
    """Linearly interpolate a position between two records.

    Args:
        before: Record at or before target.
        after: Record at or after target.
        target: Target time (datetime or epoch ms).

    Raises:
        ValueError: If the target is not within [before, after] or either record is a placeholder.
    """

    if before.is_placeholder or after.is_placeholder:
        raise ValueError("不能在占位记录之间插值")
    t = target if isinstance(target, int) else epoch_ms_from_dt(target)
    if not before.timestamp_ms <= t <= after.timestamp_ms:
        raise ValueError("目标时间必须位于两条记录之间（before <= target <= after）")

    span = after.timestamp_ms - before.timestamp_ms
    factor = (t - before.timestamp_ms) / span if span > 0 else 0.0
    lat = before.latitude + (after.latitude - before.latitude) * factor  # type: ignore[operator]
    lon = before.longitude + (after.longitude - before.longitude) * factor  # type: ignore[operator]
    record = PositionRecord(
        timestamp_ms=t,
        latitude=lat,
        longitude=lon,
        source=RecordSource.INTERPOLATED,
        device_id=before.device_id or after.device_id,
    )
    return InterpolatedPosition(record=record, before=before, after=after, factor=factor)


class TimelineStore:
    """Sorted, deduplicated position records with time-based queries.

    The store is never mutated after construction, so one instance can be
    shared by worker threads.
    """

    def __init__(self, records: Iterable[PositionRecord]) -> None:
        self._records: tuple[PositionRecord, ...] = tuple(sorted(records, key=lambda r: r.timestamp_ms))
        self._located: tuple[PositionRecord, ...] = tuple(r for r in self._records if not r.is_placeholder)
        self._located_ms: list[int] = [r.timestamp_ms for r in self._located]
        self._all_ms: list[int] = [r.timestamp_ms for r in self._records]

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> TimelineStore:
        records, _ = extract_position_records(document)
        return cls(records)

    @property
    def records(self) -> Sequence[PositionRecord]:
        return self._records

    @property
    def located_records(self) -> Sequence[PositionRecord]:
        """Records with coordinates (placeholders excluded)."""

        return self._located

    def __len__(self) -> int:
        return len(self._records)

    def time_range(self) -> tuple[int, int] | None:
        """(min_ms, max_ms) over all records, placeholders included."""

        if not self._records:
            return None
        return self._all_ms[0], self._all_ms[-1]

    def records_in_range(self, start: datetime | int, end: datetime | int) -> list[PositionRecord]:
        """Records with start <= timestamp <= end."""

        lo = bisect.bisect_left(self._all_ms, _as_ms(start))
        hi = bisect.bisect_right(self._all_ms, _as_ms(end))
        return list(self._records[lo:hi])

    def _nearest(self, t: int) -> tuple[PositionRecord, int] | None:
        """Closest located record to t; equal distances pick the earlier record."""

        if not self._located:
            return None
        idx = bisect.bisect_left(self._located_ms, t)
        best: tuple[PositionRecord, int] | None = None
        if idx > 0:
            # the first record among equal timestamps keeps document order
            j = bisect.bisect_left(self._located_ms, self._located_ms[idx - 1])
            best = (self._located[j], t - self._located_ms[j])
        if idx < len(self._located):
            diff = self._located_ms[idx] - t
            if best is None or diff < best[1]:
                best = (self._located[idx], diff)
        return best

    def find_closest_record(self, target: datetime | int, tolerance_minutes: float = 30.0) -> PositionRecord | None:
        """Closest non-placeholder record within tolerance (inclusive), else None."""

        nearest = self._nearest(_as_ms(target))
        if nearest is None:
            return None
        record, diff_ms = nearest
        if diff_ms <= tolerance_minutes * MS_PER_MINUTE:
            return record
        return None

    def find_bracketing_records(
        self, target: datetime | int, max_gap_minutes: float
    ) -> tuple[PositionRecord, PositionRecord] | None:
        """Nearest located record at/before and at/after target, each within max_gap_minutes."""

        t = _as_ms(target)
        limit = max_gap_minutes * MS_PER_MINUTE
        before_idx = bisect.bisect_right(self._located_ms, t) - 1
        after_idx = bisect.bisect_left(self._located_ms, t)
        if before_idx < 0 or after_idx >= len(self._located):
            return None
        # first of equal timestamps, as in _nearest
        before_idx = bisect.bisect_left(self._located_ms, self._located_ms[before_idx])
        before = self._located[before_idx]
        after = self._located[after_idx]
        if t - before.timestamp_ms > limit or after.timestamp_ms - t > limit:
            return None
        return before, after

    def find_closest_record_with_fallback(
        self,
        target: datetime | int,
        initial_tolerance_minutes: float = 30.0,
        max_tolerance_hours: float = 72.0,
        allow_unbounded: bool = False,
    ) -> FallbackMatch | None:
        """Closest record, widening the tolerance step by step.

        Windows tried: the initial tolerance, then 60/360/1440 minutes (only
        those between the initial and the maximum), then max_tolerance_hours.
        An unbounded "closest regardless of time" search is only done when
        ``allow_unbounded`` is set: at extreme gaps it assigns wrong places.
        """

        t = _as_ms(target)
        max_minutes = max_tolerance_hours * 60.0
        windows = [initial_tolerance_minutes]
        windows.extend(w for w in FALLBACK_WINDOWS_MINUTES if initial_tolerance_minutes < w < max_minutes)
        if max_minutes > initial_tolerance_minutes:
            windows.append(max_minutes)

        nearest = self._nearest(t)
        if nearest is None:
            return None
        record, diff_ms = nearest
        diff_minutes = diff_ms / MS_PER_MINUTE
        for i, window in enumerate(windows):
            if diff_ms <= window * MS_PER_MINUTE:
                used = i > 0
                if used:
                    logger.debug("扩大容差到 %.1f 小时后匹配到记录（相差 %.1f 分钟）", window / 60.0, diff_minutes)
                return FallbackMatch(
                    record=record,
                    fallback_used=used,
                    time_difference_minutes=diff_minutes,
                    fallback_tolerance_hours=window / 60.0 if used else None,
                )

        if allow_unbounded:
            logger.warning("无界回退：使用相差 %.1f 小时的记录，位置可能不准确", diff_minutes / 60.0)
            return FallbackMatch(record=record, fallback_used=True, time_difference_minutes=diff_minutes)
        return None


def _as_ms(value: datetime | int) -> int:
    return value if isinstance(value, int) else epoch_ms_from_dt(value)


def load_timeline(path: str | Path) -> tuple[TimelineStore, TimelineSummary]:
    """Read a timeline file into a store.

    Raises:
        OSError: If the file cannot be read.
        TimelineFormatError: If the document is malformed.
    """

    document = read_timeline_document(path)
    records, summary = extract_position_records(document)
    logger.info("从时间线解析出 %s 条记录（丢弃 %s，去重 %s）", len(records), summary.records_dropped, summary.duplicates_removed)
    return TimelineStore(records), summary


@dataclass(slots=True)
class TimelineValidation:
    """Structured result of validate_timeline_file; never raises."""

    exists: bool = False
    readable: bool = False
    valid_json: bool = False
    has_timeline_edits: bool = False
    position_records_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.has_timeline_edits and not self.errors


def validate_timeline_file(path: str | Path) -> TimelineValidation:
    """Check existence, readability, JSON syntax and the timelineEdits array."""

    result = TimelineValidation()
    p = Path(path)
    result.exists = p.is_file()
    if not result.exists:
        result.errors.append("Timeline file does not exist")
        return result

    if not os.access(p, os.R_OK):
        result.errors.append("Timeline file is not readable")
        return result
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        result.errors.append(f"Timeline file is not readable: {exc}")
        return result
    result.readable = True

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        result.errors.append(f"Invalid JSON format: {exc}")
        return result
    result.valid_json = True

    if not isinstance(data, dict) or not isinstance(data.get("timelineEdits"), list):
        result.errors.append("Timeline data does not contain timelineEdits array")
        return result
    result.has_timeline_edits = True

    records, _ = extract_position_records(data)
    result.position_records_count = len(records)
    return result
