"""Run orchestration: priority-store lookup, inference, GPS write, memo update."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from time import perf_counter, sleep
from typing import Any, Callable, Iterable, Sequence

from timeline_geotag.augment import AugmentationConfig, AugmentationReport, augment_timeline
from timeline_geotag.gps_store import GpsPriorityStore
from timeline_geotag.interpolation import GeotagConfig, resolve_geolocation
from timeline_geotag.models import (
    GpsFix,
    GpsSource,
    ImageMetadata,
    InterpolationResult,
    TimelineDirect,
    TimelineInterpolated,
)
from timeline_geotag.timeline import TimelineStore

logger = logging.getLogger(__name__)

# (file_path, latitude, longitude, altitude) -> written?
GpsWriter = Callable[[str, float, float, float | None], bool]


@dataclass(frozen=True, slots=True)
class GeolocationContext:
    """Everything a geotagging run shares, built once and passed explicitly."""

    priority_store: GpsPriorityStore
    timeline: TimelineStore | None
    config: GeotagConfig = GeotagConfig()


class OutcomeStatus(str, Enum):
    DATABASE = "database"
    GEOTAGGED = "geotagged"
    NOT_FOUND = "not_found"
    WRITE_FAILED = "write_failed"


@dataclass(frozen=True, slots=True)
class ImageOutcome:
    file_path: str
    status: OutcomeStatus
    gps_source: GpsSource | None = None
    result: InterpolationResult | None = None


def gps_source_for(result: InterpolationResult) -> GpsSource:
    if isinstance(result, (TimelineDirect, TimelineInterpolated)):
        return GpsSource.TIMELINE_INTERPOLATED
    return GpsSource.NEARBY_INTERPOLATED


def geotag_image(
    image: ImageMetadata,
    ctx: GeolocationContext,
    siblings: Sequence[ImageMetadata],
    write_gps: GpsWriter,
    abandoned: threading.Event | None = None,
) -> ImageOutcome:
    """Locate, write and memoise GPS for one image.

    A priority-store hit is written as-is without running inference. Once
    ``abandoned`` is set nothing more is written, stored or assigned.

    Raises:
        OSError: If the writer fails with an I/O error.
    """

    def _gave_up() -> bool:
        if abandoned is not None and abandoned.is_set():
            logger.warning("已超时，丢弃结果：%s", image.file_name)
            return True
        return False

    memo = ctx.priority_store.get(image.file_path)
    if memo is not None:
        fix = memo.coordinates
        if _gave_up() or not write_gps(image.file_path, fix.latitude, fix.longitude, fix.altitude):
            return ImageOutcome(image.file_path, OutcomeStatus.WRITE_FAILED, GpsSource.DATABASE)
        if _gave_up():
            return ImageOutcome(image.file_path, OutcomeStatus.WRITE_FAILED, GpsSource.DATABASE)
        image.gps = fix
        return ImageOutcome(image.file_path, OutcomeStatus.DATABASE, GpsSource.DATABASE)

    result = resolve_geolocation(image, ctx.timeline, siblings, ctx.config)
    if result is None:
        return ImageOutcome(image.file_path, OutcomeStatus.NOT_FOUND)

    source = gps_source_for(result)
    if _gave_up():
        return ImageOutcome(image.file_path, OutcomeStatus.WRITE_FAILED, source, result)
    if not write_gps(image.file_path, result.latitude, result.longitude, None):
        logger.warning("写入 GPS 失败：%s", image.file_name)
        return ImageOutcome(image.file_path, OutcomeStatus.WRITE_FAILED, source, result)
    # 写入期间超时：已写出的行无法撤回，但不入库
    if _gave_up():
        return ImageOutcome(image.file_path, OutcomeStatus.WRITE_FAILED, source, result)

    fix = GpsFix(latitude=result.latitude, longitude=result.longitude, accuracy=result.accuracy)
    details = {"source": result.source, **result.interpolation_details()}
    ctx.priority_store.store(image.file_path, fix, source, details)
    image.gps = fix
    return ImageOutcome(image.file_path, OutcomeStatus.GEOTAGGED, source, result)


def seed_exif_gps(images: Iterable[ImageMetadata], store: GpsPriorityStore) -> int:
    """Memoise GPS that images already carry. Returns the number stored."""

    n = 0
    for image in images:
        if image.has_gps_coordinates and store.store(image.file_path, image.gps, GpsSource.EXIF_GPS):  # type: ignore[arg-type]
            n += 1
    return n


@dataclass(slots=True)
class RunStatistics:
    images_total: int = 0
    already_geotagged: int = 0
    without_timestamp: int = 0
    attempted: int = 0
    database_hits: int = 0
    geotagged: int = 0
    not_found: int = 0
    write_failures: int = 0
    failures: int = 0
    by_source: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        done = self.database_hits + self.geotagged
        return done / self.attempted if self.attempted else 0.0

    def record(self, outcome: ImageOutcome) -> None:
        if outcome.status is OutcomeStatus.DATABASE:
            self.database_hits += 1
        elif outcome.status is OutcomeStatus.GEOTAGGED:
            self.geotagged += 1
        elif outcome.status is OutcomeStatus.NOT_FOUND:
            self.not_found += 1
        else:
            self.write_failures += 1
        if outcome.result is not None and outcome.status is OutcomeStatus.GEOTAGGED:
            self.by_source[outcome.result.source] = self.by_source.get(outcome.result.source, 0) + 1

    def fail(self, file_name: str, message: str) -> None:
        self.failures += 1
        self.errors.append(f"{file_name}: {message}")

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["success_rate"] = self.success_rate
        return out


@dataclass(slots=True)
class _Task:
    image: ImageMetadata
    abandoned: threading.Event = field(default_factory=threading.Event)
    started_at: float | None = None


def _run_task(task: _Task, ctx: GeolocationContext, siblings: Sequence[ImageMetadata], write_gps: GpsWriter) -> ImageOutcome:
    task.started_at = perf_counter()
    return geotag_image(task.image, ctx, siblings, write_gps, task.abandoned)


def _collect(fut: Future[ImageOutcome], image: ImageMetadata, stats: RunStatistics) -> None:
    try:
        stats.record(fut.result())
    except Exception as exc:  # one bad image must not abort the batch
        logger.warning("处理失败：%s（%s）", image.file_name, exc)
        stats.fail(image.file_name, str(exc))


def _run_batch(
    batch: Sequence[ImageMetadata],
    ctx: GeolocationContext,
    siblings: Sequence[ImageMetadata],
    write_gps: GpsWriter,
    workers: int,
    image_timeout_seconds: float,
    stats: RunStatistics,
) -> None:
    executor = ThreadPoolExecutor(max_workers=workers)
    futures: dict[Future[ImageOutcome], _Task] = {}
    for image in batch:
        task = _Task(image)
        futures[executor.submit(_run_task, task, ctx, siblings, write_gps)] = task

    # 每张图片从开始处理时计时；整批另有上限，防止所有线程卡死后排队的图片永远等不到
    rounds = -(-len(batch) // workers)
    batch_deadline = perf_counter() + image_timeout_seconds * rounds
    pending = set(futures)
    gave_up = False
    while pending:
        now = perf_counter()
        expired = []
        for fut in pending:
            task = futures[fut]
            if fut.done():
                continue
            if now >= batch_deadline or (task.started_at is not None and now - task.started_at >= image_timeout_seconds):
                expired.append(fut)
        for fut in expired:
            task = futures[fut]
            task.abandoned.set()
            fut.cancel()
            gave_up = True
            logger.error("处理超时（>%ss）：%s", image_timeout_seconds, task.image.file_name)
            stats.fail(task.image.file_name, "timeout")
            pending.discard(fut)
        if not pending:
            break

        wait_for = min(image_timeout_seconds, batch_deadline - now)
        for fut in pending:
            started_at = futures[fut].started_at
            if started_at is not None:
                wait_for = min(wait_for, started_at + image_timeout_seconds - now)
        done, pending = wait(pending, timeout=max(wait_for, 0.0), return_when=FIRST_COMPLETED)
        for fut in done:
            _collect(fut, futures[fut].image, stats)

    # stuck workers are abandoned, not joined
    executor.shutdown(wait=not gave_up, cancel_futures=True)


def process_images(
    images: Sequence[ImageMetadata],
    ctx: GeolocationContext,
    write_gps: GpsWriter,
    batch_size: int = 25,
    workers: int = 4,
    batch_pause_seconds: float = 0.1,
    image_timeout_seconds: float = 120.0,
    on_progress: Callable[[int, int], None] | None = None,
) -> RunStatistics:
    """Geotag every image that needs it, batch by batch.

    Workers share the immutable timeline and the geotagged-sibling snapshot
    taken before the first batch; images located during the run never
    serve as references for others. A failing image is logged and counted,
    it never aborts its batch.

    ``image_timeout_seconds`` runs from the moment a worker picks an image
    up. An image still running after that counts as a timeout failure and
    is abandoned: it writes nothing further and is never memoised.

    Args:
        on_progress: Called with (done, total) after each batch.
    """

    started = perf_counter()
    stats = RunStatistics(images_total=len(images))
    siblings = [i for i in images if i.has_gps_coordinates]
    stats.already_geotagged = len(siblings)
    pending: list[ImageMetadata] = []
    for image in images:
        if image.has_gps_coordinates:
            continue
        if not image.has_valid_timestamp:
            stats.without_timestamp += 1
            logger.debug("缺少有效时间戳，跳过：%s", image.file_name)
            continue
        pending.append(image)
    stats.attempted = len(pending)

    size = max(1, int(batch_size))
    total = len(pending)
    for start in range(0, total, size):
        batch = pending[start : start + size]
        _run_batch(batch, ctx, siblings, write_gps, max(1, int(workers)), image_timeout_seconds, stats)

        if on_progress is not None:
            on_progress(min(start + size, total), total)
        if start + size < total and batch_pause_seconds > 0:
            sleep(batch_pause_seconds)

    ctx.priority_store.flush()
    stats.elapsed_seconds = perf_counter() - started
    logger.info(
        "处理完成：共 %s 张，新定位 %s，数据库命中 %s，未找到 %s，失败 %s",
        stats.images_total,
        stats.geotagged,
        stats.database_hits,
        stats.not_found,
        stats.failures + stats.write_failures,
    )
    return stats


def run_augmentation_safely(
    timeline_path: str | Path,
    images: Iterable[ImageMetadata],
    config: AugmentationConfig = AugmentationConfig(),
) -> AugmentationReport | None:
    """augment_timeline that logs failures instead of raising them."""

    try:
        return augment_timeline(timeline_path, list(images), config)
    except Exception as exc:  # the geotagging run continues without augmentation
        logger.error("时间线增强失败，已跳过：%s", exc)
        return None
