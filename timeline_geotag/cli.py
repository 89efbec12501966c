"""Command-line interface for timeline_geotag.

Run:
    python -m timeline_geotag inspect --timeline Timeline.json
    python -m timeline_geotag geotag --timeline Timeline.json --images manifest.csv --out gps.csv
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

from timeline_geotag.augment import AugmentationConfig, AugmentationReport, augment_timeline
from timeline_geotag.csv_io import GpsResultsWriter, load_image_manifest
from timeline_geotag.gps_store import GpsPriorityStore, GpsStoreConfig
from timeline_geotag.inspect import export_readable_csv, timeline_statistics
from timeline_geotag.interpolation import GeotagConfig
from timeline_geotag.processor import GeolocationContext, process_images, run_augmentation_safely, seed_exif_gps
from timeline_geotag.timeline import TimelineFormatError, load_timeline, validate_timeline_file
from timeline_geotag.timeutils import local_dt_from_epoch_ms

logger = logging.getLogger(__name__)


def _cmd_inspect(args: argparse.Namespace) -> int:
    check = validate_timeline_file(args.timeline)
    print("### 文件检查")
    print(
        f"exists={check.exists}, readable={check.readable}, valid_json={check.valid_json}, "
        f"has_timeline_edits={check.has_timeline_edits}"
    )
    for err in check.errors:
        print(f"错误：{err}")
    print()
    if not check.is_valid:
        return 1

    store, summary = load_timeline(args.timeline)
    res = timeline_statistics(store.records)

    print("### 记录数")
    print(
        f"edits={summary.edits_total}, records={res.total}, located={res.located}, "
        f"placeholders={res.placeholders}, dropped={summary.records_dropped}, duplicates={summary.duplicates_removed}"
    )
    print()

    if res.min_time_ms is not None and res.max_time_ms is not None:
        print("### 时间范围（本地时区）")
        start = local_dt_from_epoch_ms(res.min_time_ms, args.tz)
        end = local_dt_from_epoch_ms(res.max_time_ms, args.tz)
        print(f"start={start.isoformat(sep=' ')}, end={end.isoformat(sep=' ')}")
        print()

    if res.delta is not None:
        print("### 采样间隔（秒）")
        print(
            f"count={res.delta.count}, min={res.delta.min_s:.3f}, median={res.delta.median_s:.3f}, "
            f"p95={res.delta.p95_s:.3f}, max={res.delta.max_s:.3f}"
        )
        print()

    print("### 按来源统计")
    for name, n in res.by_source.items():
        print(f"{name}={n}")
    print()

    print("### 经纬度范围（粗略）")
    print(f"lat=[{res.min_lat}, {res.max_lat}], lon=[{res.min_lon}, {res.max_lon}]")
    print()

    print("### 重复时间戳")
    print(res.duplicate_timestamps)
    print()

    if args.json:
        payload = asdict(res) | {
            "edits_total": summary.edits_total,
            "records_dropped": summary.records_dropped,
            "duplicates_removed": summary.duplicates_removed,
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_export_readable(args: argparse.Namespace) -> int:
    store, _ = load_timeline(args.timeline)
    n = export_readable_csv(store.records, args.out, args.tz)
    print(f"已导出 {n} 行：{args.out}")
    return 0


def _augmentation_config(args: argparse.Namespace) -> AugmentationConfig:
    return AugmentationConfig(
        exact_time_tolerance_minutes=args.exact_time_minutes,
        exact_distance_tolerance_m=args.exact_distance_m,
        proximity_time_tolerance_minutes=args.proximity_time_minutes,
        proximity_distance_tolerance_m=args.proximity_distance_m,
        create_backup=not args.no_backup,
        extend_range=not args.no_extend,
        tz_name=args.tz,
    )


def _print_augmentation(report: AugmentationReport) -> None:
    print(
        f"时间线增强：新增位置={report.new_records_added}，扩展占位={report.extensions_created}，"
        f"完全重复={report.exact_duplicates_skipped}，邻近重复={report.proximity_duplicates_skipped}，"
        f"占位跳过={report.placeholders_skipped}，合并节省={report.consolidation_savings}"
    )
    if report.backup_path:
        print(f"备份：{report.backup_path}")
    for err in report.errors:
        print(f"警告：{err}", file=sys.stderr)


def _cmd_geotag(args: argparse.Namespace) -> int:
    images, manifest = load_image_manifest(args.images)
    print(
        f"图片清单：{manifest.images} 张，有时间={manifest.with_timestamp}，已有GPS={manifest.with_gps}",
        file=sys.stderr,
    )

    # 处理过程中会原地写入推断坐标，增强时间线只能用图片自带的 GPS
    originals = [replace(image) for image in images]

    timeline = None
    try:
        timeline, summary = load_timeline(args.timeline)
        print(f"时间线：{len(timeline)} 条记录（丢弃 {summary.records_dropped}）", file=sys.stderr)
    except FileNotFoundError:
        print(f"时间线文件不存在，仅使用附近照片推断：{args.timeline}", file=sys.stderr)
    except (OSError, TimelineFormatError) as exc:
        logger.warning("时间线读取失败：%s", exc)
        print(f"时间线文件无法读取，仅使用附近照片推断：{exc}", file=sys.stderr)

    config = GeotagConfig(
        timeline_tolerance_minutes=args.tolerance_minutes,
        secondary_radius_m=args.radius_m,
        secondary_time_window_hours=args.window_hours,
        timeline_fallback_hours=args.fallback_hours,
        tz_name=args.tz,
    )
    store = GpsPriorityStore(GpsStoreConfig(path=Path(args.store)))
    store.load()
    seeded = seed_exif_gps(images, store)
    logger.info("已记录 %s 张自带 GPS 的图片", seeded)

    ctx = GeolocationContext(priority_store=store, timeline=timeline, config=config)
    writer = GpsResultsWriter()

    def _progress(done: int, total: int) -> None:
        pct = 100.0 * done / max(1, total)
        print(f"\r处理进度：{done}/{total} ({pct:5.1f}%)", end="", file=sys.stderr, flush=True)

    stats = process_images(
        images,
        ctx,
        writer,
        batch_size=args.batch_size,
        workers=args.workers,
        on_progress=_progress,
    )
    print(file=sys.stderr)  # 换行
    n = writer.write(args.out)

    print(
        f"新定位={stats.geotagged}，数据库命中={stats.database_hits}，未找到={stats.not_found}，"
        f"失败={stats.failures + stats.write_failures}，无时间={stats.without_timestamp}"
    )
    for name, count in sorted(stats.by_source.items()):
        print(f"  {name}={count}")
    print(f"已导出 {n} 行：{args.out}（可用 exiftool -csv={args.out} 写回图片）")

    if args.augment:
        report = run_augmentation_safely(args.timeline, originals, _augmentation_config(args))
        if report is not None:
            _print_augmentation(report)
    return 0


def _cmd_augment(args: argparse.Namespace) -> int:
    images, _ = load_image_manifest(args.images)
    try:
        report = augment_timeline(args.timeline, images, _augmentation_config(args))
    except (OSError, TimelineFormatError) as exc:
        print(f"时间线增强失败：{exc}", file=sys.stderr)
        return 1
    _print_augmentation(report)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    return 0


def _add_augment_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--no-backup", action="store_true", help="写回前不备份时间线文件")
    p.add_argument("--no-extend", action="store_true", help="不为时间线范围外的照片时间创建扩展占位")
    p.add_argument("--exact-time-minutes", type=float, default=2.0, help="完全重复：时间容差（分钟）")
    p.add_argument("--exact-distance-m", type=float, default=10.0, help="完全重复：距离容差（米）")
    p.add_argument("--proximity-time-minutes", type=float, default=10.0, help="邻近重复：时间容差（分钟）")
    p.add_argument("--proximity-distance-m", type=float, default=50.0, help="邻近重复：距离容差（米）")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="timeline_geotag")
    p.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    sub = p.add_subparsers(dest="cmd", required=True)

    tz_help = "时区（IANA），用于没有时区偏移的照片时间/本地时间显示；默认本机时区"

    p_ins = sub.add_parser("inspect", help="检查时间线 JSON 的结构/时间范围/采样间隔等")
    p_ins.add_argument("--timeline", type=str, default="Timeline.json", help="时间线 JSON 路径")
    p_ins.add_argument("--tz", type=str, default=None, help=tz_help)
    p_ins.add_argument("--json", action="store_true", help="额外输出JSON（便于后处理）")
    p_ins.set_defaults(func=_cmd_inspect)

    p_exp = sub.add_parser("export-readable", help="导出可读时间的时间线记录CSV")
    p_exp.add_argument("--timeline", type=str, default="Timeline.json", help="时间线 JSON 路径")
    p_exp.add_argument("--out", type=str, default="readable.csv", help="输出CSV路径")
    p_exp.add_argument("--tz", type=str, default=None, help=tz_help)
    p_exp.set_defaults(func=_cmd_export_readable)

    p_geo = sub.add_parser("geotag", help="为没有 GPS 的照片推断位置，导出 exiftool 可导入的CSV")
    p_geo.add_argument("--timeline", type=str, default="Timeline.json", help="时间线 JSON 路径")
    p_geo.add_argument("--images", type=str, required=True, help="exiftool -csv 导出的图片清单")
    p_geo.add_argument("--out", type=str, default="gps_results.csv", help="输出CSV路径")
    p_geo.add_argument("--store", type=str, default="gps_store.json", help="GPS 数据库文件（断点续跑）")
    p_geo.add_argument("--tolerance-minutes", type=float, default=30.0, help="时间线直接匹配容差（分钟）")
    p_geo.add_argument("--radius-m", type=float, default=2000.0, help="附近照片推断的空间半径（米）")
    p_geo.add_argument("--window-hours", type=float, default=4.0, help="附近照片推断的时间窗口（小时）")
    p_geo.add_argument(
        "--fallback-hours",
        type=float,
        default=None,
        help="启用逐步放宽的时间线搜索，最大容差（小时）；默认关闭",
    )
    p_geo.add_argument("--tz", type=str, default=None, help=tz_help)
    p_geo.add_argument("--batch-size", type=int, default=25, help="每批处理的图片数")
    p_geo.add_argument("--workers", type=int, default=4, help="每批并发 worker 数")
    p_geo.add_argument("--augment", action="store_true", help="处理完成后把照片GPS/时间并入时间线")
    _add_augment_flags(p_geo)
    p_geo.set_defaults(func=_cmd_geotag)

    p_aug = sub.add_parser("augment", help="把照片 GPS 与时间并入时间线（自动去重/合并）")
    p_aug.add_argument("--timeline", type=str, default="Timeline.json", help="时间线 JSON 路径（不存在则新建）")
    p_aug.add_argument("--images", type=str, required=True, help="exiftool -csv 导出的图片清单")
    p_aug.add_argument("--tz", type=str, default=None, help=tz_help)
    p_aug.add_argument("--json", action="store_true", help="额外输出JSON报告")
    _add_augment_flags(p_aug)
    p_aug.set_defaults(func=_cmd_augment)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
