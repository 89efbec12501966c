from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from pathlib import Path

import streamlit as st

from timeline_geotag.gps_store import GpsPriorityStore
from timeline_geotag.inspect import timeline_statistics
from timeline_geotag.models import GpsRecord, PositionRecord
from timeline_geotag.timeline import TimelineStore, load_timeline, validate_timeline_file
from timeline_geotag.timeutils import epoch_ms_from_dt, local_dt_from_epoch_ms, system_tzinfo, tzinfo_from_name


def _tz(tz_name: str | None) -> tzinfo:
    return tzinfo_from_name(tz_name) if tz_name else system_tzinfo()


def _range_to_epoch_ms(start_d: date, end_d: date, tz_name: str | None) -> tuple[int, int]:
    """Convert date range to epoch-ms [start, end] in tz."""

    tz = _tz(tz_name)
    start_dt = datetime.combine(start_d, time.min).replace(tzinfo=tz)
    end_dt = datetime.combine(end_d + timedelta(days=1), time.min).replace(tzinfo=tz)
    return epoch_ms_from_dt(start_dt), epoch_ms_from_dt(end_dt) - 1


def _gap_rows(records: list[PositionRecord], min_gap_minutes: float, tz_name: str | None) -> list[dict[str, object]]:
    """Intervals between consecutive located records longer than min_gap_minutes."""

    located = [r for r in records if not r.is_placeholder]
    rows: list[dict[str, object]] = []
    for prev, cur in zip(located, located[1:]):
        gap_min = (cur.timestamp_ms - prev.timestamp_ms) / 60_000.0
        if gap_min > min_gap_minutes:
            rows.append(
                {
                    "from": local_dt_from_epoch_ms(prev.timestamp_ms, tz_name).isoformat(sep=" "),
                    "to": local_dt_from_epoch_ms(cur.timestamp_ms, tz_name).isoformat(sep=" "),
                    "gap_minutes": round(gap_min, 1),
                }
            )
    rows.sort(key=lambda r: float(r["gap_minutes"]), reverse=True)
    return rows


@st.cache_data(show_spinner=False)
def _load_records(timeline_path: str, mtime: float) -> list[PositionRecord]:
    _ = mtime  # part of cache key so updated files reload automatically
    store, _summary = load_timeline(timeline_path)
    return list(store.records)


@st.cache_data(show_spinner=False)
def _load_gps_records(store_path: str, mtime: float) -> list[GpsRecord]:
    _ = mtime
    store = GpsPriorityStore(store_path)
    return store.records()


def _render_timeline(timeline_path: str, tz_name: str | None, gap_minutes: float) -> None:
    check = validate_timeline_file(timeline_path)
    if not check.is_valid:
        st.error("时间线文件无效：" + "；".join(check.errors))
        return

    records = _load_records(timeline_path, Path(timeline_path).stat().st_mtime)
    store = TimelineStore(records)
    time_range = store.time_range()
    if time_range is None:
        st.warning("时间线中没有可用记录。")
        return

    first_day = local_dt_from_epoch_ms(time_range[0], tz_name).date()
    last_day = local_dt_from_epoch_ms(time_range[1], tz_name).date()
    with st.sidebar:
        st.subheader("时间范围")
        start_d = st.date_input("开始日期", value=first_day, key="start_date")
        end_d = st.date_input("结束日期", value=last_day, key="end_date")

    if start_d > end_d:
        st.error("开始日期不能晚于结束日期。")
        return

    start_ms, end_ms = _range_to_epoch_ms(start_d, end_d, tz_name)
    in_range = store.records_in_range(start_ms, end_ms)
    stats = timeline_statistics(in_range)

    st.subheader("时间线覆盖")
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("范围内记录", str(stats.total))
    c2.metric("有坐标", str(stats.located))
    c3.metric("扩展占位", str(stats.placeholders))
    c4.metric("全部记录", str(len(store)))

    if stats.delta is not None:
        st.caption(
            f"采样间隔（秒）：median={stats.delta.median_s:.1f}，p95={stats.delta.p95_s:.1f}，max={stats.delta.max_s:.1f}"
        )

    per_day: dict[str, int] = {}
    for r in in_range:
        d = local_dt_from_epoch_ms(r.timestamp_ms, tz_name).date().isoformat()
        per_day[d] = per_day.get(d, 0) + 1
    with st.expander("按天记录数", expanded=False):
        st.dataframe(
            [{"date": d, "records": n} for d, n in sorted(per_day.items())],
            use_container_width=True,
            height=360,
        )

    st.subheader(f"覆盖缺口（相邻记录间隔 > {gap_minutes:.0f} 分钟）")
    st.dataframe(_gap_rows(in_range, gap_minutes, tz_name), use_container_width=True, height=360)

    with st.expander("按来源统计", expanded=False):
        st.dataframe([{"source": k, "records": v} for k, v in stats.by_source.items()], use_container_width=True)


def _render_store(store_path: str) -> None:
    p = Path(store_path)
    journal = p.with_name(f"{p.stem}.journal.jsonl")
    if not p.exists() and not journal.exists():
        st.info(f"GPS 数据库不存在：{store_path!r}")
        return
    mtime = max(f.stat().st_mtime for f in (p, journal) if f.exists())
    records = _load_gps_records(store_path, mtime)

    st.subheader("GPS 数据库")
    by_source: dict[str, int] = {}
    by_confidence: dict[str, int] = {}
    for r in records:
        by_source[r.source.value] = by_source.get(r.source.value, 0) + 1
        by_confidence[r.confidence.value] = by_confidence.get(r.confidence.value, 0) + 1

    cols = st.columns(3)
    cols[0].metric("记录数", str(len(records)))
    cols[1].metric("HIGH", str(by_confidence.get("HIGH", 0)))
    cols[2].metric("LOW", str(by_confidence.get("LOW", 0)))
    st.dataframe([{"source": k, "records": v} for k, v in sorted(by_source.items())], use_container_width=True)

    rows = [
        {
            "file": r.file_name,
            "latitude": r.coordinates.latitude,
            "longitude": r.coordinates.longitude,
            "source": r.source.value,
            "confidence": r.confidence.value,
            "updated_at": r.updated_at,
        }
        for r in sorted(records, key=lambda r: r.file_path)
    ]
    st.dataframe(rows, use_container_width=True, height=520)


def main() -> None:
    st.set_page_config(page_title="时间线照片定位：覆盖检查", layout="wide")
    st.title("时间线照片定位：时间线覆盖与 GPS 数据库")

    with st.sidebar:
        st.subheader("数据与时区")
        tz_name = st.text_input("时区（IANA，留空=本机时区）", value="", key="tz_name").strip() or None
        timeline_path = st.text_input("时间线 JSON 路径", value="Timeline.json", key="timeline_path")
        store_path = st.text_input("GPS 数据库路径", value="gps_store.json", key="store_path")
        gap_minutes = st.number_input("缺口阈值（分钟）", value=60.0, step=10.0, key="gap_minutes")

    try:
        _tz(tz_name)
    except ValueError as exc:
        st.error(str(exc))
        return

    _render_timeline(timeline_path, tz_name, float(gap_minutes))
    _render_store(store_path)

    st.caption(
        "说明：该界面只读；日期范围按所选时区计算，区间为 [开始日 00:00, 结束日+1 00:00)。"
        "覆盖缺口内拍摄的照片通常只能依靠附近照片推断位置。"
    )


if __name__ == "__main__":
    main()
