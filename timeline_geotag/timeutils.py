"""Time parsing, epoch-ms conversion and timezone normalization."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, timezone, tzinfo
from typing import Iterable

from zoneinfo import ZoneInfo

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)
_OFFSET_RE = re.compile(r"^\s*([+-])(\d{1,2}):?(\d{2})?\s*$")
_EXIF_DT_RE = re.compile(
    r"^\s*(\d{4}):(\d{2}):(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(\.\d+)?\s*(Z|[+-]\d{2}:?\d{2})?\s*$"
)


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Create tzinfo from an IANA timezone name.

    Args:
        tz_name: Timezone name like "Europe/Berlin".

    Returns:
        tzinfo instance.

    Raises:
        ValueError: If timezone name is invalid on this system.
    """

    try:
        return ZoneInfo(tz_name)
    except Exception as exc:  # ZoneInfo raises KeyError / ZoneInfoNotFoundError (platform dependent)
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Asia/Shanghai") from exc


def system_tzinfo() -> tzinfo:
    """Local timezone of this machine (UTC when it cannot be determined)."""

    return datetime.now().astimezone().tzinfo or UTC


def dt_from_epoch_ms(epoch_ms: int, tz_name: str | None = None) -> datetime:
    """Convert epoch milliseconds to timezone-aware datetime.

    Args:
        epoch_ms: Unix epoch milliseconds.
        tz_name: IANA timezone name; UTC when None.
    """

    tz = tzinfo_from_name(tz_name) if tz_name else UTC
    return (_EPOCH + timedelta(milliseconds=epoch_ms)).astimezone(tz)


def local_dt_from_epoch_ms(epoch_ms: int, tz_name: str | None = None) -> datetime:
    """Like dt_from_epoch_ms, but None means the system timezone instead of UTC."""

    if tz_name:
        return dt_from_epoch_ms(epoch_ms, tz_name)
    return dt_from_epoch_ms(epoch_ms).astimezone(system_tzinfo())


def epoch_ms_from_dt(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds (exact integer arithmetic).

    Args:
        dt: Datetime. If naive, will be treated as UTC (discouraged).
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return (dt - _EPOCH) // _ONE_MS


def parse_iso_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp from a timeline document.

    Accepts a trailing "Z" and any number of fractional digits. Naive values
    are assumed to be UTC.

    Raises:
        ValueError: If cannot parse.
    """

    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"无法解析时间：{text!r}")
    try:
        dt = datetime.fromisoformat(text.strip())
    except ValueError as exc:
        raise ValueError(f"无法解析时间：{text!r}") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_iso_ms(epoch_ms: int) -> str:
    """Format epoch ms as "YYYY-MM-DDTHH:MM:SS.mmmZ"."""

    dt = dt_from_epoch_ms(epoch_ms)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_dt(text: str, tz_name: str) -> datetime:
    """Parse user-provided datetime text to a timezone-aware datetime.

    Supported formats:
      - "YYYY-MM-DD HH:MM:SS"
      - "YYYY-MM-DDTHH:MM:SS"
      - with optional timezone offset, e.g. "+08:00"

    If timezone is missing, it will be assumed to be tz_name.

    Raises:
        ValueError: If cannot parse.
    """

    s = text.strip().replace("T", " ")
    tz = tzinfo_from_name(tz_name)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as exc:
        raise ValueError(f"无法解析时间：{text!r}。建议格式：2025-12-18 09:30:00") from exc

    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def parse_exif_datetime(text: str) -> datetime:
    """Parse an EXIF date such as "2024:01:01 12:00:00" (optional subseconds/offset).

    Returns a naive datetime unless the text carries an offset.

    Raises:
        ValueError: If cannot parse.
    """

    m = _EXIF_DT_RE.match(text or "")
    if m is None:
        raise ValueError(f"无法解析 EXIF 时间：{text!r}")
    year, month, day, hour, minute, second = (int(g) for g in m.groups()[:6])
    frac = m.group(7)
    micro = int(round(float(frac) * 1_000_000)) if frac else 0
    dt = datetime(year, month, day, hour, minute, second, min(micro, 999_999))
    offset = m.group(8)
    if offset:
        dt = dt.replace(tzinfo=UTC if offset == "Z" else timezone(timedelta(minutes=parse_offset_minutes(offset))))
    return dt


def parse_offset_minutes(text: str) -> int:
    """Parse "+05:30" / "-0800" / "+2" into signed minutes.

    Raises:
        ValueError: If cannot parse.
    """

    m = _OFFSET_RE.match(text or "")
    if m is None:
        raise ValueError(f"无法解析时区偏移：{text!r}")
    sign = 1 if m.group(1) == "+" else -1
    hours = int(m.group(2))
    minutes = int(m.group(3) or "0")
    return sign * (hours * 60 + minutes)


def format_offset(offset_minutes: int) -> str:
    sign = "+" if offset_minutes >= 0 else "-"
    total = abs(offset_minutes)
    return f"{sign}{total // 60:02d}:{total % 60:02d}"


def normalize_to_utc(dt: datetime, offset: str | None = None, tz_name: str | None = None) -> datetime:
    """Interpret a (possibly naive) capture time and convert it to UTC.

    Aware datetimes are converted directly. Naive ones use, in order: the
    EXIF offset string, the IANA zone ``tz_name``, the system timezone.
    """

    if dt.tzinfo is not None:
        return dt.astimezone(UTC)
    if offset:
        try:
            tz: tzinfo = timezone(timedelta(minutes=parse_offset_minutes(offset)))
        except ValueError:
            tz = tzinfo_from_name(tz_name) if tz_name else system_tzinfo()
    elif tz_name:
        tz = tzinfo_from_name(tz_name)
    else:
        tz = system_tzinfo()
    return dt.replace(tzinfo=tz).astimezone(UTC)


@dataclass(frozen=True, slots=True)
class DeltaStats:
    """Sampling interval stats (seconds)."""

    count: int
    min_s: float
    median_s: float
    p95_s: float
    max_s: float


def delta_stats(epoch_ms_sorted: Iterable[int]) -> DeltaStats | None:
    """Compute basic sampling-interval statistics.

    Args:
        epoch_ms_sorted: Epoch ms sorted ascending.

    Returns:
        DeltaStats or None if less than 2 points.
    """

    ms = list(epoch_ms_sorted)
    if len(ms) < 2:
        return None
    deltas = [(ms[i] - ms[i - 1]) / 1000.0 for i in range(1, len(ms)) if ms[i] >= ms[i - 1]]
    if not deltas:
        return None
    deltas.sort()
    n = len(deltas)
    median = deltas[n // 2] if n % 2 == 1 else 0.5 * (deltas[n // 2 - 1] + deltas[n // 2])
    p95 = deltas[int(0.95 * (n - 1))]
    return DeltaStats(
        count=n,
        min_s=deltas[0],
        median_s=median,
        p95_s=p95,
        max_s=deltas[-1],
    )
