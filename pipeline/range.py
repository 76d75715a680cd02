"""
Run Range Utilities - Date-window arithmetic for the RangeFetcher

All dates are calendar dates in YYYY-MM-DD. "Today" is evaluated in JST
because the upstream publishes Japanese Diet sessions on Japan time.
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple

from exceptions import ValidationError
from pipeline.models import RunRange, YMD_PATTERN

JST = timezone(timedelta(hours=9))

# Default lookback for scheduled runs
CRON_LOOKBACK_DAYS = 21


def parse_ymd(value: str) -> date:
    """Parse YYYY-MM-DD into a date. Raises ValidationError on malformed input."""
    if not isinstance(value, str) or not YMD_PATTERN.match(value):
        raise ValidationError("Expected YYYY-MM-DD date", field="date", value=value)
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"Invalid calendar date: {e}", field="date", value=value) from e


def parse_ymd_or_none(value: object) -> Optional[str]:
    """Return value if it is a valid YYYY-MM-DD string, else None"""
    if value is None:
        return None
    text = str(value)
    try:
        parse_ymd(text)
    except ValidationError:
        return None
    return text


def today_jst(offset_days: int = 0, now: Optional[datetime] = None) -> str:
    """YYYY-MM-DD for today in JST, shifted by offset_days"""
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    local = reference.astimezone(JST).date() + timedelta(days=offset_days)
    return local.isoformat()


def days_in_range(run_range: RunRange) -> int:
    """Number of calendar days covered (inclusive)"""
    start = parse_ymd(run_range.from_date)
    end = parse_ymd(run_range.until_date)
    return (end - start).days + 1


def split_range_by_days(run_range: RunRange, chunk_days: int) -> List[RunRange]:
    """Split into contiguous windows of chunk_days; the last window ends at until_date.

    Windows never overlap and their union is exactly the input range.
    """
    days = max(1, int(chunk_days))
    start = parse_ymd(run_range.from_date)
    end = parse_ymd(run_range.until_date)

    windows: List[RunRange] = []
    cursor = start
    while cursor <= end:
        window_end = min(cursor + timedelta(days=days - 1), end)
        windows.append(RunRange(from_date=cursor.isoformat(), until_date=window_end.isoformat()))
        cursor = window_end + timedelta(days=1)
    return windows


def bisect_range(run_range: RunRange) -> Tuple[RunRange, RunRange]:
    """Split a multi-day window at its midpoint day.

    The left half gets the extra day when the length is odd.
    Raises ValidationError for single-day windows.
    """
    start = parse_ymd(run_range.from_date)
    end = parse_ymd(run_range.until_date)
    total = (end - start).days + 1
    if total < 2:
        raise ValidationError("Cannot bisect a single-day window", field="range", value=str(run_range))

    midpoint = start + timedelta(days=(total - 1) // 2)
    left = RunRange(from_date=start.isoformat(), until_date=midpoint.isoformat())
    right = RunRange(
        from_date=(midpoint + timedelta(days=1)).isoformat(),
        until_date=end.isoformat(),
    )
    return left, right


def resolve_run_range(
    from_date: Optional[str] = None,
    until_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RunRange:
    """Build a RunRange from optional user input.

    Missing from_date defaults to today (JST); missing until_date defaults to from_date.
    Raises ValidationError for malformed dates or from > until.
    """
    if from_date is not None:
        parse_ymd(from_date)
    if until_date is not None:
        parse_ymd(until_date)

    start = from_date or today_jst(0, now)
    end = until_date or start
    if start > end:
        raise ValidationError("from must be <= until", field="range", value=f"{start}..{end}")
    return RunRange(from_date=start, until_date=end)


def default_cron_range(now: Optional[datetime] = None) -> RunRange:
    """Range used by scheduled runs: the last three weeks through today (JST)"""
    return RunRange(
        from_date=today_jst(-CRON_LOOKBACK_DAYS, now),
        until_date=today_jst(0, now),
    )
