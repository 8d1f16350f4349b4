"""
Timezone-safe date helpers.

Two kinds of values flow through the system and must never be mixed:

  • Calendar dates (special days, exceptions, batch targets) are stored as
    *anchored* instants: the calendar day at 12:00 UTC.  Re-deriving the day
    in any business zone between UTC-12 and UTC+11 gives back the same date.
    Use anchor_civil_date() / anchor_iso() / to_ymd() for these.

  • Punch timestamps are true instants.  The day they belong to is the civil
    date in the business time zone.  Use civil_day() / local_time_text().

Unparsable input raises DateParseError.
"""
import re
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional, Union

import pytz

from .errors import BadRange, BadRequest, DateParseError

NOON_UTC_HOUR = 12
_YMD_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')

DateLike = Union[str, date, datetime]
ZoneLike = Union[str, 'pytz.BaseTzInfo']


def is_ymd_string(value) -> bool:
    return isinstance(value, str) and bool(_YMD_RE.match(value))


def parse_ymd(value) -> date:
    """Parse a strict 'YYYY-MM-DD' civil string."""
    if not is_ymd_string(value):
        raise DateParseError(value, "expected YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise DateParseError(value)


def _parse_instant(value) -> datetime:
    """Return *value* as an aware UTC datetime.  Naive datetimes count as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        s = value.strip()
        if s.endswith('Z'):
            s = s[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise DateParseError(value)
    else:
        raise DateParseError(value, "not an instant")
    if dt.tzinfo is None:
        return pytz.utc.localize(dt)
    return dt.astimezone(pytz.utc)


def anchor_civil_date(date_like: DateLike) -> datetime:
    """Encode a calendar day as that day at 12:00 UTC.

    Date-only values keep their own day.  Instants contribute their UTC day.
    """
    if date_like is None or date_like == '':
        raise DateParseError(date_like, "date required")
    if isinstance(date_like, datetime):
        d = _parse_instant(date_like).date()
    elif isinstance(date_like, date):
        d = date_like
    elif is_ymd_string(date_like):
        d = parse_ymd(date_like)
    else:
        d = _parse_instant(date_like).date()
    return datetime(d.year, d.month, d.day, NOON_UTC_HOUR, tzinfo=pytz.utc)


def anchor_iso(date_like: DateLike) -> str:
    """Anchored instant as stored in calendar documents."""
    return anchor_civil_date(date_like).strftime('%Y-%m-%dT%H:%M:%SZ')


def to_ymd(date_like: DateLike) -> str:
    return anchor_civil_date(date_like).strftime('%Y-%m-%d')


def get_zone(zone: ZoneLike):
    if zone is None:
        raise BadRequest("business time zone not configured")
    if isinstance(zone, str):
        try:
            return pytz.timezone(zone)
        except pytz.UnknownTimeZoneError:
            raise BadRequest(f"unknown time zone {zone!r}")
    return zone


def civil_day(instant, zone: ZoneLike) -> str:
    """Civil date ('YYYY-MM-DD') of a true instant in the business zone."""
    if isinstance(instant, date) and not isinstance(instant, datetime):
        return instant.isoformat()
    local = _parse_instant(instant).astimezone(get_zone(zone))
    return local.strftime('%Y-%m-%d')


def local_time_text(instant, zone: ZoneLike) -> str:
    """'HH:MM' wall-clock time of an instant in the business zone."""
    local = _parse_instant(instant).astimezone(get_zone(zone))
    return local.strftime('%H:%M')


def parse_instant(value) -> datetime:
    return _parse_instant(value)


def utc_iso(now: Optional[datetime] = None) -> str:
    """Instant as 'YYYY-MM-DDTHH:MM:SSZ'; defaults to the current time."""
    return _parse_instant(now or datetime.now(pytz.utc)).strftime('%Y-%m-%dT%H:%M:%SZ')


def today_in_zone(zone: ZoneLike, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(pytz.utc)
    return civil_day(now, zone)


def weekday_of(date_like: DateLike) -> int:
    """Weekday of a calendar day, 0 = Sunday … 6 = Saturday."""
    return (anchor_civil_date(date_like).weekday() + 1) % 7


def span_days(start: str, end: str) -> int:
    """Number of days in the inclusive range [start, end]."""
    return (parse_ymd(end) - parse_ymd(start)).days + 1


def iter_days(start: str, end: str) -> Iterator[str]:
    cur = parse_ymd(start)
    last = parse_ymd(end)
    while cur <= last:
        yield cur.isoformat()
        cur += timedelta(days=1)


def weekdays_in_range(start: DateLike, end: DateLike, weekday: int = 0) -> List[datetime]:
    """All anchored dates in [start, end] falling on *weekday* (0 = Sunday)."""
    cur = anchor_civil_date(start)
    last = anchor_civil_date(end)
    if cur > last:
        return []
    delta = (weekday - weekday_of(cur)) % 7
    cur += timedelta(days=delta)
    result = []
    while cur <= last:
        result.append(cur)
        cur += timedelta(days=7)
    return result


def group_by_year(dates) -> Dict[int, List[datetime]]:
    grouped: Dict[int, List[datetime]] = {}
    for d in dates or []:
        anchored = anchor_civil_date(d)
        grouped.setdefault(anchored.year, []).append(anchored)
    return grouped


def years_spanned(start: str, end: str) -> List[int]:
    return list(range(parse_ymd(start).year, parse_ymd(end).year + 1))


def validate_range(start, end) -> None:
    """Check a pair of 'YYYY-MM-DD' bounds; raises BadRange."""
    if not start or not end:
        raise BadRange("start and end are required")
    try:
        first, last = parse_ymd(start), parse_ymd(end)
    except DateParseError as e:
        raise BadRange(str(e))
    if first > last:
        raise BadRange("start must not be after end")
