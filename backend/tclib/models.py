"""
Domain constants, the special-day variant and write-side validation.

Everything that is persisted through TimeclockDatabase passes the normalizers
in this module first; the schedule resolver and the attendance reducer trust
stored documents to be valid.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .dates import anchor_iso, is_ymd_string, parse_ymd
from .errors import BadRequest, DateParseError

# ── Constants ─────────────────────────────────────────────────

SITE_PENDING_DELETION = 'pending_deletion'

WORKER_ACTIVE = 'active'
WORKER_INACTIVE = 'inactive'

PUNCH_ENTRY = 'Entrada'
PUNCH_EXIT = 'Salida'

# Day statuses emitted by the attendance reducer
STATUS_MANUAL = 'Manual Attendance'
STATUS_COMPLETE = 'Complete Attendance'
STATUS_AUTO_CHECKOUT = 'Automatic Checkout'
STATUS_PENDING = 'Pending'
STATUS_ABSENCE = 'Absence'
STATUS_OTHER_SITE = 'Other Site'

ATTENDANCE_OVERRIDE = 'attendance_override'
# Day-exception types that close the day with no shifts
TERMINAL_EXCEPTION_TYPES = ('rest', 'holiday', 'event', 'suspension', 'half_day', 'custom')
DAY_EXCEPTION_TYPES = (ATTENDANCE_OVERRIDE,) + TERMINAL_EXCEPTION_TYPES

# Site calendar special-day types
CALENDAR_DAY_TYPES = ('holiday', 'bridge', 'rest', 'half_day', 'training', 'event', 'suspension')

# Worker-calendar types that mean "attended with explicit times"
_MANUAL_KINDS = ('attendance', ATTENDANCE_OVERRIDE)

_HHMM_RE = re.compile(r'^(\d{1,2}):(\d{2})$')


def is_exit_punch(punch_type: str) -> bool:
    """'Salida' and its variants ('Salida Automática', …) all close the day."""
    return isinstance(punch_type, str) and punch_type.startswith(PUNCH_EXIT)


# ── Special-day variant ───────────────────────────────────────

@dataclass(frozen=True)
class ManualAttendance:
    start: str
    end: str


@dataclass(frozen=True)
class TerminalDay:
    kind: str


SpecialDay = Union[ManualAttendance, TerminalDay]


def parse_worker_special_day(entry: Dict[str, Any]) -> SpecialDay:
    """Decide once whether a worker special day is a manual attendance or a terminal status."""
    raw_type = entry.get('type') or ''
    kind = raw_type.strip().lower()
    start = normalize_hhmm(entry.get('start'))
    end = normalize_hhmm(entry.get('end'))
    if kind in _MANUAL_KINDS and start and end:
        return ManualAttendance(start=start, end=end)
    return TerminalDay(kind=raw_type.strip() or 'Event')


# ── Time helpers ──────────────────────────────────────────────

def normalize_hhmm(value) -> Optional[str]:
    """'9:05' → '09:05'. Returns None for empty or malformed input."""
    if value is None or value == '':
        return None
    m = _HHMM_RE.match(str(value).strip())
    if not m:
        return None
    h, mi = int(m.group(1)), int(m.group(2))
    if not (0 <= h <= 23 and 0 <= mi <= 59):
        return None
    return f"{h:02d}:{mi:02d}"


def normalize_weekday(value) -> Optional[int]:
    """Accept 0..6 (0 = Sunday) or 1..7 (7 = Sunday); anything else → None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    if 0 <= n <= 6:
        return n
    if n == 7:
        return 0
    return None


def normalize_shifts(shifts) -> List[Dict[str, Any]]:
    """Keep well-formed shifts only; a non-overnight shift needs start < end."""
    result = []
    for s in shifts or []:
        if not isinstance(s, dict):
            continue
        start, end = normalize_hhmm(s.get('start')), normalize_hhmm(s.get('end'))
        if not (start and end):
            continue
        overnight = bool(s.get('overnight', False))
        if not overnight and not start < end:
            continue
        result.append({'start': start, 'end': end, 'overnight': overnight})
    return result


# ── Base schedule ─────────────────────────────────────────────

def normalize_new_hire(block: Dict[str, Any]) -> Dict[str, Any]:
    active = bool(block.get('active', False))
    try:
        duration = int(block.get('duration_days') or 0)
    except (TypeError, ValueError):
        duration = 0
    if duration <= 0:
        duration = 30
    duration = min(duration, 180)
    return {
        'active': active,
        'duration_days': duration,
        'only_base_active_days': block.get('only_base_active_days', True) is not False,
        'shifts': normalize_shifts(block.get('shifts')) if active else [],
    }


def normalize_base_schedule(payload: Dict[str, Any],
                            previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validate and normalize a base-schedule payload.

    Days without a valid shift are dropped (inactive day).  A later rule for
    the same weekday replaces an earlier one.  The version is bumped on every
    save and the previous new-hire block is kept when none is sent.
    """
    if not isinstance(payload, dict):
        raise BadRequest("base schedule must be an object")
    effective_from = payload.get('effective_from')
    rules = payload.get('rules', [])
    if not effective_from or not isinstance(rules, list):
        raise BadRequest("effective_from and rules are required")
    try:
        effective_from = anchor_iso(effective_from)
    except DateParseError:
        raise BadRequest("effective_from is not a valid date")

    by_weekday: Dict[int, List[Dict[str, Any]]] = {}
    for rule in rules:
        weekday = normalize_weekday(rule.get('weekday') if isinstance(rule, dict) else None)
        if weekday is None:
            raise BadRequest(f"invalid weekday: {rule!r}")
        shifts = normalize_shifts(rule.get('shifts'))
        if not shifts:
            continue
        by_weekday[weekday] = shifts

    previous = previous or {}
    new_hire = payload.get('new_hire')
    if isinstance(new_hire, dict):
        new_hire = normalize_new_hire(new_hire)
    else:
        new_hire = previous.get('new_hire') or normalize_new_hire({})

    return {
        'effective_from': effective_from,
        'rules': [{'weekday': wd, 'shifts': by_weekday[wd]} for wd in sorted(by_weekday)],
        'new_hire': new_hire,
        'version': int(previous.get('version', 0) or 0) + 1,
    }


def new_hire_config(site: Dict[str, Any]) -> Dict[str, Any]:
    """New-hire override as plain data; applying it is left to the caller."""
    base = site.get('base_schedule') or {}
    return normalize_new_hire(base.get('new_hire') or {})


# ── Exceptions ────────────────────────────────────────────────

def validate_day_exception(payload: Dict[str, Any]) -> Dict[str, Any]:
    etype = payload.get('type')
    if etype not in DAY_EXCEPTION_TYPES:
        raise BadRequest(f"type must be one of: {', '.join(DAY_EXCEPTION_TYPES)}")
    try:
        anchored = anchor_iso(payload.get('date'))
    except DateParseError:
        raise BadRequest("date is required (YYYY-MM-DD)")
    record = {'date': anchored, 'type': etype}
    if etype == ATTENDANCE_OVERRIDE:
        start, end = normalize_hhmm(payload.get('start')), normalize_hhmm(payload.get('end'))
        if not start or not end:
            raise BadRequest("attendance_override requires start and end (HH:MM)")
        if not start < end:
            raise BadRequest("end must be later than start")
        record['start'] = start
        record['end'] = end
    return record


def validate_range_exception(payload: Dict[str, Any]) -> Dict[str, Any]:
    start, end = payload.get('start'), payload.get('end')
    if not (is_ymd_string(start) and is_ymd_string(end)):
        raise BadRequest("start and end are required (YYYY-MM-DD)")
    try:
        if parse_ymd(start) > parse_ymd(end):
            raise BadRequest("start must not be after end")
    except DateParseError as e:
        raise BadRequest(str(e))
    weekdays = set()
    for wd in payload.get('weekdays') or []:
        if isinstance(wd, bool) or not isinstance(wd, int) or not 0 <= wd <= 6:
            raise BadRequest(f"weekday filter must be within 0..6: {wd!r}")
        weekdays.add(wd)
    return {
        'start': anchor_iso(start),
        'end': anchor_iso(end),
        'weekdays': sorted(weekdays),
        'shifts': normalize_shifts(payload.get('shifts')),
    }


def validate_site_special_day(payload: Dict[str, Any]) -> Dict[str, Any]:
    dtype = payload.get('type')
    if dtype not in CALENDAR_DAY_TYPES:
        raise BadRequest(f"type must be one of: {', '.join(CALENDAR_DAY_TYPES)}")
    try:
        anchored = anchor_iso(payload.get('date'))
    except DateParseError:
        raise BadRequest("date is required (YYYY-MM-DD)")
    start, end = None, None
    if dtype == 'half_day':
        start, end = normalize_hhmm(payload.get('start')), normalize_hhmm(payload.get('end'))
        if not start or not end:
            raise BadRequest("half_day requires start and end (HH:MM)")
        if not start < end:
            raise BadRequest("end must be later than start")
    return {
        'date': anchored,
        'type': dtype,
        'start': start,
        'end': end,
        'description': payload.get('description') or '',
    }


def validate_worker_special_day(payload: Dict[str, Any]) -> Dict[str, Any]:
    dtype = (payload.get('type') or '').strip()
    if not dtype:
        raise BadRequest("type is required")
    try:
        anchored = anchor_iso(payload.get('date'))
    except DateParseError:
        raise BadRequest("date is required (YYYY-MM-DD)")
    entry = {'date': anchored, 'type': dtype}
    start, end = normalize_hhmm(payload.get('start')), normalize_hhmm(payload.get('end'))
    if start:
        entry['start'] = start
    if end:
        entry['end'] = end
    return entry
