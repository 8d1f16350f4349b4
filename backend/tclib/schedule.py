"""
Schedule resolution: which shifts apply to a site on a given day.

Precedence is an ordered list of pure rules, each taking (site, ymd) and
returning a result dict or None.  The first rule that answers wins:

  1. day exception for that exact date
  2. first range exception (storage order) covering the date and weekday
  3. base-schedule rule for the weekday

When nothing answers the day is 'undefined' with no shifts.

Overlapping range exceptions have no priority beyond storage order; the
first one stored wins.
"""
from typing import Any, Callable, Dict, List, Optional

from .dates import anchor_iso, span_days, iter_days, validate_range, weekday_of
from .errors import BadRequest, BadRange, DateParseError
from .models import ATTENDANCE_OVERRIDE, TERMINAL_EXCEPTION_TYPES, new_hire_config

ORIGIN_EXCEPTION_DAY = 'exception_day'
ORIGIN_EXCEPTION_RANGE = 'exception_range'
ORIGIN_BASE_SCHEDULE = 'base_schedule'
ORIGIN_UNDEFINED = 'undefined'

Resolution = Dict[str, Any]
Rule = Callable[[Dict[str, Any], str], Optional[Resolution]]


def _anchored(value) -> Optional[str]:
    try:
        return anchor_iso(value)
    except DateParseError:
        return None


def _copy_shifts(shifts) -> List[Dict[str, Any]]:
    return [
        {'start': s.get('start'), 'end': s.get('end'), 'overnight': bool(s.get('overnight', False))}
        for s in shifts or []
    ]


def day_exception_rule(site: Dict[str, Any], ymd: str) -> Optional[Resolution]:
    anchored = anchor_iso(ymd)
    exc = next((e for e in site.get('day_exceptions') or [] if _anchored(e.get('date')) == anchored), None)
    if exc is None:
        return None
    etype = exc.get('type')
    if etype == ATTENDANCE_OVERRIDE and exc.get('start') and exc.get('end'):
        return {
            'origin': ORIGIN_EXCEPTION_DAY,
            'shifts': [{'start': exc['start'], 'end': exc['end'], 'overnight': False}],
        }
    if etype in TERMINAL_EXCEPTION_TYPES:
        return {'origin': ORIGIN_EXCEPTION_DAY, 'status': etype, 'shifts': []}
    return None


def range_exception_rule(site: Dict[str, Any], ymd: str) -> Optional[Resolution]:
    anchored = anchor_iso(ymd)
    weekday = weekday_of(ymd)
    for rng in site.get('range_exceptions') or []:
        first, last = _anchored(rng.get('start')), _anchored(rng.get('end'))
        if first is None or last is None or not first <= anchored <= last:
            continue
        weekdays = rng.get('weekdays') or []
        if weekdays and weekday not in weekdays:
            continue
        return {'origin': ORIGIN_EXCEPTION_RANGE, 'shifts': _copy_shifts(rng.get('shifts'))}
    return None


def base_schedule_rule(site: Dict[str, Any], ymd: str) -> Optional[Resolution]:
    base = site.get('base_schedule')
    if not base or not isinstance(base.get('rules'), list):
        return None
    weekday = weekday_of(ymd)
    rule = next((r for r in base['rules'] if r.get('weekday') == weekday), None)
    if rule is None:
        return None
    return {'origin': ORIGIN_BASE_SCHEDULE, 'shifts': _copy_shifts(rule.get('shifts'))}


SCHEDULE_RULES: List[Rule] = [
    day_exception_rule,
    range_exception_rule,
    base_schedule_rule,
]


def resolve_for_site(site: Dict[str, Any], ymd: str) -> Resolution:
    """Run the rule chain against an already loaded site document."""
    for rule in SCHEDULE_RULES:
        result = rule(site, ymd)
        if result is not None:
            return result
    return {'origin': ORIGIN_UNDEFINED, 'shifts': []}


def resolve_schedule(db, site_id: int, date: str) -> Resolution:
    """Applicable shifts for *site_id* on civil date *date* ('YYYY-MM-DD')."""
    try:
        anchor_iso(date)
    except DateParseError:
        raise BadRequest("date must be YYYY-MM-DD")
    site = db.require_site(site_id)
    return resolve_for_site(site, date)


def resolve_schedule_range(db, site_id: int, start: str, end: str,
                           max_span_days: int = 120) -> List[Resolution]:
    """Resolution for every day of [start, end], each tagged with its date."""
    validate_range(start, end)
    if span_days(start, end) > max_span_days:
        raise BadRange(f"range exceeds {max_span_days} days")
    site = db.require_site(site_id)
    return [{'date': d, **resolve_for_site(site, d)} for d in iter_days(start, end)]


def describe_site_schedule(site: Dict[str, Any]) -> Dict[str, Any]:
    """Base schedule plus the new-hire block, as served to collaborators."""
    return {
        'site_id': site.get('id'),
        'base_schedule': site.get('base_schedule'),
        'new_hire': new_hire_config(site),
    }
