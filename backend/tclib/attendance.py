"""
Attendance reducer: one DayRecord per calendar day for a worker.

Punches are bucketed by their civil day in the business time zone; worker and
site calendar entries are matched by anchored date.  The status of each day
comes from an ordered list of rules (first answer wins), followed by the
cross-site override that turns an empty in-scope day into "Other Site" when
the worker punched somewhere outside the permitted sites.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytz

from .dates import (
    civil_day, iter_days, local_time_text, parse_instant, today_in_zone, to_ymd, utc_iso,
    validate_range, years_spanned,
)
from .errors import BadRequest, DateParseError, NotFound, WorkerNotFound
from .models import (
    PUNCH_ENTRY, PUNCH_EXIT, STATUS_ABSENCE, STATUS_AUTO_CHECKOUT, STATUS_COMPLETE,
    STATUS_MANUAL, STATUS_OTHER_SITE, STATUS_PENDING,
    ManualAttendance, SpecialDay, TerminalDay, is_exit_punch, parse_worker_special_day,
)

logger = logging.getLogger(__name__)

PLACEHOLDER = '—'

SCOPE_PRINCIPAL_ONLY = 'principal_only'
SCOPE_PRINCIPAL_AND_FOREIGN = 'principal_and_foreign'
SCOPE_UNRESTRICTED = 'unrestricted'
SCOPES = (SCOPE_PRINCIPAL_ONLY, SCOPE_PRINCIPAL_AND_FOREIGN, SCOPE_UNRESTRICTED)

POLICY_CLOSED = 'closed'
POLICY_TODAY = 'today'
OPEN_DAY_POLICIES = (POLICY_CLOSED, POLICY_TODAY)


# ── Punch bucketing ───────────────────────────────────────────

@dataclass
class Punch:
    site: Optional[int]
    kind: str
    at: datetime


@dataclass
class DayContext:
    ymd: str
    entrada: Optional[Punch]
    salida: Optional[Punch]
    worker_day: Optional[SpecialDay]
    worker_event: str
    site_event: str
    open_day_policy: str
    today: str
    zone: Any = field(repr=False, default=None)


def permitted_sites(worker: Dict[str, Any], scope: str,
                    site_id: Optional[int] = None) -> Optional[Set[int]]:
    """Sites whose punches count for the report; None means every site."""
    if scope not in SCOPES:
        raise BadRequest(f"scope must be one of: {', '.join(SCOPES)}")
    if site_id is not None:
        return {site_id}
    if scope == SCOPE_UNRESTRICTED:
        return None
    principal = worker.get('principal_site')
    sites = {principal} if principal is not None else set()
    if scope == SCOPE_PRINCIPAL_AND_FOREIGN:
        sites.update(s for s in worker.get('foreign_sites') or [] if s is not None)
    return sites


def _punches_by_day(records: List[Dict[str, Any]], zone) -> Dict[str, List[Punch]]:
    by_day: Dict[str, List[Punch]] = {}
    for rec in records:
        for p in rec.get('punches') or []:
            try:
                at = parse_instant(p.get('timestamp'))
            except DateParseError:
                logger.debug("Skipping punch with unparsable timestamp %r (worker %s)",
                             p.get('timestamp'), rec.get('worker'))
                continue
            site = p.get('site')
            if site is None:
                site = rec.get('site')
            by_day.setdefault(civil_day(at, zone), []).append(Punch(site, p.get('type') or '', at))
    return by_day


def _first_entry(punches: List[Punch]) -> Optional[Punch]:
    entries = [p for p in punches if p.kind == PUNCH_ENTRY]
    return min(entries, key=lambda p: p.at) if entries else None


def _last_exit(punches: List[Punch]) -> Optional[Punch]:
    exits = [p for p in punches if is_exit_punch(p.kind)]
    return max(exits, key=lambda p: p.at) if exits else None


def _index_special_days(calendars: List[Optional[Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    """ymd → special-day entry; the first entry stored for a date wins."""
    index: Dict[str, Dict[str, Any]] = {}
    for cal in calendars:
        for entry in (cal or {}).get('special_days') or []:
            try:
                ymd = to_ymd(entry.get('date'))
            except DateParseError:
                continue
            index.setdefault(ymd, entry)
    return index


# ── Status rules ──────────────────────────────────────────────
# Each rule returns (status, entrada text, salida text) or None.

Outcome = Tuple[str, str, str]
StatusRule = Callable[[DayContext], Optional[Outcome]]


def _time(ctx: DayContext, punch: Optional[Punch]) -> str:
    return local_time_text(punch.at, ctx.zone) if punch else ''


def manual_attendance_rule(ctx: DayContext) -> Optional[Outcome]:
    if isinstance(ctx.worker_day, ManualAttendance):
        return STATUS_MANUAL, ctx.worker_day.start, ctx.worker_day.end
    return None


def worker_terminal_rule(ctx: DayContext) -> Optional[Outcome]:
    if isinstance(ctx.worker_day, TerminalDay):
        return ctx.worker_day.kind, '', ''
    return None


def complete_attendance_rule(ctx: DayContext) -> Optional[Outcome]:
    if ctx.entrada and ctx.salida:
        return STATUS_COMPLETE, _time(ctx, ctx.entrada), _time(ctx, ctx.salida)
    return None


def open_day_rule(ctx: DayContext) -> Optional[Outcome]:
    if not ctx.entrada or ctx.salida:
        return None
    if ctx.open_day_policy == POLICY_TODAY and ctx.ymd >= ctx.today:
        return STATUS_PENDING, _time(ctx, ctx.entrada), ''
    return STATUS_AUTO_CHECKOUT, _time(ctx, ctx.entrada), ''


def site_event_rule(ctx: DayContext) -> Optional[Outcome]:
    if ctx.site_event:
        return ctx.site_event, '', ''
    return None


def absence_rule(ctx: DayContext) -> Optional[Outcome]:
    return STATUS_ABSENCE, PLACEHOLDER, PLACEHOLDER


STATUS_RULES: List[StatusRule] = [
    manual_attendance_rule,
    worker_terminal_rule,
    complete_attendance_rule,
    open_day_rule,
    site_event_rule,
    absence_rule,
]


def _other_site_outcome(ctx: DayContext, outside: List[Punch]) -> Outcome:
    """Times from the outside site where the worker punched first that day."""
    site = min(outside, key=lambda p: p.at).site
    at_site = [p for p in outside if p.site == site]
    entrada, salida = _first_entry(at_site), _last_exit(at_site)
    return (
        STATUS_OTHER_SITE,
        _time(ctx, entrada) or PLACEHOLDER,
        _time(ctx, salida) or PLACEHOLDER,
    )


def _activity_sites(punches: List[Punch]) -> List[int]:
    return sorted({p.site for p in punches if p.site is not None})


# ── Reports ───────────────────────────────────────────────────

def build_report(db, worker_id, start: str, end: str, scope: str = SCOPE_PRINCIPAL_AND_FOREIGN, *,
                 zone, open_day_policy: str = POLICY_CLOSED, today: Optional[str] = None,
                 site_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Day-by-day attendance of one worker over [start, end] (inclusive).

    Returns a list of DayRecord dicts:
      {date, entrada, salida, site_event, worker_event, status, sites}
    """
    validate_range(start, end)
    if open_day_policy not in OPEN_DAY_POLICIES:
        raise BadRequest(f"open_day_policy must be one of: {', '.join(OPEN_DAY_POLICIES)}")
    worker = db.get_worker(worker_id)
    if worker is None:
        raise WorkerNotFound(worker_id)

    allowed = permitted_sites(worker, scope, site_id)
    keys = {str(k).strip() for k in (worker.get('checker_id'), worker.get('id')) if k not in (None, '')}
    records = db.find_attendance(keys, start, end, zone)
    punches = _punches_by_day(records, zone)

    years = years_spanned(start, end)
    calendar_site = site_id if site_id is not None else worker.get('principal_site')
    worker_days = _index_special_days([db.get_worker_calendar(worker['id'], y) for y in years])
    site_days = (
        _index_special_days([db.get_site_calendar(y, calendar_site) for y in years])
        if calendar_site is not None else {}
    )
    today = today or today_in_zone(zone)

    report = []
    for ymd in iter_days(start, end):
        day_punches = punches.get(ymd, [])
        inside = [p for p in day_punches if allowed is None or p.site in allowed]
        outside = [p for p in day_punches if allowed is not None and p.site not in allowed]

        worker_entry = worker_days.get(ymd)
        site_entry = site_days.get(ymd)
        ctx = DayContext(
            ymd=ymd,
            entrada=_first_entry(inside),
            salida=_last_exit(inside),
            worker_day=parse_worker_special_day(worker_entry) if worker_entry else None,
            worker_event=(worker_entry or {}).get('type') or '',
            site_event=(site_entry or {}).get('type') or '',
            open_day_policy=open_day_policy,
            today=today,
            zone=zone,
        )
        status, entrada, salida = next(o for o in (rule(ctx) for rule in STATUS_RULES) if o is not None)

        if status == STATUS_ABSENCE and not inside and outside:
            status, entrada, salida = _other_site_outcome(ctx, outside)

        report.append({
            'date': ymd,
            'entrada': entrada,
            'salida': salida,
            'site_event': ctx.site_event,
            'worker_event': ctx.worker_event,
            'status': status,
            'sites': _activity_sites(day_punches),
        })
    return report


def build_site_report(db, site_id: int, start: str, end: str, *, zone,
                      open_day_policy: str = POLICY_CLOSED,
                      today: Optional[str] = None) -> Dict[str, Any]:
    """Attendance grid for every active worker whose principal site is *site_id*."""
    validate_range(start, end)
    db.require_site(site_id)
    workers = db.get_workers_for_site(site_id)
    if not workers:
        raise NotFound(f"No workers found for site {site_id}")

    rows = []
    for worker in sorted(workers, key=lambda w: (w.get('name') or '').lower()):
        days = build_report(db, worker['id'], start, end, SCOPE_PRINCIPAL_ONLY, zone=zone,
                            open_day_policy=open_day_policy, today=today, site_id=site_id)
        rows.append({
            'worker_id': worker['id'],
            'name': worker.get('name', ''),
            'days': {
                d['date']: {'entrada': d['entrada'], 'salida': d['salida'], 'status': d['status']}
                for d in days
            },
        })
    return {'site_id': site_id, 'range': {'start': start, 'end': end}, 'workers': rows}


# ── Punch capture ─────────────────────────────────────────────

def register_punch(db, checker_id, site_id: int, punch_type: str, *, zone,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    """Record an Entrada/Salida for the current civil day in the business zone."""
    if punch_type not in (PUNCH_ENTRY, PUNCH_EXIT):
        raise BadRequest("punch type must be Entrada or Salida")
    checker = str(checker_id or '').strip()
    if not checker:
        raise BadRequest("checker_id is required")
    db.require_site(site_id)

    at = parse_instant(now or datetime.now(pytz.utc))
    ymd = civil_day(at, zone)
    punch = {
        'type': punch_type,
        'timestamp': utc_iso(at),
        'synced': True,
        'auto_checkout': False,
    }
    record = db.append_punch(checker, site_id, ymd, punch)
    logger.info("Punch %s registered for checker %s at site %s on %s", punch_type, checker, site_id, ymd)
    return record


def todays_checkins(db, *, zone, today: Optional[str] = None) -> List[Dict[str, Any]]:
    """Workers with an entry punch today, earliest first."""
    today = today or today_in_zone(zone)
    workers = db.get_workers()
    by_key: Dict[str, Dict[str, Any]] = {}
    for w in workers:
        for k in (w.get('id'), w.get('checker_id')):
            if k not in (None, ''):
                by_key.setdefault(str(k), w)
    site_names = db.site_names()

    result = []
    for rec in db.get_attendance_for_day(today):
        entries = []
        for p in rec.get('punches') or []:
            if p.get('type') != PUNCH_ENTRY:
                continue
            try:
                entries.append(parse_instant(p.get('timestamp')))
            except DateParseError:
                logger.debug("Skipping punch with unparsable timestamp %r", p.get('timestamp'))
        if not entries:
            continue
        worker = by_key.get(str(rec.get('worker')), {})
        first = min(entries)
        result.append({
            'worker_id': worker.get('id'),
            'name': worker.get('name') or 'Unknown',
            'time': local_time_text(first, zone),
            'site': site_names.get(rec.get('site')) or 'No site',
            '_at': first,
        })
    result.sort(key=lambda r: r['_at'])
    for r in result:
        del r['_at']
    return result
