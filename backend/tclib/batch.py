"""
Batch rest-day assistant for site calendars.

Inserts a "rest" special day on one weekday across a date window for many
sites at once, with a read-only preview and an undo keyed by batch id.

Apply and undo run their whole read-check-write sequence inside one exclusive
lock on the calendars collection, so two concurrent applies over the same
(site, year) cannot both insert the same date.  Preview runs the very same
planning step on a private copy of the collection and never writes.
"""
import copy
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .dates import anchor_iso, group_by_year, span_days, utc_iso, validate_range, weekdays_in_range
from .database import CALENDARS
from .errors import BadRequest, DateParseError

logger = logging.getLogger(__name__)

SOURCE = 'batch-assistant'
BATCH_DAY_TYPE = 'rest'
DEFAULT_MAX_SPAN_DAYS = 120


def _check_request(db, site_ids: Iterable, start: str, end: str, weekday: int,
                   max_span_days: int) -> List[int]:
    validate_range(start, end)
    if span_days(start, end) > max_span_days:
        raise BadRequest(f"Range too long: at most {max_span_days} days per batch")
    if isinstance(weekday, bool) or not isinstance(weekday, int) or not 0 <= weekday <= 6:
        raise BadRequest("weekday must be within 0..6 (0 = Sunday)")
    sites: List[int] = []
    for s in site_ids or []:
        try:
            n = int(s)
        except (TypeError, ValueError):
            raise BadRequest(f"invalid site id: {s!r}")
        if n not in sites:
            sites.append(n)
    if not sites:
        raise BadRequest("at least one site is required")
    for s in sites:
        db.require_site(s)
    return sites


def _find_calendar(docs: List[Dict[str, Any]], year: int, site_id: int) -> Optional[Dict[str, Any]]:
    return next((c for c in docs if c.get('year') == year and site_id in (c.get('sites') or [])), None)


def _existing_types(cal: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """anchored date → type of the special days already in *cal*."""
    existing: Dict[str, str] = {}
    for entry in (cal or {}).get('special_days') or []:
        try:
            existing.setdefault(anchor_iso(entry.get('date')), entry.get('type') or '')
        except DateParseError:
            continue
    return existing


def _plan(docs: List[Dict[str, Any]], site_ids: List[int], dates: List[datetime],
          make_entry, batch_id: Optional[str]) -> List[Dict[str, Any]]:
    """Insert missing dates into *docs* in place; returns one detail per (site, date)."""
    details = []
    by_year = group_by_year(dates)
    for site_id in site_ids:
        for year in sorted(by_year):
            cal = _find_calendar(docs, year, site_id)
            existing = _existing_types(cal)
            for d in by_year[year]:
                iso = anchor_iso(d)
                if iso in existing:
                    details.append({'site_id': site_id, 'date': iso[:10], 'action': 'occupied',
                                    'existing_type': existing[iso]})
                    continue
                if cal is None:
                    next_id = max((c.get('id') for c in docs if isinstance(c.get('id'), int)), default=0) + 1
                    cal = {'id': next_id, 'year': year, 'sites': [site_id], 'special_days': [],
                           'created_by_batch': batch_id}
                    docs.append(cal)
                cal.setdefault('special_days', []).append(make_entry(iso))
                existing[iso] = BATCH_DAY_TYPE
                details.append({'site_id': site_id, 'date': iso[:10], 'action': 'create'})
    return details


def preview_batch(db, site_ids: Iterable, start: str, end: str, *, weekday: int = 0,
                  max_span_days: int = DEFAULT_MAX_SPAN_DAYS) -> Dict[str, Any]:
    """What apply_batch would do, without writing anything."""
    sites = _check_request(db, site_ids, start, end, weekday, max_span_days)
    dates = weekdays_in_range(start, end, weekday)
    docs = copy.deepcopy(db.get_site_calendars())
    details = _plan(docs, sites, dates, lambda iso: {'date': iso, 'type': BATCH_DAY_TYPE}, None)
    to_create = sum(1 for d in details if d['action'] == 'create')
    return {
        'weekday': weekday,
        'dates': [anchor_iso(d)[:10] for d in dates],
        'to_create': to_create,
        'already_occupied': len(details) - to_create,
        'details': details,
    }


def apply_batch(db, site_ids: Iterable, start: str, end: str, description: str = '', *,
                weekday: int = 0, created_by: Optional[str] = None,
                max_span_days: int = DEFAULT_MAX_SPAN_DAYS,
                now: Optional[datetime] = None) -> Dict[str, Any]:
    """Insert the rest days that are not there yet; returns the new batch id and counts."""
    sites = _check_request(db, site_ids, start, end, weekday, max_span_days)
    dates = weekdays_in_range(start, end, weekday)
    batch_id = uuid.uuid4().hex
    created_at = utc_iso(now)

    def make_entry(iso: str) -> Dict[str, Any]:
        return {
            'date': iso,
            'type': BATCH_DAY_TYPE,
            'start': None,
            'end': None,
            'description': description or '',
            'source': SOURCE,
            'batch_id': batch_id,
            'created_by': created_by,
            'created_at': created_at,
        }

    with db.locked(CALENDARS) as docs:
        details = _plan(docs, sites, dates, make_entry, batch_id)

    created = sum(1 for d in details if d['action'] == 'create')
    logger.info("Batch %s applied: %d created, %d skipped (sites=%s, %s..%s, weekday=%d)",
                batch_id, created, len(details) - created, sites, start, end, weekday)
    return {'batch_id': batch_id, 'created': created, 'skipped': len(details) - created}


def undo_batch(db, batch_id: str) -> Dict[str, Any]:
    """Remove every entry a batch inserted, and the calendars it created if left empty."""
    if not batch_id:
        raise BadRequest("batch_id is required")
    modified = 0
    removed = 0
    emptied = set()
    with db.locked(CALENDARS) as docs:
        for cal in docs:
            before = cal.get('special_days') or []
            keep = [e for e in before
                    if not (e.get('source') == SOURCE and e.get('batch_id') == batch_id)]
            if len(keep) != len(before):
                cal['special_days'] = keep
                modified += 1
                removed += len(before) - len(keep)
                if not keep:
                    emptied.add(id(cal))
        # batch-created calendars go once empty, whichever batch emptied them
        docs[:] = [c for c in docs
                   if not (c.get('created_by_batch') and id(c) in emptied)]

    logger.info("Batch %s undone: %d entries removed from %d calendars", batch_id, removed, modified)
    return {'batch_id': batch_id, 'modified': modified, 'removed': removed}
