"""
High-level data access for timeclock JSON collections.
"""
import copy
import os
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytz

from .dates import anchor_iso, civil_day, parse_instant, utc_iso
from .errors import (
    BadRequest, CalendarNotFound, Conflict, DateParseError, NotFound, SiteNotFound, WorkerNotFound,
)
from .json_store import append_document, locked_collection, read_collection
from .models import (
    PUNCH_EXIT, SITE_PENDING_DELETION, STATUS_COMPLETE, STATUS_PENDING, WORKER_ACTIVE, WORKER_INACTIVE,
    normalize_base_schedule, validate_day_exception, validate_range_exception,
    validate_site_special_day, validate_worker_special_day,
)

SITES = 'sites'
WORKERS = 'workers'
ATTENDANCE = 'attendance'
CALENDARS = 'calendars'
WORKER_CALENDARS = 'worker_calendars'

# ── Global cross-request collection cache ───────────────────────
# Maps (db_path, collection) → (mtime, documents)
_GLOBAL_DOC_CACHE: Dict[tuple, tuple] = {}


def _same_day(stored, anchored: str) -> bool:
    """Compare a stored calendar date in any legacy encoding with an anchored one."""
    try:
        return anchor_iso(stored) == anchored
    except DateParseError:
        return False


class TimeclockDatabase:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _table(self, name: str) -> str:
        return os.path.join(self.db_path, f"{name}.json")

    def _read(self, name: str) -> List[Dict[str, Any]]:
        """Read a collection, using a global mtime-based cache.

        Callers must not mutate the returned documents; public getters hand
        out deep copies of single documents.
        """
        path = self._table(name)
        key = (self.db_path, name)
        try:
            mtime = os.path.getmtime(path)
        except OSError:
            mtime = 0.0

        cached = _GLOBAL_DOC_CACHE.get(key)
        if cached is not None and cached[0] == mtime:
            return cached[1]

        data = read_collection(path)
        _GLOBAL_DOC_CACHE[key] = (mtime, data)
        return data

    def _invalidate_cache(self, name: str) -> None:
        """Drop a collection from the cache after a write (mtime may not have ticked)."""
        _GLOBAL_DOC_CACHE.pop((self.db_path, name), None)

    @contextmanager
    def locked(self, name: str):
        """Exclusive read-modify-write on a collection; see json_store.locked_collection."""
        try:
            with locked_collection(self._table(name)) as docs:
                yield docs
        finally:
            self._invalidate_cache(name)

    def _next_id(self, docs: List[Dict[str, Any]]) -> int:
        return max((d.get('id', 0) or 0 for d in docs if isinstance(d.get('id'), int)), default=0) + 1

    def get_stats(self) -> Dict:
        return {
            'sites': len(self._read(SITES)),
            'workers': len(self._read(WORKERS)),
            'attendance_records': len(self._read(ATTENDANCE)),
            'calendars': len(self._read(CALENDARS)),
            'worker_calendars': len(self._read(WORKER_CALENDARS)),
        }

    # ── Sites ─────────────────────────────────────────────────
    def get_sites(self, include_pending: bool = True) -> List[Dict]:
        sites = [
            s for s in self._read(SITES)
            if include_pending or s.get('status') != SITE_PENDING_DELETION
        ]
        return copy.deepcopy(sorted(sites, key=lambda s: s.get('id', 0)))

    def get_site(self, site_id: int) -> Optional[Dict]:
        for s in self._read(SITES):
            if s.get('id') == site_id:
                return copy.deepcopy(s)
        return None

    def require_site(self, site_id: int) -> Dict:
        site = self.get_site(site_id)
        if site is None:
            raise SiteNotFound(site_id)
        return site

    def site_names(self) -> Dict[int, str]:
        return {s.get('id'): s.get('name', '') for s in self._read(SITES)}

    def _update_site(self, site_id: int, fn) -> Dict:
        """Apply fn(site) to the stored site inside the collection lock and save once."""
        with self.locked(SITES) as docs:
            for site in docs:
                if site.get('id') == site_id:
                    fn(site)
                    return copy.deepcopy(site)
            raise SiteNotFound(site_id)

    def set_base_schedule(self, site_id: int, payload: Dict) -> Dict:
        def _apply(site):
            site['base_schedule'] = normalize_base_schedule(payload, site.get('base_schedule'))
        return self._update_site(site_id, _apply)['base_schedule']

    def add_day_exception(self, site_id: int, payload: Dict) -> Dict:
        record = validate_day_exception(payload)

        def _apply(site):
            exceptions = site.setdefault('day_exceptions', [])
            if any(_same_day(e.get('date'), record['date']) for e in exceptions):
                raise Conflict(f"Site {site_id} already has an exception on {record['date'][:10]}")
            exceptions.append(record)
        self._update_site(site_id, _apply)
        return record

    def delete_day_exception(self, site_id: int, date_str: str) -> int:
        try:
            anchored = anchor_iso(date_str)
        except DateParseError:
            raise BadRequest("date must be YYYY-MM-DD")
        removed = []

        def _apply(site):
            before = site.get('day_exceptions', [])
            site['day_exceptions'] = [e for e in before if not _same_day(e.get('date'), anchored)]
            removed.append(len(before) - len(site['day_exceptions']))
        self._update_site(site_id, _apply)
        return removed[0]

    def add_range_exception(self, site_id: int, payload: Dict) -> Dict:
        record = validate_range_exception(payload)
        self._update_site(site_id, lambda site: site.setdefault('range_exceptions', []).append(record))
        return record

    def purge_pending_sites(self, now: Optional[datetime] = None, grace_days: int = 15) -> List[int]:
        """Delete sites whose deletion was requested more than *grace_days* ago."""
        now = parse_instant(now or datetime.now(pytz.utc))
        cutoff = now - timedelta(days=grace_days)
        purged: List[int] = []
        with self.locked(SITES) as docs:
            keep = []
            for site in docs:
                started = site.get('deletion_started_at')
                if site.get('status') == SITE_PENDING_DELETION and started:
                    try:
                        if parse_instant(started) <= cutoff:
                            purged.append(site.get('id'))
                            continue
                    except DateParseError:
                        pass
                keep.append(site)
            docs[:] = keep
        return purged

    # ── Workers ───────────────────────────────────────────────
    def get_workers(self, include_inactive: bool = True) -> List[Dict]:
        return copy.deepcopy([
            w for w in self._read(WORKERS)
            if include_inactive or w.get('status', WORKER_ACTIVE) == WORKER_ACTIVE
        ])

    def get_worker(self, worker_id) -> Optional[Dict]:
        wid = str(worker_id)
        for w in self._read(WORKERS):
            if str(w.get('id')) == wid:
                return copy.deepcopy(w)
        return None

    def get_workers_for_site(self, site_id: int) -> List[Dict]:
        """Active workers whose principal site is *site_id*."""
        return [
            w for w in self.get_workers(include_inactive=False)
            if w.get('principal_site') == site_id
        ]

    def _update_worker(self, worker_id, fn) -> Dict:
        wid = str(worker_id)
        with self.locked(WORKERS) as docs:
            for worker in docs:
                if str(worker.get('id')) == wid:
                    fn(worker)
                    return copy.deepcopy(worker)
            raise WorkerNotFound(worker_id)

    @staticmethod
    def _close_open_history(worker: Dict, when: str) -> None:
        for entry in worker.get('site_history', []):
            if entry.get('end') is None:
                entry['end'] = when

    def change_principal_site(self, worker_id, site_id: int, now: Optional[datetime] = None) -> Dict:
        """Move a worker to a new principal site, keeping the history consistent.

        The open history entry is closed and the new one opened in the same
        save, so no reader ever sees two open entries.
        """
        site = self.require_site(site_id)
        when = utc_iso(now)

        def _apply(worker):
            if worker.get('principal_site') == site_id and worker.get('status') == WORKER_ACTIVE:
                return
            self._close_open_history(worker, when)
            worker.setdefault('site_history', []).append({
                'site_id': site_id,
                'site_name': site.get('name', ''),
                'start': when,
                'end': None,
            })
            worker['principal_site'] = site_id
            worker['foreign_sites'] = [s for s in worker.get('foreign_sites', []) if s != site_id]
            worker['status'] = WORKER_ACTIVE
        return self._update_worker(worker_id, _apply)

    def set_foreign_sites(self, worker_id, site_ids: Iterable) -> Dict:
        cleaned: List[int] = []
        for s in site_ids or []:
            try:
                n = int(s)
            except (TypeError, ValueError):
                raise BadRequest(f"invalid site id: {s!r}")
            if n not in cleaned:
                cleaned.append(n)

        def _apply(worker):
            worker['foreign_sites'] = [s for s in cleaned if s != worker.get('principal_site')]
        return self._update_worker(worker_id, _apply)

    def deactivate_worker(self, worker_id, now: Optional[datetime] = None) -> Dict:
        when = utc_iso(now)

        def _apply(worker):
            worker['status'] = WORKER_INACTIVE
            worker['principal_site'] = None
            worker['foreign_sites'] = []
            self._close_open_history(worker, when)
        return self._update_worker(worker_id, _apply)

    # ── Attendance ────────────────────────────────────────────
    def find_attendance(self, keys: Iterable[str], start: str, end: str, zone) -> List[Dict]:
        """
        Return attendance records for any of *keys* touching [start, end].

        A record matches when its 'date' falls in the range or any of its
        punches has a civil day in the range.  Records from every site are
        returned; the caller decides which sites count.
        """
        key_set = {str(k) for k in keys if k not in (None, '')}
        result = []
        for rec in self._read(ATTENDANCE):
            if str(rec.get('worker', '')) not in key_set:
                continue
            rec_date = rec.get('date') or ''
            in_range = start <= rec_date <= end
            if not in_range:
                for punch in rec.get('punches', []):
                    try:
                        day = civil_day(punch.get('timestamp'), zone)
                    except DateParseError:
                        continue
                    if start <= day <= end:
                        in_range = True
                        break
            if in_range:
                result.append(copy.deepcopy(rec))
        return result

    def get_attendance_for_day(self, date_str: str) -> List[Dict]:
        return copy.deepcopy([r for r in self._read(ATTENDANCE) if r.get('date') == date_str])

    def add_attendance_record(self, record: Dict) -> Dict:
        append_document(self._table(ATTENDANCE), record)
        self._invalidate_cache(ATTENDANCE)
        return record

    def append_punch(self, worker_key, site_id: int, date_str: str, punch: Dict) -> Dict:
        """Add *punch* to the worker's record for (site, date), creating it if needed.

        A punch type may appear once per worker and civil day across all sites.
        """
        key = str(worker_key)
        with self.locked(ATTENDANCE) as docs:
            same_day = [r for r in docs if str(r.get('worker')) == key and r.get('date') == date_str]
            if any(p.get('type') == punch.get('type') for r in same_day for p in r.get('punches', [])):
                raise Conflict(f"{punch.get('type')} already registered for {date_str}")
            rec = next((r for r in same_day if r.get('site') == site_id), None)
            if rec is None:
                rec = {'worker': key, 'site': site_id, 'date': date_str, 'status': '', 'punches': []}
                docs.append(rec)
            rec.setdefault('punches', []).append(punch)
            types = {p.get('type') for p in rec['punches']}
            rec['status'] = STATUS_COMPLETE if PUNCH_EXIT in types else STATUS_PENDING
            return copy.deepcopy(rec)

    # ── Site calendars ────────────────────────────────────────
    def get_site_calendars(self, year: Optional[int] = None) -> List[Dict]:
        return copy.deepcopy([
            c for c in self._read(CALENDARS)
            if year is None or c.get('year') == year
        ])

    def get_site_calendar(self, year: int, site_id: int) -> Optional[Dict]:
        for c in self._read(CALENDARS):
            if c.get('year') == year and site_id in (c.get('sites') or []):
                return copy.deepcopy(c)
        return None

    def add_site_special_day(self, site_id: int, payload: Dict) -> Dict:
        """Add one special day to the site's calendar for that year, creating it if needed."""
        self.require_site(site_id)
        entry = validate_site_special_day(payload)
        year = int(entry['date'][:4])
        with self.locked(CALENDARS) as docs:
            cal = next((c for c in docs
                        if c.get('year') == year and site_id in (c.get('sites') or [])), None)
            if cal is None:
                cal = {'id': self._next_id(docs), 'year': year, 'sites': [site_id], 'special_days': []}
                docs.append(cal)
            if any(_same_day(d.get('date'), entry['date']) for d in cal.get('special_days', [])):
                raise Conflict(f"{entry['date'][:10]} is already configured for site {site_id}")
            cal.setdefault('special_days', []).append(entry)
        return entry

    def update_site_special_day(self, site_id: int, date_str: str, payload: Dict) -> Dict:
        """Change type, times or description of an existing special day; the date stays."""
        try:
            anchored = anchor_iso(date_str)
        except DateParseError:
            raise BadRequest("date must be YYYY-MM-DD")
        entry = validate_site_special_day({**payload, 'date': anchored[:10]})
        year = int(anchored[:4])
        with self.locked(CALENDARS) as docs:
            cal = next((c for c in docs
                        if c.get('year') == year and site_id in (c.get('sites') or [])), None)
            if cal is None:
                raise CalendarNotFound(f"No calendar for site {site_id} in {year}")
            current = next((d for d in cal.get('special_days', []) if _same_day(d.get('date'), anchored)), None)
            if current is None:
                raise NotFound(f"No special day on {anchored[:10]} for site {site_id}")
            current.update(entry)
            # an edited day is owned by the user; batch undo leaves it alone
            current.pop('source', None)
            current.pop('batch_id', None)
            return copy.deepcopy(current)

    def delete_site_special_day(self, site_id: int, date_str: str) -> int:
        try:
            anchored = anchor_iso(date_str)
        except DateParseError:
            raise BadRequest("date must be YYYY-MM-DD")
        year = int(anchored[:4])
        with self.locked(CALENDARS) as docs:
            cal = next((c for c in docs
                        if c.get('year') == year and site_id in (c.get('sites') or [])), None)
            if cal is None:
                raise CalendarNotFound(f"No calendar for site {site_id} in {year}")
            before = cal.get('special_days', [])
            cal['special_days'] = [d for d in before if not _same_day(d.get('date'), anchored)]
            return len(before) - len(cal['special_days'])

    # ── Worker calendars ──────────────────────────────────────
    def get_worker_calendar(self, worker_id, year: int) -> Optional[Dict]:
        wid = str(worker_id)
        for c in self._read(WORKER_CALENDARS):
            if str(c.get('worker')) == wid and c.get('year') == year:
                return copy.deepcopy(c)
        return None

    def set_worker_calendar(self, worker_id, year: int, special_days: List[Dict]) -> Dict:
        """Overwrite the worker's special days for *year*."""
        if self.get_worker(worker_id) is None:
            raise WorkerNotFound(worker_id)
        entries = [validate_worker_special_day(d) for d in special_days or []]
        for e in entries:
            if int(e['date'][:4]) != year:
                raise BadRequest(f"{e['date'][:10]} does not belong to {year}")
        wid = str(worker_id)
        with self.locked(WORKER_CALENDARS) as docs:
            cal = next((c for c in docs if str(c.get('worker')) == wid and c.get('year') == year), None)
            if cal is None:
                cal = {'worker': wid, 'year': year, 'special_days': []}
                docs.append(cal)
            cal['special_days'] = entries
            return copy.deepcopy(cal)

