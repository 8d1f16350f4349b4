"""Calendars router: site calendars, worker calendars and the batch rest-day assistant."""
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field
from typing import Optional, List

from tclib.batch import apply_batch, preview_batch, undo_batch
from ..dependencies import get_db, get_settings

router = APIRouter()

_YMD = r'^\d{4}-\d{2}-\d{2}$'


# ── Site calendars ───────────────────────────────────────────
class SiteSpecialDayCreate(BaseModel):
    site_id: int = Field(..., gt=0)
    date: str = Field(..., pattern=_YMD)
    type: str
    start: Optional[str] = None
    end: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)


@router.get("/api/calendars", tags=["Calendars"], summary="List site calendars")
def list_site_calendars(year: Optional[int] = Query(None, description="Only calendars of this year")):
    return get_db().get_site_calendars(year)


@router.get("/api/calendars/{site_id}/{year}", tags=["Calendars"], summary="Site calendar for a year")
def get_site_calendar(site_id: int, year: int):
    if not (1900 <= year <= 2200):
        raise HTTPException(status_code=400, detail="invalid year")
    db = get_db()
    db.require_site(site_id)
    cal = db.get_site_calendar(year, site_id)
    if cal is None:
        return {"year": year, "sites": [site_id], "special_days": []}
    return cal


@router.post("/api/calendars/day", tags=["Calendars"], summary="Add a site special day")
def add_site_special_day(body: SiteSpecialDayCreate):
    payload = body.model_dump(exclude={"site_id"})
    entry = get_db().add_site_special_day(body.site_id, payload)
    return {"ok": True, "entry": entry}


@router.put("/api/calendars/day", tags=["Calendars"], summary="Edit a site special day")
def update_site_special_day(body: SiteSpecialDayCreate):
    """Changes type, times and description; the date identifies the entry."""
    payload = body.model_dump(exclude={"site_id", "date"})
    entry = get_db().update_site_special_day(body.site_id, body.date, payload)
    return {"ok": True, "entry": entry}


@router.delete("/api/calendars/day", tags=["Calendars"], summary="Delete a site special day")
def delete_site_special_day(
    site_id: int = Query(..., gt=0),
    date: str = Query(..., description="YYYY-MM-DD"),
):
    count = get_db().delete_site_special_day(site_id, date)
    return {"ok": True, "deleted": count}


# ── Worker calendars ─────────────────────────────────────────
class WorkerSpecialDay(BaseModel):
    date: str = Field(..., pattern=_YMD)
    type: str = Field(..., min_length=1, max_length=100)
    start: Optional[str] = None
    end: Optional[str] = None


class WorkerCalendarBody(BaseModel):
    special_days: List[WorkerSpecialDay] = Field(default_factory=list)


@router.get("/api/worker-calendars/{worker_id}/{year}", tags=["Calendars"], summary="Worker calendar for a year")
def get_worker_calendar(worker_id: str, year: int):
    db = get_db()
    if db.get_worker(worker_id) is None:
        raise HTTPException(status_code=404, detail=f"Worker {worker_id} not found")
    cal = db.get_worker_calendar(worker_id, year)
    if cal is None:
        return {"worker": worker_id, "year": year, "special_days": []}
    return cal


@router.put("/api/worker-calendars/{worker_id}/{year}", tags=["Calendars"], summary="Replace worker calendar")
def put_worker_calendar(worker_id: str, year: int, body: WorkerCalendarBody):
    days = [d.model_dump(exclude_none=True) for d in body.special_days]
    return get_db().set_worker_calendar(worker_id, year, days)


# ── Batch rest-day assistant ─────────────────────────────────
class BatchBody(BaseModel):
    site_ids: List[int] = Field(..., min_length=1)
    start: str = Field(..., pattern=_YMD)
    end: str = Field(..., pattern=_YMD)
    weekday: int = Field(0, ge=0, le=6, description="0 = Sunday")


class BatchApplyBody(BatchBody):
    description: str = Field('', max_length=500)
    created_by: Optional[str] = Field(None, max_length=100)


@router.post(
    "/api/calendars/batch/preview",
    tags=["Batch"],
    summary="Preview batch rest days",
    description="Read-only: lists which (site, date) pairs would be created and which are already occupied.",
)
def batch_preview(body: BatchBody):
    return preview_batch(
        get_db(), body.site_ids, body.start, body.end,
        weekday=body.weekday, max_span_days=get_settings()["batch_max_days"],
    )


@router.post("/api/calendars/batch/apply", tags=["Batch"], summary="Apply batch rest days")
def batch_apply(body: BatchApplyBody):
    """Idempotent: dates that already have a special day are skipped."""
    return apply_batch(
        get_db(), body.site_ids, body.start, body.end, body.description,
        weekday=body.weekday, created_by=body.created_by,
        max_span_days=get_settings()["batch_max_days"],
    )


@router.delete("/api/calendars/batch/{batch_id}", tags=["Batch"], summary="Undo a batch")
def batch_undo(batch_id: str):
    return undo_batch(get_db(), batch_id)
