"""Sites router: schedule lookup, base schedule and schedule exceptions."""
from fastapi import APIRouter, Query
from pydantic import BaseModel, Field
from typing import Optional, List

from tclib.schedule import describe_site_schedule, resolve_schedule, resolve_schedule_range
from ..dependencies import get_db, get_settings

router = APIRouter()

_YMD = r'^\d{4}-\d{2}-\d{2}$'
_HHMM = r'^\d{1,2}:\d{2}$'


# ── Request models ───────────────────────────────────────────
class ShiftBody(BaseModel):
    start: str = Field(..., pattern=_HHMM)
    end: str = Field(..., pattern=_HHMM)
    overnight: bool = False


class WeekdayRuleBody(BaseModel):
    weekday: int = Field(..., description="0 = Sunday … 6 = Saturday (7 is accepted as Sunday)")
    shifts: List[ShiftBody] = Field(default_factory=list)


class NewHireBody(BaseModel):
    active: bool = False
    duration_days: int = Field(30, ge=1, le=180)
    only_base_active_days: bool = True
    shifts: List[ShiftBody] = Field(default_factory=list)


class BaseScheduleBody(BaseModel):
    effective_from: str = Field(..., pattern=_YMD)
    rules: List[WeekdayRuleBody]
    new_hire: Optional[NewHireBody] = None


class DayExceptionBody(BaseModel):
    date: str = Field(..., pattern=_YMD)
    type: str
    start: Optional[str] = Field(None, pattern=_HHMM)
    end: Optional[str] = Field(None, pattern=_HHMM)


class RangeExceptionBody(BaseModel):
    start: str = Field(..., pattern=_YMD)
    end: str = Field(..., pattern=_YMD)
    weekdays: List[int] = Field(default_factory=list, description="Empty = every weekday")
    shifts: List[ShiftBody] = Field(default_factory=list)


# ── Read ─────────────────────────────────────────────────────
@router.get("/api/sites", tags=["Sites"], summary="List sites")
def list_sites(include_pending: bool = Query(False, description="Include sites pending deletion")):
    return [
        {
            "id": s.get("id"),
            "name": s.get("name", ""),
            "status": s.get("status", "active"),
            "zone": s.get("zone"),
            "has_base_schedule": bool(s.get("base_schedule")),
        }
        for s in get_db().get_sites(include_pending=include_pending)
    ]


@router.get(
    "/api/sites/{site_id}/schedule",
    tags=["Sites"],
    summary="Applicable schedule for a day",
    description=(
        "Resolves the shifts that apply to the site on `date`.\n\n"
        "Precedence: day exception, then the first matching range exception, "
        "then the base-schedule rule for the weekday. `origin` tells which one answered."
    ),
)
def get_site_schedule(site_id: int, date: str = Query(..., description="YYYY-MM-DD")):
    return resolve_schedule(get_db(), site_id, date)


@router.get("/api/sites/{site_id}/schedule/range", tags=["Sites"], summary="Applicable schedule for a range")
def get_site_schedule_range(
    site_id: int,
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
):
    days = resolve_schedule_range(
        get_db(), site_id, start, end, max_span_days=get_settings()["batch_max_days"],
    )
    return {"site_id": site_id, "days": days}


@router.get("/api/sites/{site_id}/base-schedule", tags=["Sites"], summary="Base schedule and new-hire block")
def get_base_schedule(site_id: int):
    return describe_site_schedule(get_db().require_site(site_id))


# ── Write ────────────────────────────────────────────────────
@router.put("/api/sites/{site_id}/base-schedule", tags=["Sites"], summary="Replace base schedule")
def put_base_schedule(site_id: int, body: BaseScheduleBody):
    """Days without a valid shift are stored as inactive; the version is bumped on every save."""
    payload = body.model_dump(exclude_none=True)
    saved = get_db().set_base_schedule(site_id, payload)
    return {"ok": True, "base_schedule": saved}


@router.post("/api/sites/{site_id}/exceptions/day", tags=["Sites"], summary="Add day exception")
def add_day_exception(site_id: int, body: DayExceptionBody):
    record = get_db().add_day_exception(site_id, body.model_dump(exclude_none=True))
    return {"ok": True, "record": record}


@router.delete("/api/sites/{site_id}/exceptions/day", tags=["Sites"], summary="Delete day exception")
def delete_day_exception(site_id: int, date: str = Query(..., description="YYYY-MM-DD")):
    count = get_db().delete_day_exception(site_id, date)
    return {"ok": True, "deleted": count}


@router.post("/api/sites/{site_id}/exceptions/range", tags=["Sites"], summary="Add range exception")
def add_range_exception(site_id: int, body: RangeExceptionBody):
    record = get_db().add_range_exception(site_id, body.model_dump())
    return {"ok": True, "record": record}
