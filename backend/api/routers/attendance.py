"""Attendance router: day-by-day reports, exports, punch capture."""
import io
import csv
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response as _Response
from pydantic import BaseModel, Field
from typing import Optional

from tclib.attendance import (
    SCOPE_PRINCIPAL_AND_FOREIGN, build_report, build_site_report, register_punch, todays_checkins,
)
from tclib.errors import TimeclockError
from ..dependencies import get_db, get_settings, _sanitize_500, limiter

router = APIRouter()

_EXPORT_COLUMNS = [
    ("date", "Date"),
    ("entrada", "Entry"),
    ("salida", "Exit"),
    ("status", "Status"),
    ("site_event", "Site event"),
    ("worker_event", "Worker event"),
]


def _xlsx_response(content: bytes, filename: str) -> _Response:
    return _Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _csv_response(rows: list, filename: str) -> _Response:
    buf = io.StringIO()
    if rows:
        writer = csv.DictWriter(buf, fieldnames=rows[0].keys(), lineterminator='\r\n')
        writer.writeheader()
        writer.writerows(rows)
    return _Response(
        content=buf.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _report(worker_id: str, start: str, end: str, scope: str, site_id: Optional[int]):
    settings = get_settings()
    return build_report(
        get_db(), worker_id, start, end, scope,
        zone=settings["timezone"],
        open_day_policy=settings["open_day_policy"],
        site_id=site_id,
    )


# ── Reports ──────────────────────────────────────────────────
@router.get(
    "/api/attendance/report/{worker_id}",
    tags=["Attendance"],
    summary="Worker attendance report",
    description=(
        "One record per day in `[start, end]` with entry/exit times in the business "
        "time zone and the resolved status.\n\n"
        "- `scope`: `principal_only`, `principal_and_foreign` (default) or `unrestricted`\n"
        "- `site_id`: restrict to one site and use that site's calendar"
    ),
)
def get_worker_report(
    worker_id: str,
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    scope: str = Query(SCOPE_PRINCIPAL_AND_FOREIGN),
    site_id: Optional[int] = Query(None),
):
    return _report(worker_id, start, end, scope, site_id)


@router.get(
    "/api/attendance/report/{worker_id}/export",
    tags=["Attendance"],
    summary="Export worker attendance report",
    responses={200: {"description": "File download (CSV/XLSX)"}},
)
@limiter.limit("20/minute")
def export_worker_report(
    request: Request,
    worker_id: str,
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    scope: str = Query(SCOPE_PRINCIPAL_AND_FOREIGN),
    site_id: Optional[int] = Query(None),
    format: str = Query("xlsx", description="xlsx or csv"),
):
    if format not in ("xlsx", "csv"):
        raise HTTPException(status_code=400, detail="format must be xlsx or csv")
    days = _report(worker_id, start, end, scope, site_id)
    worker = get_db().get_worker(worker_id) or {}
    filename = f"attendance_{worker_id}_{start}_{end}"

    rows = [{label: d.get(key, '') for key, label in _EXPORT_COLUMNS} for d in days]
    if format == "csv":
        return _csv_response(rows, f"{filename}.csv")

    try:
        import openpyxl
        from openpyxl.styles import Alignment, Font, PatternFill
        from openpyxl.utils import get_column_letter

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Attendance"
        ws.cell(1, 1, worker.get("name", worker_id)).font = Font(bold=True, size=12)
        ws.cell(2, 1, f"{start} – {end}").font = Font(color="64748B", size=9)
        header_font = Font(bold=True, color="FFFFFF", size=9)
        header_fill = PatternFill(fill_type="solid", fgColor="1E293B")
        for col, (_, label) in enumerate(_EXPORT_COLUMNS, start=1):
            cell = ws.cell(4, col, label)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center")
            ws.column_dimensions[get_column_letter(col)].width = 22 if col >= 4 else 12
        for r_idx, row in enumerate(rows, start=5):
            for col, (_, label) in enumerate(_EXPORT_COLUMNS, start=1):
                ws.cell(r_idx, col, row[label])
        buf = io.BytesIO()
        wb.save(buf)
    except Exception as e:
        raise _sanitize_500(e, "attendance xlsx export")
    return _xlsx_response(buf.getvalue(), f"{filename}.xlsx")


@router.get("/api/attendance/site/{site_id}", tags=["Attendance"], summary="Site attendance grid")
def get_site_report(
    site_id: int,
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
):
    """Grid of every active worker whose principal site is `site_id`."""
    settings = get_settings()
    return build_site_report(
        get_db(), site_id, start, end,
        zone=settings["timezone"], open_day_policy=settings["open_day_policy"],
    )


@router.get("/api/attendance/today", tags=["Attendance"], summary="Today's check-ins")
def get_todays_checkins():
    return todays_checkins(get_db(), zone=get_settings()["timezone"])


# ── Punch capture ────────────────────────────────────────────
class PunchCreate(BaseModel):
    checker_id: str = Field(..., min_length=1, max_length=64)
    site_id: int = Field(..., gt=0)
    type: str = Field(..., description="Entrada or Salida")


@router.post("/api/attendance/punch", tags=["Attendance"], summary="Register punch")
def create_punch(body: PunchCreate):
    try:
        record = register_punch(
            get_db(), body.checker_id, body.site_id, body.type, zone=get_settings()["timezone"],
        )
    except TimeclockError:
        raise
    except Exception as e:
        raise _sanitize_500(e, "register punch")
    return {"ok": True, "record": record}
