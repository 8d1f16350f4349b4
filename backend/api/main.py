"""FastAPI application for OpenTimeclock."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402

from tclib.errors import Conflict, NotFound, TimeclockError  # noqa: E402

from .dependencies import (  # noqa: E402
    get_db,
    _logger,
    limiter,
)

# ── Config ──────────────────────────────────────────────────────
DB_PATH = os.environ.get(
    'TC_DB_PATH',
    os.path.join(os.path.dirname(__file__), '..', 'data')
)
DB_PATH = os.path.normpath(DB_PATH)

# Business time zone for civil days and displayed punch times
TIMEZONE = os.environ.get('TC_TIMEZONE', 'America/Mexico_City')
BATCH_MAX_DAYS = int(os.environ.get('TC_BATCH_MAX_DAYS', '120'))
# 'closed': an entry without exit is an automatic checkout; 'today': open days from today on are pending
OPEN_DAY_POLICY = os.environ.get('TC_OPEN_DAY_POLICY', 'closed').lower()
SITE_PURGE_DAYS = int(os.environ.get('TC_SITE_PURGE_DAYS', '15'))

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    or ['http://localhost:5173', 'http://localhost:8000']
)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Sites", "description": "Site schedules and schedule exceptions"},
    {"name": "Attendance", "description": "Attendance reports and punch capture"},
    {"name": "Calendars", "description": "Site and worker calendars"},
    {"name": "Batch", "description": "Batch rest-day assistant (preview, apply, undo)"},
    {"name": "Workers", "description": "Worker site assignments"},
]


def _purge_pending_sites() -> int:
    purged = get_db().purge_pending_sites(grace_days=SITE_PURGE_DAYS)
    if purged:
        _logger.info("Purged %d sites pending deletion: %s", len(purged), purged)
    return len(purged)


async def _periodic_cleanup():
    """Background task: remove sites whose deletion grace period elapsed, once per hour."""
    import asyncio
    while True:
        await asyncio.sleep(3600)
        try:
            _purge_pending_sites()
        except Exception as _exc:  # pragma: no cover
            _logger.warning("Periodic cleanup error: %s", _exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import asyncio
    try:
        _purge_pending_sites()
    except Exception as _exc:
        _logger.warning("Startup site purge failed: %s", _exc)
    cleanup_task = asyncio.create_task(_periodic_cleanup())
    yield
    cleanup_task.cancel()
    _logger.info("Timeclock API shutting down")


app = FastAPI(
    lifespan=lifespan,
    title="OpenTimeclock API",
    description=(
        "Attendance status resolution for multi-site time clocks.\n\n"
        "## Dates\n"
        "All date parameters are civil `YYYY-MM-DD` strings. Punch times are shown "
        "in the configured business time zone.\n"
    ),
    version="1.0.0",
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none';"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    if os.environ.get('TC_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Flatten Pydantic validation errors into one readable message."""
    _TYPE_MSGS = {
        "missing": "field required",
        "int_parsing": "must be an integer",
        "bool_parsing": "must be true or false",
        "string_pattern_mismatch": "invalid format",
        "string_too_short": "too short",
        "string_too_long": "too long",
        "value_error": "invalid value",
    }
    errors = []
    for e in exc.errors():
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        etype = e.get("type", "")
        msg = _TYPE_MSGS.get(etype, e.get("msg", "invalid value"))
        if field:
            errors.append(f"{field}: {msg}")
        else:
            errors.append(msg)
    detail = "; ".join(errors) if errors else "invalid input"
    return JSONResponse(status_code=422, content={"detail": detail})


@app.exception_handler(TimeclockError)
async def timeclock_exception_handler(request: Request, exc: TimeclockError):
    """Map domain errors onto HTTP status codes."""
    if isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, Conflict):
        status = 409
    else:
        # BadRequest, BadRange and unparsable dates that reached the boundary
        status = 400
    if request.method in ('POST', 'PUT', 'DELETE'):
        _logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    import traceback
    _logger.error(
        "Unhandled exception: %s %s | %s | %s",
        request.method, request.url.path,
        type(exc).__name__,
        traceback.format_exc().splitlines()[-1],
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error. Please try again."},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    from datetime import datetime as _dt2, timezone as _tz2
    # Short unique request ID for correlating log entries
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    now = _dt2.now(_tz2.utc)
    ts = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    entry = {
        "timestamp": ts,
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


# ── Include routers ─────────────────────────────────────────────
from .routers import sites, attendance, calendars, workers  # noqa: E402

app.include_router(sites.router)
app.include_router(attendance.router)
app.include_router(calendars.router)
app.include_router(workers.router)


# ── Routes ──────────────────────────────────────────────────────

_API_VERSION = "1.0.0"


@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description="Returns service status, API version, uptime in seconds, and store state.",
)
def health():
    import time as _t
    db_status = "connected"
    try:
        db = get_db()
        db.get_stats()
    except Exception:
        db_status = "error"

    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_t.time() - _APP_START_TIME, 1),
        "db": {"status": db_status},
        "timezone": TIMEZONE,
    }


@app.get(
    "/api/version",
    tags=["Health"],
    summary="API version",
    description="Returns the current API version string.",
)
def version():
    return {"version": _API_VERSION, "service": "OpenTimeclock API"}


@app.get("/api/stats", tags=["Health"], summary="Store statistics")
def get_stats():
    return get_db().get_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.environ.get('TC_PORT', '8000')), reload=True)
