"""
Shared dependencies for the OpenTimeclock API.
Logging, rate limiting, database access and runtime settings used by the routers.
"""
import os
import logging
import logging.handlers
import traceback

from fastapi import HTTPException
from tclib.database import TimeclockDatabase
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Structured JSON Logging setup ───────────────────────────────
import json as _json
from datetime import datetime as _dt, timezone as _tz

class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return _json.dumps(entry, ensure_ascii=False)

_log_file = os.environ.get('TC_LOG_FILE', '/tmp/timeclock-api.log')
_handler = logging.handlers.RotatingFileHandler(
    _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
)
_handler.setFormatter(_JsonFormatter())
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())

# Log level configurable via ENV
_log_level_str = os.environ.get('TC_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)

_logger = logging.getLogger('tcapi')
# Library modules (batch apply/undo, punch capture) log under 'tclib.*'
for _name in ('tcapi', 'tclib'):
    _lg = logging.getLogger(_name)
    _lg.setLevel(_log_level)
    _lg.addHandler(_handler)
    _lg.addHandler(_stderr_handler)


# ── Rate Limiter ─────────────────────────────────────────────────
limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])


def get_db() -> TimeclockDatabase:
    """Get a database handle using the current DB_PATH from main module."""
    import api.main as _main
    return TimeclockDatabase(_main.DB_PATH)


def get_settings() -> dict:
    """Runtime settings as currently configured on the main module."""
    import api.main as _main
    return {
        "timezone": _main.TIMEZONE,
        "batch_max_days": _main.BATCH_MAX_DAYS,
        "open_day_policy": _main.OPEN_DAY_POLICY,
        "site_purge_days": _main.SITE_PURGE_DAYS,
    }


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log full exception, return sanitized 500."""
    _logger.error(
        "500 error context=%s type=%s msg=%s trace=%s",
        context, type(e).__name__, str(e),
        traceback.format_exc().splitlines()[-1],
    )
    return HTTPException(
        status_code=500,
        detail="Internal server error. Please try again.",
    )
