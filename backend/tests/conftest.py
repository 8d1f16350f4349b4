"""
Shared test fixtures for OpenTimeclock backend tests.
"""
import json
import os
import sys
import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

ZONE = "America/Mexico_City"

# ── Seed data ──────────────────────────────────────────────────────────────────
# Mexico City has no DST since 2022: local = UTC-6 all year.

SEED_SITES = [
    {
        "id": 7, "name": "Centro", "status": "active", "deletion_started_at": None,
        "address": "Av. Juárez 10", "zone": "CDMX", "manager": "L. Ortega",
        "base_schedule": None, "day_exceptions": [], "range_exceptions": [],
    },
    {
        "id": 9, "name": "Norte", "status": "active", "deletion_started_at": None,
        "address": "Calle 5", "zone": "MTY", "manager": "R. Garza",
        "base_schedule": {
            "effective_from": "2025-01-01T12:00:00Z",
            "rules": [
                {"weekday": wd, "shifts": [{"start": "08:00", "end": "16:00", "overnight": False}]}
                for wd in (1, 2, 3, 4, 5)
            ],
            "new_hire": {"active": True, "duration_days": 45, "only_base_active_days": True,
                         "shifts": [{"start": "09:00", "end": "14:00", "overnight": False}]},
            "version": 3,
        },
        "day_exceptions": [
            {"date": "2025-06-04T12:00:00Z", "type": "rest"},
            {"date": "2025-06-05T12:00:00Z", "type": "attendance_override", "start": "10:00", "end": "14:00"},
        ],
        "range_exceptions": [
            {"start": "2025-06-09T12:00:00Z", "end": "2025-06-13T12:00:00Z", "weekdays": [1, 3],
             "shifts": [{"start": "06:00", "end": "12:00", "overnight": False}]},
        ],
    },
    {
        "id": 12, "name": "Sur", "status": "pending_deletion",
        "deletion_started_at": "2025-05-01T10:00:00Z",
        "base_schedule": None, "day_exceptions": [], "range_exceptions": [],
    },
]

SEED_WORKERS = [
    {
        "id": "w1", "name": "Ana López", "checker_id": "101", "principal_site": 7,
        "foreign_sites": [], "status": "active", "hire_date": "2024-01-15",
        "site_history": [{"site_id": 7, "site_name": "Centro", "start": "2024-01-15T12:00:00Z", "end": None}],
    },
    {
        "id": "w2", "name": "Bruno Díaz", "checker_id": "202", "principal_site": 7,
        "foreign_sites": [9], "status": "active", "hire_date": "2023-03-01",
        "site_history": [{"site_id": 7, "site_name": "Centro", "start": "2023-03-01T12:00:00Z", "end": None}],
    },
    {
        "id": "w3", "name": "Carla Ruiz", "checker_id": "303", "principal_site": 9,
        "foreign_sites": [], "status": "active", "hire_date": "2025-05-20",
        "site_history": [{"site_id": 9, "site_name": "Norte", "start": "2025-05-20T12:00:00Z", "end": None}],
    },
]


def _punch(kind, ts, **extra):
    return {"type": kind, "timestamp": ts, "synced": True, "auto_checkout": False, **extra}


SEED_ATTENDANCE = [
    # w1: single entry at 08:01 local on Monday 2025-06-02
    {"worker": "101", "site": 7, "date": "2025-06-02", "status": "Pending",
     "punches": [_punch("Entrada", "2025-06-02T14:01:00Z")]},
    # w1: full day at foreign site 9 only
    {"worker": "101", "site": 9, "date": "2025-06-03", "status": "Complete Attendance",
     "punches": [_punch("Entrada", "2025-06-03T14:00:00Z"), _punch("Salida", "2025-06-03T22:30:00Z")]},
    # w2: complete day at principal site
    {"worker": "202", "site": 7, "date": "2025-06-02", "status": "Complete Attendance",
     "punches": [_punch("Entrada", "2025-06-02T14:00:00Z"), _punch("Salida", "2025-06-02T22:00:00Z")]},
    # w2: legacy record keyed by internal id, automatic exit variant
    {"worker": "w2", "site": 7, "date": "2025-06-04", "status": "Complete Attendance",
     "punches": [_punch("Entrada", "2025-06-04T15:00:00Z"),
                 _punch("Salida Automática", "2025-06-04T23:00:00Z", auto_checkout=True)]},
    # w2: unparsable timestamp
    {"worker": "202", "site": 7, "date": "2025-06-05", "status": "Pending",
     "punches": [_punch("Entrada", "not-a-timestamp")]},
    # w3: late entry, 23:30 local on 2025-06-09 is already 06-10 in UTC
    {"worker": "303", "site": 9, "date": "2025-06-09", "status": "Pending",
     "punches": [_punch("Entrada", "2025-06-10T05:30:00Z")]},
]

SEED_CALENDARS = [
    {"id": 1, "year": 2025, "sites": [7], "special_days": [
        {"date": "2025-06-06T12:00:00Z", "type": "holiday", "start": None, "end": None,
         "description": "Founders day"},
        {"date": "2025-06-09T12:00:00Z", "type": "rest", "start": None, "end": None,
         "description": "Manual rest"},
    ]},
]

SEED_WORKER_CALENDARS = [
    {"worker": "w1", "year": 2025, "special_days": [
        {"date": "2025-06-05T12:00:00Z", "type": "Vacation"},
        {"date": "2025-06-06T12:00:00Z", "type": "attendance", "start": "9:00", "end": "13:00"},
    ]},
]


def seed_database(path):
    os.makedirs(path, exist_ok=True)
    for name, docs in (
        ("sites", SEED_SITES),
        ("workers", SEED_WORKERS),
        ("attendance", SEED_ATTENDANCE),
        ("calendars", SEED_CALENDARS),
        ("worker_calendars", SEED_WORKER_CALENDARS),
    ):
        with open(os.path.join(path, f"{name}.json"), "w", encoding="utf-8") as f:
            json.dump(docs, f, ensure_ascii=False)


# ── Fixtures ───────────────────────────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path):
    """Function-scoped: fresh seeded JSON store per test."""
    path = str(tmp_path / "data")
    seed_database(path)
    return path


@pytest.fixture
def db(db_path):
    from tclib.database import TimeclockDatabase
    return TimeclockDatabase(db_path)


@pytest.fixture
def app(db_path):
    """Return the FastAPI app pointed at the seeded store."""
    import api.main as main_module
    saved = (main_module.DB_PATH, main_module.TIMEZONE, main_module.OPEN_DAY_POLICY)
    main_module.DB_PATH = db_path
    main_module.TIMEZONE = ZONE
    main_module.OPEN_DAY_POLICY = "closed"
    yield main_module.app
    main_module.DB_PATH, main_module.TIMEZONE, main_module.OPEN_DAY_POLICY = saved


@pytest.fixture
def client(app):
    """Function-scoped TestClient; unexpected server errors propagate."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def safe_client(app):
    """TestClient that returns 500 responses instead of raising."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
