"""
API integration tests for the OpenTimeclock backend.

Every test gets a freshly seeded JSON store through the client fixture; the
startup purge already removed the site pending deletion (id 12).
"""
import pytest


# ─────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────

class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["db"]["status"] == "connected"
        assert data["timezone"] == "America/Mexico_City"

    def test_version(self, client):
        data = client.get("/api/version").json()
        assert data == {"version": "1.0.0", "service": "OpenTimeclock API"}

    def test_stats(self, client):
        data = client.get("/api/stats").json()
        assert data["workers"] == 3
        assert data["sites"] == 2

    def test_request_id_and_security_headers(self, client):
        resp = client.get("/api/version")
        assert len(resp.headers["X-Request-ID"]) == 8
        assert resp.headers["X-Content-Type-Options"] == "nosniff"


# ─────────────────────────────────────────────────────────────
# Sites & schedules
# ─────────────────────────────────────────────────────────────

class TestSites:
    def test_pending_site_was_purged_on_startup(self, client):
        ids = [s["id"] for s in client.get("/api/sites?include_pending=true").json()]
        assert ids == [7, 9]

    def test_site_flags(self, client):
        sites = {s["id"]: s for s in client.get("/api/sites").json()}
        assert sites[9]["has_base_schedule"] is True
        assert sites[7]["has_base_schedule"] is False

    def test_schedule_undefined(self, client):
        resp = client.get("/api/sites/7/schedule?date=2025-06-02")
        assert resp.status_code == 200
        assert resp.json() == {"origin": "undefined", "shifts": []}

    def test_schedule_day_exception(self, client):
        data = client.get("/api/sites/9/schedule?date=2025-06-04").json()
        assert data["status"] == "rest"

    def test_schedule_bad_date(self, client):
        assert client.get("/api/sites/9/schedule?date=06-02-2025").status_code == 400

    def test_schedule_unknown_site(self, client):
        assert client.get("/api/sites/99/schedule?date=2025-06-02").status_code == 404

    def test_schedule_range(self, client):
        data = client.get("/api/sites/9/schedule/range?start=2025-06-09&end=2025-06-10").json()
        assert [d["origin"] for d in data["days"]] == ["exception_range", "base_schedule"]

    def test_schedule_range_too_long(self, client):
        resp = client.get("/api/sites/9/schedule/range?start=2025-01-01&end=2025-12-31")
        assert resp.status_code == 400

    def test_put_base_schedule(self, client):
        resp = client.put("/api/sites/7/base-schedule", json={
            "effective_from": "2025-07-01",
            "rules": [{"weekday": 1, "shifts": [{"start": "8:00", "end": "12:00"}]}],
        })
        assert resp.status_code == 200
        assert resp.json()["base_schedule"]["version"] == 1
        data = client.get("/api/sites/7/schedule?date=2025-07-07").json()
        assert data["shifts"] == [{"start": "08:00", "end": "12:00", "overnight": False}]

    def test_put_base_schedule_bad_shift_format(self, client):
        resp = client.put("/api/sites/7/base-schedule", json={
            "effective_from": "2025-07-01",
            "rules": [{"weekday": 1, "shifts": [{"start": "8am", "end": "12:00"}]}],
        })
        assert resp.status_code == 422

    def test_day_exception_lifecycle(self, client):
        body = {"date": "2025-06-20", "type": "attendance_override", "start": "10:00", "end": "12:00"}
        assert client.post("/api/sites/9/exceptions/day", json=body).status_code == 200
        assert client.post("/api/sites/9/exceptions/day", json=body).status_code == 409
        resp = client.delete("/api/sites/9/exceptions/day?date=2025-06-20")
        assert resp.json() == {"ok": True, "deleted": 1}

    def test_range_exception(self, client):
        resp = client.post("/api/sites/7/exceptions/range", json={
            "start": "2025-07-01", "end": "2025-07-31", "weekdays": [2],
            "shifts": [{"start": "07:00", "end": "15:00"}],
        })
        assert resp.status_code == 200
        assert client.get("/api/sites/7/schedule?date=2025-07-01").json()["origin"] == "exception_range"


# ─────────────────────────────────────────────────────────────
# Attendance
# ─────────────────────────────────────────────────────────────

class TestAttendanceReport:
    def test_report_statuses(self, client):
        resp = client.get("/api/attendance/report/w1?start=2025-06-01&end=2025-06-06")
        assert resp.status_code == 200
        days = resp.json()
        assert [d["status"] for d in days] == [
            "Absence", "Automatic Checkout", "Other Site", "Absence", "Vacation", "Manual Attendance",
        ]
        assert days[1]["entrada"] == "08:01"
        assert days[5]["entrada"] == "09:00"

    def test_unknown_worker(self, client):
        resp = client.get("/api/attendance/report/ghost?start=2025-06-01&end=2025-06-02")
        assert resp.status_code == 404

    def test_reversed_range(self, client):
        resp = client.get("/api/attendance/report/w1?start=2025-06-10&end=2025-06-01")
        assert resp.status_code == 400

    def test_bad_scope(self, client):
        resp = client.get("/api/attendance/report/w1?start=2025-06-01&end=2025-06-02&scope=everything")
        assert resp.status_code == 400

    def test_unrestricted_scope(self, client):
        days = client.get(
            "/api/attendance/report/w1?start=2025-06-03&end=2025-06-03&scope=unrestricted"
        ).json()
        assert days[0]["status"] == "Complete Attendance"

    def test_missing_query_parameter(self, client):
        resp = client.get("/api/attendance/report/w1?start=2025-06-01")
        assert resp.status_code == 422
        assert resp.json()["detail"] == "end: field required"

    def test_site_grid(self, client):
        data = client.get("/api/attendance/site/7?start=2025-06-02&end=2025-06-02").json()
        assert [w["name"] for w in data["workers"]] == ["Ana López", "Bruno Díaz"]
        assert data["workers"][1]["days"]["2025-06-02"]["status"] == "Complete Attendance"

    def test_site_grid_purged_site(self, client):
        assert client.get("/api/attendance/site/12?start=2025-06-02&end=2025-06-02").status_code == 404


class TestExport:
    def test_csv(self, client):
        resp = client.get("/api/attendance/report/w1/export?start=2025-06-01&end=2025-06-02&format=csv")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.splitlines()
        assert lines[0] == "Date,Entry,Exit,Status,Site event,Worker event"
        assert len(lines) == 3

    def test_xlsx(self, client):
        resp = client.get("/api/attendance/report/w1/export?start=2025-06-01&end=2025-06-02")
        assert resp.status_code == 200
        assert "spreadsheetml" in resp.headers["content-type"]
        assert resp.content[:2] == b"PK"

    def test_bad_format(self, client):
        resp = client.get("/api/attendance/report/w1/export?start=2025-06-01&end=2025-06-02&format=pdf")
        assert resp.status_code == 400


class TestPunch:
    def test_entry_then_duplicate(self, client):
        body = {"checker_id": "101", "site_id": 7, "type": "Entrada"}
        first = client.post("/api/attendance/punch", json=body)
        assert first.status_code == 200
        assert first.json()["record"]["status"] == "Pending"
        assert client.post("/api/attendance/punch", json=body).status_code == 409

    def test_entry_shows_in_todays_checkins(self, client):
        client.post("/api/attendance/punch", json={"checker_id": "303", "site_id": 9, "type": "Entrada"})
        names = [c["name"] for c in client.get("/api/attendance/today").json()]
        assert names == ["Carla Ruiz"]

    def test_unknown_type(self, client):
        resp = client.post("/api/attendance/punch", json={"checker_id": "101", "site_id": 7, "type": "Break"})
        assert resp.status_code == 400

    def test_unknown_site(self, client):
        resp = client.post("/api/attendance/punch", json={"checker_id": "101", "site_id": 99, "type": "Entrada"})
        assert resp.status_code == 404

    def test_validation(self, client):
        resp = client.post("/api/attendance/punch", json={"checker_id": "", "site_id": 0})
        assert resp.status_code == 422


# ─────────────────────────────────────────────────────────────
# Calendars & batch
# ─────────────────────────────────────────────────────────────

class TestCalendars:
    def test_missing_calendar_is_empty(self, client):
        data = client.get("/api/calendars/9/2025").json()
        assert data == {"year": 2025, "sites": [9], "special_days": []}

    def test_add_and_delete_special_day(self, client):
        body = {"site_id": 9, "date": "2025-09-16", "type": "holiday", "description": "Independencia"}
        assert client.post("/api/calendars/day", json=body).status_code == 200
        assert client.post("/api/calendars/day", json=body).status_code == 409
        resp = client.delete("/api/calendars/day?site_id=9&date=2025-09-16")
        assert resp.json()["deleted"] == 1

    def test_list_calendars(self, client):
        assert [c["id"] for c in client.get("/api/calendars").json()] == [1]
        assert client.get("/api/calendars?year=2026").json() == []

    def test_edit_special_day(self, client):
        body = {"site_id": 7, "date": "2025-06-06", "type": "bridge", "description": "Puente"}
        resp = client.put("/api/calendars/day", json=body)
        assert resp.status_code == 200
        assert resp.json()["entry"]["type"] == "bridge"
        assert client.get("/api/calendars/7/2025").json()["special_days"][0]["description"] == "Puente"

    def test_edit_missing_day(self, client):
        body = {"site_id": 7, "date": "2025-06-07", "type": "bridge"}
        assert client.put("/api/calendars/day", json=body).status_code == 404

    def test_edit_with_unknown_type(self, client):
        body = {"site_id": 7, "date": "2025-06-06", "type": "siesta"}
        assert client.put("/api/calendars/day", json=body).status_code == 400

    def test_worker_calendar_roundtrip(self, client):
        body = {"special_days": [{"date": "2025-08-04", "type": "Vacation"}]}
        assert client.put("/api/worker-calendars/w3/2025", json=body).status_code == 200
        data = client.get("/api/worker-calendars/w3/2025").json()
        assert data["special_days"] == [{"date": "2025-08-04T12:00:00Z", "type": "Vacation"}]

    def test_worker_calendar_wrong_year(self, client):
        body = {"special_days": [{"date": "2026-01-05", "type": "Vacation"}]}
        assert client.put("/api/worker-calendars/w3/2025", json=body).status_code == 400


class TestBatch:
    BODY = {"site_ids": [7, 9], "start": "2025-06-01", "end": "2025-06-30"}

    def test_preview(self, client):
        data = client.post("/api/calendars/batch/preview", json=self.BODY).json()
        assert data["to_create"] == 10

    def test_preview_window_too_long(self, client):
        body = {**self.BODY, "start": "2025-01-01", "end": "2025-07-19"}
        assert client.post("/api/calendars/batch/preview", json=body).status_code == 400

    def test_preview_missing_sites(self, client):
        resp = client.post("/api/calendars/batch/preview", json={"start": "2025-06-01", "end": "2025-06-30"})
        assert resp.status_code == 422
        assert "site_ids" in resp.json()["detail"]

    def test_apply_then_undo(self, client):
        applied = client.post("/api/calendars/batch/apply", json={**self.BODY, "description": "Domingo"}).json()
        assert applied["created"] == 10
        again = client.post("/api/calendars/batch/apply", json=self.BODY).json()
        assert again["created"] == 0
        undo = client.delete(f"/api/calendars/batch/{applied['batch_id']}").json()
        assert undo["removed"] == 10
        assert client.get("/api/calendars/9/2025").json()["special_days"] == []

    def test_unknown_site(self, client):
        body = {**self.BODY, "site_ids": [7, 99]}
        assert client.post("/api/calendars/batch/apply", json=body).status_code == 404


# ─────────────────────────────────────────────────────────────
# Workers
# ─────────────────────────────────────────────────────────────

class TestWorkers:
    def test_get_unknown(self, client):
        assert client.get("/api/workers/ghost").status_code == 404

    def test_change_principal_site(self, client):
        data = client.put("/api/workers/w2/principal-site", json={"site_id": 9}).json()
        assert data["principal_site"] == 9
        assert [h["end"] is None for h in data["site_history"]] == [False, True]

    def test_foreign_sites_unknown_site(self, client):
        resp = client.put("/api/workers/w1/foreign-sites", json={"site_ids": [99]})
        assert resp.status_code == 404

    def test_deactivate(self, client):
        data = client.post("/api/workers/w3/deactivate").json()
        assert data["status"] == "inactive"


# ─────────────────────────────────────────────────────────────
# Error sanitizing
# ─────────────────────────────────────────────────────────────

class TestUnexpectedErrors:
    def test_500_is_sanitized(self, safe_client, monkeypatch):
        import api.routers.sites as sites_router

        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire at /srv/data")

        monkeypatch.setattr(sites_router, "resolve_schedule", boom)
        resp = safe_client.get("/api/sites/9/schedule?date=2025-06-02")
        assert resp.status_code == 500
        assert "disk" not in resp.text

    @pytest.mark.parametrize("path", ["/api/sites/abc/schedule?date=2025-06-02", "/api/calendars/x/2025"])
    def test_bad_path_params(self, client, path):
        assert client.get(path).status_code == 422
