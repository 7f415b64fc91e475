"""
Street Patrol Log - Patrol & Report API Tests
=============================================
Tests: patrol lifecycle, validation, ownership, history, active badge feed,
       reports, exports, realtime feed
"""

import csv
import io

import pytest
from starlette.websockets import WebSocketDisconnect

from app.config import get_local_now
from tests.conftest import db_count, db_query, save_artifact

NEW_PATROL = {
    "location": "Clock Tower",
    "team_leader": "Priya",
    "team_members": "Ade, Tom",
    "police_cad_number": "",
}


def start_patrol(client, **overrides):
    resp = client.post("/api/patrols", json=dict(NEW_PATROL, **overrides))
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]


# ============================================================================
# Lifecycle
# ============================================================================

class TestPatrolLifecycle:
    """start -> count -> notes -> close, one store write per step."""

    def test_full_patrol(self, alice_session):
        pid = start_patrol(alice_session)
        row = db_query("SELECT * FROM patrols WHERE id = ?", (pid,))[0]
        assert row["status"] == "active"
        assert row["end_time"] is None

        for delta in (1, 1, 1, -1):
            resp = alice_session.post(f"/api/patrols/{pid}/statistics",
                                      json={"key": "water_bottles", "delta": delta})
            assert resp.status_code == 200
        assert resp.json()["statistics"]["water_bottles"] == 2

        resp = alice_session.post(f"/api/patrols/{pid}/contacts", json={
            "ethnicity": "easternEuropean", "gender": "Male", "age_band": "18To25"})
        assert resp.json()["contact_statistics"]["easternEuropeanMale18To25"] == 1

        resp = alice_session.put(f"/api/patrols/{pid}/notes", json={"notes": "Handed out water"})
        assert resp.json()["notes"] == "Handed out water"

        resp = alice_session.post(f"/api/patrols/{pid}/close")
        assert resp.status_code == 200
        closed = resp.json()["patrol"]
        assert closed["status"] == "completed"
        assert closed["end_time"] is not None
        save_artifact("closed_patrol.json", closed)

        resp = alice_session.post(f"/api/patrols/{pid}/close")
        assert resp.status_code == 409
        assert resp.json()["ok"] is False

    def test_decrement_at_zero_stays_zero(self, alice_session):
        pid = start_patrol(alice_session)
        resp = alice_session.post(f"/api/patrols/{pid}/statistics", json={"key": "first_aid", "delta": -1})
        assert resp.status_code == 200
        assert resp.json()["statistics"]["first_aid"] == 0
        alice_session.post(f"/api/patrols/{pid}/close")

    def test_update_details(self, alice_session):
        pid = start_patrol(alice_session)
        resp = alice_session.put(f"/api/patrols/{pid}", json=dict(
            NEW_PATROL, location="Bus Station", police_cad_number="CAD-901"))
        assert resp.status_code == 200
        row = db_query("SELECT location, police_notified FROM patrols WHERE id = ?", (pid,))[0]
        assert row == {"location": "Bus Station", "police_notified": 1}
        alice_session.post(f"/api/patrols/{pid}/close")

    def test_incomplete_contact_rejected(self, alice_session):
        pid = start_patrol(alice_session)
        before = db_query("SELECT contact_statistics_json FROM patrols WHERE id = ?", (pid,))
        resp = alice_session.post(f"/api/patrols/{pid}/contacts",
                                  json={"ethnicity": "white", "gender": "Female"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Please select all three categories"
        assert db_query("SELECT contact_statistics_json FROM patrols WHERE id = ?", (pid,)) == before
        alice_session.post(f"/api/patrols/{pid}/close")


class TestValidation:

    def test_missing_location(self, alice_session):
        count = db_count("patrols")
        resp = alice_session.post("/api/patrols", json=dict(NEW_PATROL, location=""))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Location is required"
        assert db_count("patrols") == count

    def test_missing_team_members(self, alice_session):
        count = db_count("patrols")
        resp = alice_session.post("/api/patrols", json=dict(NEW_PATROL, team_members=""))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Team members are required"
        assert db_count("patrols") == count

    def test_bad_json(self, alice_session):
        resp = alice_session.post("/api/patrols", content=b"not json",
                                  headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_unknown_statistic(self, alice_session):
        resp = alice_session.post("/api/patrols/seed-active/statistics", json={"key": "hugs", "delta": 1})
        assert resp.status_code == 400

    def test_requires_login(self, anon_client):
        assert anon_client.post("/api/patrols", json=NEW_PATROL).status_code == 401
        assert anon_client.get("/api/patrols").status_code == 401
        assert anon_client.get("/api/reports").status_code == 401


class TestOwnership:

    def test_other_users_patrol_forbidden(self, bob_session):
        resp = bob_session.get("/api/patrols/seed-jan")
        assert resp.status_code == 403
        resp = bob_session.put("/api/patrols/seed-jan/notes", json={"notes": "hijack"})
        assert resp.status_code == 403
        assert db_query("SELECT notes FROM patrols WHERE id = 'seed-jan'")[0]["notes"] != "hijack"

    def test_unknown_patrol(self, alice_session):
        assert alice_session.get("/api/patrols/no-such-patrol").status_code == 404


# ============================================================================
# History and badge feed
# ============================================================================

class TestHistory:

    def test_history_list(self, alice_session):
        data = alice_session.get("/api/patrols").json()
        ids = [p["id"] for p in data["patrols"]]
        assert "seed-bob" not in ids
        assert ids.index("seed-active") < ids.index("seed-feb") < ids.index("seed-jan")

        jan = next(p for p in data["patrols"] if p["id"] == "seed-jan")
        assert jan["duration"] == "4h 30m"
        assert jan["notes_preview"] == jan["notes"]
        active = next(p for p in data["patrols"] if p["id"] == "seed-active")
        assert active["duration"] == "In progress"
        assert data["totals"]["conversations"] >= 8

    def test_get_patrol(self, alice_session):
        data = alice_session.get("/api/patrols/seed-feb").json()
        assert data["patrol"]["police_notified"] is True
        assert data["patrol"]["police_cad_number"] == "CAD-2291"
        assert len(data["patrol"]["contact_statistics"]) == 32

    def test_active_feed(self, alice_session):
        patrols = alice_session.get("/api/patrols/active").json()["patrols"]
        ids = [p["id"] for p in patrols]
        assert ids.count("seed-active") == 1
        assert "seed-jan" not in ids
        assert set(patrols[0]) == {"id", "location", "start_time"}


# ============================================================================
# Reports and exports
# ============================================================================

class TestReports:

    def test_january_report(self, alice_session):
        data = alice_session.get("/api/reports", params={"start": "2024-01-01", "end": "2024-01-31"}).json()
        report = data["report"]
        assert report["patrol_count"] == 1
        assert report["statistics"]["conversations"] == 3
        assert report["statistics"]["water_bottles"] == 2
        assert [p["id"] for p in report["patrols"]] == ["seed-jan"]
        save_artifact("report_january.json", data)

    def test_year_report(self, alice_session):
        data = alice_session.get("/api/reports", params={"period": "2024"}).json()
        assert data["period"]["title"] == "2024 Annual Report"
        assert data["report"]["patrol_count"] == 3

    def test_empty_period(self, alice_session):
        data = alice_session.get("/api/reports", params={"period": "2019"}).json()
        assert data["report"]["has_data"] is False
        assert data["report"]["patrol_count"] == 0

    def test_year_zero_rejected(self, alice_session):
        resp = alice_session.get("/api/reports", params={"period": "0000"})
        assert resp.status_code == 400
        assert resp.json()["error_type"] == "ValidationError"
        resp = alice_session.get("/api/reports/export", params={"period": "0000", "format": "csv"})
        assert resp.status_code == 400

    def test_partial_range_rejected(self, alice_session):
        assert alice_session.get("/api/reports", params={"start": "2024-01-01"}).status_code == 400

    def test_reversed_range_rejected(self, alice_session):
        resp = alice_session.get("/api/reports", params={"start": "2024-02-01", "end": "2024-01-01"})
        assert resp.status_code == 400

    def test_years(self, alice_session):
        years = alice_session.get("/api/reports/years").json()["years"]
        now = get_local_now()
        assert all(y < now.year - 1 for y in years)
        if now.year > 2025:
            assert 2024 in years


class TestExports:

    PARAMS = {"start": "2024-01-01", "end": "2024-01-31"}

    def test_csv_export(self, alice_session):
        resp = alice_session.get("/api/reports/export", params=dict(self.PARAMS, format="csv"))
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert 'filename="Custom_Report.csv"' in resp.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(resp.text)))
        assert rows[3] == ["Total Patrols", "1"]
        assert ["Conversations", "3"] in rows
        assert 'Quiet night, "busy" around midnight' in [r[-1] for r in rows if r]
        save_artifact("Custom_Report.csv", resp.content, subdir="exported_reports")

    def test_html_export(self, alice_session):
        resp = alice_session.get("/api/reports/export", params=dict(self.PARAMS, format="html"))
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert 'data-stat="conversations">3<' in resp.text
        assert "Quiet night, &quot;busy&quot; around midnight" in resp.text

    def test_xlsx_export(self, alice_session):
        resp = alice_session.get("/api/reports/export", params={"period": "2024", "format": "xlsx"})
        assert resp.status_code == 200
        assert 'filename="2024_Annual_Report.xlsx"' in resp.headers["content-disposition"]
        assert resp.content[:2] == b"PK"

    def test_unknown_format(self, alice_session):
        resp = alice_session.get("/api/reports/export", params=dict(self.PARAMS, format="pdf"))
        assert resp.status_code == 400


# ============================================================================
# Realtime feed
# ============================================================================

class TestRealtime:

    def test_rejects_anonymous(self, anon_client):
        with pytest.raises(WebSocketDisconnect):
            with anon_client.websocket_connect("/ws/patrols") as ws:
                ws.receive_json()

    def test_ping(self, alice_session):
        with alice_session.websocket_connect("/ws/patrols") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_invalidate_on_write(self, alice_session):
        pid = start_patrol(alice_session)
        with alice_session.websocket_connect("/ws/patrols") as ws:
            assert ws.receive_json()["type"] == "connected"
            alice_session.post(f"/api/patrols/{pid}/statistics", json={"key": "prayers", "delta": 1})
            message = ws.receive_json()
            assert message["type"] == "invalidate"
            assert message["patrol_id"] == pid
            assert message["change"] == "statistics"
        alice_session.post(f"/api/patrols/{pid}/close")

    def test_non_json_frame_ignored(self, alice_session):
        with alice_session.websocket_connect("/ws/patrols") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_text("not json")
            ws.send_json(["not", "a", "message"])
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
