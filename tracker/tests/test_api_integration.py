"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database to verify HTTP-level behavior.
"""
from __future__ import annotations

import asyncio
import base64
import json
from io import BytesIO
from unittest.mock import patch
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tracker.db import make_engine
from tracker.models import Base


@pytest.fixture()
def test_db():
    """Create a SQLite in-memory database shared through StaticPool."""
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("TRACKER_DATA_DIR", str(tmp_path))
    engine, TestSession = test_db
    from tracker.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client):
    """Two members, one task assigned to both, one rating each."""
    ana = client.post("/api/members", json={"name": "Ana", "role": "Designer"}).json()
    ben = client.post("/api/members", json={"name": "Ben", "role": "Engineer"}).json()
    task = client.post("/api/tasks", json={
        "title": "Launch page",
        "assigned_members": [ana["id"], ben["id"]],
        "subtasks": [{"title": "Copy"}, {"title": "Design"}],
    }).json()
    for member, score in ((ana, 4), (ben, 2)):
        resp = client.post("/api/ratings", json={
            "task_id": task["id"], "member_id": member["id"],
            "dimensions": {"quality": score, "timeliness": score, "communication": score, "initiative": score},
        })
        assert resp.status_code == 201
    return client, ana, ben, task


class TestMemberEndpoints:
    def test_create_and_get(self, client):
        resp = client.post("/api/members", json={"name": "Cleo", "contact": "cleo@example.com"})
        assert resp.status_code == 201
        member = resp.json()
        assert member["role"] == ""
        assert client.get(f"/api/members/{member['id']}").json()["name"] == "Cleo"

    def test_create_requires_name(self, client):
        assert client.post("/api/members", json={"name": ""}).status_code == 422

    def test_get_404(self, client):
        assert client.get("/api/members/missing").status_code == 404

    def test_update(self, seeded):
        c, ana, _, _ = seeded
        resp = c.put(f"/api/members/{ana['id']}", json={"role": "Lead"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "Lead"
        assert resp.json()["name"] == "Ana"

    def test_search(self, seeded):
        c, _, ben, _ = seeded
        assert [m["id"] for m in c.get("/api/members", params={"search": "engineer"}).json()] == [ben["id"]]

    def test_delete_removes_ratings(self, seeded):
        c, ana, ben, task = seeded
        assert c.delete(f"/api/members/{ana['id']}").json() == {"ok": True}
        ratings = c.get("/api/ratings", params={"task_id": task["id"]}).json()
        assert [r["member_id"] for r in ratings] == [ben["id"]]
        assert c.get(f"/api/tasks/{task['id']}").json()["assigned_members"] == [ben["id"]]

    def test_member_tasks(self, seeded):
        c, ana, _, task = seeded
        assert [t["id"] for t in c.get(f"/api/members/{ana['id']}/tasks").json()] == [task["id"]]


class TestTaskEndpoints:
    def test_create_defaults(self, client):
        resp = client.post("/api/tasks", json={"title": "Plan"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "not-started"
        assert data["assigned_members"] == []
        assert data["subtasks"] == []

    def test_create_unknown_member_400(self, client):
        resp = client.post("/api/tasks", json={"title": "Plan", "assigned_members": ["ghost"]})
        assert resp.status_code == 400

    def test_invalid_status_422(self, client):
        assert client.post("/api/tasks", json={"title": "Plan", "status": "done"}).status_code == 422

    def test_dates_normalized_to_utc(self, client):
        resp = client.post("/api/tasks", json={"title": "Plan", "start_date": "2024-03-01T10:00:00+02:00"})
        assert resp.json()["start_date"] == "2024-03-01T08:00:00"

    def test_archive_flow(self, seeded):
        c, _, _, task = seeded
        resp = c.put(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
        assert resp.json()["status"] == "completed"
        assert c.get("/api/tasks").json() == []
        assert [t["id"] for t in c.get("/api/tasks", params={"archived": True}).json()] == [task["id"]]
        assert len(c.get("/api/tasks", params={"all": True}).json()) == 1

    def test_update_reassigns(self, seeded):
        c, ana, _, task = seeded
        resp = c.put(f"/api/tasks/{task['id']}", json={"assigned_members": [ana["id"]]})
        assert resp.json()["assigned_members"] == [ana["id"]]

    def test_subtasks(self, seeded):
        c, _, _, task = seeded
        sub = c.post(f"/api/tasks/{task['id']}/subtasks", json={"title": "QA"}).json()
        assert sub["completed"] is False
        toggled = c.post(f"/api/tasks/{task['id']}/subtasks/{sub['id']}/toggle")
        assert toggled.json()["completed"] is True
        assert c.post(f"/api/tasks/{task['id']}/subtasks/missing/toggle").status_code == 404

    def test_attachment_roundtrip(self, seeded):
        c, _, _, task = seeded
        resp = c.post(f"/api/tasks/{task['id']}/attachments", json={
            "name": "notes.txt", "type": "text/plain",
            "base64_data": base64.b64encode(b"hello").decode(),
        })
        assert resp.status_code == 201
        download = c.get(f"/api/attachments/{resp.json()['id']}")
        assert download.content == b"hello"
        assert download.headers["content-type"].startswith("text/plain")

    def test_attachment_invalid_base64(self, seeded):
        c, _, _, task = seeded
        resp = c.post(f"/api/tasks/{task['id']}/attachments", json={"name": "x", "base64_data": "!!"})
        assert resp.status_code == 400

    def test_delete(self, seeded):
        c, _, _, task = seeded
        assert c.delete(f"/api/tasks/{task['id']}").status_code == 200
        assert c.get(f"/api/tasks/{task['id']}").status_code == 404
        assert c.get("/api/ratings").json() == []


class TestRatingEndpoints:
    def test_score_out_of_range_422(self, seeded):
        c, ana, _, task = seeded
        resp = c.post("/api/ratings", json={
            "task_id": task["id"], "member_id": ana["id"],
            "dimensions": {"quality": 6, "timeliness": 3, "communication": 3, "initiative": 3},
        })
        assert resp.status_code == 422

    def test_unknown_task_404(self, seeded):
        c, ana, _, _ = seeded
        resp = c.post("/api/ratings", json={
            "task_id": "missing", "member_id": ana["id"],
            "dimensions": {"quality": 3, "timeliness": 3, "communication": 3, "initiative": 3},
        })
        assert resp.status_code == 404

    def test_list_and_delete(self, seeded):
        c, ana, _, _ = seeded
        ratings = c.get("/api/ratings", params={"member_id": ana["id"]}).json()
        assert len(ratings) == 1
        assert ratings[0]["dimensions"]["quality"] == 4
        assert c.delete(f"/api/ratings/{ratings[0]['id']}").status_code == 200
        assert c.get("/api/ratings", params={"member_id": ana["id"]}).json() == []


class TestStatsEndpoints:
    def test_overview(self, seeded):
        c, _, _, _ = seeded
        data = c.get("/api/overview").json()
        assert data["total_members"] == 2
        assert data["active_tasks"] == 1
        assert data["total_ratings"] == 2

    def test_leaderboard_sorted(self, seeded):
        c, ana, ben, _ = seeded
        board = c.get("/api/leaderboard").json()
        assert [e["member"]["id"] for e in board] == [ana["id"], ben["id"]]
        assert board[0]["stats"]["average_rating"] == 4.0

    def test_member_stats(self, seeded):
        c, ana, _, _ = seeded
        data = c.get(f"/api/members/{ana['id']}/stats").json()
        assert data["total_tasks"] == 1
        assert data["completion_rate"] == 0.0
        assert len(data["rating_trend"]) == 1

    def test_member_stats_unknown_is_zero(self, client):
        data = client.get("/api/members/missing/stats").json()
        assert data["average_rating"] == 0.0
        assert data["rating_trend"] == []

    def test_member_dimensions(self, seeded):
        c, _, ben, _ = seeded
        assert c.get(f"/api/members/{ben['id']}/dimensions").json()["initiative"] == 2.0

    def test_task_leaderboard(self, seeded):
        c, ana, ben, task = seeded
        board = c.get(f"/api/tasks/{task['id']}/leaderboard").json()
        assert [(e["member"]["id"], e["average_rating"], e["ratings_count"]) for e in board] == [
            (ana["id"], 4.0, 1), (ben["id"], 2.0, 1),
        ]

    def test_task_stats(self, seeded):
        c, ana, _, task = seeded
        data = c.get(f"/api/tasks/{task['id']}/stats").json()
        assert data["total_subtasks"] == 2
        assert data["average_ratings"][ana["id"]] == 4.0

    def test_task_stats_404(self, client):
        assert client.get("/api/tasks/missing/stats").status_code == 404


class TestExportEndpoints:
    def test_member_pdf(self, seeded):
        c, ana, _, _ = seeded
        resp = c.get(f"/api/export/members/{ana['id']}.pdf")
        assert resp.status_code == 200
        assert resp.content.startswith(b"%PDF")
        assert "Ana_Performance_Report.pdf" in resp.headers["content-disposition"]

    def test_task_pdf(self, seeded):
        c, _, _, task = seeded
        resp = c.get(f"/api/export/tasks/{task['id']}.pdf")
        assert "Launch_page_Task_Report.pdf" in resp.headers["content-disposition"]

    def test_missing_member_pdf_404(self, client):
        assert client.get("/api/export/members/missing.pdf").status_code == 404

    def test_team_pdf(self, seeded):
        c, _, _, _ = seeded
        assert c.get("/api/export/team.pdf").content.startswith(b"%PDF")

    def test_team_xlsx(self, seeded):
        c, _, _, _ = seeded
        resp = c.get("/api/export/team.xlsx")
        wb = load_workbook(BytesIO(resp.content))
        assert wb["Leaderboard"].max_row == 3

    def test_non_latin1_member_name(self, client):
        member = client.post("/api/members", json={"name": "李雷"}).json()
        resp = client.get(f"/api/export/members/{member['id']}.pdf")
        assert resp.status_code == 200
        assert resp.content.startswith(b"%PDF")
        disposition = resp.headers["content-disposition"]
        assert 'filename="_Performance_Report.pdf"' in disposition
        assert f"filename*=UTF-8''{quote('李雷_Performance_Report.pdf')}" in disposition

    def test_non_latin1_task_title(self, client):
        task = client.post("/api/tasks", json={"title": "Déploiement → prod"}).json()
        resp = client.get(f"/api/export/tasks/{task['id']}.pdf")
        assert resp.status_code == 200
        disposition = resp.headers["content-disposition"]
        assert 'filename="Deploiement__prod_Task_Report.pdf"' in disposition
        assert quote("Déploiement_→_prod_Task_Report.pdf") in disposition

    def test_non_latin1_attachment_name(self, seeded):
        c, _, _, task = seeded
        att = c.post(f"/api/tasks/{task['id']}/attachments", json={
            "name": "计划.txt", "type": "text/plain",
            "base64_data": base64.b64encode(b"plan").decode(),
        }).json()
        resp = c.get(f"/api/attachments/{att['id']}")
        assert resp.status_code == 200
        assert resp.content == b"plan"
        assert quote("计划.txt") in resp.headers["content-disposition"]


class TestContentDisposition:
    def test_ascii_name_unchanged(self):
        from tracker.app import content_disposition
        assert content_disposition("Team_Report.pdf") == (
            "attachment; filename=\"Team_Report.pdf\"; filename*=UTF-8''Team_Report.pdf"
        )

    def test_quotes_and_backslashes_replaced(self):
        from tracker.app import content_disposition
        header = content_disposition('say "hi"\\now.pdf')
        assert 'filename="say _hi__now.pdf"' in header
        assert "filename*=UTF-8''say%20%22hi%22%5Cnow.pdf" in header

    def test_header_is_latin1_encodable(self):
        from tracker.app import content_disposition
        content_disposition("李雷 → 报告.pdf").encode("latin-1")

    def test_empty_ascii_fallback(self):
        from tracker.app import content_disposition
        assert 'filename="download.pdf"' in content_disposition("报告.pdf")


class TestDatabaseEndpoints:
    def test_list_databases(self, client):
        with patch("tracker.app.list_databases", return_value=["tracker", "design"]):
            data = client.get("/api/databases").json()
        assert data["databases"] == ["tracker", "design"]
        assert "current" in data

    def test_select_invalid(self, client):
        assert client.post("/api/databases/select", json={"name": "bad name!"}).status_code == 400

    def test_create_invalid(self, client):
        assert client.post("/api/databases/create", json={"name": ""}).status_code == 400

    def test_create_and_conflict(self, client):
        resp = client.post("/api/databases/create", json={"name": "design"})
        assert resp.json() == {"current": "design"}
        assert client.post("/api/databases/create", json={"name": "design"}).status_code == 409


class TestAdminEndpoints:
    def test_reset(self, seeded):
        c, _, _, _ = seeded
        assert c.delete("/api/reset").json() == {"ok": True}
        assert c.get("/api/members").json() == []
        assert c.get("/api/overview").json()["total_tasks"] == 0


class _ConnectedRequest:
    async def is_disconnected(self) -> bool:
        return False


class TestChangeFeedStream:
    @pytest.mark.asyncio
    async def test_ready_then_change_frames(self, test_db):
        from tracker import services
        from tracker.app import stream_events

        _, TestSession = test_db
        response = await stream_events(_ConnectedRequest())
        assert response.media_type == "text/event-stream"
        frames = response.body_iterator

        ready = await frames.__anext__()
        assert ready.startswith("data: ") and ready.endswith("\n\n")
        assert json.loads(ready[len("data: "):]) == {"type": "ready"}

        pending = asyncio.ensure_future(frames.__anext__())
        await asyncio.sleep(0)
        session = TestSession()
        try:
            member = services.create_member(session, name="Streamed")
        finally:
            session.close()

        change = json.loads((await asyncio.wait_for(pending, timeout=1))[len("data: "):])
        assert change["type"] == "change"
        assert change["collection"] == "members"
        assert change["action"] == "created"
        assert change["entity_id"] == member.id
        await frames.aclose()
