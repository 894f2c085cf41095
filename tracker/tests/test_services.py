"""Tests for the persistence services shared by the API and MCP server."""
from __future__ import annotations

import base64
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tracker import services
from tracker.db import make_engine
from tracker.models import Base, Member, Rating, Subtask, Task, TaskAssignment, TaskAttachment

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def team(session: Session) -> tuple[Member, Member]:
    ana = services.create_member(session, name="Ana", role="Designer", contact="ana@example.com")
    ben = services.create_member(session, name="Ben", role="Engineer")
    return ana, ben


@pytest.fixture()
def task(session: Session, team) -> Task:
    ana, ben = team
    return services.create_task(
        session, title="Launch page", description="Landing page for the beta",
        assigned_members=[ben.id, ana.id],
        subtasks=[{"title": "Copy"}, {"title": "Design", "completed": True}],
    )


def _count(session: Session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


class TestMembers:
    def test_create_member(self, session):
        member = services.create_member(session, name="Cleo")
        assert member.id
        assert member.role == ""
        assert services.member_summary(member)["name"] == "Cleo"

    def test_update_ignores_none(self, session, team):
        ana, _ = team
        services.update_member(session, ana, {"name": None, "role": "Lead"})
        assert ana.name == "Ana"
        assert ana.role == "Lead"

    def test_search_by_name_or_role(self, session, team):
        assert [m.name for m in services.query_members(session, "engin")] == ["Ben"]
        assert [m.name for m in services.query_members(session, "ANA")] == ["Ana"]

    def test_delete_cascades_ratings_and_assignments(self, session, team, task):
        ana, ben = team
        services.add_rating(session, task=task, member=ana, quality=4, timeliness=4,
                            communication=4, initiative=4)
        services.delete_member(session, ana)
        session.expire_all()
        assert _count(session, Rating) == 0
        assert session.get(Task, task.id).assigned_member_ids == [ben.id]


class TestTasks:
    def test_assignment_order_kept(self, task, team):
        ana, ben = team
        assert task.assigned_member_ids == [ben.id, ana.id]

    def test_duplicate_assignees_deduped(self, session, team):
        ana, _ = team
        created = services.create_task(session, title="Dup", assigned_members=[ana.id, ana.id])
        assert created.assigned_member_ids == [ana.id]

    def test_unknown_assignee_rejected(self, session):
        with pytest.raises(ValueError, match="Unknown member id"):
            services.create_task(session, title="Bad", assigned_members=["ghost"])

    def test_subtasks_in_order(self, task):
        assert [(s.title, s.completed) for s in task.subtasks] == [("Copy", False), ("Design", True)]

    def test_update_replaces_assignments(self, session, task, team):
        ana, _ = team
        services.update_task(session, task, {"title": "Renamed", "assigned_members": [ana.id]})
        assert task.title == "Renamed"
        assert task.assigned_member_ids == [ana.id]

    def test_update_without_assignments_keeps_them(self, session, task):
        before = task.assigned_member_ids
        services.update_task(session, task, {"description": "new", "assigned_members": None})
        assert task.assigned_member_ids == before

    def test_archive_filter(self, session, task):
        other = services.create_task(session, title="Done already", status="completed")
        assert [t.id for t in services.query_tasks(session)] == [task.id]
        assert [t.id for t in services.query_tasks(session, archived=True)] == [other.id]
        assert len(services.query_tasks(session, archived=None)) == 2

    def test_status_to_completed_archives(self, session, task):
        services.update_task_status(session, task, "completed")
        assert services.query_tasks(session) == []

    def test_status_and_search_filters(self, session, task):
        services.create_task(session, title="Review docs", status="review")
        assert [t.title for t in services.query_tasks(session, status="review")] == ["Review docs"]
        assert [t.title for t in services.query_tasks(session, search="beta")] == ["Launch page"]

    def test_member_filter(self, session, task, team):
        _, ben = team
        services.create_task(session, title="Solo")
        assert [t.id for t in services.query_tasks(session, member_id=ben.id)] == [task.id]

    def test_delete_cascades(self, session, task, team):
        ana, _ = team
        services.add_rating(session, task=task, member=ana, quality=3, timeliness=3,
                            communication=3, initiative=3)
        services.add_attachment(session, task, name="a.txt", type="text/plain",
                                base64_data=base64.b64encode(b"hi").decode())
        services.delete_task(session, task)
        for model in (Rating, Subtask, TaskAttachment, TaskAssignment):
            assert _count(session, model) == 0


class TestSubtasks:
    def test_add_appends(self, session, task):
        sub = services.add_subtask(session, task, title="QA")
        assert sub.id
        assert [s.title for s in task.subtasks][-1] == "QA"

    def test_toggle(self, session, task):
        sub = task.subtasks[0]
        assert services.toggle_subtask(session, task, sub.id).completed is True
        assert services.toggle_subtask(session, task, sub.id).completed is False

    def test_toggle_missing(self, session, task):
        assert services.toggle_subtask(session, task, "nope") is None


class TestAttachments:
    def test_decode_plain_and_data_url(self):
        raw = base64.b64encode(b"report").decode()
        assert services.decode_attachment(raw) == b"report"
        assert services.decode_attachment(f"data:text/plain;base64,{raw}") == b"report"

    def test_decode_invalid(self):
        with pytest.raises(ValueError, match="not valid base64"):
            services.decode_attachment("***")

    def test_add_attachment_summary(self, session, task):
        att = services.add_attachment(session, task, name="notes.txt", type="text/plain",
                                      base64_data=base64.b64encode(b"x").decode())
        summary = services.attachment_summary(att)
        assert summary["name"] == "notes.txt"
        assert "base64_data" not in summary


class TestRatings:
    def test_rating_summary(self, session, task, team):
        ana, _ = team
        rating = services.add_rating(
            session, task=task, member=ana, quality=5, timeliness=4,
            communication=3, initiative=2, comments="solid", mode="final",
        )
        data = services.rating_summary(rating)
        assert data["dimensions"] == {"quality": 5, "timeliness": 4, "communication": 3, "initiative": 2}
        assert data["mode"] == "final"
        assert data["timestamp"]

    def test_explicit_timestamp(self, session, task, team):
        ana, _ = team
        ts = datetime(2024, 1, 2, 3, 4, 5)
        rating = services.add_rating(session, task=task, member=ana, quality=1, timeliness=1,
                                     communication=1, initiative=1, timestamp=ts)
        assert rating.timestamp == ts

    def test_query_filters(self, session, task, team):
        ana, ben = team
        for member in (ana, ben):
            services.add_rating(session, task=task, member=member, quality=3, timeliness=3,
                                communication=3, initiative=3)
        assert len(services.query_ratings(session, task_id=task.id)) == 2
        assert [r.member_id for r in services.query_ratings(session, member_id=ben.id)] == [ben.id]

    def test_delete_rating(self, session, task, team):
        ana, _ = team
        rating = services.add_rating(session, task=task, member=ana, quality=3, timeliness=3,
                                     communication=3, initiative=3)
        services.delete_rating(session, rating)
        assert _count(session, Rating) == 0


class TestLoadSnapshot:
    def test_snapshot_mirrors_database(self, session, task, team):
        ana, ben = team
        services.add_rating(session, task=task, member=ana, quality=4, timeliness=4,
                            communication=4, initiative=4)
        snap = services.load_snapshot(session)
        assert {m.id for m in snap.members} == {ana.id, ben.id}
        record = snap.task(task.id)
        assert record.assigned_members == (ben.id, ana.id)
        assert [s.title for s in record.subtasks] == ["Copy", "Design"]
        assert snap.ratings_for(member_id=ana.id)[0].quality == 4

    def test_empty_database(self, session):
        snap = services.load_snapshot(session)
        assert snap.members == () and snap.tasks == () and snap.ratings == ()


class TestChangeNotifications:
    def test_mutations_publish(self, session):
        with patch("tracker.services.feed") as mock_feed:
            member = services.create_member(session, name="Dee")
            services.delete_member(session, member)
        calls = [c.args[:2] for c in mock_feed.publish.call_args_list]
        assert calls == [("members", "created"), ("members", "deleted")]

    def test_created_event_carries_id(self, session):
        with patch("tracker.services.feed") as mock_feed:
            member = services.create_member(session, name="Eli")
        assert mock_feed.publish.call_args.args[2] == member.id

    def test_reset_all(self, session, task, team):
        with patch("tracker.services.feed") as mock_feed:
            services.reset_all(session)
        assert _count(session, Member) == 0
        assert _count(session, Task) == 0
        assert {c.args[0] for c in mock_feed.publish.call_args_list} == {"members", "tasks", "ratings"}
