"""Shared business logic for the Tracker API and MCP server."""
from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from tracker.events import feed
from tracker.models import Member, Rating, Subtask, Task, TaskAssignment, TaskAttachment
from tracker.snapshot import (
    AttachmentRecord,
    MemberRecord,
    RatingRecord,
    Snapshot,
    SubtaskRecord,
    TaskRecord,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

MEMBER_UPDATABLE_FIELDS = ("name", "role", "contact")

TASK_UPDATABLE_FIELDS = ("title", "description", "start_date", "end_date", "status")

COMPLETED = "completed"

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def member_summary(member: Member) -> dict:
    return {
        "id": member.id, "name": member.name, "role": member.role,
        "contact": member.contact, "created_at": _iso(member.created_at),
    }


def subtask_summary(subtask: Subtask) -> dict:
    return {"id": subtask.id, "title": subtask.title, "completed": subtask.completed}


def attachment_summary(att: TaskAttachment) -> dict:
    return {"id": att.id, "name": att.name, "type": att.type, "uploaded_at": _iso(att.uploaded_at)}


def task_summary(task: Task) -> dict:
    return {
        "id": task.id, "title": task.title, "description": task.description,
        "start_date": _iso(task.start_date), "end_date": _iso(task.end_date),
        "status": task.status,
        "assigned_members": task.assigned_member_ids,
        "subtasks": [subtask_summary(s) for s in task.subtasks],
        "attachments": [attachment_summary(a) for a in task.attachments],
        "created_at": _iso(task.created_at),
    }


def rating_summary(rating: Rating) -> dict:
    return {
        "id": rating.id, "task_id": rating.task_id, "member_id": rating.member_id,
        "dimensions": {
            "quality": rating.quality, "timeliness": rating.timeliness,
            "communication": rating.communication, "initiative": rating.initiative,
        },
        "comments": rating.comments, "mode": rating.mode,
        "timestamp": _iso(rating.timestamp),
    }


# ---------------------------------------------------------------------------
# Snapshot loading
# ---------------------------------------------------------------------------


def load_snapshot(session: Session) -> Snapshot:
    """Read all three collections into one self-contained snapshot.

    Members and tasks are ordered newest first, like the list views.
    """
    members = session.execute(
        select(Member).order_by(Member.created_at.desc(), Member.id)
    ).scalars().all()
    tasks = session.execute(
        select(Task).order_by(Task.created_at.desc(), Task.id)
    ).scalars().all()
    ratings = session.execute(
        select(Rating).order_by(Rating.timestamp.desc(), Rating.id)
    ).scalars().all()
    return Snapshot(
        members=[
            MemberRecord(id=m.id, name=m.name, role=m.role or "", contact=m.contact or "",
                         created_at=m.created_at)
            for m in members
        ],
        tasks=[
            TaskRecord(
                id=t.id, title=t.title, description=t.description or "",
                start_date=t.start_date, end_date=t.end_date, status=t.status,
                assigned_members=tuple(t.assigned_member_ids),
                subtasks=tuple(SubtaskRecord(id=s.id, title=s.title, completed=bool(s.completed))
                               for s in t.subtasks),
                attachments=tuple(AttachmentRecord(id=a.id, name=a.name, type=a.type or "",
                                                   uploaded_at=a.uploaded_at)
                                  for a in t.attachments),
                created_at=t.created_at,
            )
            for t in tasks
        ],
        ratings=[
            RatingRecord(
                id=r.id, task_id=r.task_id, member_id=r.member_id,
                quality=r.quality, timeliness=r.timeliness,
                communication=r.communication, initiative=r.initiative,
                comments=r.comments or "", mode=r.mode, timestamp=r.timestamp,
            )
            for r in ratings
        ],
    )


# ---------------------------------------------------------------------------
# Lookup, filtering and mutation helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: str):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def _commit(session: Session, collection: str, action: str, entity: Any = None) -> None:
    """Commit, then tell subscribers which collection changed."""
    session.commit()
    feed.publish(collection, action, getattr(entity, "id", entity))


def _require_members(session: Session, member_ids: list[str]) -> list[str]:
    """De-duplicate member ids (first occurrence wins) and check they exist."""
    ids = list(dict.fromkeys(member_ids))
    if not ids:
        return ids
    found = set(session.execute(select(Member.id).where(Member.id.in_(ids))).scalars().all())
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValueError(f"Unknown member id(s): {', '.join(missing)}")
    return ids


def query_members(session: Session, search: str | None = None) -> list[Member]:
    members = session.execute(
        select(Member).order_by(Member.created_at.desc(), Member.id)
    ).scalars().all()
    if search:
        q = search.lower()
        members = [m for m in members if q in m.name.lower() or q in (m.role or "").lower()]
    return list(members)


def query_tasks(
    session: Session, *, status: str | None = None, search: str | None = None,
    archived: bool | None = False, member_id: str | None = None,
) -> list[Task]:
    """List tasks newest first.

    ``archived=False`` returns active tasks, ``True`` only completed ones and
    ``None`` everything. ``status`` is a comma-separated filter.
    """
    query = select(Task).order_by(Task.created_at.desc(), Task.id)
    if archived is True:
        query = query.where(Task.status == COMPLETED)
    elif archived is False:
        query = query.where(Task.status != COMPLETED)
    if status:
        statuses = {s.strip().lower() for s in status.split(",") if s.strip()}
        query = query.where(Task.status.in_(statuses))
    if member_id:
        query = query.join(TaskAssignment).where(TaskAssignment.member_id == member_id)
    tasks = list(session.execute(query).scalars().unique().all())
    if search:
        q = search.lower()
        tasks = [t for t in tasks if q in t.title.lower() or q in (t.description or "").lower()]
    return tasks


def query_ratings(
    session: Session, *, task_id: str | None = None, member_id: str | None = None,
) -> list[Rating]:
    query = select(Rating).order_by(Rating.timestamp.desc(), Rating.id)
    if task_id:
        query = query.where(Rating.task_id == task_id)
    if member_id:
        query = query.where(Rating.member_id == member_id)
    return list(session.execute(query).scalars().all())


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def create_member(session: Session, *, name: str, role: str = "", contact: str = "") -> Member:
    member = Member(name=name, role=role or "", contact=contact or "")
    session.add(member)
    _commit(session, "members", "created", member)
    log.info("Created member %s (%s)", member.name, member.id)
    return member


def update_member(session: Session, member: Member, updates: dict[str, Any]) -> Member:
    apply_updates(member, updates, MEMBER_UPDATABLE_FIELDS)
    _commit(session, "members", "updated", member.id)
    return member


def delete_member(session: Session, member: Member) -> None:
    """Delete a member with their assignments and ratings."""
    member_id = member.id
    session.delete(member)
    _commit(session, "members", "deleted", member_id)
    log.info("Deleted member %s", member_id)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _set_assignments(session: Session, task: Task, member_ids: list[str]) -> None:
    ids = _require_members(session, member_ids)
    task.assignments.clear()
    session.flush()
    for pos, member_id in enumerate(ids):
        task.assignments.append(TaskAssignment(member_id=member_id, position=pos))


def create_task(
    session: Session, *, title: str, description: str = "",
    start_date: datetime | None = None, end_date: datetime | None = None,
    status: str = "not-started", assigned_members: list[str] | None = None,
    subtasks: list[dict[str, Any]] | None = None,
) -> Task:
    task = Task(
        title=title, description=description or "",
        start_date=start_date, end_date=end_date, status=status,
    )
    session.add(task)
    _set_assignments(session, task, assigned_members or [])
    for pos, sub in enumerate(subtasks or []):
        task.subtasks.append(Subtask(title=sub["title"], completed=bool(sub.get("completed")), position=pos))
    _commit(session, "tasks", "created", task)
    log.info("Created task %s (%s)", task.title, task.id)
    return task


def update_task(session: Session, task: Task, updates: dict[str, Any]) -> Task:
    """Partial update; a non-None ``assigned_members`` replaces the assignment set."""
    apply_updates(task, updates, TASK_UPDATABLE_FIELDS)
    if updates.get("assigned_members") is not None:
        _set_assignments(session, task, updates["assigned_members"])
    _commit(session, "tasks", "updated", task.id)
    return task


def update_task_status(session: Session, task: Task, status: str) -> Task:
    return update_task(session, task, {"status": status})


def delete_task(session: Session, task: Task) -> None:
    """Delete a task with its assignments, subtasks, attachments and ratings."""
    task_id = task.id
    session.delete(task)
    _commit(session, "tasks", "deleted", task_id)
    log.info("Deleted task %s", task_id)


def add_subtask(session: Session, task: Task, *, title: str, completed: bool = False) -> Subtask:
    position = max((s.position for s in task.subtasks), default=-1) + 1
    subtask = Subtask(title=title, completed=completed, position=position)
    task.subtasks.append(subtask)
    _commit(session, "tasks", "subtask_added", task.id)
    return subtask


def toggle_subtask(session: Session, task: Task, subtask_id: str) -> Subtask | None:
    subtask = next((s for s in task.subtasks if s.id == subtask_id), None)
    if subtask is None:
        return None
    subtask.completed = not subtask.completed
    _commit(session, "tasks", "subtask_toggled", task.id)
    return subtask


def decode_attachment(base64_data: str) -> bytes:
    """Decode an attachment payload. Accepts ``data:<mime>;base64,`` URLs too."""
    payload = base64_data.split(",", 1)[1] if base64_data.startswith("data:") else base64_data
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Attachment data is not valid base64") from exc


def add_attachment(session: Session, task: Task, *, name: str, type: str, base64_data: str) -> TaskAttachment:
    decode_attachment(base64_data)
    att = TaskAttachment(name=name, type=type or "", base64_data=base64_data)
    task.attachments.append(att)
    _commit(session, "tasks", "attachment_added", task.id)
    return att


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


def add_rating(
    session: Session, *, task: Task, member: Member,
    quality: int, timeliness: int, communication: int, initiative: int,
    comments: str = "", mode: str = "daily", timestamp: datetime | None = None,
) -> Rating:
    rating = Rating(
        task_id=task.id, member_id=member.id,
        quality=quality, timeliness=timeliness,
        communication=communication, initiative=initiative,
        comments=comments or "", mode=mode,
    )
    if timestamp is not None:
        rating.timestamp = timestamp
    session.add(rating)
    _commit(session, "ratings", "created", rating)
    log.info("Recorded %s rating for member %s on task %s", mode, member.id, task.id)
    return rating


def delete_rating(session: Session, rating: Rating) -> None:
    rating_id = rating.id
    session.delete(rating)
    _commit(session, "ratings", "deleted", rating_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


def reset_all(session: Session) -> None:
    for model in (Rating, TaskAttachment, Subtask, TaskAssignment, Task, Member):
        session.execute(delete(model))
    session.commit()
    for collection in ("members", "tasks", "ratings"):
        feed.publish(collection, "reset")
    log.warning("All tracker data deleted")
