"""Plain, read-only records handed to the statistics engine.

The persistence layer converts ORM rows into these once per refresh, so the
engine never touches a session and never sees a half-updated collection.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("not-started", "in-progress", "review", "completed")
RATING_MODES = ("daily", "final")
DIMENSIONS = ("quality", "timeliness", "communication", "initiative")


@dataclass(frozen=True)
class MemberRecord:
    id: str
    name: str
    role: str = ""
    contact: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "role": self.role, "contact": self.contact,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class SubtaskRecord:
    id: str
    title: str
    completed: bool = False


@dataclass(frozen=True)
class AttachmentRecord:
    id: str
    name: str
    type: str = ""
    uploaded_at: datetime | None = None


@dataclass(frozen=True)
class TaskRecord:
    id: str
    title: str
    description: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None
    status: str = "not-started"
    assigned_members: tuple[str, ...] = ()
    subtasks: tuple[SubtaskRecord, ...] = ()
    attachments: tuple[AttachmentRecord, ...] = ()
    created_at: datetime | None = None


@dataclass(frozen=True)
class RatingRecord:
    id: str
    task_id: str
    member_id: str
    quality: float
    timeliness: float
    communication: float
    initiative: float
    comments: str = ""
    mode: str = "daily"
    timestamp: datetime | None = None


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of the three collections."""

    members: tuple[MemberRecord, ...] = ()
    tasks: tuple[TaskRecord, ...] = ()
    ratings: tuple[RatingRecord, ...] = ()
    _members_by_id: dict[str, MemberRecord] = field(init=False, repr=False, compare=False)
    _tasks_by_id: dict[str, TaskRecord] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Callers may pass lists.
        object.__setattr__(self, "members", tuple(self.members))
        object.__setattr__(self, "tasks", tuple(self.tasks))
        object.__setattr__(self, "ratings", tuple(self.ratings))
        object.__setattr__(self, "_members_by_id", {m.id: m for m in self.members})
        object.__setattr__(self, "_tasks_by_id", {t.id: t for t in self.tasks})

    def member(self, member_id: str) -> MemberRecord | None:
        return self._members_by_id.get(member_id)

    def task(self, task_id: str) -> TaskRecord | None:
        return self._tasks_by_id.get(task_id)

    def ratings_for(self, *, member_id: str | None = None, task_id: str | None = None) -> list[RatingRecord]:
        return [
            r for r in self.ratings
            if (member_id is None or r.member_id == member_id)
            and (task_id is None or r.task_id == task_id)
        ]

    def tasks_for(self, member_id: str) -> list[TaskRecord]:
        return [t for t in self.tasks if member_id in t.assigned_members]
