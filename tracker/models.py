from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    # SQLite stores naive datetimes; keep everything in naive UTC.
    return datetime.now(UTC).replace(tzinfo=None)


class Member(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(200), default="")
    contact: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    assignments: Mapped[list[TaskAssignment]] = relationship(
        "TaskAssignment", back_populates="member", cascade="all, delete-orphan",
    )
    ratings: Mapped[list[Rating]] = relationship("Rating", back_populates="member", cascade="all, delete-orphan")


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="not-started")  # not-started | in-progress | review | completed
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    assignments: Mapped[list[TaskAssignment]] = relationship(
        "TaskAssignment", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskAssignment.position",
    )
    subtasks: Mapped[list[Subtask]] = relationship(
        "Subtask", back_populates="task", cascade="all, delete-orphan", order_by="Subtask.position",
    )
    attachments: Mapped[list[TaskAttachment]] = relationship(
        "TaskAttachment", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskAttachment.uploaded_at",
    )
    ratings: Mapped[list[Rating]] = relationship("Rating", back_populates="task", cascade="all, delete-orphan")

    @property
    def assigned_member_ids(self) -> list[str]:
        return [a.member_id for a in self.assignments]


class TaskAssignment(Base):
    __tablename__ = "task_assignments"

    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True)
    member_id: Mapped[str] = mapped_column(String(36), ForeignKey("members.id", ondelete="CASCADE"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    task: Mapped[Task] = relationship("Task", back_populates="assignments")
    member: Mapped[Member] = relationship("Member", back_populates="assignments")


class Subtask(Base):
    __tablename__ = "subtasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    task: Mapped[Task] = relationship("Task", back_populates="subtasks")


class TaskAttachment(Base):
    __tablename__ = "task_attachments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    type: Mapped[str] = mapped_column(String(100), default="")
    base64_data: Mapped[str] = mapped_column(Text, default="")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    task: Mapped[Task] = relationship("Task", back_populates="attachments")


class Rating(Base):
    __tablename__ = "ratings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    member_id: Mapped[str] = mapped_column(String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    quality: Mapped[int] = mapped_column(Integer, nullable=False)
    timeliness: Mapped[int] = mapped_column(Integer, nullable=False)
    communication: Mapped[int] = mapped_column(Integer, nullable=False)
    initiative: Mapped[int] = mapped_column(Integer, nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="")
    mode: Mapped[str] = mapped_column(String(10), default="daily")  # daily | final
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    task: Mapped[Task] = relationship("Task", back_populates="ratings")
    member: Mapped[Member] = relationship("Member", back_populates="ratings")
