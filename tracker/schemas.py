"""Pydantic request/response schemas for the Tracker API."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

TaskStatus = Literal["not-started", "in-progress", "review", "completed"]
RatingMode = Literal["daily", "final"]
Score = Annotated[int, Field(ge=1, le=5)]


def to_naive_utc(value: datetime | None) -> datetime | None:
    """SQLite keeps naive datetimes; store everything as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class MemberOut(BaseModel):
    id: str
    name: str
    role: str
    contact: str
    created_at: str | None = None


class MemberCreate(BaseModel):
    name: str = Field(min_length=1)
    role: str = ""
    contact: str = ""


class MemberUpdate(BaseModel):
    name: str | None = Field(None, min_length=1)
    role: str | None = None
    contact: str | None = None


class SubtaskOut(BaseModel):
    id: str
    title: str
    completed: bool


class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1)
    completed: bool = False


class AttachmentOut(BaseModel):
    id: str
    name: str
    type: str
    uploaded_at: str | None = None


class AttachmentCreate(BaseModel):
    name: str = Field(min_length=1)
    type: str = ""
    base64_data: str


class TaskOut(BaseModel):
    id: str
    title: str
    description: str
    start_date: str | None = None
    end_date: str | None = None
    status: TaskStatus
    assigned_members: list[str] = []
    subtasks: list[SubtaskOut] = []
    attachments: list[AttachmentOut] = []
    created_at: str | None = None


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None
    status: TaskStatus = "not-started"
    assigned_members: list[str] = []
    subtasks: list[SubtaskCreate] = []

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_to_utc(cls, v: datetime | None) -> datetime | None:
        return to_naive_utc(v)


class TaskUpdate(BaseModel):
    title: str | None = Field(None, min_length=1)
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    status: TaskStatus | None = None
    assigned_members: list[str] | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_to_utc(cls, v: datetime | None) -> datetime | None:
        return to_naive_utc(v)


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class Dimensions(BaseModel):
    quality: Score
    timeliness: Score
    communication: Score
    initiative: Score


class DimensionsOut(BaseModel):
    quality: float
    timeliness: float
    communication: float
    initiative: float


class RatingOut(BaseModel):
    id: str
    task_id: str
    member_id: str
    dimensions: DimensionsOut
    comments: str
    mode: RatingMode
    timestamp: str | None = None


class RatingCreate(BaseModel):
    task_id: str
    member_id: str
    dimensions: Dimensions
    comments: str = ""
    mode: RatingMode = "daily"
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_to_utc(cls, v: datetime | None) -> datetime | None:
        return to_naive_utc(v)


class TrendPointOut(BaseModel):
    date: str
    rating: float


class MemberStatsOut(BaseModel):
    total_tasks: int
    completed_tasks: int
    average_rating: float
    completion_rate: float
    rating_trend: list[TrendPointOut]


class DimensionAveragesOut(BaseModel):
    quality: float
    timeliness: float
    communication: float
    initiative: float


class LeaderboardEntryOut(BaseModel):
    member: MemberOut
    stats: MemberStatsOut


class TaskLeaderboardEntryOut(BaseModel):
    member: MemberOut
    average_rating: float
    ratings_count: int


class TaskStatsOut(BaseModel):
    total_assignees: int
    completed_subtasks: int
    total_subtasks: int
    subtask_completion_rate: float
    total_ratings: int
    average_ratings: dict[str, float]


class OverviewOut(BaseModel):
    total_members: int
    total_tasks: int
    active_tasks: int
    completed_tasks: int
    completion_rate: float
    total_ratings: int


class DatabaseName(BaseModel):
    name: str
