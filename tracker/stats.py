"""Statistics engine: pure derivations over a :class:`~tracker.snapshot.Snapshot`.

Every function here is side-effect free and tolerant of empty data. A member
or task id that matches nothing yields zero-valued or empty results, never an
exception. The HTTP API, the MCP server and the report exporters all call
these functions so on-screen and exported numbers cannot drift apart.

Ordering
--------
Leaderboards sort by average rating, highest first. Python's sort is stable,
so members with equal averages keep their snapshot order (the overall
leaderboard) or their assignment order (a task leaderboard).
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Iterable

from tracker.snapshot import DIMENSIONS, MemberRecord, RatingRecord, Snapshot, TaskRecord

COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrendPoint:
    date: date
    rating: float

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "rating": self.rating}


@dataclass(frozen=True)
class MemberStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    average_rating: float = 0.0
    completion_rate: float = 0.0
    rating_trend: tuple[TrendPoint, ...] = ()

    def to_dict(self) -> dict:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "average_rating": self.average_rating,
            "completion_rate": self.completion_rate,
            "rating_trend": [p.to_dict() for p in self.rating_trend],
        }


@dataclass(frozen=True)
class DimensionAverages:
    quality: float = 0.0
    timeliness: float = 0.0
    communication: float = 0.0
    initiative: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LeaderboardEntry:
    member: MemberRecord
    stats: MemberStats

    def to_dict(self) -> dict:
        return {"member": self.member.to_dict(), "stats": self.stats.to_dict()}


@dataclass(frozen=True)
class TaskLeaderboardEntry:
    member: MemberRecord
    average_rating: float
    ratings_count: int

    def to_dict(self) -> dict:
        return {
            "member": self.member.to_dict(),
            "average_rating": self.average_rating,
            "ratings_count": self.ratings_count,
        }


@dataclass(frozen=True)
class TaskStats:
    total_assignees: int = 0
    completed_subtasks: int = 0
    total_subtasks: int = 0
    subtask_completion_rate: float = 0.0
    total_ratings: int = 0
    average_ratings: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TeamOverview:
    total_members: int = 0
    total_tasks: int = 0
    active_tasks: int = 0
    completed_tasks: int = 0
    completion_rate: float = 0.0
    total_ratings: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Shared formulas
# ---------------------------------------------------------------------------


def average_rating_of(rating: RatingRecord) -> float:
    """Mean of the four dimension scores of one rating."""
    return (rating.quality + rating.timeliness + rating.communication + rating.initiative) / 4


def mean_rating(ratings: Iterable[RatingRecord]) -> float:
    """Mean of :func:`average_rating_of` over *ratings*, 0.0 when empty."""
    values = [average_rating_of(r) for r in ratings]
    return sum(values) / len(values) if values else 0.0


def dimension_averages(ratings: Iterable[RatingRecord]) -> DimensionAverages:
    ratings = list(ratings)
    if not ratings:
        return DimensionAverages()
    n = len(ratings)
    return DimensionAverages(**{d: sum(getattr(r, d) for r in ratings) / n for d in DIMENSIONS})


def percentage(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def subtask_progress(task: TaskRecord) -> tuple[int, int, float]:
    """Return ``(completed, total, percent)`` for a task's subtasks."""
    done = sum(1 for s in task.subtasks if s.completed)
    total = len(task.subtasks)
    return done, total, percentage(done, total)


def rating_day(ts: datetime) -> date:
    """Calendar day of a rating timestamp, in UTC. Naive values are taken as UTC."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(UTC)
    return ts.date()


def rating_trend(ratings: Iterable[RatingRecord]) -> tuple[TrendPoint, ...]:
    by_day: dict[date, list[float]] = defaultdict(list)
    for r in ratings:
        if r.timestamp is None:
            continue
        by_day[rating_day(r.timestamp)].append(average_rating_of(r))
    return tuple(
        TrendPoint(date=day, rating=sum(vals) / len(vals))
        for day, vals in sorted(by_day.items())
    )


# ---------------------------------------------------------------------------
# Member statistics
# ---------------------------------------------------------------------------


def member_statistics(snapshot: Snapshot, member_id: str) -> MemberStats:
    tasks = snapshot.tasks_for(member_id)
    ratings = snapshot.ratings_for(member_id=member_id)
    completed = sum(1 for t in tasks if t.status == COMPLETED)
    return MemberStats(
        total_tasks=len(tasks),
        completed_tasks=completed,
        average_rating=mean_rating(ratings),
        completion_rate=percentage(completed, len(tasks)),
        rating_trend=rating_trend(ratings),
    )


def member_dimension_averages(snapshot: Snapshot, member_id: str) -> DimensionAverages:
    return dimension_averages(snapshot.ratings_for(member_id=member_id))


def leaderboard(snapshot: Snapshot) -> list[LeaderboardEntry]:
    entries = [LeaderboardEntry(member=m, stats=member_statistics(snapshot, m.id)) for m in snapshot.members]
    entries.sort(key=lambda e: e.stats.average_rating, reverse=True)
    return entries


# ---------------------------------------------------------------------------
# Task statistics
# ---------------------------------------------------------------------------


def _unique_assignees(task: TaskRecord) -> list[str]:
    return list(dict.fromkeys(task.assigned_members))


def task_leaderboard(snapshot: Snapshot, task_id: str) -> list[TaskLeaderboardEntry]:
    """Rank a task's assignees by their average rating on that task only.

    Assigned ids that no longer resolve to a member are skipped.
    """
    task = snapshot.task(task_id)
    if task is None:
        return []
    entries: list[TaskLeaderboardEntry] = []
    for member_id in _unique_assignees(task):
        member = snapshot.member(member_id)
        if member is None:
            continue
        ratings = snapshot.ratings_for(member_id=member_id, task_id=task_id)
        entries.append(TaskLeaderboardEntry(
            member=member, average_rating=mean_rating(ratings), ratings_count=len(ratings),
        ))
    entries.sort(key=lambda e: e.average_rating, reverse=True)
    return entries


def task_statistics(snapshot: Snapshot, task_id: str) -> TaskStats | None:
    task = snapshot.task(task_id)
    if task is None:
        return None
    done, total, rate = subtask_progress(task)
    assignees = _unique_assignees(task)
    return TaskStats(
        total_assignees=len(assignees),
        completed_subtasks=done,
        total_subtasks=total,
        subtask_completion_rate=rate,
        total_ratings=len(snapshot.ratings_for(task_id=task_id)),
        average_ratings={
            mid: mean_rating(snapshot.ratings_for(member_id=mid, task_id=task_id))
            for mid in assignees
        },
    )


def team_overview(snapshot: Snapshot) -> TeamOverview:
    completed = sum(1 for t in snapshot.tasks if t.status == COMPLETED)
    total = len(snapshot.tasks)
    return TeamOverview(
        total_members=len(snapshot.members),
        total_tasks=total,
        active_tasks=total - completed,
        completed_tasks=completed,
        completion_rate=percentage(completed, total),
        total_ratings=len(snapshot.ratings),
    )
