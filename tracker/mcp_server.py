from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from tracker import services, stats
from tracker.db import current_db_name, get_session, init_db, list_databases, switch_db
from tracker.models import Member, Task
from tracker.schemas import to_naive_utc
from tracker.snapshot import DIMENSIONS, RATING_MODES, TASK_STATUSES

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def tracker_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Tracker",
    instructions=(
        "Tracker records team members, the tasks they are assigned to and "
        "daily or final ratings of their work. Start with get_overview(), then "
        "get_leaderboard() or list_members() to browse, then get_member_stats(id) "
        "or get_task_stats(id) for details."
    ),
    lifespan=tracker_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    return to_naive_utc(datetime.fromisoformat(value))


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("tracker://overview")
def tracker_overview() -> str:
    """Overview of Tracker: data model, workflow and rating scale."""
    return json.dumps({
        "system": "Tracker - Team Performance Tracking",
        "data_model": {
            "member": "A team member with name, role and contact.",
            "task": "A unit of work with dates, a status, assigned members, subtasks and attachments.",
            "rating": "A score of one member's work on one task across four dimensions, each 1-5.",
        },
        "workflow": [
            "0. list_tracker_databases() to see available databases. select_tracker_database(name) to switch.",
            "1. get_overview() for team totals.",
            "2. list_members() / list_tasks() to browse.",
            "3. add_rating(task_id, member_id, ...) to record performance.",
            "4. get_member_stats(id), get_task_stats(id), get_leaderboard() for derived numbers.",
        ],
        "statuses": list(TASK_STATUSES),
        "rating_modes": list(RATING_MODES),
        "dimensions": list(DIMENSIONS),
        "scale": "Each dimension is an integer from 1 (poor) to 5 (excellent). "
                 "A rating's average is the mean of its four dimensions.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Members
# ---------------------------------------------------------------------------


@mcp.tool()
def list_members(search: str | None = None) -> list[dict]:
    """List team members, newest first.

    Args:
        search: Free-text filter across name and role.
    """
    with _session() as session:
        return [services.member_summary(m) for m in services.query_members(session, search)]


@mcp.tool()
def get_member(member_id: str) -> dict:
    """Get a member with their assigned tasks and statistics."""
    with _session() as session:
        member, err = _get_or_error(session, Member, member_id, "Member")
        if err:
            return err
        snapshot = services.load_snapshot(session)
        return {
            **services.member_summary(member),
            "tasks": [services.task_summary(t) for t in services.query_tasks(session, member_id=member_id, archived=None)],
            "stats": stats.member_statistics(snapshot, member_id).to_dict(),
            "dimensions": stats.member_dimension_averages(snapshot, member_id).to_dict(),
        }


@mcp.tool()
def create_member(name: str, role: str = "", contact: str = "") -> dict:
    """Add a new team member."""
    if not name.strip():
        return {"error": "Member name is required"}
    with _session() as session:
        return services.member_summary(services.create_member(session, name=name.strip(), role=role, contact=contact))


@mcp.tool()
def update_member(
    member_id: str, name: str | None = None, role: str | None = None, contact: str | None = None,
) -> dict:
    """Update a member's fields. Only provided (non-null) fields are changed."""
    if name is not None and not name.strip():
        return {"error": "Member name cannot be empty"}
    with _session() as session:
        member, err = _get_or_error(session, Member, member_id, "Member")
        if err:
            return err
        services.update_member(session, member, {"name": name, "role": role, "contact": contact})
        return services.member_summary(member)


# ---------------------------------------------------------------------------
# Tools: Tasks
# ---------------------------------------------------------------------------


@mcp.tool()
def list_tasks(status: str | None = None, search: str | None = None, archived: bool = False) -> list[dict]:
    """List tasks, newest first.

    Args:
        status: Comma-separated filter from not-started, in-progress, review, completed.
        search: Free-text search across title and description.
        archived: False for active tasks, True for completed (archived) tasks.
    """
    with _session() as session:
        tasks = services.query_tasks(session, status=status, search=search, archived=archived)
        return [services.task_summary(t) for t in tasks]


@mcp.tool()
def get_task(task_id: str) -> dict:
    """Get a task with subtasks, attachment metadata and statistics."""
    with _session() as session:
        task, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        snapshot = services.load_snapshot(session)
        return {
            **services.task_summary(task),
            "stats": stats.task_statistics(snapshot, task_id).to_dict(),
        }


@mcp.tool()
def create_task(
    title: str, description: str = "", start_date: str | None = None, end_date: str | None = None,
    status: str = "not-started", assigned_members: list[str] | None = None,
    subtasks: list[str] | None = None,
) -> dict:
    """Create a task.

    Args:
        title: Task title (required).
        start_date: ISO date or datetime.
        end_date: ISO date or datetime.
        status: One of not-started, in-progress, review, completed.
        assigned_members: Member ids to assign.
        subtasks: Subtask titles, created unchecked.
    """
    if not title.strip():
        return {"error": "Task title is required"}
    if status not in TASK_STATUSES:
        return {"error": f"Invalid status. Must be one of: {', '.join(TASK_STATUSES)}"}
    try:
        start, end = _parse_date(start_date), _parse_date(end_date)
    except ValueError as exc:
        return {"error": f"Invalid date: {exc}"}
    with _session() as session:
        try:
            task = services.create_task(
                session, title=title.strip(), description=description,
                start_date=start, end_date=end, status=status,
                assigned_members=assigned_members or [],
                subtasks=[{"title": s} for s in subtasks or [] if s.strip()],
            )
        except ValueError as exc:
            session.rollback()
            return {"error": str(exc)}
        return services.task_summary(task)


@mcp.tool()
def set_task_status(task_id: str, status: str) -> dict:
    """Move a task to another status. Setting 'completed' archives it."""
    if status not in TASK_STATUSES:
        return {"error": f"Invalid status. Must be one of: {', '.join(TASK_STATUSES)}"}
    with _session() as session:
        task, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        services.update_task_status(session, task, status)
        return services.task_summary(task)


@mcp.tool()
def add_subtask(task_id: str, title: str) -> dict:
    """Append an unchecked subtask to a task."""
    if not title.strip():
        return {"error": "Subtask title is required"}
    with _session() as session:
        task, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        return services.subtask_summary(services.add_subtask(session, task, title=title.strip()))


@mcp.tool()
def toggle_subtask(task_id: str, subtask_id: str) -> dict:
    """Flip a subtask between done and not done."""
    with _session() as session:
        task, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        subtask = services.toggle_subtask(session, task, subtask_id)
        if subtask is None:
            return {"error": f"Subtask {subtask_id} not found"}
        return services.subtask_summary(subtask)


# ---------------------------------------------------------------------------
# Tools: Ratings
# ---------------------------------------------------------------------------


@mcp.tool()
def add_rating(
    task_id: str, member_id: str,
    quality: int, timeliness: int, communication: int, initiative: int,
    comments: str = "", mode: str = "daily",
) -> dict:
    """Rate a member's work on a task. Each dimension is an integer from 1 to 5.

    Args:
        mode: "daily" for a progress check-in, "final" for the closing review.
    """
    scores = {"quality": quality, "timeliness": timeliness,
              "communication": communication, "initiative": initiative}
    bad = [k for k, v in scores.items() if isinstance(v, bool) or not isinstance(v, int) or not 1 <= v <= 5]
    if bad:
        return {"error": f"Scores must be integers from 1 to 5: {', '.join(bad)}"}
    if mode not in RATING_MODES:
        return {"error": f"Invalid mode. Must be one of: {', '.join(RATING_MODES)}"}
    with _session() as session:
        task, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        member, err = _get_or_error(session, Member, member_id, "Member")
        if err:
            return err
        rating = services.add_rating(session, task=task, member=member, comments=comments, mode=mode, **scores)
        return services.rating_summary(rating)


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_overview() -> dict:
    """Team totals: members, active and completed tasks, completion rate, ratings."""
    with _session() as session:
        return stats.team_overview(services.load_snapshot(session)).to_dict()


@mcp.tool()
def get_member_stats(member_id: str) -> dict:
    """Task counts, completion rate, average rating and daily rating trend for a member."""
    with _session() as session:
        _, err = _get_or_error(session, Member, member_id, "Member")
        if err:
            return err
        return stats.member_statistics(services.load_snapshot(session), member_id).to_dict()


@mcp.tool()
def get_member_dimensions(member_id: str) -> dict:
    """Average score per rating dimension for a member."""
    with _session() as session:
        _, err = _get_or_error(session, Member, member_id, "Member")
        if err:
            return err
        return stats.member_dimension_averages(services.load_snapshot(session), member_id).to_dict()


@mcp.tool()
def get_leaderboard(limit: int = 50) -> list[dict]:
    """Members ranked by average rating, highest first.

    Args:
        limit: Max entries to return; 0 or less returns an empty list.
    """
    with _session() as session:
        entries = stats.leaderboard(services.load_snapshot(session))
        return [e.to_dict() for e in entries[:max(0, limit)]]


@mcp.tool()
def get_task_leaderboard(task_id: str) -> list[dict]:
    """A task's assigned members ranked by their average rating on that task."""
    with _session() as session:
        return [e.to_dict() for e in stats.task_leaderboard(services.load_snapshot(session), task_id)]


@mcp.tool()
def get_task_stats(task_id: str) -> dict:
    """Subtask progress, rating count and per-member averages for a task."""
    with _session() as session:
        result = stats.task_statistics(services.load_snapshot(session), task_id)
        if result is None:
            return {"error": f"Task {task_id} not found"}
        return result.to_dict()


# ---------------------------------------------------------------------------
# Tools: Databases
# ---------------------------------------------------------------------------


@mcp.tool()
def list_tracker_databases() -> dict:
    """List all available Tracker databases and show which one is currently active."""
    return {"databases": list_databases(), "current": current_db_name()}


@mcp.tool()
def select_tracker_database(name: str) -> dict:
    """Switch to a different Tracker database. Creates it if it doesn't exist."""
    try:
        switch_db(name)
    except ValueError as exc:
        return {"error": str(exc)}
    return {"current": current_db_name(), "message": f"Switched to database '{current_db_name()}'"}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Tracker MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
