from __future__ import annotations

import json
import logging
import os
import unicodedata
from contextlib import asynccontextmanager
from typing import Generator
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from tracker import export, services, stats
from tracker.db import create_database, current_db_name, get_session, init_db, list_databases, switch_db
from tracker.events import feed
from tracker.models import Member, Rating, Task, TaskAttachment
from tracker.schemas import (
    AttachmentCreate,
    AttachmentOut,
    DatabaseName,
    DimensionAveragesOut,
    LeaderboardEntryOut,
    MemberCreate,
    MemberOut,
    MemberStatsOut,
    MemberUpdate,
    OverviewOut,
    RatingCreate,
    RatingOut,
    SubtaskCreate,
    SubtaskOut,
    TaskCreate,
    TaskLeaderboardEntryOut,
    TaskOut,
    TaskStatsOut,
    TaskStatusUpdate,
    TaskUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Tracker",
    version="0.1.0",
    description=(
        "Team performance tracking API. Manage members, tasks, subtasks and "
        "multi-dimensional ratings; read derived statistics and leaderboards; "
        "export PDF and XLSX reports. All endpoints return JSON unless noted. "
        "No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Members", "description": "Create, browse, update and remove team members."},
        {"name": "Tasks", "description": "Tasks with assignments, subtasks and attachments."},
        {"name": "Ratings", "description": "Per-task performance ratings on four dimensions."},
        {"name": "Stats", "description": "Derived statistics, leaderboards and trends."},
        {"name": "Export", "description": "PDF and XLSX reports."},
        {"name": "Databases", "description": "Switch between team databases."},
        {"name": "Admin", "description": "Change feed and administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: str, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback name and an RFC 5987 UTF-8 name.

    Header values must be Latin-1, so non-ASCII names only travel in ``filename*``.
    """
    ascii_name = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    ascii_name = "".join("_" if ch in '"\\' or not ch.isprintable() else ch for ch in ascii_name).strip()
    if not ascii_name or ascii_name.startswith("."):
        ascii_name = f"download{ascii_name}"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _file_response(content: bytes, filename: str, media_type: str) -> Response:
    return Response(
        content, media_type=media_type,
        headers={"Content-Disposition": content_disposition(filename)},
    )


XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ---------------------------------------------------------------------------
# Routes: Members
# ---------------------------------------------------------------------------


@app.get("/api/members", response_model=list[MemberOut],
         tags=["Members"], summary="List members, newest first, optionally filtered by name or role")
async def list_members(
    search: str | None = Query(None, description="Free-text search across name and role"),
    session: Session = Depends(db_session),
):
    return [services.member_summary(m) for m in services.query_members(session, search)]


@app.post("/api/members", response_model=MemberOut, status_code=201,
          tags=["Members"], summary="Add a team member")
async def create_member(body: MemberCreate, session: Session = Depends(db_session)):
    member = services.create_member(session, name=body.name, role=body.role, contact=body.contact)
    return services.member_summary(member)


@app.get("/api/members/{member_id}", response_model=MemberOut,
         tags=["Members"], summary="Get a member")
async def get_member(member_id: str, session: Session = Depends(db_session)):
    return services.member_summary(_get_or_404(session, Member, member_id, "Member"))


@app.put("/api/members/{member_id}", response_model=MemberOut,
         tags=["Members"], summary="Update member fields (partial update, null fields ignored)")
async def update_member(member_id: str, body: MemberUpdate, session: Session = Depends(db_session)):
    member = _get_or_404(session, Member, member_id, "Member")
    services.update_member(session, member, body.model_dump())
    return services.member_summary(member)


@app.delete("/api/members/{member_id}", tags=["Members"],
            summary="Delete a member with their assignments and ratings")
async def delete_member(member_id: str, session: Session = Depends(db_session)):
    services.delete_member(session, _get_or_404(session, Member, member_id, "Member"))
    return {"ok": True}


@app.get("/api/members/{member_id}/tasks", response_model=list[TaskOut],
         tags=["Members"], summary="All tasks assigned to a member, active and archived")
async def list_member_tasks(member_id: str, session: Session = Depends(db_session)):
    _get_or_404(session, Member, member_id, "Member")
    tasks = services.query_tasks(session, member_id=member_id, archived=None)
    return [services.task_summary(t) for t in tasks]


# ---------------------------------------------------------------------------
# Routes: Tasks
# ---------------------------------------------------------------------------


@app.get("/api/tasks", response_model=list[TaskOut],
         tags=["Tasks"], summary="List tasks (active by default; archived=true for completed)")
async def list_tasks(
    status: str | None = Query(None, description="Comma-separated: not-started, in-progress, review, completed"),
    search: str | None = Query(None, description="Free-text search across title and description"),
    archived: bool = Query(False, description="false: active only, true: completed (archived) only"),
    include_all: bool = Query(False, alias="all", description="Return active and archived tasks together"),
    session: Session = Depends(db_session),
):
    tasks = services.query_tasks(session, status=status, search=search, archived=None if include_all else archived)
    return [services.task_summary(t) for t in tasks]


@app.post("/api/tasks", response_model=TaskOut, status_code=201,
          tags=["Tasks"], summary="Create a task with assignments and initial subtasks")
async def create_task(body: TaskCreate, session: Session = Depends(db_session)):
    try:
        task = services.create_task(
            session, title=body.title, description=body.description,
            start_date=body.start_date, end_date=body.end_date, status=body.status,
            assigned_members=body.assigned_members,
            subtasks=[s.model_dump() for s in body.subtasks],
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return services.task_summary(task)


@app.get("/api/tasks/{task_id}", response_model=TaskOut,
         tags=["Tasks"], summary="Get a task with subtasks and attachment metadata")
async def get_task(task_id: str, session: Session = Depends(db_session)):
    return services.task_summary(_get_or_404(session, Task, task_id, "Task"))


@app.put("/api/tasks/{task_id}", response_model=TaskOut,
         tags=["Tasks"], summary="Update task fields (partial); assigned_members replaces the set")
async def update_task(task_id: str, body: TaskUpdate, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    try:
        services.update_task(session, task, body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return services.task_summary(task)


@app.put("/api/tasks/{task_id}/status", response_model=TaskOut,
         tags=["Tasks"], summary="Move a task to another status")
async def update_task_status(task_id: str, body: TaskStatusUpdate, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    services.update_task_status(session, task, body.status)
    return services.task_summary(task)


@app.delete("/api/tasks/{task_id}", tags=["Tasks"],
            summary="Delete a task with its subtasks, attachments and ratings")
async def delete_task(task_id: str, session: Session = Depends(db_session)):
    services.delete_task(session, _get_or_404(session, Task, task_id, "Task"))
    return {"ok": True}


@app.post("/api/tasks/{task_id}/subtasks", response_model=SubtaskOut, status_code=201,
          tags=["Tasks"], summary="Add a subtask")
async def add_subtask(task_id: str, body: SubtaskCreate, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    return services.subtask_summary(services.add_subtask(session, task, title=body.title, completed=body.completed))


@app.post("/api/tasks/{task_id}/subtasks/{subtask_id}/toggle", response_model=SubtaskOut,
          tags=["Tasks"], summary="Flip a subtask's completion flag")
async def toggle_subtask(task_id: str, subtask_id: str, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    subtask = services.toggle_subtask(session, task, subtask_id)
    if subtask is None:
        raise HTTPException(404, "Subtask not found")
    return services.subtask_summary(subtask)


@app.post("/api/tasks/{task_id}/attachments", response_model=AttachmentOut, status_code=201,
          tags=["Tasks"], summary="Attach a base64-encoded file to a task")
async def add_attachment(task_id: str, body: AttachmentCreate, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    try:
        att = services.add_attachment(session, task, name=body.name, type=body.type, base64_data=body.base64_data)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return services.attachment_summary(att)


@app.get("/api/attachments/{attachment_id}", tags=["Tasks"], summary="Download an attachment's content")
async def download_attachment(attachment_id: str, session: Session = Depends(db_session)):
    att = _get_or_404(session, TaskAttachment, attachment_id, "Attachment")
    return _file_response(
        services.decode_attachment(att.base64_data), att.name, att.type or "application/octet-stream",
    )


# ---------------------------------------------------------------------------
# Routes: Ratings
# ---------------------------------------------------------------------------


@app.get("/api/ratings", response_model=list[RatingOut],
         tags=["Ratings"], summary="List ratings, newest first, filtered by task and/or member")
async def list_ratings(
    task_id: str | None = Query(None), member_id: str | None = Query(None),
    session: Session = Depends(db_session),
):
    return [services.rating_summary(r) for r in services.query_ratings(session, task_id=task_id, member_id=member_id)]


@app.post("/api/ratings", response_model=RatingOut, status_code=201,
          tags=["Ratings"], summary="Record a daily or final rating for a member on a task")
async def create_rating(body: RatingCreate, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, body.task_id, "Task")
    member = _get_or_404(session, Member, body.member_id, "Member")
    rating = services.add_rating(
        session, task=task, member=member, **body.dimensions.model_dump(),
        comments=body.comments, mode=body.mode, timestamp=body.timestamp,
    )
    return services.rating_summary(rating)


@app.delete("/api/ratings/{rating_id}", tags=["Ratings"], summary="Delete a rating")
async def delete_rating(rating_id: str, session: Session = Depends(db_session)):
    services.delete_rating(session, _get_or_404(session, Rating, rating_id, "Rating"))
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/overview", response_model=OverviewOut,
         tags=["Stats"], summary="Team totals: members, active/completed tasks, completion rate")
async def get_overview(session: Session = Depends(db_session)):
    return stats.team_overview(services.load_snapshot(session)).to_dict()


@app.get("/api/leaderboard", response_model=list[LeaderboardEntryOut],
         tags=["Stats"], summary="All members ranked by average rating (ties keep list order)")
async def get_leaderboard(session: Session = Depends(db_session)):
    return [e.to_dict() for e in stats.leaderboard(services.load_snapshot(session))]


@app.get("/api/members/{member_id}/stats", response_model=MemberStatsOut,
         tags=["Stats"], summary="Task counts, completion rate, average rating and daily trend")
async def get_member_stats(member_id: str, session: Session = Depends(db_session)):
    return stats.member_statistics(services.load_snapshot(session), member_id).to_dict()


@app.get("/api/members/{member_id}/dimensions", response_model=DimensionAveragesOut,
         tags=["Stats"], summary="Mean of each rating dimension for a member")
async def get_member_dimensions(member_id: str, session: Session = Depends(db_session)):
    return stats.member_dimension_averages(services.load_snapshot(session), member_id).to_dict()


@app.get("/api/tasks/{task_id}/leaderboard", response_model=list[TaskLeaderboardEntryOut],
         tags=["Stats"], summary="Assigned members ranked by their average rating on this task")
async def get_task_leaderboard(task_id: str, session: Session = Depends(db_session)):
    return [e.to_dict() for e in stats.task_leaderboard(services.load_snapshot(session), task_id)]


@app.get("/api/tasks/{task_id}/stats", response_model=TaskStatsOut,
         tags=["Stats"], summary="Subtask progress, rating count and per-member averages for a task")
async def get_task_stats(task_id: str, session: Session = Depends(db_session)):
    result = stats.task_statistics(services.load_snapshot(session), task_id)
    if result is None:
        raise HTTPException(404, "Task not found")
    return result.to_dict()


# ---------------------------------------------------------------------------
# Routes: Export
# ---------------------------------------------------------------------------


@app.get("/api/export/members/{member_id}.pdf", tags=["Export"], summary="Member performance report (PDF)")
async def export_member(member_id: str, session: Session = Depends(db_session)):
    snapshot = services.load_snapshot(session)
    content = export.member_report_pdf(snapshot, member_id)
    if content is None:
        raise HTTPException(404, "Member not found")
    name = snapshot.member(member_id).name
    return _file_response(content, export.report_filename(name, "Performance_Report"), "application/pdf")


@app.get("/api/export/tasks/{task_id}.pdf", tags=["Export"], summary="Task performance report (PDF)")
async def export_task(task_id: str, session: Session = Depends(db_session)):
    snapshot = services.load_snapshot(session)
    content = export.task_report_pdf(snapshot, task_id)
    if content is None:
        raise HTTPException(404, "Task not found")
    title = snapshot.task(task_id).title
    return _file_response(content, export.report_filename(title, "Task_Report"), "application/pdf")


@app.get("/api/export/team.pdf", tags=["Export"], summary="Overall team leaderboard report (PDF)")
async def export_team_pdf(session: Session = Depends(db_session)):
    content = export.team_report_pdf(services.load_snapshot(session))
    return _file_response(content, export.report_filename("Team Performance", "Report"), "application/pdf")


@app.get("/api/export/team.xlsx", tags=["Export"], summary="Leaderboard, tasks and ratings workbook (XLSX)")
async def export_team_xlsx(session: Session = Depends(db_session)):
    content = export.team_workbook(services.load_snapshot(session))
    return _file_response(content, export.report_filename("Team Performance", "Export", "xlsx"), XLSX_MEDIA_TYPE)


# ---------------------------------------------------------------------------
# Routes: Databases
# ---------------------------------------------------------------------------


@app.get("/api/databases", tags=["Databases"], summary="List available team databases")
async def list_databases_route():
    return {"databases": list_databases(), "current": current_db_name()}


@app.post("/api/databases/select", tags=["Databases"], summary="Switch to a different team database")
async def select_database(body: DatabaseName):
    try:
        switch_db(body.name)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    for collection in ("members", "tasks", "ratings"):
        feed.publish(collection, "reloaded")
    return {"current": current_db_name()}


@app.post("/api/databases/create", tags=["Databases"], summary="Create a new empty team database")
async def create_database_route(body: DatabaseName):
    try:
        create_database(body.name)
    except ValueError as exc:
        status = 409 if "already exists" in str(exc) else 400
        raise HTTPException(status, str(exc)) from exc
    return {"current": current_db_name()}


# ---------------------------------------------------------------------------
# Routes: Change feed & Reset
# ---------------------------------------------------------------------------


@app.get("/api/events", tags=["Admin"], summary="Server-sent change events; re-fetch on each event")
async def stream_events(request: Request):
    async def stream():
        yield f"data: {json.dumps({'type': 'ready'})}\n\n"
        async for evt in feed.subscribe():
            if await request.is_disconnected():
                break
            yield f"data: {json.dumps({'type': 'change', **evt.to_dict()})}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.delete("/api/reset", tags=["Admin"], summary="Delete all members, tasks and ratings")
async def reset_db(session: Session = Depends(db_session)):
    services.reset_all(session)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run(
        "tracker.app:app",
        host=os.environ.get("TRACKER_HOST", "127.0.0.1"),
        port=int(os.environ.get("TRACKER_PORT", "8001")),
        reload=True,
    )


if __name__ == "__main__":
    main()
