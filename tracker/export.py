"""PDF and XLSX performance reports.

All figures are taken from :mod:`tracker.stats`; this module only lays them
out. Reports are returned as bytes so the API can stream them and tests can
inspect them without touching disk.
"""
from __future__ import annotations

import io
import re
from datetime import UTC, datetime

from fpdf import FPDF
from fpdf.fonts import FontFace
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from tracker import stats
from tracker.snapshot import Snapshot, TaskRecord

LAVENDER = (180, 150, 220)
MINT = (150, 200, 180)
PEACH = (255, 180, 150)

DIMENSION_LABELS = (
    ("quality", "Quality of Work"),
    ("timeliness", "Timeliness"),
    ("communication", "Communication/Collaboration"),
    ("initiative", "Initiative"),
)


def report_filename(title: str, suffix: str, ext: str = "pdf") -> str:
    stem = re.sub(r"\s+", "_", title.strip())
    return f"{stem}_{suffix}.{ext}"


def status_label(status: str) -> str:
    return status.replace("-", " ").upper()


def _text(value: object) -> str:
    # Core PDF fonts are latin-1 only.
    return str(value).encode("latin-1", "replace").decode("latin-1")


def _rating(value: float, missing: str = "N/A", suffix: str = "") -> str:
    return f"{value:.2f}{suffix}" if value > 0 else missing


def _fmt_date(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------


class ReportPDF(FPDF):
    def __init__(self, title: str):
        super().__init__()
        self.report_title = title
        self.alias_nb_pages()
        self.set_auto_page_break(auto=True, margin=20)

    def header(self):
        if self.page_no() == 1:
            self.set_fill_color(*LAVENDER)
            self.rect(0, 0, self.w, 40, "F")
            self.set_text_color(255, 255, 255)
            self.set_font("Helvetica", "B", 22)
            self.set_y(12)
            self.cell(0, 10, _text(self.report_title), align="C")
            self.ln(10)
            self.set_font("Helvetica", "", 11)
            self.cell(0, 8, datetime.now(UTC).strftime("%Y-%m-%d"), align="C")
            self.set_y(50)
        else:
            self.set_font("Helvetica", "B", 10)
            self.set_text_color(100, 100, 100)
            self.cell(0, 8, _text(self.report_title), align="R")
            self.ln(10)
        self.set_text_color(0, 0, 0)

    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", "I", 8)
        self.set_text_color(150, 150, 150)
        self.cell(0, 10, f"Page {self.page_no()}/{{nb}}", align="C")

    def section_title(self, title):
        self.set_font("Helvetica", "B", 14)
        self.set_text_color(30, 30, 30)
        self.ln(4)
        self.cell(0, 10, _text(title))
        self.ln(10)

    def heading(self, text):
        self.set_font("Helvetica", "B", 18)
        self.cell(0, 10, _text(text))
        self.ln(10)

    def key_value(self, key, value):
        self.set_font("Helvetica", "B", 11)
        self.set_text_color(40, 40, 40)
        self.cell(45, 6, _text(f"{key}:"))
        self.set_font("Helvetica", "", 11)
        self.cell(0, 6, _text(value))
        self.ln(6)

    def body_text(self, text):
        self.set_font("Helvetica", "", 11)
        self.set_text_color(40, 40, 40)
        self.multi_cell(0, 6, _text(text))
        self.ln(2)

    def data_table(self, head: list[str], rows: list[list[str]], fill=LAVENDER):
        self.set_font("Helvetica", "", 10)
        if not rows:
            rows = [["-"] * len(head)]
        with self.table(headings_style=FontFace(emphasis="BOLD", fill_color=fill)) as table:
            for data_row in [head, *rows]:
                row = table.row()
                for datum in data_row:
                    row.cell(_text(datum))
        self.ln(4)

    def to_bytes(self) -> bytes:
        return bytes(self.output())


def member_report_pdf(snapshot: Snapshot, member_id: str) -> bytes | None:
    member = snapshot.member(member_id)
    if member is None:
        return None
    member_stats = stats.member_statistics(snapshot, member_id)
    ratings = snapshot.ratings_for(member_id=member_id)
    dims = stats.dimension_averages(ratings)

    pdf = ReportPDF("Member Performance Report")
    pdf.add_page()
    pdf.heading(member.name)
    pdf.key_value("Role", member.role or "-")
    pdf.key_value("Contact", member.contact or "-")

    pdf.section_title("Summary Statistics")
    pdf.data_table(["Metric", "Value"], [
        ["Total Tasks Assigned", str(member_stats.total_tasks)],
        ["Completed Tasks", str(member_stats.completed_tasks)],
        ["Completion Rate", f"{member_stats.completion_rate:.1f}%"],
        ["Average Rating", f"{member_stats.average_rating:.2f}/5.0"],
    ])

    pdf.section_title("Dimension-wise Performance")
    pdf.data_table(
        ["Dimension", "Average Rating"],
        [[label, f"{getattr(dims, key):.2f}/5.0"] for key, label in DIMENSION_LABELS],
        fill=MINT,
    )

    pdf.section_title("Task Breakdown")
    task_rows = []
    for task in snapshot.tasks_for(member_id):
        task_ratings = [r for r in ratings if r.task_id == task.id]
        task_rows.append([
            task.title,
            status_label(task.status),
            _rating(stats.mean_rating(task_ratings), "Not Rated", "/5.0"),
            str(len(task_ratings)),
        ])
    pdf.data_table(["Task", "Status", "Avg Rating", "Ratings Count"], task_rows, fill=PEACH)
    return pdf.to_bytes()


def _task_member_rows(snapshot: Snapshot, task: TaskRecord) -> list[list[str]]:
    rows = []
    for entry in stats.task_leaderboard(snapshot, task.id):
        dims = stats.dimension_averages(snapshot.ratings_for(member_id=entry.member.id, task_id=task.id))
        rows.append([
            entry.member.name,
            _rating(entry.average_rating),
            _rating(dims.quality),
            _rating(dims.timeliness),
            str(entry.ratings_count),
        ])
    return rows


def task_report_pdf(snapshot: Snapshot, task_id: str) -> bytes | None:
    task = snapshot.task(task_id)
    task_stats = stats.task_statistics(snapshot, task_id)
    if task is None or task_stats is None:
        return None

    pdf = ReportPDF("Task Performance Report")
    pdf.add_page()
    pdf.heading(task.title)
    pdf.key_value("Status", status_label(task.status))
    pdf.key_value("Timeline", f"{_fmt_date(task.start_date)} - {_fmt_date(task.end_date)}")
    pdf.key_value("Assigned Members", str(task_stats.total_assignees))
    if task.description:
        pdf.section_title("Description")
        pdf.body_text(task.description)

    pdf.section_title("Task Statistics")
    pdf.data_table(["Metric", "Value"], [
        ["Total Subtasks", str(task_stats.total_subtasks)],
        ["Completed Subtasks", str(task_stats.completed_subtasks)],
        ["Completion Rate", f"{task_stats.subtask_completion_rate:.1f}%"],
        ["Total Ratings", str(task_stats.total_ratings)],
    ], fill=MINT)

    pdf.section_title("Member Performance Leaderboard")
    pdf.data_table(
        ["Member", "Avg Rating", "Quality", "Timeliness", "Ratings"],
        _task_member_rows(snapshot, task), fill=PEACH,
    )

    if task.subtasks:
        pdf.section_title("Subtask Checklist")
        pdf.data_table(
            ["Subtask", "Status"],
            [[s.title, "Completed" if s.completed else "Pending"] for s in task.subtasks],
        )
    return pdf.to_bytes()


def team_report_pdf(snapshot: Snapshot) -> bytes:
    pdf = ReportPDF("Overall Team Performance Report")
    pdf.add_page()
    overview = stats.team_overview(snapshot)
    pdf.section_title("Overview")
    pdf.key_value("Members", str(overview.total_members))
    pdf.key_value("Active Tasks", str(overview.active_tasks))
    pdf.key_value("Completed Tasks", str(overview.completed_tasks))
    pdf.key_value("Completion Rate", f"{overview.completion_rate:.1f}%")

    pdf.section_title("Team Leaderboard")
    pdf.data_table(["Member", "Role", "Tasks", "Completed", "Avg Rating", "Ratings"], [
        [
            entry.member.name,
            entry.member.role,
            str(entry.stats.total_tasks),
            str(entry.stats.completed_tasks),
            _rating(entry.stats.average_rating),
            str(len(snapshot.ratings_for(member_id=entry.member.id))),
        ]
        for entry in stats.leaderboard(snapshot)
    ])
    return pdf.to_bytes()


# ---------------------------------------------------------------------------
# XLSX
# ---------------------------------------------------------------------------


def _style_sheet(worksheet) -> None:
    worksheet.freeze_panes = "A2"
    worksheet.auto_filter.ref = worksheet.dimensions

    header_fill = PatternFill(fill_type="solid", fgColor="B496DC")
    header_font = Font(color="FFFFFF", bold=True)
    for cell in worksheet[1]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

    for col_cells in worksheet.columns:
        values = [str(cell.value) if cell.value is not None else "" for cell in col_cells]
        width = min(60, max(12, max(len(value) for value in values) + 2))
        worksheet.column_dimensions[col_cells[0].column_letter].width = width


def team_workbook(snapshot: Snapshot) -> bytes:
    """Leaderboard, Tasks and Ratings sheets in one workbook."""
    workbook = Workbook()
    board = workbook.active
    board.title = "Leaderboard"
    board.append([
        "Rank", "Member", "Role", "Tasks", "Completed", "Completion Rate (%)",
        "Avg Rating", "Quality", "Timeliness", "Communication", "Initiative",
    ])
    for rank, entry in enumerate(stats.leaderboard(snapshot), start=1):
        dims = stats.member_dimension_averages(snapshot, entry.member.id)
        board.append([
            rank, entry.member.name, entry.member.role,
            entry.stats.total_tasks, entry.stats.completed_tasks,
            round(entry.stats.completion_rate, 1),
            round(entry.stats.average_rating, 2),
            round(dims.quality, 2), round(dims.timeliness, 2),
            round(dims.communication, 2), round(dims.initiative, 2),
        ])

    tasks_ws = workbook.create_sheet("Tasks")
    tasks_ws.append(["Task", "Status", "Start", "End", "Assignees", "Subtasks Done", "Subtasks", "Ratings"])
    for task in snapshot.tasks:
        done, total, _ = stats.subtask_progress(task)
        names = [m.name for mid in task.assigned_members if (m := snapshot.member(mid)) is not None]
        tasks_ws.append([
            task.title, status_label(task.status), _fmt_date(task.start_date), _fmt_date(task.end_date),
            ", ".join(names), done, total, len(snapshot.ratings_for(task_id=task.id)),
        ])

    ratings_ws = workbook.create_sheet("Ratings")
    ratings_ws.append([
        "Date", "Member", "Task", "Mode", "Quality", "Timeliness",
        "Communication", "Initiative", "Average", "Comments",
    ])
    for r in snapshot.ratings:
        member = snapshot.member(r.member_id)
        task = snapshot.task(r.task_id)
        ratings_ws.append([
            _fmt_date(r.timestamp), member.name if member else "Unknown", task.title if task else "Unknown",
            r.mode, r.quality, r.timeliness, r.communication, r.initiative,
            round(stats.average_rating_of(r), 2), r.comments,
        ])

    for worksheet in (board, tasks_ws, ratings_ws):
        _style_sheet(worksheet)

    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()
