"""Portable export of one owner's data as a workbook or a zip of CSVs.

Both containers carry the same seven tables with fixed, ordered column
sets. The importer validates against exactly these headers.
"""

import csv
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from openpyxl import Workbook
from sqlmodel import Session, select

from models import FocusSession, PomodoroEvent, Project, Task, TaskQueueItem, UserSettings
from services.clock import to_iso, utc_now
from services.error_handler import InvalidInputError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
APP_TAG = "doittimer"

EXPORT_SHEETS = ("Manifest", "Projects", "Tasks", "Sessions", "PomodoroEvents", "Queue", "Settings")

EXPORT_HEADERS: dict[str, tuple[str, ...]] = {
    "Manifest": ("key", "value"),
    "Projects": ("id", "name", "archived_at", "created_at", "updated_at"),
    "Tasks": (
        "id",
        "title",
        "completed",
        "project_id",
        "archived_at",
        "created_at",
        "updated_at",
        "pomodoro_work_minutes",
        "pomodoro_short_break_minutes",
        "pomodoro_long_break_minutes",
        "pomodoro_long_break_every",
    ),
    "Sessions": (
        "id",
        "task_id",
        "started_at",
        "ended_at",
        "duration_seconds",
        "music_url",
        "pomodoro_phase",
        "pomodoro_phase_started_at",
        "pomodoro_is_paused",
        "pomodoro_paused_at",
        "pomodoro_cycle_count",
    ),
    "PomodoroEvents": ("id", "session_id", "task_id", "event_type", "pomodoro_cycle_count", "occurred_at"),
    "Queue": ("task_id", "sort_order", "created_at"),
    "Settings": (
        "timezone",
        "default_task_id",
        "created_at",
        "updated_at",
        "pomodoro_work_minutes",
        "pomodoro_short_break_minutes",
        "pomodoro_long_break_minutes",
        "pomodoro_long_break_every",
        "pomodoro_v2_enabled",
    ),
}

FORMATS = {"xlsx": "xlsx", "workbook": "xlsx", "zip": "zip", "archive": "zip"}
MEDIA_TYPES = {
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "zip": "application/zip",
}


@dataclass
class ExportData:
    projects: list[dict] = field(default_factory=list)
    tasks: list[dict] = field(default_factory=list)
    sessions: list[dict] = field(default_factory=list)
    pomodoro_events: list[dict] = field(default_factory=list)
    queue: list[dict] = field(default_factory=list)
    settings: Optional[dict] = None

    def tables(self) -> list[tuple[str, list[dict]]]:
        return [
            ("Projects", self.projects),
            ("Tasks", self.tasks),
            ("Sessions", self.sessions),
            ("PomodoroEvents", self.pomodoro_events),
            ("Queue", self.queue),
            ("Settings", [self.settings] if self.settings else []),
        ]


def _cell(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _rows(records, sheet: str) -> list[dict]:
    headers = EXPORT_HEADERS[sheet]
    return [{header: _cell(getattr(record, header, None)) for header in headers} for record in records]


def collect_export_data(db: Session, user_id: str) -> ExportData:
    """Read every exportable row the owner has, in a stable order.

    Sessions are limited to ended ones. The importer requires ``ended_at``,
    so a running session could never come back in; leaving it out keeps an
    export-then-import round trip free of skipped rows.
    """
    projects = db.exec(
        select(Project).where(Project.user_id == user_id).order_by(Project.created_at, Project.id)
    ).all()
    tasks = db.exec(select(Task).where(Task.user_id == user_id).order_by(Task.created_at, Task.id)).all()
    sessions = db.exec(
        select(FocusSession)
        # Ended sessions only
        .where(FocusSession.user_id == user_id, FocusSession.ended_at.is_not(None))
        .order_by(FocusSession.started_at, FocusSession.id)
    ).all()
    events = db.exec(
        select(PomodoroEvent)
        .where(PomodoroEvent.user_id == user_id)
        .order_by(PomodoroEvent.occurred_at, PomodoroEvent.id)
    ).all()
    queue = db.exec(
        select(TaskQueueItem)
        .where(TaskQueueItem.user_id == user_id)
        .order_by(TaskQueueItem.sort_order, TaskQueueItem.created_at)
    ).all()
    settings = db.get(UserSettings, user_id)

    return ExportData(
        projects=_rows(projects, "Projects"),
        tasks=_rows(tasks, "Tasks"),
        sessions=_rows(sessions, "Sessions"),
        pomodoro_events=_rows(events, "PomodoroEvents"),
        queue=_rows(queue, "Queue"),
        settings=_rows([settings], "Settings")[0] if settings else None,
    )


def manifest_rows(data: ExportData, exported_at: str) -> list[tuple[str, str]]:
    return [
        ("schema_version", SCHEMA_VERSION),
        ("exported_at", exported_at),
        ("app", APP_TAG),
        ("notes", ""),
        ("projects_count", str(len(data.projects))),
        ("tasks_count", str(len(data.tasks))),
        ("sessions_count", str(len(data.sessions))),
        ("pomodoro_events_count", str(len(data.pomodoro_events))),
        ("queue_count", str(len(data.queue))),
        ("settings_present", "1" if data.settings else "0"),
    ]


def build_workbook(data: ExportData, exported_at: Optional[str] = None) -> bytes:
    exported_at = exported_at or to_iso(utc_now())
    workbook = Workbook()
    manifest = workbook.active
    manifest.title = "Manifest"
    manifest.append(list(EXPORT_HEADERS["Manifest"]))
    for key, value in manifest_rows(data, exported_at):
        manifest.append([key, value])

    for name, rows in data.tables():
        headers = EXPORT_HEADERS[name]
        sheet = workbook.create_sheet(name)
        sheet.append(list(headers))
        for row in rows:
            sheet.append([row.get(header) for header in headers])
    workbook.active = EXPORT_SHEETS.index("Tasks")

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _csv_text(headers: tuple[str, ...], rows: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_csv_value(row.get(header)) for header in headers])
    return buffer.getvalue()


def build_archive(data: ExportData, exported_at: Optional[str] = None) -> bytes:
    """Zip with ``manifest.json`` plus one CSV per table."""
    exported_at = exported_at or to_iso(utc_now())
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("manifest.json", json.dumps(dict(manifest_rows(data, exported_at)), indent=2))
        for name, rows in data.tables():
            archive.writestr(f"{name}.csv", _csv_text(EXPORT_HEADERS[name], rows))
    return buffer.getvalue()


def resolve_format(value: Optional[str]) -> str:
    fmt = FORMATS.get((value or "").strip().lower())
    if fmt is None:
        raise InvalidInputError("Invalid format", details={"allowed": sorted(FORMATS)})
    return fmt


def export_filename(fmt: str, today: date) -> str:
    return f"doittimer-export-{today.isoformat()}.{fmt}"


def export_user_data(db: Session, user_id: str, fmt: str) -> tuple[bytes, str, str]:
    """Build an export; returns ``(content, filename, media_type)``."""
    fmt = resolve_format(fmt)
    now = utc_now()
    data = collect_export_data(db, user_id)
    exported_at = to_iso(now)
    content = build_workbook(data, exported_at) if fmt == "xlsx" else build_archive(data, exported_at)
    logger.info(
        f"Export for {user_id} ({fmt}): {len(data.projects)} projects, {len(data.tasks)} tasks, "
        f"{len(data.sessions)} sessions"
    )
    return content, export_filename(fmt, now.date()), MEDIA_TYPES[fmt]
