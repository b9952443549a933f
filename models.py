"""SQLModel definitions for DoItTimer."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

QUEUE_LIMIT = 7


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PomodoroPhase(str, Enum):
    """Pomodoro phase enum."""
    work = "work"
    short_break = "short_break"
    long_break = "long_break"


class NotionSyncStatus(str, Enum):
    """Outcome of the last Notion sync run."""
    idle = "idle"
    success = "success"
    error = "error"


class Project(SQLModel, table=True):
    """A named group of tasks."""
    __tablename__ = "projects"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    archived_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Task(SQLModel, table=True):
    """A unit of work that focus sessions can be linked to."""
    __tablename__ = "tasks"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    completed: bool = Field(default=False)
    completed_at: Optional[datetime] = Field(default=None)
    project_id: Optional[str] = Field(default=None, foreign_key="projects.id")
    archived_at: Optional[datetime] = Field(default=None)
    scheduled_for: Optional[date] = Field(default=None)
    pomodoro_work_minutes: Optional[int] = Field(default=None)
    pomodoro_short_break_minutes: Optional[int] = Field(default=None)
    pomodoro_long_break_minutes: Optional[int] = Field(default=None)
    pomodoro_long_break_every: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class FocusSession(SQLModel, table=True):
    """A focus period, optionally split into pomodoro phases.

    ``ended_at`` is null while the session is active. The partial unique
    index allows a single active session per user.
    """
    __tablename__ = "sessions"
    __table_args__ = (
        Index(
            "sessions_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, foreign_key="tasks.id")
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = Field(default=None)
    duration_seconds: Optional[int] = Field(default=None)
    music_url: Optional[str] = Field(default=None)
    pomodoro_phase: Optional[PomodoroPhase] = Field(default=None)
    pomodoro_phase_started_at: Optional[datetime] = Field(default=None)
    pomodoro_is_paused: bool = Field(default=False)
    pomodoro_paused_at: Optional[datetime] = Field(default=None)
    pomodoro_cycle_count: int = Field(default=0)
    edited_at: Optional[datetime] = Field(default=None)
    edit_reason: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)


class PomodoroEvent(SQLModel, table=True):
    """A completed pomodoro phase."""
    __tablename__ = "session_pomodoro_events"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    session_id: str = Field(foreign_key="sessions.id")
    task_id: str = Field(foreign_key="tasks.id")
    event_type: str
    pomodoro_cycle_count: Optional[int] = Field(default=None)
    occurred_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)


class TaskQueueItem(SQLModel, table=True):
    """An entry in the user's bounded daily work queue.

    ``sort_order`` is dense from 0; the unique constraint plus the upper
    bound check cap the queue at ``QUEUE_LIMIT`` rows per user.
    """
    __tablename__ = "task_queue_items"
    __table_args__ = (
        UniqueConstraint("user_id", "sort_order", name="task_queue_items_user_order"),
        CheckConstraint(f"sort_order < {QUEUE_LIMIT}", name="task_queue_items_limit"),
    )

    user_id: str = Field(primary_key=True)
    task_id: str = Field(primary_key=True, foreign_key="tasks.id")
    sort_order: int
    created_at: datetime = Field(default_factory=_utcnow)


class UserSettings(SQLModel, table=True):
    """Per-user preferences and feature flags."""
    __tablename__ = "user_settings"

    user_id: str = Field(primary_key=True)
    timezone: str = Field(default="UTC")
    default_task_id: Optional[str] = Field(default=None, foreign_key="tasks.id")
    pomodoro_work_minutes: int = Field(default=25)
    pomodoro_short_break_minutes: int = Field(default=5)
    pomodoro_long_break_minutes: int = Field(default=15)
    pomodoro_long_break_every: int = Field(default=4)
    pomodoro_v2_enabled: bool = Field(default=False)
    auto_archive_completed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class NotionConnection(SQLModel, table=True):
    """Stored Notion credentials and last sync outcome for a user."""
    __tablename__ = "notion_connections"

    user_id: str = Field(primary_key=True)
    notion_token: str
    notion_database_id: str
    last_synced_at: Optional[datetime] = Field(default=None)
    last_status: NotionSyncStatus = Field(default=NotionSyncStatus.idle)
    last_error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class NotionProjectMap(SQLModel, table=True):
    """Correlates a local project with its Notion page."""
    __tablename__ = "notion_project_map"

    project_id: str = Field(primary_key=True, foreign_key="projects.id")
    user_id: str = Field(index=True)
    notion_page_id: str
    last_pulled_at: Optional[datetime] = Field(default=None)


class NotionTaskMap(SQLModel, table=True):
    """Correlates a local task with its Notion page."""
    __tablename__ = "notion_task_map"

    task_id: str = Field(primary_key=True, foreign_key="tasks.id")
    user_id: str = Field(index=True)
    notion_page_id: str
    last_pulled_at: Optional[datetime] = Field(default=None)
