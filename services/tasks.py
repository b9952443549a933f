"""Task and project lifecycle for one owner."""

import logging
from datetime import date, timedelta
from typing import Any, Optional

from sqlmodel import Session, select

from models import Project, Task, UserSettings
from services.clock import ensure_utc, utc_now
from services.error_handler import InvalidInputError, ProjectNotFoundError, TaskNotFoundError
from services.queue import QueueService
from services.realtime import ChangeFeed, ChangeType, row_snapshot
from services.settings import POMODORO_FIELDS, validate_pomodoro_value
from services.validation import PROJECT_NAME_MAX, TASK_TITLE_MAX

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(seconds=10)
TASK_FILTERS = ("active", "completed", "archived", "all")

# Fields a caller may change through ``TaskService.update``
TASK_UPDATABLE = {
    "title",
    "project_id",
    "scheduled_for",
    "pomodoro_work_minutes",
    "pomodoro_short_break_minutes",
    "pomodoro_long_break_minutes",
    "pomodoro_long_break_every",
}


def _clean_title(title: str, max_len: int, label: str) -> str:
    text = (title or "").strip()
    if not text:
        raise InvalidInputError(f"{label} is required.")
    if len(text) > max_len:
        raise InvalidInputError(f"{label} must be at most {max_len} characters.")
    return text


class ProjectService:
    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id

    def get(self, project_id: str) -> Project:
        project = self.db.get(Project, project_id)
        if project is None or project.user_id != self.user_id:
            raise ProjectNotFoundError()
        return project

    def list(self, include_archived: bool = False) -> list[Project]:
        statement = select(Project).where(Project.user_id == self.user_id)
        if not include_archived:
            statement = statement.where(Project.archived_at.is_(None))
        statement = statement.order_by(Project.created_at, Project.id)
        return list(self.db.exec(statement).all())

    def create(self, name: str) -> Project:
        project = Project(user_id=self.user_id, name=_clean_title(name, PROJECT_NAME_MAX, "Project name"))
        return self._save(project)

    def rename(self, project_id: str, name: str) -> Project:
        project = self.get(project_id)
        project.name = _clean_title(name, PROJECT_NAME_MAX, "Project name")
        return self._save(project)

    def archive(self, project_id: str) -> Project:
        project = self.get(project_id)
        if project.archived_at is None:
            project.archived_at = utc_now()
        return self._save(project)

    def restore(self, project_id: str) -> Project:
        project = self.get(project_id)
        project.archived_at = None
        return self._save(project)

    def _save(self, project: Project) -> Project:
        project.updated_at = utc_now()
        self.db.add(project)
        self.db.commit()
        self.db.refresh(project)
        return project


class TaskService:
    def __init__(self, db: Session, user_id: str, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.user_id = user_id
        self.feed = feed

    def get(self, task_id: str) -> Task:
        task = self.db.get(Task, task_id)
        if task is None or task.user_id != self.user_id:
            raise TaskNotFoundError()
        return task

    def list(self, status: str = "active", project_id: Optional[str] = None) -> list[Task]:
        if status not in TASK_FILTERS:
            raise InvalidInputError(f"Unknown task filter: {status}", details={"allowed": list(TASK_FILTERS)})

        statement = select(Task).where(Task.user_id == self.user_id)
        if status == "active":
            statement = statement.where(Task.archived_at.is_(None), Task.completed.is_(False))
        elif status == "completed":
            statement = statement.where(Task.archived_at.is_(None), Task.completed.is_(True))
        elif status == "archived":
            statement = statement.where(Task.archived_at.is_not(None))
        if project_id:
            statement = statement.where(Task.project_id == project_id)
        statement = statement.order_by(Task.created_at, Task.id)
        return list(self.db.exec(statement).all())

    def create(
        self,
        title: str,
        project_id: Optional[str] = None,
        scheduled_for: Optional[date] = None,
    ) -> Task:
        """Create a task.

        A create with the same title and project within ten seconds of an
        earlier one returns the earlier task (double-submit guard).
        """
        title = _clean_title(title, TASK_TITLE_MAX, "Title")
        if project_id:
            ProjectService(self.db, self.user_id).get(project_id)

        now = utc_now()
        recent = self.db.exec(
            select(Task)
            .where(Task.user_id == self.user_id, Task.title == title)
            .where(Task.archived_at.is_(None))
            .order_by(Task.created_at.desc())
        ).first()
        if (
            recent is not None
            and recent.project_id == project_id
            and now - ensure_utc(recent.created_at) < DUPLICATE_WINDOW
        ):
            logger.info(f"Duplicate task create suppressed for {self.user_id}: {recent.id}")
            return recent

        task = Task(
            user_id=self.user_id,
            title=title,
            project_id=project_id,
            scheduled_for=scheduled_for,
            created_at=now,
            updated_at=now,
        )
        return self._save(task, ChangeType.insert)

    def update(self, task_id: str, changes: dict[str, Any]) -> Task:
        task = self.get(task_id)
        before = row_snapshot(task)
        unknown = set(changes) - TASK_UPDATABLE
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if "title" in changes:
            changes["title"] = _clean_title(changes["title"], TASK_TITLE_MAX, "Title")
        if changes.get("project_id"):
            ProjectService(self.db, self.user_id).get(changes["project_id"])
        for name in POMODORO_FIELDS:
            if changes.get(name) is not None:
                validate_pomodoro_value(name, changes[name])
        for name, value in changes.items():
            setattr(task, name, value)
        return self._save(task, ChangeType.update, before)

    def set_completed(self, task_id: str, completed: bool) -> Task:
        task = self.get(task_id)
        before = row_snapshot(task)
        task.completed = completed
        task.completed_at = utc_now() if completed else None

        queue = QueueService(self.db, self.user_id, self.feed)
        removal = None
        if completed and self._auto_archive_enabled() and task.archived_at is None:
            task.archived_at = utc_now()
            removal = queue.discard(task.id, commit=False)
        task = self._save(task, ChangeType.update, before)
        queue.publish_removal(removal)
        return task

    def archive(self, task_id: str) -> Task:
        task = self.get(task_id)
        before = row_snapshot(task)
        if task.archived_at is None:
            task.archived_at = utc_now()
        queue = QueueService(self.db, self.user_id, self.feed)
        removal = queue.discard(task.id, commit=False)
        task = self._save(task, ChangeType.update, before)
        queue.publish_removal(removal)
        return task

    def restore(self, task_id: str) -> Task:
        task = self.get(task_id)
        before = row_snapshot(task)
        task.archived_at = None
        return self._save(task, ChangeType.update, before)

    def _auto_archive_enabled(self) -> bool:
        settings = self.db.get(UserSettings, self.user_id)
        return bool(settings and settings.auto_archive_completed)

    def _save(self, task: Task, change: ChangeType, before: Optional[dict] = None) -> Task:
        task.updated_at = utc_now()
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        if self.feed is not None:
            self.feed.publish_row("tasks", change, self.user_id, new=task, old=before)
        return task
