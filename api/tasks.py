"""Task and project API endpoints.

Tasks are the unit focus sessions link to. Archiving is a soft delete and
also takes the task out of the queue; restoring brings it back to the
active list but not to the queue.
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_change_feed, get_current_user_id
from database import get_db
from services.realtime import ChangeFeed
from services.tasks import ProjectService, TaskService

router = APIRouter(prefix="/api/tasks", tags=["tasks"])
projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


# Request/Response models
class TaskCreate(BaseModel):
    """Request body for creating a task."""

    title: str
    project_id: Optional[str] = None
    scheduled_for: Optional[date] = None


class TaskUpdate(BaseModel):
    """Request body for updating a task. Only sent fields change."""

    title: Optional[str] = None
    project_id: Optional[str] = None
    scheduled_for: Optional[date] = None
    pomodoro_work_minutes: Optional[int] = None
    pomodoro_short_break_minutes: Optional[int] = None
    pomodoro_long_break_minutes: Optional[int] = None
    pomodoro_long_break_every: Optional[int] = None


class TaskCompleteRequest(BaseModel):
    """Request body for marking a task done or not done."""

    completed: bool = True


class TaskResponse(BaseModel):
    """Response model for task data."""

    id: str
    title: str
    completed: bool
    completed_at: Optional[datetime]
    project_id: Optional[str]
    archived_at: Optional[datetime]
    scheduled_for: Optional[date]
    pomodoro_work_minutes: Optional[int]
    pomodoro_short_break_minutes: Optional[int]
    pomodoro_long_break_minutes: Optional[int]
    pomodoro_long_break_every: Optional[int]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProjectCreate(BaseModel):
    """Request body for creating or renaming a project."""

    name: str


class ProjectResponse(BaseModel):
    """Response model for project data."""

    id: str
    name: str
    archived_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


def get_task_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> TaskService:
    return TaskService(db, user_id, feed=feed)


def get_project_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ProjectService:
    return ProjectService(db, user_id)


# Task endpoints
@router.get("", response_model=list[TaskResponse])
async def list_tasks(
    status: str = Query("active", description="active, completed, archived or all"),
    project_id: Optional[str] = None,
    service: TaskService = Depends(get_task_service),
):
    """List tasks, oldest first."""
    return service.list(status=status, project_id=project_id)


@router.post("", response_model=TaskResponse, status_code=201)
async def create_task(body: TaskCreate, service: TaskService = Depends(get_task_service)):
    """Create a task.

    Submitting the same title twice within ten seconds returns the first
    task instead of creating a duplicate.
    """
    return service.create(body.title, project_id=body.project_id, scheduled_for=body.scheduled_for)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    return service.get(task_id)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(task_id: str, body: TaskUpdate, service: TaskService = Depends(get_task_service)):
    """Update task fields. Null pomodoro overrides fall back to user settings."""
    return service.update(task_id, body.model_dump(exclude_unset=True))


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def complete_task(
    task_id: str,
    body: Optional[TaskCompleteRequest] = None,
    service: TaskService = Depends(get_task_service),
):
    """Mark a task completed (or reopen it with ``completed: false``)."""
    completed = body.completed if body is not None else True
    return service.set_completed(task_id, completed)


@router.post("/{task_id}/archive", response_model=TaskResponse)
async def archive_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Soft-delete a task and drop it from the queue."""
    return service.archive(task_id)


@router.post("/{task_id}/restore", response_model=TaskResponse)
async def restore_task(task_id: str, service: TaskService = Depends(get_task_service)):
    return service.restore(task_id)


# Project endpoints
@projects_router.get("", response_model=list[ProjectResponse])
async def list_projects(
    include_archived: bool = False,
    service: ProjectService = Depends(get_project_service),
):
    return service.list(include_archived=include_archived)


@projects_router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(body: ProjectCreate, service: ProjectService = Depends(get_project_service)):
    return service.create(body.name)


@projects_router.patch("/{project_id}", response_model=ProjectResponse)
async def rename_project(
    project_id: str,
    body: ProjectCreate,
    service: ProjectService = Depends(get_project_service),
):
    return service.rename(project_id, body.name)


@projects_router.post("/{project_id}/archive", response_model=ProjectResponse)
async def archive_project(project_id: str, service: ProjectService = Depends(get_project_service)):
    return service.archive(project_id)


@projects_router.post("/{project_id}/restore", response_model=ProjectResponse)
async def restore_project(project_id: str, service: ProjectService = Depends(get_project_service)):
    return service.restore(project_id)
