"""Daily work queue endpoints (at most seven tasks, densely ordered)."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_change_feed, get_current_user_id
from database import get_db
from services.focus_sessions import FocusSessionService
from services.queue import QueueService, get_next_up_task
from services.realtime import ChangeFeed

router = APIRouter(prefix="/api/queue", tags=["queue"])


class QueueAddRequest(BaseModel):
    """Request body for queueing a task."""

    task_id: str


class QueueEntryResponse(BaseModel):
    """One queued task."""

    task_id: str
    sort_order: int
    created_at: datetime
    title: str
    completed: bool
    project_id: Optional[str]
    archived_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class NextUpResponse(BaseModel):
    """The task to suggest after the current one, if any."""

    task: Optional[QueueEntryResponse]


def get_queue_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> QueueService:
    return QueueService(db, user_id, feed=feed)


@router.get("", response_model=list[QueueEntryResponse])
async def list_queue(service: QueueService = Depends(get_queue_service)):
    return service.entries()


@router.post("", response_model=list[QueueEntryResponse], status_code=201)
async def add_to_queue(body: QueueAddRequest, service: QueueService = Depends(get_queue_service)):
    """Append a task. 409 ``queue_full`` when seven tasks are queued."""
    return service.add(body.task_id)


@router.delete("/{task_id}", response_model=list[QueueEntryResponse])
async def remove_from_queue(task_id: str, service: QueueService = Depends(get_queue_service)):
    return service.remove(task_id)


@router.post("/{task_id}/up", response_model=list[QueueEntryResponse])
async def move_up(task_id: str, service: QueueService = Depends(get_queue_service)):
    return service.move_up(task_id)


@router.post("/{task_id}/down", response_model=list[QueueEntryResponse])
async def move_down(task_id: str, service: QueueService = Depends(get_queue_service)):
    return service.move_down(task_id)


@router.get("/next", response_model=NextUpResponse)
async def next_up(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_queue_service),
):
    """First open queued task, skipping the one the active session runs on."""
    active = FocusSessionService(db, user_id).get_active()
    entry = get_next_up_task(service.entries(), active.task_id if active else None)
    return NextUpResponse(task=QueueEntryResponse.model_validate(entry) if entry else None)
