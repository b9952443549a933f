"""Notion integration endpoints: connection management and manual sync."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_change_feed, get_current_user_id
from config import get_config
from database import get_db
from services.notion_sync import NotionConnectionService, sync_notion_now
from services.realtime import ChangeFeed

router = APIRouter(prefix="/api/notion", tags=["notion"])


class NotionConnectRequest(BaseModel):
    """Request body for storing Notion credentials."""

    token: str
    database_id: str


class NotionConnectionResponse(BaseModel):
    """Connection status. The token is never returned."""

    connected: bool
    last_synced_at: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class NotionSyncResponse(BaseModel):
    created_projects: int
    created_tasks: int
    updated_projects: int
    updated_tasks: int
    pulled_projects: int
    pulled_tasks: int
    archived_projects: int
    restored_projects: int
    archived_tasks: int
    restored_tasks: int
    warnings: int
    errors: int

    model_config = ConfigDict(from_attributes=True)


def get_connection_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> NotionConnectionService:
    return NotionConnectionService(db, user_id)


@router.get("", response_model=NotionConnectionResponse)
async def get_connection(service: NotionConnectionService = Depends(get_connection_service)):
    return NotionConnectionResponse.model_validate(service.get())


@router.put("", response_model=NotionConnectionResponse)
async def connect(
    body: NotionConnectRequest,
    service: NotionConnectionService = Depends(get_connection_service),
):
    """Store or replace credentials. Reconnecting resets the sync status."""
    return NotionConnectionResponse.model_validate(service.connect(body.token, body.database_id))


@router.delete("", response_model=NotionConnectionResponse)
async def disconnect(service: NotionConnectionService = Depends(get_connection_service)):
    """Remove credentials and every page mapping."""
    return NotionConnectionResponse.model_validate(service.disconnect())


@router.post("/sync", response_model=NotionSyncResponse)
async def sync_now(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Run a two-way sync now.

    Row-level failures do not stop the run; they turn the response into a
    502 ``notion_sync_partial`` error whose details carry the summary.
    """
    summary = await sync_notion_now(db, user_id, config=get_config().notion, feed=feed)
    return NotionSyncResponse.model_validate(summary)
