"""Dashboard trend endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_current_user_id
from database import get_db
from services.dashboard import DashboardService

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


class TrendPointResponse(BaseModel):
    day: str
    focus_minutes: int
    completed_tasks: int
    on_time_rate: Optional[float]

    model_config = ConfigDict(from_attributes=True)


class TrendsResponse(BaseModel):
    """One point per UTC day, oldest first, gaps zero-filled."""

    days: int
    points: list[TrendPointResponse]

    model_config = ConfigDict(from_attributes=True)


@router.get("/trends", response_model=TrendsResponse)
async def get_trends(
    days: int = Query(7, description="7 or 30"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    trends = DashboardService(db, user_id).trends(days)
    return TrendsResponse.model_validate(trends)
