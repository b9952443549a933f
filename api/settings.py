"""User settings endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_current_user_id
from config import get_config
from database import get_db
from services.phase_engine import PRESETS
from services.settings import SettingsService

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    """Request body for updating settings.

    ``preset`` fills any pomodoro field not sent explicitly.
    """

    timezone: Optional[str] = None
    default_task_id: Optional[str] = None
    preset: Optional[str] = None
    pomodoro_work_minutes: Optional[int] = None
    pomodoro_short_break_minutes: Optional[int] = None
    pomodoro_long_break_minutes: Optional[int] = None
    pomodoro_long_break_every: Optional[int] = None
    pomodoro_v2_enabled: Optional[bool] = None
    auto_archive_completed: Optional[bool] = None


class SettingsResponse(BaseModel):
    """Response model for settings."""

    timezone: str
    default_task_id: Optional[str]
    pomodoro_work_minutes: int
    pomodoro_short_break_minutes: int
    pomodoro_long_break_minutes: int
    pomodoro_long_break_every: int
    pomodoro_v2_enabled: bool
    auto_archive_completed: bool
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PresetResponse(BaseModel):
    name: str
    work_minutes: int
    short_break_minutes: int
    long_break_minutes: int
    long_break_every: int


def get_settings_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> SettingsService:
    return SettingsService(db, user_id, default_timezone=get_config().default_timezone)


@router.get("", response_model=SettingsResponse)
async def get_settings(service: SettingsService = Depends(get_settings_service)):
    """Current settings; defaults when nothing is stored yet."""
    return service.get()


@router.put("", response_model=SettingsResponse)
async def update_settings(body: SettingsUpdate, service: SettingsService = Depends(get_settings_service)):
    changes = body.model_dump(exclude_unset=True)
    # Booleans and timezone cannot be cleared
    for name in ("timezone", "pomodoro_v2_enabled", "auto_archive_completed"):
        if name in changes and changes[name] is None:
            changes.pop(name)
    return service.upsert(changes)


@router.get("/presets", response_model=list[PresetResponse])
async def list_presets():
    return [
        PresetResponse(
            name=name,
            work_minutes=preset.work_minutes,
            short_break_minutes=preset.short_break_minutes,
            long_break_minutes=preset.long_break_minutes,
            long_break_every=preset.long_break_every,
        )
        for name, preset in PRESETS.items()
    ]
