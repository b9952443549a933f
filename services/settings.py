"""Per-user settings with defaults and validation."""

import logging
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session

from models import Task, UserSettings
from services.clock import utc_now
from services.error_handler import InvalidInputError, TaskNotFoundError
from services.phase_engine import DEFAULT_SETTINGS, LIMITS, PRESETS

logger = logging.getLogger(__name__)

POMODORO_FIELDS = {
    "pomodoro_work_minutes": "work_minutes",
    "pomodoro_short_break_minutes": "short_break_minutes",
    "pomodoro_long_break_minutes": "long_break_minutes",
    "pomodoro_long_break_every": "long_break_every",
}


def validate_timezone(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("Timezone is required.")
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidInputError(f"Unknown timezone: {name}") from e
    return name


def validate_pomodoro_value(field: str, value: int) -> int:
    low, high = LIMITS[POMODORO_FIELDS[field]]
    if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
        raise InvalidInputError(f"{field} must be between {low} and {high}.")
    return value


class SettingsService:
    def __init__(self, db: Session, user_id: str, default_timezone: str = "UTC"):
        self.db = db
        self.user_id = user_id
        self.default_timezone = default_timezone

    def get(self) -> UserSettings:
        """Stored settings, or an unsaved row carrying the defaults."""
        settings = self.db.get(UserSettings, self.user_id)
        if settings is not None:
            return settings
        return UserSettings(
            user_id=self.user_id,
            timezone=self.default_timezone,
            pomodoro_work_minutes=DEFAULT_SETTINGS.work_minutes,
            pomodoro_short_break_minutes=DEFAULT_SETTINGS.short_break_minutes,
            pomodoro_long_break_minutes=DEFAULT_SETTINGS.long_break_minutes,
            pomodoro_long_break_every=DEFAULT_SETTINGS.long_break_every,
        )

    def upsert(self, changes: dict[str, Any]) -> UserSettings:
        """Validate and persist ``changes`` on top of the current settings."""
        changes = dict(changes)
        preset = changes.pop("preset", None)
        if preset is not None:
            if preset not in PRESETS:
                raise InvalidInputError(f"Unknown preset: {preset}", details={"allowed": sorted(PRESETS)})
            chosen = PRESETS[preset]
            for field, attr in POMODORO_FIELDS.items():
                changes.setdefault(field, getattr(chosen, attr))

        if "timezone" in changes:
            changes["timezone"] = validate_timezone(changes["timezone"])
        for field in POMODORO_FIELDS:
            if changes.get(field) is not None:
                validate_pomodoro_value(field, changes[field])
            else:
                changes.pop(field, None)
        if changes.get("default_task_id"):
            task = self.db.get(Task, changes["default_task_id"])
            if task is None or task.user_id != self.user_id:
                raise TaskNotFoundError("Default task not found.")

        settings = self.db.get(UserSettings, self.user_id) or self.get()
        for name, value in changes.items():
            if not hasattr(settings, name) or name in ("user_id", "created_at", "updated_at"):
                raise InvalidInputError(f"Unknown setting: {name}")
            setattr(settings, name, value)
        settings.updated_at = utc_now()
        self.db.add(settings)
        self.db.commit()
        self.db.refresh(settings)
        logger.info(f"Settings updated for {self.user_id}: {sorted(changes)}")
        return settings

    def stored(self) -> Optional[UserSettings]:
        return self.db.get(UserSettings, self.user_id)
