"""Dashboard trend aggregates."""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlmodel import Session, select

from models import FocusSession, Task
from services.clock import ensure_utc, utc_now
from services.error_handler import InvalidInputError

ALLOWED_DAYS = (7, 30)


@dataclass
class TrendPoint:
    day: str
    focus_minutes: int
    completed_tasks: int
    on_time_rate: Optional[float]


@dataclass
class DashboardTrends:
    days: int
    points: list[TrendPoint]


def clamp_rate(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return min(1.0, max(0.0, value))


def to_safe_int(value) -> int:
    if value is None or not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


def build_utc_day_series(days: int, today: date) -> list[date]:
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


class DashboardService:
    def __init__(self, db: Session, user_id: str, now: Callable[[], datetime] = utc_now):
        self.db = db
        self.user_id = user_id
        self.now = now

    def trends(self, days: int) -> DashboardTrends:
        """Per-UTC-day focus minutes, completed tasks and on-time rate.

        ``on_time_rate`` is the share of that day's completed tasks with a
        ``scheduled_for`` date that were completed on or before it; None
        when no scheduled task was completed that day.
        """
        if days not in ALLOWED_DAYS:
            raise InvalidInputError("days must be 7 or 30.", details={"allowed": list(ALLOWED_DAYS)})

        series = build_utc_day_series(days, self.now().astimezone(timezone.utc).date())
        window_start = datetime.combine(series[0], datetime.min.time(), tzinfo=timezone.utc)

        focus_seconds: dict[date, int] = {}
        sessions = self.db.exec(
            select(FocusSession)
            .where(FocusSession.user_id == self.user_id)
            .where(FocusSession.ended_at.is_not(None), FocusSession.started_at >= window_start)
        ).all()
        for session in sessions:
            day = ensure_utc(session.started_at).date()
            focus_seconds[day] = focus_seconds.get(day, 0) + (session.duration_seconds or 0)

        completed: dict[date, int] = {}
        scheduled: dict[date, int] = {}
        on_time: dict[date, int] = {}
        tasks = self.db.exec(
            select(Task)
            .where(Task.user_id == self.user_id)
            .where(Task.completed.is_(True), Task.completed_at >= window_start)
        ).all()
        for task in tasks:
            day = ensure_utc(task.completed_at).date()
            completed[day] = completed.get(day, 0) + 1
            if task.scheduled_for is not None:
                scheduled[day] = scheduled.get(day, 0) + 1
                if day <= task.scheduled_for:
                    on_time[day] = on_time.get(day, 0) + 1

        points = []
        for day in series:
            rate = on_time.get(day, 0) / scheduled[day] if scheduled.get(day) else None
            points.append(
                TrendPoint(
                    day=day.isoformat(),
                    focus_minutes=to_safe_int(focus_seconds.get(day, 0) / 60),
                    completed_tasks=to_safe_int(completed.get(day, 0)),
                    on_time_rate=clamp_rate(rate),
                )
            )
        return DashboardTrends(days=days, points=points)
