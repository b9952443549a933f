"""Focus sessions and their server-authoritative pomodoro state.

Every pomodoro transition runs under a per-session lock and re-reads the
row inside it, so concurrent calls from several tabs or devices apply one
after another against fresh state.
"""

import asyncio
import logging
import math
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models import FocusSession, PomodoroEvent, PomodoroPhase, Task, UserSettings
from services.clock import ensure_utc, from_ms, to_ms, utc_now
from services.error_handler import (
    ActiveSessionExistsError,
    InvalidInputError,
    SessionNotFoundError,
    TaskNotFoundError,
    is_unique_violation,
)
from services.phase_engine import (
    PhaseSnapshot,
    PomodoroSettings,
    adjust_phase_start_for_resume,
    next_phase,
    resolve_settings,
    snapshot,
)
from services.realtime import ChangeFeed, ChangeType, row_snapshot

logger = logging.getLogger(__name__)

POMODORO_NOT_FOUND = "Pomodoro session not found."


class KeyedLocks:
    """One asyncio lock per key, dropped again once nobody holds or awaits it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._locks.pop(key, None)
                self._users.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class FocusSessionService:
    def __init__(
        self,
        db: Session,
        user_id: str,
        feed: Optional[ChangeFeed] = None,
        locks: Optional[KeyedLocks] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.user_id = user_id
        self.feed = feed
        self.locks = locks or KeyedLocks()
        self.now = now

    # Sessions ---------------------------------------------------------------

    def get_active(self) -> Optional[FocusSession]:
        statement = select(FocusSession).where(
            FocusSession.user_id == self.user_id,
            FocusSession.ended_at.is_(None),
        )
        return self.db.exec(statement).first()

    def list_today(self) -> list[FocusSession]:
        start = self.now().replace(hour=0, minute=0, second=0, microsecond=0)
        statement = (
            select(FocusSession)
            .where(FocusSession.user_id == self.user_id)
            .where(FocusSession.started_at >= start, FocusSession.started_at < start + timedelta(days=1))
            .order_by(FocusSession.started_at.desc())
        )
        return list(self.db.exec(statement).all())

    def start(self, task_id: Optional[str] = None, music_url: Optional[str] = None) -> FocusSession:
        """Start a session; raises ``ActiveSessionExistsError`` if one is running."""
        if task_id is not None:
            self._get_task(task_id)
        if self.get_active() is not None:
            raise ActiveSessionExistsError()

        now = self.now()
        session = FocusSession(user_id=self.user_id, task_id=task_id, started_at=now, music_url=music_url)
        settings = self.db.get(UserSettings, self.user_id)
        if settings is not None and settings.pomodoro_v2_enabled:
            self._init_pomodoro(session, now)

        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if is_unique_violation(e):
                # Lost the race against another tab or device
                raise ActiveSessionExistsError() from e
            raise
        self.db.refresh(session)
        logger.info(f"Session {session.id} started for {self.user_id}")
        self._publish(ChangeType.insert, session)
        return session

    def stop(self, session_id: str) -> FocusSession:
        session = self._get_owned(session_id)
        if session.ended_at is not None:
            return session
        before = row_snapshot(session)
        now = self.now()
        session.ended_at = now
        session.duration_seconds = max(0, math.floor((now - ensure_utc(session.started_at)).total_seconds()))
        session.pomodoro_is_paused = False
        session.pomodoro_paused_at = None
        self._commit(session, before)
        logger.info(f"Session {session.id} stopped after {session.duration_seconds}s")
        return session

    def edit(
        self,
        session_id: str,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
        task_id: Optional[str] = None,
        edit_reason: Optional[str] = None,
    ) -> FocusSession:
        session = self._get_owned(session_id)
        before = row_snapshot(session)

        new_start = ensure_utc(started_at) if started_at else ensure_utc(session.started_at)
        new_end = ensure_utc(ended_at) if ended_at else ensure_utc(session.ended_at)
        if ended_at is not None and session.ended_at is None:
            raise InvalidInputError("Stop the session before editing its end time.")
        if new_start > self.now():
            raise InvalidInputError("Start time cannot be in the future.")
        if new_end is not None and new_end < new_start:
            raise InvalidInputError("End time must be after start time.")
        if task_id is not None:
            self._get_task(task_id)
            session.task_id = task_id

        session.started_at = new_start
        if new_end is not None:
            session.ended_at = new_end
            session.duration_seconds = max(0, math.floor((new_end - new_start).total_seconds()))
        session.edited_at = self.now()
        session.edit_reason = (edit_reason or "").strip() or None
        self._commit(session, before)
        return session

    # Pomodoro ---------------------------------------------------------------

    async def pomodoro_init(self, session_id: str) -> FocusSession:
        def apply(session: FocusSession, now: datetime) -> None:
            if session.pomodoro_phase is None:
                self._init_pomodoro(session, now)

        return await self._transition(session_id, "init", apply)

    async def pomodoro_pause(self, session_id: str) -> FocusSession:
        def apply(session: FocusSession, now: datetime) -> None:
            if session.pomodoro_is_paused:
                return
            session.pomodoro_is_paused = True
            session.pomodoro_paused_at = now

        return await self._transition(session_id, "pause", apply)

    async def pomodoro_resume(self, session_id: str) -> FocusSession:
        def apply(session: FocusSession, now: datetime) -> None:
            if not session.pomodoro_is_paused:
                return
            adjusted = adjust_phase_start_for_resume(
                to_ms(session.pomodoro_phase_started_at),
                to_ms(session.pomodoro_paused_at),
                to_ms(now),
            )
            session.pomodoro_phase_started_at = from_ms(adjusted)
            session.pomodoro_is_paused = False
            session.pomodoro_paused_at = None

        return await self._transition(session_id, "resume", apply)

    async def pomodoro_skip_phase(self, session_id: str) -> FocusSession:
        def apply(session: FocusSession, now: datetime) -> None:
            settings = self.effective_settings(session)
            finished = PomodoroPhase(session.pomodoro_phase)
            transition = next_phase(finished, session.pomodoro_cycle_count, settings.long_break_every)
            if session.task_id is not None:
                self.db.add(
                    PomodoroEvent(
                        user_id=self.user_id,
                        session_id=session.id,
                        task_id=session.task_id,
                        event_type=f"{finished.value}_completed",
                        pomodoro_cycle_count=transition.next_cycle_count,
                        occurred_at=now,
                    )
                )
            session.pomodoro_phase = transition.next_phase
            session.pomodoro_cycle_count = transition.next_cycle_count
            session.pomodoro_phase_started_at = now
            session.pomodoro_is_paused = False
            session.pomodoro_paused_at = None

        return await self._transition(session_id, "skip_phase", apply)

    async def pomodoro_restart_phase(self, session_id: str) -> FocusSession:
        def apply(session: FocusSession, now: datetime) -> None:
            session.pomodoro_phase_started_at = now
            session.pomodoro_is_paused = False
            session.pomodoro_paused_at = None

        return await self._transition(session_id, "restart_phase", apply)

    def effective_settings(self, session: FocusSession) -> PomodoroSettings:
        task = self.db.get(Task, session.task_id) if session.task_id else None
        return resolve_settings(self.db.get(UserSettings, self.user_id), task)

    def pomodoro_snapshot(self, session: FocusSession) -> Optional[PhaseSnapshot]:
        if session.pomodoro_phase is None:
            return None
        return snapshot(
            session.pomodoro_phase,
            session.pomodoro_cycle_count,
            to_ms(session.pomodoro_phase_started_at),
            to_ms(self.now()),
            self.effective_settings(session),
            to_ms(session.pomodoro_paused_at) if session.pomodoro_is_paused else None,
        )

    async def _transition(
        self,
        session_id: str,
        name: str,
        apply: Callable[[FocusSession, datetime], None],
    ) -> FocusSession:
        async with self.locks.hold(session_id):
            statement = (
                select(FocusSession)
                .where(FocusSession.id == session_id, FocusSession.user_id == self.user_id)
                .where(FocusSession.ended_at.is_(None))
                .with_for_update()
            )
            session = self.db.exec(statement).first()
            if session is None:
                raise SessionNotFoundError(POMODORO_NOT_FOUND)

            before = row_snapshot(session)
            now = self.now()
            if name != "init" and session.pomodoro_phase is None:
                self._init_pomodoro(session, now)
            apply(session, now)
            self._commit(session, before)
            logger.debug(f"Pomodoro {name} on {session_id}: phase={session.pomodoro_phase}")
            return session

    # Helpers ----------------------------------------------------------------

    @staticmethod
    def _init_pomodoro(session: FocusSession, now: datetime) -> None:
        session.pomodoro_phase = PomodoroPhase.work
        session.pomodoro_phase_started_at = now
        session.pomodoro_is_paused = False
        session.pomodoro_paused_at = None
        session.pomodoro_cycle_count = 0

    def _get_owned(self, session_id: str) -> FocusSession:
        session = self.db.get(FocusSession, session_id)
        if session is None or session.user_id != self.user_id:
            raise SessionNotFoundError()
        return session

    def _get_task(self, task_id: str) -> Task:
        task = self.db.get(Task, task_id)
        if task is None or task.user_id != self.user_id:
            raise TaskNotFoundError()
        return task

    def _commit(self, session: FocusSession, before: Optional[dict]) -> None:
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        self._publish(ChangeType.update, session, before)

    def _publish(self, change: ChangeType, session: FocusSession, before: Optional[dict] = None) -> None:
        if self.feed is not None:
            self.feed.publish_row("sessions", change, self.user_id, new=session, old=before)
