"""Focus session API endpoints.

The server owns the pomodoro clock: every transition endpoint returns the
updated session together with a freshly computed phase snapshot so clients
never have to derive remaining time themselves.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from api.deps import get_change_feed, get_current_user_id, get_session_locks
from database import get_db
from models import FocusSession, PomodoroPhase
from services.focus_sessions import FocusSessionService, KeyedLocks
from services.realtime import ChangeFeed

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


# Request/Response models
class SessionStartRequest(BaseModel):
    """Request body for starting a session."""

    task_id: Optional[str] = None
    music_url: Optional[str] = None


class SessionEditRequest(BaseModel):
    """Request body for correcting a session's times or task."""

    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    task_id: Optional[str] = None
    edit_reason: Optional[str] = None


class PomodoroSnapshotResponse(BaseModel):
    """Computed pomodoro clock state."""

    phase: PomodoroPhase
    cycle_count: int
    is_paused: bool
    duration_seconds: int
    elapsed_seconds: int
    remaining_seconds: int

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    """Response model for session data."""

    id: str
    task_id: Optional[str]
    started_at: datetime
    ended_at: Optional[datetime]
    duration_seconds: Optional[int]
    music_url: Optional[str]
    pomodoro_phase: Optional[PomodoroPhase]
    pomodoro_phase_started_at: Optional[datetime]
    pomodoro_is_paused: bool
    pomodoro_paused_at: Optional[datetime]
    pomodoro_cycle_count: int
    edited_at: Optional[datetime]
    edit_reason: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class SessionStateResponse(BaseModel):
    """A session plus its pomodoro snapshot (null when pomodoro is off)."""

    session: Optional[SessionResponse]
    pomodoro: Optional[PomodoroSnapshotResponse] = None


def get_session_service(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    locks: KeyedLocks = Depends(get_session_locks),
) -> FocusSessionService:
    return FocusSessionService(db, user_id, feed=feed, locks=locks)


def _state(service: FocusSessionService, session: Optional[FocusSession]) -> SessionStateResponse:
    if session is None:
        return SessionStateResponse(session=None)
    snapshot = service.pomodoro_snapshot(session) if session.ended_at is None else None
    return SessionStateResponse(
        session=SessionResponse.model_validate(session),
        pomodoro=PomodoroSnapshotResponse.model_validate(snapshot) if snapshot else None,
    )


@router.get("/active", response_model=SessionStateResponse)
async def get_active_session(service: FocusSessionService = Depends(get_session_service)):
    """The running session, if any, with its pomodoro snapshot."""
    return _state(service, service.get_active())


@router.get("/today", response_model=list[SessionResponse])
async def list_today_sessions(service: FocusSessionService = Depends(get_session_service)):
    """Sessions started today (UTC), newest first."""
    return service.list_today()


@router.post("/start", response_model=SessionStateResponse, status_code=201)
async def start_session(
    body: SessionStartRequest,
    service: FocusSessionService = Depends(get_session_service),
):
    """Start a session. 409 ``session_already_active`` when one is running."""
    return _state(service, service.start(task_id=body.task_id, music_url=body.music_url))


@router.post("/{session_id}/stop", response_model=SessionStateResponse)
async def stop_session(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    """Stop a session. Stopping an ended session is a no-op."""
    return _state(service, service.stop(session_id))


@router.patch("/{session_id}", response_model=SessionStateResponse)
async def edit_session(
    session_id: str,
    body: SessionEditRequest,
    service: FocusSessionService = Depends(get_session_service),
):
    """Correct a session's start/end time or linked task."""
    session = service.edit(
        session_id,
        started_at=body.started_at,
        ended_at=body.ended_at,
        task_id=body.task_id,
        edit_reason=body.edit_reason,
    )
    return _state(service, session)


# Pomodoro transitions


@router.post("/{session_id}/pomodoro/init", response_model=SessionStateResponse)
async def pomodoro_init(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    return _state(service, await service.pomodoro_init(session_id))


@router.post("/{session_id}/pomodoro/pause", response_model=SessionStateResponse)
async def pomodoro_pause(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    return _state(service, await service.pomodoro_pause(session_id))


@router.post("/{session_id}/pomodoro/resume", response_model=SessionStateResponse)
async def pomodoro_resume(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    return _state(service, await service.pomodoro_resume(session_id))


@router.post("/{session_id}/pomodoro/skip", response_model=SessionStateResponse)
async def pomodoro_skip(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    """End the current phase early and move to the next one."""
    return _state(service, await service.pomodoro_skip_phase(session_id))


@router.post("/{session_id}/pomodoro/restart", response_model=SessionStateResponse)
async def pomodoro_restart(session_id: str, service: FocusSessionService = Depends(get_session_service)):
    """Restart the current phase from zero."""
    return _state(service, await service.pomodoro_restart_phase(session_id))
