"""Shared request dependencies: caller identity and app-wide singletons."""

from typing import Optional

from fastapi import Header, Request

from services.error_handler import AuthRequiredError
from services.focus_sessions import KeyedLocks
from services.realtime import ChangeFeed


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """Owner id supplied by the upstream auth layer."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthRequiredError()
    return user_id


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_session_locks(request: Request) -> KeyedLocks:
    return request.app.state.session_locks
