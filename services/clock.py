"""Time helpers and the injectable clock used by timer-driven services.

The browser-side coordination objects (dedup cache, refresh scheduler,
cross-tab channel, leader election) never read the wall clock or touch the
event loop directly. They take a ``Clock`` so they can run on the asyncio
loop in production and on a manual clock in tests.
"""

import asyncio
import math
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Millisecond clock with one-shot timers."""

    def now_ms(self) -> float: ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class SystemClock:
    """Wall clock backed by the running asyncio loop."""

    def now_ms(self) -> float:
        return time.time() * 1000

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_ms) / 1000, callback)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_ms(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    return ensure_utc(value).timestamp() * 1000


def from_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format an instant as ISO-8601 UTC with a ``Z`` suffix."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 instant into an aware UTC datetime.

    Accepts datetimes and dates as-is. Returns None for anything that does
    not parse.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def is_finite(value: Optional[float]) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)
