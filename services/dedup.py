"""TTL cache that suppresses repeated change notifications."""

from collections import OrderedDict
from typing import Optional

from services.clock import Clock, SystemClock

DEFAULT_TTL_MS = 1500
MAX_ENTRIES = 500


class EventDeduper:
    """Remembers recently seen event keys for a short window.

    Best-effort only: expired keys are swept lazily on every call and the
    oldest keys are evicted once ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        ttl_ms: int = DEFAULT_TTL_MS,
        max_entries: int = MAX_ENTRIES,
        clock: Optional[Clock] = None,
    ):
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self.clock = clock or SystemClock()
        self._expiry: OrderedDict[str, float] = OrderedDict()

    def consume(self, key: str, ttl_ms: Optional[int] = None) -> bool:
        """Return True the first time ``key`` is seen within its TTL window."""
        now = self.clock.now_ms()
        self._sweep(now)

        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at > now:
            return False

        self._expiry.pop(key, None)
        self._expiry[key] = now + (self.ttl_ms if ttl_ms is None else ttl_ms)
        while len(self._expiry) > self.max_entries:
            self._expiry.popitem(last=False)
        return True

    def reset(self) -> None:
        self._expiry.clear()

    def __len__(self) -> int:
        return len(self._expiry)

    def _sweep(self, now: float) -> None:
        expired = [key for key, expires_at in self._expiry.items() if expires_at <= now]
        for key in expired:
            del self._expiry[key]
