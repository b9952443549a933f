"""Coalesces bursts of change notifications into bounded route refreshes."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from services.clock import Clock, SystemClock, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class RefreshOptions:
    debounce_ms: int = 250
    min_interval_ms: int = 700
    max_wait_ms: int = 1200
    reason_dedupe_ms: int = 300


@dataclass
class _RouteState:
    refresh: Callable[[], None]
    timer: Optional[TimerHandle] = None
    first_pending_at: Optional[float] = None
    pending_reason: Optional[str] = None
    last_refresh_at: Optional[float] = None
    recent_reasons: dict[str, float] = field(default_factory=dict)


class RouteRefreshScheduler:
    """Per-route debounce with a max-wait cap and a minimum refresh interval.

    Each route key owns at most one pending timer. Repeated reasons inside
    ``reason_dedupe_ms`` are dropped outright; everything else pushes the
    timer back by ``debounce_ms`` without ever exceeding ``max_wait_ms``
    since the first pending call.
    """

    def __init__(self, clock: Optional[Clock] = None, defaults: Optional[RefreshOptions] = None):
        self.clock = clock or SystemClock()
        self.defaults = defaults or RefreshOptions()
        self._routes: dict[str, _RouteState] = {}
        self.refresh_count = 0

    def schedule(
        self,
        route_key: str,
        reason: str,
        refresh: Callable[[], None],
        options: Optional[RefreshOptions] = None,
    ) -> bool:
        """Request a refresh of ``route_key``.

        Returns:
            False when the request was dropped as a duplicate reason.
        """
        opts = options or self.defaults
        now = self.clock.now_ms()

        state = self._routes.get(route_key)
        if state is None:
            state = _RouteState(refresh=refresh)
            self._routes[route_key] = state
        state.refresh = refresh

        for seen_reason, seen_at in list(state.recent_reasons.items()):
            if now - seen_at >= opts.reason_dedupe_ms:
                del state.recent_reasons[seen_reason]

        last_seen = state.recent_reasons.get(reason)
        if last_seen is not None and now - last_seen < opts.reason_dedupe_ms:
            return False
        state.recent_reasons[reason] = now

        if state.first_pending_at is None:
            state.first_pending_at = now
        state.pending_reason = reason

        waited = now - state.first_pending_at
        wait_ms = min(opts.debounce_ms, max(0, opts.max_wait_ms - waited))

        if state.timer is not None:
            state.timer.cancel()
        state.timer = self.clock.call_later(wait_ms, lambda: self._run(route_key, opts))
        return True

    def pending(self, route_key: str) -> bool:
        state = self._routes.get(route_key)
        return state is not None and state.timer is not None

    def cancel_all(self) -> None:
        for state in self._routes.values():
            if state.timer is not None:
                state.timer.cancel()
        self._routes.clear()

    def _run(self, route_key: str, opts: RefreshOptions) -> None:
        state = self._routes.get(route_key)
        if state is None:
            return
        state.timer = None
        now = self.clock.now_ms()

        if state.last_refresh_at is not None:
            elapsed = now - state.last_refresh_at
            if elapsed < opts.min_interval_ms:
                state.timer = self.clock.call_later(
                    opts.min_interval_ms - elapsed, lambda: self._run(route_key, opts)
                )
                return

        reason = state.pending_reason
        state.first_pending_at = None
        state.pending_reason = None
        state.last_refresh_at = now
        self.refresh_count += 1

        logger.debug(f"Refreshing {route_key} ({reason})")
        try:
            state.refresh()
        except Exception as e:
            logger.error(f"Refresh of {route_key} failed: {e}", exc_info=True)
