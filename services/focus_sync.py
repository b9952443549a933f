"""Keeps one tab's focus view fresh from realtime and cross-tab signals."""

import logging
from typing import Callable, Optional

from services.cross_tab import CrossTabChannel, CrossTabEvent
from services.dedup import EventDeduper
from services.realtime import ChangeFeed, RealtimeSubscription, RowChange, normalize_change
from services.refresh_scheduler import RouteRefreshScheduler

logger = logging.getLogger(__name__)


class FocusRealtimeSync:
    """Routes change notifications for one view into debounced refreshes.

    Every signal is reduced to a dedup key first; only signals that survive
    the ``EventDeduper`` reach the ``RouteRefreshScheduler``.
    """

    def __init__(
        self,
        user_id: Optional[str],
        feed: ChangeFeed,
        channel: CrossTabChannel,
        deduper: EventDeduper,
        scheduler: RouteRefreshScheduler,
        refresh: Callable[[], None],
        route_key: str = "/focus",
    ):
        self.route_key = route_key
        self.channel = channel
        self.deduper = deduper
        self.scheduler = scheduler
        self.refresh = refresh
        self.subscription = RealtimeSubscription(
            feed,
            user_id,
            {
                "sessions": self.on_session_change,
                "tasks": self.on_task_change,
                "task_queue_items": self.on_queue_change,
            },
        )
        self._unsubscribe_cross_tab: Optional[Callable[[], None]] = None

    def start(self) -> None:
        self.subscription.start()
        if self._unsubscribe_cross_tab is None:
            self._unsubscribe_cross_tab = self.channel.subscribe(self.on_cross_tab_event)

    def stop(self) -> None:
        self.subscription.close()
        if self._unsubscribe_cross_tab is not None:
            self._unsubscribe_cross_tab()
            self._unsubscribe_cross_tab = None

    def set_user(self, user_id: Optional[str]) -> None:
        self.subscription.set_user(user_id)

    def on_session_change(self, change: RowChange) -> None:
        notice = normalize_change(change)
        coarse_key = f"sessions:{notice.entity_id}"
        timed_key = f"sessions:{notice.entity_id}:{notice.changed_bucket}"
        if not self.deduper.consume(coarse_key):
            return
        self._refresh_if_new("realtime:sessions", timed_key)

    def on_task_change(self, change: RowChange) -> None:
        notice = normalize_change(change)
        self._refresh_if_new("realtime:tasks", f"tasks:{notice.entity_id}:{notice.event_type}")

    def on_queue_change(self, change: RowChange) -> None:
        notice = normalize_change(change)
        self._refresh_if_new(
            "realtime:queue", f"task_queue_items:{notice.entity_id}:{notice.event_type}"
        )

    def on_cross_tab_event(self, event: CrossTabEvent) -> None:
        if event.source_tab_id == self.channel.get_tab_id():
            return
        if event.route_hint and event.route_hint != self.route_key:
            return
        if event.entity_type and event.entity_id:
            dedupe_key = f"{event.entity_type}:{event.entity_id}"
        else:
            dedupe_key = f"event:{event.event_id}"
        if not self.deduper.consume(dedupe_key):
            return
        self.scheduler.schedule(self.route_key, f"broadcast:{event.type}", self.refresh)

    def _refresh_if_new(self, reason: str, dedupe_key: str) -> None:
        if not self.deduper.consume(dedupe_key):
            return
        self.scheduler.schedule(self.route_key, reason, self.refresh)
