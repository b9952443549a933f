"""Elects the single tab that owns timer-tick side effects.

Only the leader plays the phase-end sound and raises OS notifications. The
claim lives in shared storage as ``{tabId, ts, visibilityState}``; the
leader refreshes ``ts`` on a heartbeat and other tabs treat a record older
than ``stale_ms`` as abandoned.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from services.clock import Clock, SystemClock, TimerHandle
from services.cross_tab import BrowserTab, CrossTabEventType, CrossTabOperation, StorageChange

logger = logging.getLogger(__name__)

LEADER_KEY = "doittimer.focus.leader"
HEARTBEAT_MS = 4000
STALE_MS = 12000
POLL_MS = 2000


@dataclass(frozen=True)
class LeaderRecord:
    tab_id: str
    ts: float
    visibility_state: str = "visible"

    def to_json(self) -> str:
        return json.dumps({"tabId": self.tab_id, "ts": self.ts, "visibilityState": self.visibility_state})

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["LeaderRecord"]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        tab_id = data.get("tabId")
        ts = data.get("ts")
        if not isinstance(tab_id, str) or isinstance(ts, bool) or not isinstance(ts, (int, float)):
            return None
        visibility = "hidden" if data.get("visibilityState") == "hidden" else "visible"
        return cls(tab_id=tab_id, ts=ts, visibility_state=visibility)


class _Interval:
    """Repeating timer on top of a one-shot ``Clock.call_later``."""

    def __init__(self, clock: Clock, interval_ms: float, callback: Callable[[], None]):
        self.clock = clock
        self.interval_ms = interval_ms
        self.callback = callback
        self._handle: Optional[TimerHandle] = None
        self._active = True
        self._arm()

    def _arm(self) -> None:
        self._handle = self.clock.call_later(self.interval_ms, self._fire)

    def _fire(self) -> None:
        if not self._active:
            return
        self.callback()
        if self._active:
            self._arm()

    def cancel(self) -> None:
        self._active = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class FocusLeaderElection:
    """Leader election for one tab.

    Call ``start()`` when the focus view mounts and ``unload()`` when the
    tab goes away. Page events are fed in through ``on_visibility_change``
    and ``on_focus``; storage events arrive on their own once started.
    """

    def __init__(
        self,
        tab: BrowserTab,
        clock: Optional[Clock] = None,
        heartbeat_ms: int = HEARTBEAT_MS,
        stale_ms: int = STALE_MS,
        poll_ms: int = POLL_MS,
        on_change: Optional[Callable[[bool], None]] = None,
    ):
        self.tab = tab
        self.clock = clock or SystemClock()
        self.heartbeat_ms = heartbeat_ms
        self.stale_ms = stale_ms
        self.poll_ms = poll_ms
        self.on_change = on_change
        self.tab_id = tab.tab_id
        self._is_leader = False
        self._heartbeat: Optional[_Interval] = None
        self._poll: Optional[_Interval] = None
        self._unlisten: Optional[Callable[[], None]] = None
        self.claims = 0

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def start(self) -> None:
        if self._unlisten is not None:
            return
        self._unlisten = self.tab.storage.listen(self._on_storage)
        self._poll = _Interval(self.clock, self.poll_ms, self.poll)
        self.try_claim()

    def stop(self) -> None:
        """Tear down listeners and timers, releasing the claim if owned."""
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None
        self.clear_if_owned()
        self._set_leader(False)

    def unload(self) -> None:
        self.stop()

    def read_leader(self) -> Optional[LeaderRecord]:
        return LeaderRecord.parse(self.tab.storage.get(LEADER_KEY))

    def is_fresh(self, record: Optional[LeaderRecord]) -> bool:
        if record is None:
            return False
        return self.clock.now_ms() - record.ts < self.stale_ms

    def try_claim(self) -> bool:
        """Claim leadership when the slot is free, stale, ours, or we are focused."""
        if self.tab.visibility_state != "visible":
            return False

        current = self.read_leader()
        visible_and_focused = self.tab.visibility_state == "visible" and self.tab.has_focus

        if (
            current is None
            or not self.is_fresh(current)
            or current.tab_id == self.tab_id
            or visible_and_focused
        ):
            self._write(announce=True)
            self.claims += 1
            self._set_leader(True)
            return True

        self._set_leader(current.tab_id == self.tab_id)
        return False

    def clear_if_owned(self) -> None:
        current = self.read_leader()
        if current is None or current.tab_id != self.tab_id:
            return
        self.tab.storage.remove(LEADER_KEY)

    def on_visibility_change(self, visibility_state: str) -> None:
        self.tab.visibility_state = visibility_state
        if visibility_state == "visible":
            self.try_claim()
        else:
            self._set_leader(False)

    def on_focus(self) -> None:
        self.tab.has_focus = True
        self.try_claim()

    def on_blur(self) -> None:
        self.tab.has_focus = False

    def poll(self) -> None:
        """Fallback for missed storage events."""
        current = self.read_leader()
        if not self.is_fresh(current) and self.tab.visibility_state == "visible":
            self.try_claim()
        else:
            self._set_leader(current is not None and current.tab_id == self.tab_id and self.is_fresh(current))

    def heartbeat(self) -> None:
        if self._is_leader:
            self._write(announce=False)

    def _on_storage(self, change: StorageChange) -> None:
        if change.key != LEADER_KEY:
            return
        record = LeaderRecord.parse(change.new_value)
        fresh = self.is_fresh(record)
        self._set_leader(record is not None and record.tab_id == self.tab_id and fresh)
        if not fresh and self.tab.visibility_state == "visible":
            self.try_claim()

    def _write(self, announce: bool) -> None:
        record = LeaderRecord(
            tab_id=self.tab_id,
            ts=self.clock.now_ms(),
            visibility_state=self.tab.visibility_state,
        )
        self.tab.storage.set(LEADER_KEY, record.to_json())
        if announce:
            self.tab.channel.publish(
                CrossTabEventType.leader_claim,
                route_hint="/focus",
                entity_type="sessions",
                operation=CrossTabOperation.claim,
            )

    def _set_leader(self, value: bool) -> None:
        if value == self._is_leader:
            return
        self._is_leader = value
        if value:
            self._heartbeat = _Interval(self.clock, self.heartbeat_ms, self.heartbeat)
        elif self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        logger.debug(f"Tab {self.tab_id} leader={value}")
        if self.on_change is not None:
            self.on_change(value)
