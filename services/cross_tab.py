"""Same-origin tab messaging.

Tabs exchange typed ``CrossTabEvent`` messages through a ``CrossTabChannel``.
The channel does not care how messages travel: it fans a publish out to
every configured ``CrossTabTransport`` and merges what they deliver back.
Two transports ship here, mirroring what a browser offers:

- ``BroadcastTransport`` over a ``BroadcastHub`` (BroadcastChannel semantics:
  every other port with the same name receives the message, never the sender)
- ``StorageTransport`` over ``SharedStorage`` (localStorage semantics: a write
  raises a change event in every *other* tab; the ping key is written and
  immediately removed)

A message that arrives over both transports is delivered to listeners once.
"""

import json
import logging
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from services.clock import Clock, SystemClock
from services.dedup import EventDeduper

logger = logging.getLogger(__name__)

CHANNEL_NAME = "doittimer"
STORAGE_PING_KEY = "doittimer.crossTab.ping"
TAB_ID_KEY = "doittimer.tabId"


class CrossTabEventType(str, Enum):
    session_changed = "focus:session_changed"
    pomodoro_changed = "focus:pomodoro_changed"
    queue_changed = "focus:queue_changed"
    leader_claim = "focus:leader_claim"


class CrossTabOperation(str, Enum):
    start = "start"
    stop = "stop"
    edit = "edit"
    manual_add = "manual_add"
    pause = "pause"
    resume = "resume"
    skip = "skip"
    restart = "restart"
    update = "update"
    claim = "claim"


@dataclass(frozen=True)
class CrossTabEvent:
    type: str
    event_id: str
    source_tab_id: str
    ts: float
    route_hint: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    operation: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "type": self.type,
            "eventId": self.event_id,
            "sourceTabId": self.source_tab_id,
            "ts": self.ts,
        }
        optional = {
            "routeHint": self.route_hint,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": self.operation,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def parse(cls, raw: Any) -> Optional["CrossTabEvent"]:
        """Build an event from a wire payload, or None if it is malformed."""
        if not isinstance(raw, dict):
            return None
        if not isinstance(raw.get("type"), str):
            return None
        if not isinstance(raw.get("eventId"), str):
            return None
        if not isinstance(raw.get("sourceTabId"), str):
            return None
        ts = raw.get("ts")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            return None
        return cls(
            type=raw["type"],
            event_id=raw["eventId"],
            source_tab_id=raw["sourceTabId"],
            ts=ts,
            route_hint=raw.get("routeHint"),
            entity_type=raw.get("entityType"),
            entity_id=raw.get("entityId"),
            operation=raw.get("operation"),
        )


# Shared storage ------------------------------------------------------------


class StorageQuotaError(Exception):
    """Raised when a write would exceed the storage quota."""


@dataclass(frozen=True)
class StorageChange:
    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageChange], None]


class SharedStorage:
    """Origin-wide string key/value store with cross-tab change events."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}
        self._listeners: list[tuple[str, StorageListener]] = []

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str, *, origin: str) -> None:
        if self.quota_bytes is not None:
            used = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
            if used + len(key) + len(value) > self.quota_bytes:
                raise StorageQuotaError(f"Storage quota exceeded writing {key}")
        old = self._data.get(key)
        self._data[key] = value
        self._notify(StorageChange(key, old, value), origin)

    def remove(self, key: str, *, origin: str) -> None:
        if key not in self._data:
            return
        old = self._data.pop(key)
        self._notify(StorageChange(key, old, None), origin)

    def add_listener(self, owner: str, listener: StorageListener) -> Callable[[], None]:
        entry = (owner, listener)
        self._listeners.append(entry)

        def remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return remove

    def _notify(self, change: StorageChange, origin: str) -> None:
        for owner, listener in list(self._listeners):
            if owner != origin:
                listener(change)


class TabStorage:
    """One tab's view of ``SharedStorage``."""

    def __init__(self, shared: SharedStorage, tab_key: str):
        self.shared = shared
        self.tab_key = tab_key

    def get(self, key: str) -> Optional[str]:
        return self.shared.get(key)

    def set(self, key: str, value: str) -> None:
        self.shared.set(key, value, origin=self.tab_key)

    def remove(self, key: str) -> None:
        self.shared.remove(key, origin=self.tab_key)

    def listen(self, listener: StorageListener) -> Callable[[], None]:
        return self.shared.add_listener(self.tab_key, listener)


# Broadcast -----------------------------------------------------------------


class BroadcastPort:
    def __init__(self, hub: "BroadcastHub", name: str):
        self.hub = hub
        self.name = name
        self.closed = False
        self._listeners: list[Callable[[Any], None]] = []

    def post_message(self, data: Any) -> None:
        if self.closed:
            return
        self.hub._deliver(self, data)

    def add_listener(self, listener: Callable[[Any], None]) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._ports.get(self.name, []).remove(self)


class BroadcastHub:
    """Named broadcast channels shared by every tab of an origin."""

    def __init__(self):
        self._ports: dict[str, list[BroadcastPort]] = {}

    def open(self, name: str) -> BroadcastPort:
        port = BroadcastPort(self, name)
        self._ports.setdefault(name, []).append(port)
        return port

    def _deliver(self, sender: BroadcastPort, data: Any) -> None:
        # Receivers get their own copy, as with structured clone
        for port in list(self._ports.get(sender.name, [])):
            if port is sender or port.closed:
                continue
            for listener in list(port._listeners):
                listener(json.loads(json.dumps(data)))


# Transports ----------------------------------------------------------------


class CrossTabTransport(Protocol):
    """Carries raw event payloads between tabs."""

    def send(self, payload: dict) -> None: ...

    def listen(self, callback: Callable[[Any], None]) -> None: ...


class BroadcastTransport:
    def __init__(self, hub: BroadcastHub, name: str = CHANNEL_NAME):
        self.hub = hub
        self.name = name
        self._port: Optional[BroadcastPort] = None

    @property
    def port(self) -> BroadcastPort:
        if self._port is None:
            self._port = self.hub.open(self.name)
        return self._port

    def send(self, payload: dict) -> None:
        self.port.post_message(payload)

    def listen(self, callback: Callable[[Any], None]) -> None:
        self.port.add_listener(callback)


class StorageTransport:
    """Signals through a storage write that is removed straight away."""

    def __init__(self, storage: TabStorage, key: str = STORAGE_PING_KEY):
        self.storage = storage
        self.key = key

    def send(self, payload: dict) -> None:
        try:
            self.storage.set(self.key, json.dumps(payload))
            self.storage.remove(self.key)
        except StorageQuotaError as e:
            logger.warning(f"Cross-tab storage ping dropped: {e}")

    def listen(self, callback: Callable[[Any], None]) -> None:
        def on_change(change: StorageChange) -> None:
            if change.key != self.key or not change.new_value:
                return
            try:
                raw = json.loads(change.new_value)
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed cross-tab storage payload")
                return
            callback(raw)

        self.storage.listen(on_change)


# Channel -------------------------------------------------------------------


CrossTabListener = Callable[[CrossTabEvent], None]


class CrossTabChannel:
    """Typed pub/sub between the tabs of one origin."""

    def __init__(
        self,
        transports: list[CrossTabTransport],
        session_storage: MutableMapping[str, str],
        clock: Optional[Clock] = None,
    ):
        self.transports = transports
        self.session_storage = session_storage
        self.clock = clock or SystemClock()
        self._listeners: list[CrossTabListener] = []
        self._wired = False
        # The same event can arrive once per transport
        self._seen = EventDeduper(ttl_ms=60_000, max_entries=500, clock=self.clock)

    def get_tab_id(self) -> str:
        existing = self.session_storage.get(TAB_ID_KEY)
        if existing:
            return existing
        created = str(uuid.uuid4())
        self.session_storage[TAB_ID_KEY] = created
        return created

    def publish(
        self,
        event_type: CrossTabEventType | str,
        *,
        route_hint: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        operation: CrossTabOperation | str | None = None,
    ) -> CrossTabEvent:
        event = CrossTabEvent(
            type=_enum_value(event_type),
            event_id=str(uuid.uuid4()),
            source_tab_id=self.get_tab_id(),
            ts=self.clock.now_ms(),
            route_hint=route_hint,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=_enum_value(operation),
        )
        payload = event.to_payload()
        for transport in self.transports:
            transport.send(payload)
        return event

    def subscribe(self, listener: CrossTabListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._ensure_wired()
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _ensure_wired(self) -> None:
        if self._wired:
            return
        for transport in self.transports:
            transport.listen(self._receive)
        self._wired = True

    def _receive(self, raw: Any) -> None:
        event = CrossTabEvent.parse(raw)
        if event is None:
            return
        if not self._seen.consume(event.event_id):
            return
        for listener in list(self._listeners):
            listener(event)


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


# Browser model ---------------------------------------------------------------


@dataclass
class BrowserTab:
    """One open tab: its storage views, channel and page state."""
    storage: TabStorage
    session_storage: dict
    channel: CrossTabChannel
    visibility_state: str = "visible"
    has_focus: bool = False

    @property
    def tab_id(self) -> str:
        return self.channel.get_tab_id()


@dataclass
class BrowserOrigin:
    """Everything the tabs of one origin share."""
    clock: Clock = field(default_factory=SystemClock)
    storage: SharedStorage = field(default_factory=SharedStorage)
    hub: Optional[BroadcastHub] = field(default_factory=BroadcastHub)
    _opened: int = 0

    def open_tab(self, visible: bool = True, focused: bool = False) -> BrowserTab:
        """Open a tab; without a broadcast hub only the storage fallback is wired."""
        self._opened += 1
        tab_storage = TabStorage(self.storage, tab_key=f"tab-{self._opened}")
        transports: list[CrossTabTransport] = []
        if self.hub is not None:
            transports.append(BroadcastTransport(self.hub))
        transports.append(StorageTransport(tab_storage))
        session_storage: dict = {}
        channel = CrossTabChannel(transports, session_storage, clock=self.clock)
        return BrowserTab(
            storage=tab_storage,
            session_storage=session_storage,
            channel=channel,
            visibility_state="visible" if visible else "hidden",
            has_focus=focused,
        )
