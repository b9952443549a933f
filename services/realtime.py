"""Row-change feed and the subscription adapters built on it.

Services publish a ``RowChange`` after every committed mutation of the
realtime tables. Consumers subscribe per table and per owner; the
``RealtimeSubscription`` adapter ties a set of table handlers to one owner
for the lifetime of a view and re-subscribes when the owner changes.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional

from services.clock import parse_iso, to_iso, to_ms

logger = logging.getLogger(__name__)

REALTIME_TABLES = ("sessions", "tasks", "task_queue_items")
BUCKET_MS = 1500

# Queue rows are keyed by task, not by a surrogate id
ID_FIELDS = {"task_queue_items": "task_id"}


class ChangeType(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


@dataclass(frozen=True)
class RowChange:
    table: str
    event_type: str
    user_id: str
    new: Optional[dict] = None
    old: Optional[dict] = None

    def to_payload(self) -> dict:
        return {
            "table": self.table,
            "eventType": self.event_type,
            "new": self.new or {},
            "old": self.old or {},
        }


ChangeHandler = Callable[[RowChange], None]


def row_snapshot(row: Any) -> Optional[dict]:
    """JSON-safe dict of a model row (datetimes as ISO strings)."""
    if row is None:
        return None
    data = row.model_dump() if hasattr(row, "model_dump") else dict(row)
    snapshot = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            value = to_iso(value)
        elif isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        snapshot[key] = value
    return snapshot


class ChangeFeed:
    """In-process publish/subscribe of committed row changes."""

    def __init__(self):
        self._subscribers: dict[tuple[str, str], list[ChangeHandler]] = {}
        self.published = 0

    def subscribe(self, table: str, user_id: str, handler: ChangeHandler) -> Callable[[], None]:
        if table not in REALTIME_TABLES:
            raise ValueError(f"Unknown realtime table: {table}")
        key = (table, user_id)
        self._subscribers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(key, None)

        return unsubscribe

    def subscriber_count(self, table: Optional[str] = None, user_id: Optional[str] = None) -> int:
        return sum(
            len(handlers)
            for (t, u), handlers in self._subscribers.items()
            if (table is None or t == table) and (user_id is None or u == user_id)
        )

    def publish(self, change: RowChange) -> None:
        self.published += 1
        for handler in list(self._subscribers.get((change.table, change.user_id), [])):
            try:
                handler(change)
            except Exception as e:
                logger.error(f"Realtime handler for {change.table} failed: {e}", exc_info=True)

    def publish_row(
        self,
        table: str,
        event_type: ChangeType,
        user_id: str,
        new: Any = None,
        old: Any = None,
    ) -> None:
        self.publish(
            RowChange(
                table=table,
                event_type=event_type.value,
                user_id=user_id,
                new=new if isinstance(new, dict) or new is None else row_snapshot(new),
                old=old if isinstance(old, dict) or old is None else row_snapshot(old),
            )
        )


@dataclass(frozen=True)
class ChangeNotice:
    """A change reduced to what the dedup and refresh layers need."""
    table: str
    event_type: str
    entity_id: str
    changed_bucket: str


def read_entity_id(change: RowChange) -> str:
    """Entity id from the post-change row, else the pre-change row."""
    field = ID_FIELDS.get(change.table, "id")
    for record in (change.new, change.old):
        if record and isinstance(record.get(field), str):
            return record[field]
    return "unknown"


def bucket_timestamp(value: Any, bucket_ms: int = BUCKET_MS) -> str:
    """Coarse time bucket for dedup keys; "0" when the value is not an instant."""
    parsed = parse_iso(value) if isinstance(value, str) else None
    if parsed is None:
        return "0"
    return str(math.floor(to_ms(parsed) / bucket_ms))


def _first_present(change: RowChange, fields: tuple[str, ...]) -> Any:
    for record in (change.new, change.old):
        if not record:
            continue
        for name in fields:
            if record.get(name) is not None:
                return record[name]
    return None


def normalize_change(change: RowChange) -> ChangeNotice:
    changed_at = None
    if change.table == "sessions":
        changed_at = _first_present(change, ("edited_at", "ended_at", "started_at"))
    return ChangeNotice(
        table=change.table,
        event_type=change.event_type,
        entity_id=read_entity_id(change),
        changed_bucket=bucket_timestamp(changed_at),
    )


class RealtimeSubscription:
    """Owner-scoped subscription to several realtime tables.

    Usable as a context manager; ``set_user`` tears down the current
    subscriptions and re-subscribes for the new owner.
    """

    def __init__(self, feed: ChangeFeed, user_id: Optional[str], handlers: dict[str, ChangeHandler]):
        self.feed = feed
        self.user_id = user_id
        self.handlers = handlers
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return bool(self._unsubscribers)

    def start(self) -> None:
        if self.active or not self.user_id:
            return
        for table, handler in self.handlers.items():
            self._unsubscribers.append(self.feed.subscribe(table, self.user_id, handler))
        logger.debug(f"Realtime subscribed: {sorted(self.handlers)} for {self.user_id}")

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def set_user(self, user_id: Optional[str]) -> None:
        if user_id == self.user_id:
            return
        self.close()
        self.user_id = user_id
        self.start()

    def __enter__(self) -> "RealtimeSubscription":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
