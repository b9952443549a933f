"""The bounded daily work queue.

Orders are dense from 0. Two storage constraints back the limit: a unique
``(user_id, sort_order)`` pair and ``sort_order < QUEUE_LIMIT``. A racing
add that loses on either constraint re-reads the queue and either retries
at the new tail or reports the queue as full.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models import QUEUE_LIMIT, Task, TaskQueueItem
from services.clock import utc_now
from services.error_handler import QueueFullError, TaskNotFoundError
from services.realtime import ChangeFeed, ChangeType, row_snapshot

logger = logging.getLogger(__name__)

ADD_ATTEMPTS = 3


@dataclass
class QueueEntry:
    task_id: str
    sort_order: int
    created_at: datetime
    title: str
    completed: bool
    project_id: Optional[str]
    archived_at: Optional[datetime]


@dataclass
class QueueRemoval:
    """Row changes left by one ``discard``."""

    removed: dict
    shifted: list[TaskQueueItem] = field(default_factory=list)


class QueueService:
    def __init__(self, db: Session, user_id: str, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.user_id = user_id
        self.feed = feed

    def entries(self) -> list[QueueEntry]:
        statement = (
            select(TaskQueueItem, Task)
            .join(Task, Task.id == TaskQueueItem.task_id)
            .where(TaskQueueItem.user_id == self.user_id)
            .order_by(TaskQueueItem.sort_order)
        )
        return [
            QueueEntry(
                task_id=item.task_id,
                sort_order=item.sort_order,
                created_at=item.created_at,
                title=task.title,
                completed=task.completed,
                project_id=task.project_id,
                archived_at=task.archived_at,
            )
            for item, task in self.db.exec(statement).all()
        ]

    def add(self, task_id: str) -> list[QueueEntry]:
        task = self.db.get(Task, task_id)
        if task is None or task.user_id != self.user_id or task.archived_at is not None:
            raise TaskNotFoundError()

        for attempt in range(1, ADD_ATTEMPTS + 1):
            items = self._items()
            if any(item.task_id == task_id for item in items):
                return self.entries()
            if len(items) >= QUEUE_LIMIT:
                raise QueueFullError()

            item = TaskQueueItem(user_id=self.user_id, task_id=task_id, sort_order=len(items), created_at=utc_now())
            self.db.add(item)
            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                logger.info(f"Queue add raced for {self.user_id} (attempt {attempt}): {e.orig}")
                continue
            self.db.refresh(item)
            self._publish(ChangeType.insert, new=item)
            return self.entries()

        if len(self._items()) >= QUEUE_LIMIT:
            raise QueueFullError()
        raise QueueFullError("Could not add to the queue. Please try again.")

    def remove(self, task_id: str) -> list[QueueEntry]:
        self.discard(task_id)
        return self.entries()

    def discard(self, task_id: str, commit: bool = True) -> Optional[QueueRemoval]:
        """Drop ``task_id`` from the queue and close the gap it leaves.

        With ``commit=False`` the change joins the caller's transaction; the
        caller passes the returned removal to ``publish_removal`` once it
        has committed.
        """
        items = self._items()
        target = next((item for item in items if item.task_id == task_id), None)
        if target is None:
            return None

        removal = QueueRemoval(removed=row_snapshot(target))
        self.db.delete(target)
        self.db.flush()
        # Ascending order keeps (user_id, sort_order) unique at every step
        for item in items:
            if item.sort_order > removal.removed["sort_order"]:
                item.sort_order -= 1
                self.db.add(item)
                self.db.flush()
                removal.shifted.append(item)
        if commit:
            self.db.commit()
            self.publish_removal(removal)
        return removal

    def publish_removal(self, removal: Optional[QueueRemoval]) -> None:
        if removal is None:
            return
        self._publish(ChangeType.delete, old=removal.removed)
        for item in removal.shifted:
            self._publish(ChangeType.update, new=item)

    def move_up(self, task_id: str) -> list[QueueEntry]:
        return self._swap(task_id, -1)

    def move_down(self, task_id: str) -> list[QueueEntry]:
        return self._swap(task_id, 1)

    def _swap(self, task_id: str, offset: int) -> list[QueueEntry]:
        items = self._items()
        index = next((i for i, item in enumerate(items) if item.task_id == task_id), None)
        if index is None:
            raise TaskNotFoundError("Task is not in the queue.")
        neighbour_index = index + offset
        if neighbour_index < 0 or neighbour_index >= len(items):
            return self.entries()

        item, neighbour = items[index], items[neighbour_index]
        item_order, neighbour_order = item.sort_order, neighbour.sort_order
        # Park one row outside the valid range so the swap never collides
        item.sort_order = -1
        self.db.add(item)
        self.db.flush()
        neighbour.sort_order = item_order
        self.db.add(neighbour)
        self.db.flush()
        item.sort_order = neighbour_order
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        self.db.refresh(neighbour)
        self._publish(ChangeType.update, new=item)
        self._publish(ChangeType.update, new=neighbour)
        return self.entries()

    def _items(self) -> list[TaskQueueItem]:
        statement = (
            select(TaskQueueItem)
            .where(TaskQueueItem.user_id == self.user_id)
            .order_by(TaskQueueItem.sort_order)
        )
        return list(self.db.exec(statement).all())

    def _publish(self, change: ChangeType, new=None, old=None) -> None:
        if self.feed is not None:
            self.feed.publish_row("task_queue_items", change, self.user_id, new=new, old=old)


def get_next_up_task(queue: list[QueueEntry], active_task_id: Optional[str] = None) -> Optional[QueueEntry]:
    """First queued task that is neither completed nor already running."""
    for entry in sorted(queue, key=lambda e: e.sort_order):
        if entry.completed or entry.archived_at is not None:
            continue
        if active_task_id and entry.task_id == active_task_id:
            continue
        return entry
    return None
