"""Tests for the change feed, realtime adapters and the focus view sync."""

from services.cross_tab import BrowserOrigin, CrossTabEventType
from services.dedup import EventDeduper
from services.focus_sync import FocusRealtimeSync
from services.realtime import (
    ChangeType,
    RealtimeSubscription,
    RowChange,
    bucket_timestamp,
    normalize_change,
    read_entity_id,
)
from services.refresh_scheduler import RouteRefreshScheduler


class TestChangeFeed:
    def test_delivers_only_to_owner(self, feed):
        mine, theirs = [], []
        feed.subscribe("tasks", "u1", mine.append)
        feed.subscribe("tasks", "u2", theirs.append)
        feed.publish_row("tasks", ChangeType.insert, "u1", new={"id": "t1"})
        assert [change.new["id"] for change in mine] == ["t1"]
        assert theirs == []

    def test_unsubscribe(self, feed):
        received = []
        unsubscribe = feed.subscribe("tasks", "u1", received.append)
        unsubscribe()
        feed.publish_row("tasks", ChangeType.update, "u1", new={"id": "t1"})
        assert received == []
        assert feed.subscriber_count() == 0

    def test_failing_handler_does_not_block_others(self, feed, caplog):
        received = []

        def broken(change):
            raise RuntimeError("boom")

        feed.subscribe("tasks", "u1", broken)
        feed.subscribe("tasks", "u1", received.append)
        feed.publish_row("tasks", ChangeType.delete, "u1", old={"id": "t1"})
        assert len(received) == 1
        assert "Realtime handler for tasks failed" in caplog.text

    def test_payload_shape(self):
        change = RowChange("sessions", "UPDATE", "u1", new={"id": "s1"})
        assert change.to_payload() == {"table": "sessions", "eventType": "UPDATE", "new": {"id": "s1"}, "old": {}}


class TestNormalize:
    def test_entity_id_prefers_new_row(self):
        change = RowChange("tasks", "UPDATE", "u1", new={"id": "new"}, old={"id": "old"})
        assert read_entity_id(change) == "new"

    def test_entity_id_from_old_row_on_delete(self):
        change = RowChange("tasks", "DELETE", "u1", old={"id": "gone"})
        assert read_entity_id(change) == "gone"

    def test_queue_rows_keyed_by_task(self):
        change = RowChange("task_queue_items", "INSERT", "u1", new={"task_id": "t1", "user_id": "u1"})
        assert read_entity_id(change) == "t1"

    def test_unknown_entity(self):
        assert read_entity_id(RowChange("tasks", "DELETE", "u1")) == "unknown"

    def test_bucket(self):
        assert bucket_timestamp(None) == "0"
        assert bucket_timestamp("garbage") == "0"
        assert bucket_timestamp("1970-01-01T00:00:03Z") == "2"

    def test_session_bucket_prefers_edit_time(self):
        change = RowChange(
            "sessions",
            "UPDATE",
            "u1",
            new={"id": "s1", "started_at": "1970-01-01T00:00:00Z", "edited_at": "1970-01-01T00:00:04.500Z"},
        )
        notice = normalize_change(change)
        assert notice.entity_id == "s1"
        assert notice.changed_bucket == "3"

    def test_non_session_bucket_is_zero(self):
        notice = normalize_change(RowChange("tasks", "INSERT", "u1", new={"id": "t1", "started_at": "2026-01-01"}))
        assert notice.changed_bucket == "0"


class TestRealtimeSubscription:
    def test_context_manager_subscribes_and_cleans_up(self, feed):
        received = []
        with RealtimeSubscription(feed, "u1", {"tasks": received.append, "sessions": received.append}) as sub:
            assert sub.active
            assert feed.subscriber_count(user_id="u1") == 2
        assert feed.subscriber_count() == 0

    def test_no_user_no_subscription(self, feed):
        subscription = RealtimeSubscription(feed, None, {"tasks": lambda change: None})
        subscription.start()
        assert not subscription.active

    def test_set_user_resubscribes(self, feed):
        received = []
        subscription = RealtimeSubscription(feed, "u1", {"tasks": received.append})
        subscription.start()
        subscription.set_user("u2")
        feed.publish_row("tasks", ChangeType.insert, "u1", new={"id": "a"})
        feed.publish_row("tasks", ChangeType.insert, "u2", new={"id": "b"})
        assert [change.new["id"] for change in received] == ["b"]


class TestFocusRealtimeSync:
    def make(self, feed, clock):
        origin = BrowserOrigin(clock=clock)
        tab, other = origin.open_tab(), origin.open_tab()
        refreshes = []
        sync = FocusRealtimeSync(
            "u1",
            feed,
            tab.channel,
            EventDeduper(clock=clock),
            RouteRefreshScheduler(clock=clock),
            lambda: refreshes.append(clock.now_ms()),
        )
        sync.start()
        return sync, other, refreshes

    def test_burst_of_session_changes_refreshes_once(self, feed, clock):
        sync, _, refreshes = self.make(feed, clock)
        for _ in range(5):
            feed.publish_row("sessions", ChangeType.update, "u1", new={"id": "s1"})
        feed.publish_row("tasks", ChangeType.update, "u1", new={"id": "t1"})
        clock.advance(2000)
        assert len(refreshes) == 1

    def test_other_users_changes_are_ignored(self, feed, clock):
        sync, _, refreshes = self.make(feed, clock)
        feed.publish_row("sessions", ChangeType.update, "u2", new={"id": "s1"})
        clock.advance(2000)
        assert refreshes == []

    def test_cross_tab_event_triggers_refresh(self, feed, clock):
        sync, other, refreshes = self.make(feed, clock)
        other.channel.publish(
            CrossTabEventType.session_changed, route_hint="/focus", entity_type="sessions", entity_id="s1"
        )
        clock.advance(2000)
        assert len(refreshes) == 1

    def test_cross_tab_event_for_other_route_is_ignored(self, feed, clock):
        sync, other, refreshes = self.make(feed, clock)
        other.channel.publish(CrossTabEventType.queue_changed, route_hint="/tasks")
        clock.advance(2000)
        assert refreshes == []

    def test_stop_unsubscribes(self, feed, clock):
        sync, other, refreshes = self.make(feed, clock)
        sync.stop()
        feed.publish_row("sessions", ChangeType.update, "u1", new={"id": "s1"})
        other.channel.publish(CrossTabEventType.session_changed, route_hint="/focus")
        clock.advance(2000)
        assert refreshes == []
        assert feed.subscriber_count() == 0
