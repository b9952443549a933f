"""Tests for cross-tab messaging and tab leader election."""

import json

import pytest

from services.cross_tab import (
    TAB_ID_KEY,
    BroadcastHub,
    BrowserOrigin,
    CrossTabEvent,
    CrossTabEventType,
    CrossTabOperation,
    SharedStorage,
    StorageQuotaError,
)
from services.leader import LEADER_KEY, FocusLeaderElection, LeaderRecord


def collect(tab):
    received = []
    tab.channel.subscribe(received.append)
    return received


class TestCrossTabEvent:
    def test_payload_omits_empty_optionals(self):
        event = CrossTabEvent(type="focus:queue_changed", event_id="e1", source_tab_id="t1", ts=1.0)
        assert event.to_payload() == {
            "type": "focus:queue_changed",
            "eventId": "e1",
            "sourceTabId": "t1",
            "ts": 1.0,
        }

    def test_parse_rejects_malformed(self):
        assert CrossTabEvent.parse(None) is None
        assert CrossTabEvent.parse({"type": "x", "eventId": "e"}) is None
        assert CrossTabEvent.parse({"type": "x", "eventId": "e", "sourceTabId": "t", "ts": "1"}) is None
        assert CrossTabEvent.parse({"type": "x", "eventId": "e", "sourceTabId": "t", "ts": True}) is None

    def test_parse_round_trips_optionals(self):
        raw = {
            "type": "focus:session_changed",
            "eventId": "e1",
            "sourceTabId": "t1",
            "ts": 5,
            "routeHint": "/focus",
            "entityType": "sessions",
            "entityId": "s1",
            "operation": "stop",
        }
        event = CrossTabEvent.parse(raw)
        assert event.entity_id == "s1"
        assert event.to_payload() == raw


class TestCrossTabChannel:
    def test_tab_id_is_stable_per_tab(self, clock):
        origin = BrowserOrigin(clock=clock)
        tab = origin.open_tab()
        first = tab.channel.get_tab_id()
        assert tab.channel.get_tab_id() == first
        assert tab.session_storage[TAB_ID_KEY] == first
        assert origin.open_tab().tab_id != first

    def test_other_tabs_receive_once(self, clock):
        origin = BrowserOrigin(clock=clock)
        sender, receiver = origin.open_tab(), origin.open_tab()
        received = collect(receiver)

        event = sender.channel.publish(
            CrossTabEventType.session_changed,
            route_hint="/focus",
            entity_type="sessions",
            entity_id="s1",
            operation=CrossTabOperation.start,
        )

        # Delivered by both the broadcast and the storage transport, seen once
        assert [e.event_id for e in received] == [event.event_id]
        assert received[0].operation == "start"
        assert received[0].source_tab_id == sender.tab_id

    def test_sender_does_not_hear_itself(self, clock):
        origin = BrowserOrigin(clock=clock)
        sender = origin.open_tab()
        origin.open_tab()
        received = collect(sender)
        sender.channel.publish(CrossTabEventType.queue_changed)
        assert received == []

    def test_storage_fallback_without_broadcast(self, clock):
        origin = BrowserOrigin(clock=clock, hub=None)
        sender, receiver = origin.open_tab(), origin.open_tab()
        received = collect(receiver)
        sender.channel.publish(CrossTabEventType.pomodoro_changed, operation="pause")
        assert len(received) == 1
        assert origin.storage.get("doittimer.crossTab.ping") is None

    def test_unsubscribe(self, clock):
        origin = BrowserOrigin(clock=clock)
        sender, receiver = origin.open_tab(), origin.open_tab()
        received = []
        unsubscribe = receiver.channel.subscribe(received.append)
        unsubscribe()
        sender.channel.publish(CrossTabEventType.queue_changed)
        assert received == []
        assert receiver.channel.listener_count == 0

    def test_port_close_is_idempotent(self):
        hub = BroadcastHub()
        port, peer = hub.open("doittimer"), hub.open("doittimer")
        received = []
        peer.add_listener(received.append)
        port.close()
        port.close()
        port.post_message({"n": 1})
        hub.open("doittimer").post_message({"n": 2})
        assert received == [{"n": 2}]

    def test_quota_error_drops_storage_ping(self, clock, caplog):
        origin = BrowserOrigin(clock=clock, storage=SharedStorage(quota_bytes=10), hub=None)
        sender, receiver = origin.open_tab(), origin.open_tab()
        received = collect(receiver)
        sender.channel.publish(CrossTabEventType.queue_changed)
        assert received == []
        assert "storage ping dropped" in caplog.text

    def test_shared_storage_enforces_quota(self):
        storage = SharedStorage(quota_bytes=8)
        storage.set("a", "1234", origin="t1")
        with pytest.raises(StorageQuotaError):
            storage.set("b", "123456", origin="t1")


class TestLeaderElection:
    def make(self, origin, clock, **tab_kwargs):
        tab = origin.open_tab(**tab_kwargs)
        return FocusLeaderElection(tab, clock=clock)

    def test_first_visible_tab_claims(self, clock):
        origin = BrowserOrigin(clock=clock)
        election = self.make(origin, clock)
        election.start()
        assert election.is_leader
        record = LeaderRecord.parse(origin.storage.get(LEADER_KEY))
        assert record.tab_id == election.tab_id

    def test_second_tab_defers_to_fresh_leader(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        assert first.is_leader
        assert not second.is_leader

    def test_focused_tab_takes_over(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        second.on_focus()
        assert second.is_leader
        # The storage event demotes the old leader
        assert not first.is_leader

    def test_blurred_tab_stops_preempting(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        second.on_focus()
        second.on_blur()
        first.on_focus()
        first.on_blur()
        assert first.is_leader
        assert second.try_claim() is False
        assert not second.is_leader

    def test_hidden_tab_never_claims(self, clock):
        origin = BrowserOrigin(clock=clock)
        election = self.make(origin, clock, visible=False)
        election.start()
        assert not election.is_leader
        assert origin.storage.get(LEADER_KEY) is None

    def test_hiding_drops_leadership(self, clock):
        origin = BrowserOrigin(clock=clock)
        election = self.make(origin, clock)
        election.start()
        election.on_visibility_change("hidden")
        assert not election.is_leader

    def test_heartbeat_keeps_record_fresh(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        clock.advance(30_000)
        assert first.is_leader
        assert not second.is_leader
        record = LeaderRecord.parse(origin.storage.get(LEADER_KEY))
        assert clock.now_ms() - record.ts < 12_000

    def test_stale_leader_is_replaced_by_poll(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        # First tab crashes: timers stop without releasing the claim
        first._set_leader(False)
        first._poll.cancel()
        clock.advance(14_000)
        assert second.is_leader

    def test_unload_releases_claim(self, clock):
        origin = BrowserOrigin(clock=clock)
        first, second = self.make(origin, clock), self.make(origin, clock)
        first.start()
        second.start()
        first.unload()
        assert origin.storage.get(LEADER_KEY) is not None
        assert second.is_leader

    def test_claim_is_announced(self, clock):
        origin = BrowserOrigin(clock=clock)
        listener_tab = origin.open_tab()
        received = collect(listener_tab)
        self.make(origin, clock).start()
        assert [event.type for event in received] == ["focus:leader_claim"]

    def test_record_parse(self):
        assert LeaderRecord.parse("not json") is None
        assert LeaderRecord.parse(json.dumps({"tabId": "t", "ts": "x"})) is None
        record = LeaderRecord.parse(json.dumps({"tabId": "t", "ts": 1, "visibilityState": "weird"}))
        assert record.visibility_state == "visible"
