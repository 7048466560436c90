"""Tests for the in-memory conversation store."""

from __future__ import annotations

from unittest.mock import MagicMock

from sdr_agent.session_store import Conversation, InMemorySessionStore


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _conversation(cid: str, last_active_at: float) -> Conversation:
    conversation = Conversation(cid, MagicMock())
    conversation.last_active_at = last_active_at
    return conversation


class TestInMemorySessionStore:
    def test_put_get_delete(self):
        store = InMemorySessionStore(ttl_seconds=0)
        conversation = Conversation("c1", MagicMock())
        store.put(conversation)

        assert store.get("c1") is conversation
        assert store.list_ids() == ["c1"]
        assert store.delete("c1") is True
        assert store.get("c1") is None
        assert store.delete("c1") is False

    def test_idle_conversation_expires_on_get(self):
        clock = FakeClock()
        store = InMemorySessionStore(ttl_seconds=60, clock=clock)
        store.put(_conversation("c1", last_active_at=clock.now))

        clock.now += 61
        assert store.get("c1") is None

    def test_active_conversation_survives(self):
        clock = FakeClock()
        store = InMemorySessionStore(ttl_seconds=60, clock=clock)
        store.put(_conversation("c1", last_active_at=clock.now))

        clock.now += 30
        assert store.get("c1") is not None

    def test_list_ids_purges_expired(self):
        clock = FakeClock()
        store = InMemorySessionStore(ttl_seconds=60, clock=clock)
        store.put(_conversation("old", last_active_at=clock.now - 120))
        store.put(_conversation("new", last_active_at=clock.now))

        assert store.list_ids() == ["new"]

    def test_each_conversation_has_its_own_lock(self):
        a = Conversation("a", MagicMock())
        b = Conversation("b", MagicMock())
        assert a.lock is not b.lock
        assert a.lead_record_id is None
