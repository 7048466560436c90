"""Conversation storage.

Conversations live in memory only: a process restart drops them all.
Each conversation carries its own lock so that two requests for the same
id (a client double-send) run one after the other, while different
conversations never wait on each other.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod

from sdr_agent.config import SESSION_IDLE_TTL_SECONDS
from sdr_agent.dialogue import DialogueSession

logger = logging.getLogger(__name__)


class Conversation:
    """A dialogue session plus the transient per-conversation state."""

    def __init__(self, conversation_id: str, dialogue: DialogueSession):
        self.conversation_id = conversation_id
        self.dialogue = dialogue
        # CRM record created earlier in this conversation, reused by later tools
        self.lead_record_id: str | None = None
        self.created_at = time.time()
        self.last_active_at = self.created_at
        self.lock = threading.Lock()

    def touch(self) -> None:
        self.last_active_at = time.time()


class SessionStore(ABC):
    @abstractmethod
    def get(self, conversation_id: str) -> Conversation | None: ...

    @abstractmethod
    def put(self, conversation: Conversation) -> None: ...

    @abstractmethod
    def delete(self, conversation_id: str) -> bool: ...

    @abstractmethod
    def list_ids(self) -> list[str]: ...


class InMemorySessionStore(SessionStore):
    """Thread-safe dict store with lazy idle expiry (``ttl_seconds=0`` disables it)."""

    def __init__(self, ttl_seconds: float = SESSION_IDLE_TTL_SECONDS, clock=time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def _expired(self, conversation: Conversation) -> bool:
        return bool(self._ttl) and self._clock() - conversation.last_active_at > self._ttl

    def _purge_expired(self) -> None:
        # caller holds self._lock
        expired = [cid for cid, c in self._conversations.items() if self._expired(c)]
        for cid in expired:
            del self._conversations[cid]
        if expired:
            logger.info("Expired %d idle conversations", len(expired))

    def get(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None and self._expired(conversation):
                del self._conversations[conversation_id]
                logger.info("Conversation %s expired", conversation_id)
                return None
            return conversation

    def put(self, conversation: Conversation) -> None:
        with self._lock:
            self._purge_expired()
            self._conversations[conversation.conversation_id] = conversation

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            self._purge_expired()
            return list(self._conversations)
