from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from services.ai.chat.chat_models import Message, PendingSessionState

logger = logging.getLogger(__name__)

CHAT_PENDING_MAX_SESSIONS = int(os.getenv("CHAT_PENDING_MAX_SESSIONS", "32"))


class PendingStateCache:
    """In-flight send state, at most one entry per session.

    Bounded LRU: the least recently touched session is evicted when full.
    Writes carrying a request id that is no longer the stored one are
    rejected so a slow stream can never overwrite a newer send.
    """

    def __init__(self, max_sessions: int = CHAT_PENDING_MAX_SESSIONS):
        self.max_sessions = max(1, int(max_sessions))
        self._entries: "OrderedDict[str, PendingSessionState]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def put(self, session_id: str, state: PendingSessionState) -> None:
        with self._lock:
            self._entries[session_id] = state
            self._entries.move_to_end(session_id)
            while len(self._entries) > self.max_sessions:
                evicted, _ = self._entries.popitem(last=False)
                logger.info("pending.evict session_id=%s reason=capacity", evicted)

    def get(self, session_id: str) -> Optional[PendingSessionState]:
        with self._lock:
            state = self._entries.get(session_id)
            if state is not None:
                self._entries.move_to_end(session_id)
            return state

    def is_current(self, session_id: str, request_id: str) -> bool:
        state = self._entries.get(session_id)
        return state is not None and state.request_id == request_id

    def update(
        self,
        session_id: str,
        request_id: str,
        *,
        user_message: Optional[Message] = None,
        detection_message: Optional[Message] = None,
        ai_message: Optional[Message] = None,
    ) -> bool:
        """Apply a partial update. Returns False when the write is stale."""
        with self._lock:
            state = self._entries.get(session_id)
            if state is None or state.request_id != request_id:
                logger.debug("pending.stale_write session_id=%s req_id=%s", session_id, request_id)
                return False
            changes: Dict[str, Message] = {}
            if user_message is not None:
                changes["user_message"] = user_message
            if detection_message is not None:
                changes["detection_message"] = detection_message
            if ai_message is not None:
                changes["ai_message"] = ai_message
            if changes:
                self._entries[session_id] = state.model_copy(update=changes)
            return True

    def discard(self, session_id: str, request_id: Optional[str] = None) -> bool:
        """Drop the entry; with ``request_id``, only if it is still the current one."""
        with self._lock:
            state = self._entries.get(session_id)
            if state is None:
                return False
            if request_id is not None and state.request_id != request_id:
                return False
            del self._entries[session_id]
            return True

    def evict(self, session_id: str) -> None:
        with self._lock:
            if self._entries.pop(session_id, None) is not None:
                logger.info("pending.evict session_id=%s reason=explicit", session_id)


class EphemeralMessageStore:
    """Unpersisted confirmation proposals, per session."""

    def __init__(self):
        self._by_session: Dict[str, List[Message]] = {}

    def add(self, session_id: str, message: Message) -> None:
        messages = self._by_session.setdefault(session_id, [])
        if all(m.id != message.id for m in messages):
            messages.append(message)

    def unresolved(self, session_id: str) -> List[Message]:
        return [m for m in self._by_session.get(session_id, []) if m.requires_confirmation]

    def has_unresolved(self, session_id: str) -> bool:
        return bool(self.unresolved(session_id))

    def resolve(self, session_id: str, message_id: str) -> Optional[Message]:
        messages = self._by_session.get(session_id, [])
        for idx, message in enumerate(messages):
            if message.id == message_id:
                return messages.pop(idx)
        return None

    def find(self, message_id: str) -> Optional[str]:
        for session_id, messages in self._by_session.items():
            if any(m.id == message_id for m in messages):
                return session_id
        return None

    def clear(self, session_id: str) -> None:
        self._by_session.pop(session_id, None)

    def sessions(self) -> Iterable[str]:
        return list(self._by_session)
