"""Persistence layer for chat sessions and messages."""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from models.conversation import ChatMessage, ChatSession
from services.ai.chat.chat_errors import PersistenceConflict
from services.ai.chat.chat_models import ChatSessionInfo, Message, MessageContext, session_name_from

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def to_session_info(row: ChatSession) -> ChatSessionInfo:
    return ChatSessionInfo(
        id=row.id,
        session_name=row.session_name,
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


def to_message(row: ChatMessage) -> Message:
    context = MessageContext.model_validate(row.context_data) if row.context_data else None
    return Message(
        id=row.id,
        role="user" if row.message_type == "user" else "assistant",
        content=row.message or "",
        timestamp=_iso(row.created_at) or "",
        context=context,
        state="committed",
    )


class ConversationStore:
    """Thin wrapper around the chat session / history tables, scoped to one user.

    Every lookup filters on ``user_id``; a row that is missing or owned by
    someone else raises ``PersistenceConflict``. Writes are flushed, the
    caller decides when to ``commit``.
    """

    def __init__(self, db: Session, user_id: str):
        self._db = db
        self._user_id = user_id

    # ── sessions ────────────────────────────────────────────────────

    def _owned_session(self, session_id: str) -> ChatSession:
        row = (
            self._db.query(ChatSession)
            .filter(ChatSession.id == session_id, ChatSession.user_id == self._user_id)
            .first()
        )
        if row is None:
            raise PersistenceConflict(f"session not found: {session_id}")
        return row

    def create_session(self, name: Optional[str] = None, *, session_id: Optional[str] = None) -> ChatSession:
        row = ChatSession(
            id=session_id or str(uuid.uuid4()),
            user_id=self._user_id,
            session_name=(name or "").strip()[:200] or session_name_from(None),
        )
        self._db.add(row)
        self._db.flush()
        return row

    def ensure_session(self, session_id: str, *, first_message: Optional[str] = None) -> ChatSession:
        """Get the caller's session, creating it when the id is unused."""
        row = self._db.get(ChatSession, session_id)
        if row is not None:
            if row.user_id != self._user_id:
                raise PersistenceConflict(f"session not owned: {session_id}")
            return row
        return self.create_session(session_name_from(first_message), session_id=session_id)

    def list_sessions(self, limit: int = 50, offset: int = 0) -> List[ChatSession]:
        return (
            self._db.query(ChatSession)
            .filter(ChatSession.user_id == self._user_id)
            .order_by(ChatSession.updated_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def rename_session(self, session_id: str, name: str) -> ChatSession:
        row = self._owned_session(session_id)
        clean = " ".join((name or "").split())[:200]
        if not clean:
            raise ValueError("session name must not be empty")
        row.session_name = clean
        self._db.flush()
        return row

    def delete_session(self, session_id: str) -> None:
        row = self._owned_session(session_id)
        self._db.query(ChatMessage).filter(ChatMessage.chat_session_id == session_id).delete(
            synchronize_session=False
        )
        self._db.delete(row)
        self._db.flush()

    # ── messages ────────────────────────────────────────────────────

    def add_message(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        session = self._owned_session(session_id)
        msg = ChatMessage(
            id=str(uuid.uuid4()),
            chat_session_id=session_id,
            user_id=self._user_id,
            message_type=role,
            message=content or "",
            context_data=context or None,
        )
        self._db.add(msg)
        session.updated_at = datetime.now(timezone.utc)
        self._db.flush()
        return msg

    def list_messages(self, session_id: str, *, limit: int = 200) -> List[ChatMessage]:
        self._owned_session(session_id)
        return (
            self._db.query(ChatMessage)
            .filter(ChatMessage.chat_session_id == session_id, ChatMessage.user_id == self._user_id)
            .order_by(ChatMessage.created_at.asc())
            .limit(limit)
            .all()
        )

    def has_unresolved_confirmation(self, session_id: str) -> bool:
        return any(to_message(m).requires_confirmation for m in self.list_messages(session_id))

    def update_message_context(self, message_id: str, context: Dict[str, Any]) -> ChatMessage:
        row = (
            self._db.query(ChatMessage)
            .filter(ChatMessage.id == message_id, ChatMessage.user_id == self._user_id)
            .first()
        )
        if row is None:
            raise PersistenceConflict(f"message not found: {message_id}")
        merged = dict(row.context_data or {})
        merged.update(context or {})
        # reassign so the JSON column is marked dirty
        row.context_data = merged
        self._db.flush()
        return row

    # ── commit helper ───────────────────────────────────────────────

    def commit(self) -> None:
        """Commit the current DB transaction."""
        try:
            self._db.commit()
        except Exception:
            logger.exception("conversation_store: commit failed")
            self._db.rollback()
            raise


class AsyncConversationStore:
    """Event-loop facing store: each call runs one short transaction in a worker thread."""

    def __init__(self, session_factory: Callable[[], Session], user_id: str):
        self._session_factory = session_factory
        self._user_id = user_id

    def _run(self, fn: Callable[[ConversationStore], Any]) -> Any:
        db = self._session_factory()
        try:
            store = ConversationStore(db, self._user_id)
            result = fn(store)
            store.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _call(self, fn: Callable[[ConversationStore], Any]) -> Any:
        return await asyncio.to_thread(self._run, fn)

    async def list_sessions(self) -> List[ChatSessionInfo]:
        return await self._call(lambda s: [to_session_info(r) for r in s.list_sessions()])

    async def create_session(self, name: str) -> ChatSessionInfo:
        return await self._call(lambda s: to_session_info(s.create_session(name)))

    async def ensure_session(self, session_id: str, *, first_message: Optional[str] = None) -> ChatSessionInfo:
        return await self._call(lambda s: to_session_info(s.ensure_session(session_id, first_message=first_message)))

    async def rename_session(self, session_id: str, name: str) -> ChatSessionInfo:
        return await self._call(lambda s: to_session_info(s.rename_session(session_id, name)))

    async def delete_session(self, session_id: str) -> None:
        await self._call(lambda s: s.delete_session(session_id))

    async def list_messages(self, session_id: str) -> List[Message]:
        return await self._call(lambda s: [to_message(r) for r in s.list_messages(session_id)])

    async def append_message(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Message:
        return await self._call(
            lambda s: to_message(s.add_message(session_id, role=role, content=content, context=context))
        )

    async def update_message_context(self, message_id: str, context: Dict[str, Any]) -> Message:
        return await self._call(lambda s: to_message(s.update_message_context(message_id, context)))

    async def has_unresolved_confirmation(self, session_id: str) -> bool:
        return await self._call(lambda s: s.has_unresolved_confirmation(session_id))
