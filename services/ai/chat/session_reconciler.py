"""Client-side owner of displayed chat state.

All mutations of the displayed message list go through
``SessionReconciler``. Stream updates are applied only while their
request id is still the one stored for the session, and only shown while
that session is active; anything else is dropped silently.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol, Sequence, Set, Tuple, Union

from services.ai.chat.chat_errors import ChatError, PersistenceConflict, QuotaExceeded, StreamTransportError
from services.ai.chat.chat_models import (
    ChatSessionInfo,
    ChatStreamRequest,
    HistoryItem,
    Message,
    MessageContext,
    PendingSessionState,
    ProfileUpdateIntent,
    QuotaStatus,
    session_name_from,
)
from services.ai.chat.pending_state import EphemeralMessageStore, PendingStateCache
from services.ai.chat.profile_intent_matcher import ProfileIntentMatcher, get_profile_intent_matcher
from services.ai.chat.profile_update_rules import MONTHLY_AMOUNT
from services.ai.chat.stream_consumer import StreamConsumer

logger = logging.getLogger(__name__)

HISTORY_FOR_REQUEST = 10


# ── Collaborators ───────────────────────────────────────────────────────

class ChatPersistence(Protocol):
    async def list_sessions(self) -> List[ChatSessionInfo]: ...

    async def create_session(self, name: str) -> ChatSessionInfo: ...

    async def rename_session(self, session_id: str, name: str) -> ChatSessionInfo: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def list_messages(self, session_id: str) -> List[Message]: ...

    async def append_message(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Message: ...

    async def update_message_context(self, message_id: str, context: Dict[str, Any]) -> Message: ...


class ChatTransport(Protocol):
    def stream(self, request: ChatStreamRequest) -> AsyncIterator[Union[str, bytes]]: ...


class QuotaService(Protocol):
    async def check(self) -> QuotaStatus: ...


class ProfileService(Protocol):
    async def get_profile(self) -> Optional[Dict[str, Any]]: ...

    async def apply_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]: ...


# ── Outcomes ────────────────────────────────────────────────────────────

@dataclass
class ChatNotice:
    level: Literal["info", "warning", "error"]
    code: str
    message: str


@dataclass
class SendOutcome:
    status: Literal["completed", "quota_exceeded", "error", "ignored"]
    request_id: Optional[str] = None
    content: str = ""
    proposal: Optional[ProfileUpdateIntent] = None
    notices: List[ChatNotice] = field(default_factory=list)


# ── Merge ───────────────────────────────────────────────────────────────

def _identity(message: Message) -> Tuple[str, ...]:
    # drafts are matched to their committed copy through the request id
    if message.is_draft and message.request_id:
        return ("request", message.request_id, message.role)
    return ("id", message.id)


def merge_messages(
    persisted: Sequence[Message],
    ephemeral: Sequence[Message] = (),
    pending: Sequence[Message] = (),
) -> List[Message]:
    """Persisted history, then unresolved proposals, then in-flight drafts.

    Pure and idempotent: feeding the result back in as ``persisted`` with
    the same ``ephemeral`` and ``pending`` returns an equal list.
    """
    merged = list(persisted)
    ids = {m.id for m in merged}
    committed = {
        ("request", m.request_id, m.role)
        for m in merged
        if m.request_id and not m.is_draft
    }
    extras: List[Message] = []
    confirmation_persisted = any(m.requires_confirmation and m.state == "committed" for m in merged)
    if not confirmation_persisted:
        for message in ephemeral:
            if message.requires_confirmation and message.id not in ids:
                extras.append(message)
                ids.add(message.id)

    for message in pending:
        if message.id in ids or _identity(message) in committed:
            continue
        if message.state == "ephemeral" and (confirmation_persisted or not message.requires_confirmation):
            continue
        extras.append(message)
        ids.add(message.id)

    extras.sort(key=lambda m: m.timestamp)
    return merged + extras


def _request_committed(persisted: Sequence[Message], request_id: str) -> bool:
    roles = {m.role for m in persisted if m.request_id == request_id and not m.is_draft}
    return {"user", "assistant"} <= roles


# ── Reconciler ──────────────────────────────────────────────────────────

class SessionReconciler:
    def __init__(
        self,
        *,
        persistence: ChatPersistence,
        transport: ChatTransport,
        quota: Optional[QuotaService] = None,
        profile: Optional[ProfileService] = None,
        pending: Optional[PendingStateCache] = None,
        ephemeral: Optional[EphemeralMessageStore] = None,
        matcher: Optional[ProfileIntentMatcher] = None,
    ):
        self.persistence = persistence
        self.transport = transport
        self.quota = quota
        self.profile = profile
        self.pending = pending if pending is not None else PendingStateCache()
        self.ephemeral = ephemeral if ephemeral is not None else EphemeralMessageStore()
        self.matcher = matcher or get_profile_intent_matcher()

        self.active_session_id: Optional[str] = None
        self.messages: List[Message] = []
        self.notices: List[ChatNotice] = []
        self.quota_exceeded = False
        self.usage: Optional[QuotaStatus] = None
        # ids of persisted messages still awaiting confirmation, per session, as of the last load
        self._persisted_unresolved: Dict[str, Set[str]] = {}

    # ── notices ─────────────────────────────────────────────────────

    def _notify(self, error: ChatError, level: Literal["info", "warning", "error"] = "error") -> ChatNotice:
        notice = ChatNotice(level=level, code=error.code, message=error.user_message)
        self.notices.append(notice)
        return notice

    def drain_notices(self) -> List[ChatNotice]:
        out, self.notices = self.notices, []
        return out

    # ── display helpers ─────────────────────────────────────────────

    def _show(self, session_id: str, message: Message) -> None:
        if session_id != self.active_session_id:
            return
        for idx, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[idx] = message
                return
        self.messages.append(message)

    def _drop_request(self, session_id: str, request_id: str) -> None:
        if session_id == self.active_session_id:
            self.messages = [
                m for m in self.messages if not (m.request_id == request_id and m.state != "committed")
            ]
        pending = self.pending.get(session_id)
        if pending is not None and pending.request_id == request_id and pending.detection_message is not None:
            self.ephemeral.resolve(session_id, pending.detection_message.id)
        self.pending.discard(session_id, request_id)

    def _has_unresolved_confirmation(self, session_id: str) -> bool:
        if self.ephemeral.has_unresolved(session_id):
            return True
        if session_id == self.active_session_id:
            return any(m.requires_confirmation for m in self.messages)
        return bool(self._persisted_unresolved.get(session_id))

    def _history(self) -> List[HistoryItem]:
        committed = [m for m in self.messages if m.state == "committed" and m.content]
        return [
            HistoryItem(role=m.role, content=m.content[:8000])
            for m in committed[-HISTORY_FOR_REQUEST:]
        ]

    def _find(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    # ── load / switch ───────────────────────────────────────────────

    async def load_messages(self, session_id: str) -> List[Message]:
        try:
            persisted = await self.persistence.list_messages(session_id)
        except ChatError as exc:
            logger.warning("reconciler.load.failed session_id=%s code=%s", session_id, exc.code)
            self._notify(exc)
            if session_id == self.active_session_id:
                self.messages = [m for m in self.messages if not m.is_draft]
            return list(self.messages)
        except Exception:
            logger.exception("reconciler.load.error session_id=%s", session_id)
            self._notify(PersistenceConflict("load failed"))
            if session_id == self.active_session_id:
                self.messages = [m for m in self.messages if not m.is_draft]
            return list(self.messages)

        unresolved_ids = {m.id for m in persisted if m.requires_confirmation}
        self._persisted_unresolved[session_id] = unresolved_ids
        if unresolved_ids:
            self.ephemeral.clear(session_id)

        pending = self.pending.get(session_id)
        pending_messages: List[Message] = []
        if pending is not None:
            if _request_committed(persisted, pending.request_id):
                self.pending.discard(session_id, pending.request_id)
            else:
                pending_messages = pending.messages()

        merged = merge_messages(persisted, self.ephemeral.unresolved(session_id), pending_messages)
        if session_id == self.active_session_id:
            self.messages = merged
        logger.info(
            "reconciler.load.done session_id=%s persisted=%s shown=%s pending=%s",
            session_id,
            len(persisted),
            len(merged),
            pending is not None,
        )
        return merged

    async def switch_session(self, session_id: Optional[str]) -> List[Message]:
        previous = self.active_session_id
        self.messages = []
        if previous is not None and previous != session_id:
            self.ephemeral.clear(previous)
        self.active_session_id = session_id
        if session_id is None:
            return []
        return await self.load_messages(session_id)

    # ── send ────────────────────────────────────────────────────────

    async def _current_monthly_amount(self) -> Optional[float]:
        if self.profile is None:
            return None
        try:
            profile = await self.profile.get_profile()
        except Exception:
            logger.warning("reconciler.profile.unavailable")
            return None
        value = (profile or {}).get(MONTHLY_AMOUNT)
        return float(value) if isinstance(value, (int, float)) else None

    async def resync_usage(self) -> Optional[QuotaStatus]:
        if self.quota is None:
            return None
        try:
            self.usage = await self.quota.check()
        except Exception:
            logger.warning("reconciler.usage.resync_failed")
            return self.usage
        self.quota_exceeded = not self.usage.allowed
        return self.usage

    def _apply_stream_update(self, session_id: str, request_id: str, ai_message: Message) -> bool:
        if not self.pending.update(session_id, request_id, ai_message=ai_message):
            return False
        self._show(session_id, ai_message)
        return True

    async def send(
        self,
        session_id: str,
        text: str,
        *,
        analysis_type: Optional[str] = None,
        has_uploaded_documents: bool = False,
    ) -> SendOutcome:
        text = (text or "").strip()
        if not text or not session_id:
            return SendOutcome(status="ignored")

        if self.quota is not None:
            try:
                status = await self.quota.check()
            except Exception:
                logger.warning("reconciler.quota.check_failed session_id=%s", session_id)
                status = None
            if status is not None:
                self.usage = status
                if not status.allowed:
                    self.quota_exceeded = True
                    notice = self._notify(QuotaExceeded(used=status.used, limit=status.limit), level="warning")
                    logger.info("reconciler.send.quota_exceeded session_id=%s", session_id)
                    return SendOutcome(status="quota_exceeded", notices=[notice])

        request_id = uuid.uuid4().hex
        user_draft = Message.draft(role="user", content=text, request_id=request_id)

        detection_message: Optional[Message] = None
        proposal: Optional[ProfileUpdateIntent] = None
        if not self._has_unresolved_confirmation(session_id):
            proposal = self.matcher.match(text, current_amount=await self._current_monthly_amount())
            if proposal is not None:
                detection_message = Message.ephemeral_proposal(proposal, request_id=request_id)
        else:
            logger.info("reconciler.detect.suppressed session_id=%s reason=confirmation_pending", session_id)

        history = self._history() if session_id == self.active_session_id else []
        self.pending.put(
            session_id,
            PendingSessionState(
                request_id=request_id,
                user_message=user_draft,
                detection_message=detection_message,
            ),
        )
        self._show(session_id, user_draft)
        if detection_message is not None:
            self.ephemeral.add(session_id, detection_message)
            self._show(session_id, detection_message)

        ai_draft = Message.draft(role="assistant", content="", request_id=request_id)
        request = ChatStreamRequest(
            message=text,
            session_id=session_id,
            request_id=request_id,
            chat_history=history,
            analysis_type=analysis_type,
            has_uploaded_documents=has_uploaded_documents,
        )
        logger.info("reconciler.send.start session_id=%s req_id=%s", session_id, request_id)

        consumer = StreamConsumer()
        try:
            async for raw in self.transport.stream(request):
                before = consumer.content
                consumer.feed(raw)
                if consumer.content != before:
                    self._apply_stream_update(session_id, request_id, consumer.apply_to(ai_draft))
                if consumer.finished:
                    break
            consumer.finish()
            if consumer.failed:
                error = consumer.error
                if error is not None and error.code == QuotaExceeded.code:
                    raise QuotaExceeded(error.message)
                raise StreamTransportError(error.message if error else "stream error")
        except QuotaExceeded as exc:
            self._drop_request(session_id, request_id)
            self.quota_exceeded = True
            notice = self._notify(exc, level="warning")
            await self.resync_usage()
            self.quota_exceeded = True
            logger.info("reconciler.send.quota_exceeded session_id=%s req_id=%s", session_id, request_id)
            return SendOutcome(status="quota_exceeded", request_id=request_id, notices=[notice])
        except ChatError as exc:
            self._drop_request(session_id, request_id)
            notice = self._notify(exc)
            logger.warning("reconciler.send.failed session_id=%s req_id=%s code=%s", session_id, request_id, exc.code)
            return SendOutcome(status="error", request_id=request_id, notices=[notice])
        except Exception as exc:
            self._drop_request(session_id, request_id)
            notice = self._notify(StreamTransportError(type(exc).__name__))
            logger.exception("reconciler.send.error session_id=%s req_id=%s", session_id, request_id)
            return SendOutcome(status="error", request_id=request_id, notices=[notice])

        final = consumer.apply_to(ai_draft)
        self._apply_stream_update(session_id, request_id, final)
        self.pending.discard(session_id, request_id)
        if session_id == self.active_session_id:
            await self.load_messages(session_id)
        await self.resync_usage()
        logger.info(
            "reconciler.send.done session_id=%s req_id=%s chars=%s proposal=%s",
            session_id,
            request_id,
            len(final.content),
            proposal is not None,
        )
        return SendOutcome(
            status="completed",
            request_id=request_id,
            content=final.content,
            proposal=proposal or consumer.pending_proposal(),
        )

    # ── confirmations ───────────────────────────────────────────────

    async def _settle_confirmation(self, message: Message, extra: Optional[Dict[str, Any]] = None) -> bool:
        context = message.context.model_copy() if message.context else MessageContext()
        context.requires_confirmation = False
        for key, value in (extra or {}).items():
            setattr(context, key, value)
        settled = message.model_copy(update={"context": context})

        session_id = self.active_session_id
        if message.state == "ephemeral":
            if session_id is not None:
                self.ephemeral.resolve(session_id, message.id)
            self._replace(settled)
            return True

        self._replace(settled)
        try:
            await self.persistence.update_message_context(message.id, context.to_record())
        except ChatError as exc:
            self._replace(message)
            self._notify(exc)
            return False
        except Exception:
            logger.exception("reconciler.confirmation.persist_error message_id=%s", message.id)
            self._replace(message)
            self._notify(PersistenceConflict("context update failed"))
            return False
        if session_id is not None:
            self._persisted_unresolved.get(session_id, set()).discard(message.id)
        return True

    def _replace(self, message: Message) -> None:
        for idx, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[idx] = message
                return

    async def dismiss_confirmation(self, message_id: str) -> bool:
        message = self._find(message_id)
        if message is None or not message.requires_confirmation:
            return False
        return await self._settle_confirmation(message)

    async def accept_confirmation(self, message_id: str, updates: Optional[Dict[str, Any]] = None) -> bool:
        message = self._find(message_id)
        if message is None or not message.requires_confirmation:
            return False
        proposed = dict(updates or (message.context.profile_updates if message.context else None) or {})
        if not proposed or self.profile is None:
            return False

        try:
            await self.profile.apply_updates(proposed)
        except ChatError as exc:
            self._notify(exc)
            return False
        except Exception:
            logger.exception("reconciler.profile.apply_error message_id=%s", message_id)
            self._notify(PersistenceConflict("profile update failed"))
            return False

        if not await self._settle_confirmation(message, {"profile_updates": proposed}):
            return False

        session_id = self.active_session_id
        content = "Din profil har uppdaterats. " + self.matcher.describe_changes(proposed, "sv")
        context = {"analysisType": "profile_update_confirmation", "profileUpdates": proposed}
        confirmation: Optional[Message] = None
        if session_id is not None:
            try:
                confirmation = await self.persistence.append_message(
                    session_id, role="assistant", content=content, context=context
                )
            except Exception:
                logger.warning("reconciler.confirmation.append_failed session_id=%s", session_id)
        if confirmation is None:
            confirmation = Message(
                id=f"local-{uuid.uuid4().hex[:12]}",
                role="assistant",
                content=content,
                context=MessageContext.model_validate(context),
            )
        self.messages.append(confirmation)
        logger.info("reconciler.confirmation.accepted fields=%s", ",".join(sorted(proposed)))
        return True

    # ── sessions ────────────────────────────────────────────────────

    async def list_sessions(self) -> List[ChatSessionInfo]:
        try:
            return await self.persistence.list_sessions()
        except ChatError as exc:
            self._notify(exc)
            return []

    async def create_session(
        self,
        name: Optional[str] = None,
        *,
        first_message: Optional[str] = None,
        activate: bool = True,
    ) -> Optional[ChatSessionInfo]:
        session_name = (name or "").strip() or session_name_from(first_message)
        try:
            info = await self.persistence.create_session(session_name)
        except ChatError as exc:
            self._notify(exc)
            return None
        if activate:
            await self.switch_session(info.id)
        return info

    async def rename_session(self, session_id: str, name: str) -> Optional[ChatSessionInfo]:
        name = (name or "").strip()
        if not name:
            return None
        try:
            return await self.persistence.rename_session(session_id, name)
        except ChatError as exc:
            self._notify(exc)
            return None

    async def delete_session(self, session_id: str) -> bool:
        try:
            await self.persistence.delete_session(session_id)
        except ChatError as exc:
            self._notify(exc)
            return False
        self.pending.evict(session_id)
        self.ephemeral.clear(session_id)
        self._persisted_unresolved.pop(session_id, None)
        if self.active_session_id == session_id:
            self.active_session_id = None
            self.messages = []
        return True
