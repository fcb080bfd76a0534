import asyncio
import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from database import SessionLocal, get_db
from middleware.rate_limit import CHAT_STREAM_RATE_LIMIT, limiter
from services.ai.chat.chat_errors import PersistenceConflict
from services.ai.chat.chat_models import (
    ChatSessionInfo,
    ChatStreamRequest,
    Message,
    QuotaStatus,
    session_name_from,
)
from services.ai.chat.chat_orchestrator import ChatOrchestrator
from services.ai.chat.conversation_store import AsyncConversationStore, ConversationStore, to_message, to_session_info
from services.ai.chat.gemini_stream_client import get_shared_gemini_client
from services.chat_quota import check_chat_quota, quota_exceeded_detail, record_chat_message
from services.profile_service import apply_profile_updates, load_profile

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Bodies ──────────────────────────────────────────────────────────────

class SessionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=200)
    first_message: Optional[str] = Field(default=None, alias="firstMessage", max_length=8000)


class SessionRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class MessageCreate(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(default="", max_length=20000)
    context: Optional[Dict[str, Any]] = None


class ContextUpdate(BaseModel):
    context: Dict[str, Any]


class ProfileUpdate(BaseModel):
    updates: Dict[str, Any] = Field(..., min_length=1)


# ── Dependencies ────────────────────────────────────────────────────────

def get_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user")
    return user_id


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


_orchestrator: Optional[ChatOrchestrator] = None


def get_chat_orchestrator() -> ChatOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator(gemini_client=get_shared_gemini_client())
    return _orchestrator


def _not_found(exc: PersistenceConflict) -> HTTPException:
    return HTTPException(status_code=404, detail={"message": exc.user_message, "code": exc.code})


def _in_session(session_factory: Callable[[], Session], fn: Callable[[Session], Any]) -> Any:
    db = session_factory()
    try:
        return fn(db)
    finally:
        db.close()


# ── Stream ──────────────────────────────────────────────────────────────

@router.post("/stream")
@limiter.limit(CHAT_STREAM_RATE_LIMIT)
async def chat_stream(
    request: Request,
    body: ChatStreamRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    quota = check_chat_quota(db, user_id)
    if not quota.allowed:
        logger.info("chat_stream.quota_exceeded plan=%s used=%s limit=%s", quota.plan, quota.used, quota.limit)
        raise HTTPException(status_code=403, detail=quota_exceeded_detail(quota))

    store = ConversationStore(db, user_id)
    try:
        store.ensure_session(body.session_id, first_message=body.message)
        store.commit()
    except PersistenceConflict as exc:
        raise _not_found(exc)

    async def profile_loader() -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(_in_session, session_factory, lambda s: load_profile(s, user_id))

    async def usage_recorder() -> QuotaStatus:
        return await asyncio.to_thread(_in_session, session_factory, lambda s: record_chat_message(s, user_id))

    async def event_stream() -> AsyncGenerator[str, None]:
        async for frame in orchestrator.stream_frames(
            body,
            store=AsyncConversationStore(session_factory, user_id),
            profile_loader=profile_loader,
            usage_recorder=usage_recorder,
            is_disconnected=request.is_disconnected,
        ):
            yield frame

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


# ── Sessions ────────────────────────────────────────────────────────────

@router.get("/sessions", response_model=List[ChatSessionInfo])
def list_sessions(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    return [to_session_info(row) for row in ConversationStore(db, user_id).list_sessions()]


@router.post("/sessions", response_model=ChatSessionInfo, status_code=201)
def create_session(body: SessionCreate, user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    store = ConversationStore(db, user_id)
    name = (body.name or "").strip() or None
    if name is None and body.first_message:
        name = session_name_from(body.first_message)
    row = store.create_session(name)
    store.commit()
    return to_session_info(row)


@router.patch("/sessions/{session_id}", response_model=ChatSessionInfo)
def rename_session(
    session_id: str,
    body: SessionRename,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    store = ConversationStore(db, user_id)
    try:
        row = store.rename_session(session_id, body.name)
    except PersistenceConflict as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    store.commit()
    return to_session_info(row)


@router.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str, user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    store = ConversationStore(db, user_id)
    try:
        store.delete_session(session_id)
    except PersistenceConflict as exc:
        raise _not_found(exc)
    store.commit()
    return Response(status_code=204)


# ── Messages ────────────────────────────────────────────────────────────

@router.get("/sessions/{session_id}/messages", response_model=List[Message])
def list_messages(session_id: str, user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    try:
        rows = ConversationStore(db, user_id).list_messages(session_id)
    except PersistenceConflict as exc:
        raise _not_found(exc)
    return [to_message(row) for row in rows]


@router.post("/sessions/{session_id}/messages", response_model=Message, status_code=201)
def append_message(
    session_id: str,
    body: MessageCreate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    store = ConversationStore(db, user_id)
    try:
        row = store.add_message(session_id, role=body.role, content=body.content, context=body.context)
    except PersistenceConflict as exc:
        raise _not_found(exc)
    store.commit()
    return to_message(row)


@router.patch("/messages/{message_id}/context", response_model=Message)
def update_message_context(
    message_id: str,
    body: ContextUpdate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    store = ConversationStore(db, user_id)
    try:
        row = store.update_message_context(message_id, body.context)
    except PersistenceConflict as exc:
        raise _not_found(exc)
    store.commit()
    return to_message(row)


# ── Profile / usage ─────────────────────────────────────────────────────

@router.get("/profile")
def get_profile(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return load_profile(db, user_id) or {}


@router.post("/profile")
def update_profile(
    body: ProfileUpdate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return apply_profile_updates(db, user_id, body.updates)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/usage", response_model=QuotaStatus)
def get_usage(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    return check_chat_quota(db, user_id)
