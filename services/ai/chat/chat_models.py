from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Role = Literal["user", "assistant"]

IntentType = Literal[
    "stock_analysis",
    "portfolio_optimization",
    "buy_sell_decisions",
    "market_analysis",
    "general_news",
    "news_update",
    "general_advice",
    "document_summary",
    "prediction_analysis",
]

ALLOWED_INTENTS: tuple[str, ...] = (
    "stock_analysis",
    "portfolio_optimization",
    "buy_sell_decisions",
    "market_analysis",
    "general_news",
    "news_update",
    "general_advice",
    "document_summary",
    "prediction_analysis",
)

SearchTopic = Literal["news", "finance", "general"]
SearchDepth = Literal["basic", "advanced"]

MAX_ENTITIES = 6


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Classification / planning ───────────────────────────────────────────

class Utterance(BaseModel):
    text: str
    variants: List[str] = Field(min_length=1)
    language: Optional[str] = None


class IntentDetectionResult(BaseModel):
    intents: List[IntentType] = Field(default_factory=lambda: ["general_advice"])
    entities: List[str] = Field(default_factory=list, max_length=MAX_ENTITIES)
    language: Optional[str] = None
    raw: Optional[str] = None

    @field_validator("intents")
    @classmethod
    def _dedupe_intents(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for intent in v:
            if intent not in out:
                out.append(intent)
        return out or ["general_advice"]

    @property
    def primary_intent(self) -> str:
        return self.intents[0]


class ConversationPlan(_CamelModel):
    primary_intent: IntentType = Field(alias="primaryIntent")
    secondary_intents: List[IntentType] = Field(default_factory=list, alias="secondaryIntents")
    needs_realtime_data: bool = Field(alias="needsRealtimeData")
    search_query: Optional[str] = Field(default=None, alias="searchQuery")
    search_topic: SearchTopic = Field(default="general", alias="searchTopic")
    search_depth: SearchDepth = Field(default="basic", alias="searchDepth")
    # None means "not specified": the realtime client uses its default window
    search_days: Optional[int] = Field(default=None, ge=1, le=30, alias="searchDays")
    search_max_results: Optional[int] = Field(default=None, ge=1, le=20, alias="searchMaxResults")
    detected_entities: List[str] = Field(default_factory=list, alias="detectedEntities")
    language: Literal["sv", "en"] = "sv"
    requires_profile_context: bool = Field(default=False, alias="requiresProfileContext")
    reasoning: str = ""

    @model_validator(mode="after")
    def _query_matches_realtime_flag(self) -> "ConversationPlan":
        has_query = bool(self.search_query and self.search_query.strip())
        if self.needs_realtime_data != has_query:
            raise ValueError("searchQuery must be present if and only if needsRealtimeData is true")
        return self

    @classmethod
    def fallback(cls) -> "ConversationPlan":
        return cls(
            primary_intent="general_advice",
            secondary_intents=[],
            needs_realtime_data=False,
            search_query=None,
            search_topic="general",
            search_depth="basic",
            search_days=7,
            detected_entities=[],
            language="sv",
            requires_profile_context=True,
            reasoning="fallback",
        )


class ProfileUpdateIntent(BaseModel):
    updates: Dict[str, Any] = Field(min_length=1)
    summary: str


# ── Messages ────────────────────────────────────────────────────────────

class MessageContext(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    analysis_type: Optional[str] = Field(default=None, alias="analysisType")
    confidence: Optional[float] = None
    profile_updates: Optional[Dict[str, Any]] = Field(default=None, alias="profileUpdates")
    profile_summary: Optional[str] = Field(default=None, alias="profileSummary")
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    sources: Optional[List[Dict[str, Any]]] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(_CamelModel):
    """A chat message as displayed.

    Drafts carry a locally synthesized id; the committed copy returned by
    persistence replaces them and is linked back through ``request_id``.
    """

    id: str
    role: Role
    content: str = ""
    timestamp: str = Field(default_factory=now_iso)
    context: Optional[MessageContext] = None
    state: Literal["draft", "committed", "ephemeral"] = "committed"

    @property
    def request_id(self) -> Optional[str]:
        return self.context.request_id if self.context else None

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.context and self.context.requires_confirmation)

    @property
    def is_draft(self) -> bool:
        return self.state == "draft"

    @classmethod
    def draft(
        cls,
        *,
        role: Role,
        content: str,
        request_id: str,
        context: Optional[MessageContext] = None,
    ) -> "Message":
        ctx = context.model_copy() if context else MessageContext()
        ctx.request_id = request_id
        return cls(
            id=f"draft-{role}-{uuid.uuid4().hex[:12]}",
            role=role,
            content=content,
            context=ctx,
            state="draft",
        )

    @classmethod
    def ephemeral_proposal(cls, proposal: ProfileUpdateIntent, *, request_id: str) -> "Message":
        return cls(
            id=f"ephemeral-{uuid.uuid4().hex[:12]}",
            role="assistant",
            content=proposal.summary,
            context=MessageContext(
                analysis_type="profile_update",
                profile_updates=dict(proposal.updates),
                profile_summary=proposal.summary,
                requires_confirmation=True,
                request_id=request_id,
            ),
            state="ephemeral",
        )


class ChatSessionInfo(_CamelModel):
    id: str
    session_name: str = Field(alias="sessionName")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


DEFAULT_SESSION_NAME = "Ny chatt"
SESSION_NAME_MAX_CHARS = 50


def session_name_from(first_message: Optional[str]) -> str:
    text = " ".join((first_message or "").split())
    return text[:SESSION_NAME_MAX_CHARS] or DEFAULT_SESSION_NAME


class PendingSessionState(_CamelModel):
    request_id: str = Field(alias="requestId")
    user_message: Message = Field(alias="userMessage")
    detection_message: Optional[Message] = Field(default=None, alias="detectionMessage")
    ai_message: Optional[Message] = Field(default=None, alias="aiMessage")

    def messages(self) -> List[Message]:
        return [m for m in (self.user_message, self.detection_message, self.ai_message) if m is not None]


# ── Streaming protocol ──────────────────────────────────────────────────

DONE_SENTINEL = "[DONE]"


class ContentChunk(BaseModel):
    kind: Literal["content"] = "content"
    text: str


class DoneChunk(BaseModel):
    kind: Literal["done"] = "done"


class ErrorChunk(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    code: Optional[str] = None


class ProfileUpdateChunk(BaseModel):
    kind: Literal["profile_update"] = "profile_update"
    proposal: ProfileUpdateIntent
    requires_confirmation: bool = True


StreamChunk = Annotated[
    Union[ContentChunk, DoneChunk, ErrorChunk, ProfileUpdateChunk],
    Field(discriminator="kind"),
]


def format_frame(data: Dict[str, Any]) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"data: {payload}\n\n"


def done_frame() -> str:
    return f"data: {DONE_SENTINEL}\n\n"


# ── HTTP bodies ─────────────────────────────────────────────────────────

class HistoryItem(BaseModel):
    role: Role
    content: str = Field(max_length=8000)


class ChatStreamRequest(_CamelModel):
    message: str = Field(max_length=8000)
    session_id: str = Field(alias="sessionId", max_length=128)
    request_id: str = Field(alias="requestId", max_length=128)
    chat_history: List[HistoryItem] = Field(default_factory=list, alias="chatHistory", max_length=40)
    analysis_type: Optional[str] = Field(default=None, alias="analysisType", max_length=64)
    has_uploaded_documents: bool = Field(default=False, alias="hasUploadedDocuments")

    @field_validator("message")
    @classmethod
    def _strip_message(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("message must not be empty")
        return v


class QuotaStatus(BaseModel):
    allowed: bool
    used: int = 0
    limit: int = -1
    plan: str = "free"

    @property
    def remaining(self) -> Optional[int]:
        if self.limit < 0:
            return None
        return max(0, self.limit - self.used)
