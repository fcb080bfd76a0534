"""HTTP client for the chat backend.

Implements the transport, persistence, quota and profile collaborators
the session reconciler needs, over the REST routes in
``routers/ai_chat_routes.py``.
"""
from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from services.ai.chat.chat_errors import ChatError, PersistenceConflict, QuotaExceeded, StreamTransportError
from services.ai.chat.chat_models import ChatSessionInfo, ChatStreamRequest, Message, QuotaStatus

logger = logging.getLogger(__name__)

CHAT_BACKEND_URL = os.getenv("CHAT_BACKEND_URL", "http://localhost:8000")
CHAT_STREAM_TIMEOUT_S = float(os.getenv("CHAT_STREAM_TIMEOUT_S", "120"))
CHAT_REST_TIMEOUT_S = 15.0


def _error_detail(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    detail = body.get("detail", body)
    if isinstance(detail, dict):
        return detail
    return {"message": str(detail)}


def _raise_for_response(response: httpx.Response) -> None:
    """Map a failed backend response onto the chat error kinds."""
    if response.status_code < 400:
        return
    detail = _error_detail(response)
    message = str(detail.get("message") or f"HTTP {response.status_code}")
    if response.status_code == 403 and detail.get("code") == QuotaExceeded.code:
        raise QuotaExceeded(message, used=detail.get("used"), limit=detail.get("limit"))
    if response.status_code == 404:
        raise PersistenceConflict(message)
    raise StreamTransportError(f"backend returned {response.status_code}: {message}")


class ChatBackendClient:
    def __init__(
        self,
        user_id: str,
        *,
        base_url: str = CHAT_BACKEND_URL,
        client: Optional[httpx.AsyncClient] = None,
        stream_timeout_s: float = CHAT_STREAM_TIMEOUT_S,
    ):
        self.user_id = user_id
        self.stream_timeout_s = float(stream_timeout_s)
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(CHAT_REST_TIMEOUT_S),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-User-Id": self.user_id}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("chat_backend.request_failed method=%s path=%s err=%s", method, path, type(exc).__name__)
            raise StreamTransportError(str(exc)) from exc
        _raise_for_response(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ── transport ───────────────────────────────────────────────────

    async def stream(self, request: ChatStreamRequest) -> AsyncIterator[str]:
        body = request.model_dump(by_alias=True, exclude_none=True)
        headers = {**self._headers, "Accept": "text/event-stream"}
        try:
            async with self._client.stream(
                "POST",
                "/api/chat/stream",
                json=body,
                headers=headers,
                timeout=httpx.Timeout(self.stream_timeout_s, connect=10.0),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_response(response)
                async for text in response.aiter_text():
                    if text:
                        yield text
        except ChatError:
            raise
        except httpx.HTTPError as exc:
            logger.warning("chat_backend.stream_failed req_id=%s err=%s", request.request_id, type(exc).__name__)
            raise StreamTransportError(str(exc)) from exc

    # ── persistence ─────────────────────────────────────────────────

    async def list_sessions(self) -> List[ChatSessionInfo]:
        data = await self._request("GET", "/api/chat/sessions")
        return [ChatSessionInfo.model_validate(item) for item in data or []]

    async def create_session(self, name: str) -> ChatSessionInfo:
        data = await self._request("POST", "/api/chat/sessions", json={"name": name})
        return ChatSessionInfo.model_validate(data)

    async def rename_session(self, session_id: str, name: str) -> ChatSessionInfo:
        data = await self._request("PATCH", f"/api/chat/sessions/{session_id}", json={"name": name})
        return ChatSessionInfo.model_validate(data)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/api/chat/sessions/{session_id}")

    async def list_messages(self, session_id: str) -> List[Message]:
        data = await self._request("GET", f"/api/chat/sessions/{session_id}/messages")
        return [Message.model_validate(item) for item in data or []]

    async def append_message(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Message:
        data = await self._request(
            "POST",
            f"/api/chat/sessions/{session_id}/messages",
            json={"role": role, "content": content, "context": context},
        )
        return Message.model_validate(data)

    async def update_message_context(self, message_id: str, context: Dict[str, Any]) -> Message:
        data = await self._request("PATCH", f"/api/chat/messages/{message_id}/context", json={"context": context})
        return Message.model_validate(data)

    # ── quota / profile ─────────────────────────────────────────────

    async def check(self) -> QuotaStatus:
        return QuotaStatus.model_validate(await self._request("GET", "/api/chat/usage"))

    async def get_profile(self) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "/api/chat/profile")
        return data or None

    async def apply_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/chat/profile", json={"updates": updates})
