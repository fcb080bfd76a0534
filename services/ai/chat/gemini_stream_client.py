from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from services.ai.chat.chat_errors import StreamTransportError

logger = logging.getLogger(__name__)

FALLBACK_CHUNK_CHARS = 180
STREAM_RETRY_PAUSE_S = 0.15


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_warning(msg: str, *args: Any) -> None:
    logger.warning(msg, *args)


def _trace_exception(msg: str, *args: Any) -> None:
    logger.exception(msg, *args)


@dataclass
class GeminiConfig:
    model: str
    temperature: float
    thinking_budget: int
    project_id: str
    location: str


def strip_code_fence(text: str) -> str:
    text = (text or "").strip()
    if not text.startswith("```"):
        return text
    lines = text.split("\n")[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


class GeminiStreamClient:
    """Gemini (Vertex) access for the chat pipeline.

    ``generate_json`` serves the schema-constrained classification and
    planning calls; ``stream_answer`` yields the assistant reply as text
    deltas produced by a worker thread.
    """

    # models that rejected a thinking config once are never sent one again
    _no_thinking_models: set = set()

    def __init__(self, config: Optional[GeminiConfig] = None):
        self.config = config or self._from_env()
        from google import genai
        self._client = genai.Client(
            vertexai=True,
            project=self.config.project_id,
            location=self.config.location,
        )

    def _from_env(self) -> GeminiConfig:
        project_id = (os.getenv("GCP_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip()
        if not project_id:
            raise ValueError("Missing GCP_PROJECT_ID")
        location = (os.getenv("GCP_LOCATION") or os.getenv("GOOGLE_CLOUD_LOCATION") or "us-central1").strip()
        return GeminiConfig(
            model=os.getenv("GEMINI_MODEL") or "gemini-2.5-flash",
            temperature=float(os.getenv("AI_TEMPERATURE", "0.3")),
            thinking_budget=int(os.getenv("GEMINI_THINKING_BUDGET", "1024")),
            project_id=project_id,
            location=location,
        )

    # ── thinking support ─────────────────────────────────────────────

    @classmethod
    def _model_supports_thinking(cls, model: str) -> bool:
        name = (model or "").lower()
        if name in cls._no_thinking_models or "lite" in name:
            return False
        return "gemini-2.5" in name or "gemini-3" in name

    @classmethod
    def _blacklist_thinking(cls, model: str) -> None:
        cls._no_thinking_models.add((model or "").lower())

    @staticmethod
    def _is_thinking_unsupported_error(exc: Exception) -> bool:
        text = str(exc).lower()
        return "thinking" in text and ("not supported" in text or "unsupported" in text)

    # ── request building ─────────────────────────────────────────────

    def _build_config(
        self,
        *,
        model: str,
        system_instruction: str,
        allow_thinking: bool = True,
        response_schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ):
        from google.genai import types

        kwargs: Dict[str, Any] = {
            "temperature": self.config.temperature if temperature is None else temperature,
            "system_instruction": system_instruction or None,
        }
        if allow_thinking and self._model_supports_thinking(model):
            kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=self.config.thinking_budget)
        if response_schema is not None:
            kwargs["response_mime_type"] = "application/json"
            kwargs["response_schema"] = response_schema
        return types.GenerateContentConfig(**kwargs)

    @staticmethod
    def _contents(user_prompt: str) -> List[Any]:
        from google.genai import types

        return [types.Content(role="user", parts=[types.Part.from_text(text=user_prompt)])]

    def _generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Blocking single call. Retries once without thinking when the model rejects it."""
        model = model or self.config.model
        allow_thinking = True
        while True:
            try:
                resp = self._client.models.generate_content(
                    model=model,
                    contents=self._contents(user_prompt),
                    config=self._build_config(
                        model=model,
                        system_instruction=system_prompt,
                        allow_thinking=allow_thinking,
                        response_schema=response_schema,
                        temperature=temperature,
                    ),
                )
                return getattr(resp, "text", None) or ""
            except Exception as exc:
                if not (allow_thinking and self._is_thinking_unsupported_error(exc)):
                    raise
                self._blacklist_thinking(model)
                allow_thinking = False
                _trace_warning("gemini.generate.retry_without_thinking model=%s", model)

    # ── public API ───────────────────────────────────────────────────

    async def generate_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_schema: Dict[str, Any],
        model_override: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Single schema-constrained call. Raises on transport errors or non-object output."""
        model = model_override or self.config.model
        started = time.perf_counter()
        _trace_info("gemini.json.start model=%s prompt_len=%s", model, len(user_prompt or ""))
        raw = await asyncio.to_thread(
            lambda: self._generate_text(
                system_prompt,
                user_prompt,
                model=model,
                response_schema=response_schema,
                temperature=0.1,
            )
        )
        parsed = json.loads(strip_code_fence(raw))
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")
        _trace_info(
            "gemini.json.done elapsed_ms=%s keys=%s",
            int((time.perf_counter() - started) * 1000),
            len(parsed),
        )
        return parsed

    def _stream_worker(
        self,
        system_prompt: str,
        user_prompt: str,
        emit,
        state: Dict[str, Any],
    ) -> None:
        """Runs in a thread. Two attempts; a thinking rejection retries without spending one."""
        model = self.config.model
        allow_thinking = True
        attempt = 1
        while attempt <= 2:
            try:
                stream = self._client.models.generate_content_stream(
                    model=model,
                    contents=self._contents(user_prompt),
                    config=self._build_config(
                        model=model,
                        system_instruction=system_prompt,
                        allow_thinking=allow_thinking,
                    ),
                )
                for chunk in stream:
                    text = getattr(chunk, "text", None)
                    if text:
                        state["emitted"] += 1
                        emit(text)
                state["error"] = None
                _trace_info("gemini.stream.worker.done chunks=%s attempt=%s", state["emitted"], attempt)
                return
            except Exception as exc:
                if allow_thinking and self._is_thinking_unsupported_error(exc):
                    self._blacklist_thinking(model)
                    allow_thinking = False
                    _trace_warning("gemini.stream.worker.retry_without_thinking model=%s", model)
                    continue
                state["error"] = exc
                # a half-delivered answer cannot be restarted
                if state["emitted"] or attempt == 2:
                    _trace_warning(
                        "gemini.stream.worker.failed attempt=%s chunks=%s err=%s",
                        attempt,
                        state["emitted"],
                        type(exc).__name__,
                    )
                    return
                _trace_warning("gemini.stream.worker.retry attempt=%s err=%s", attempt + 1, type(exc).__name__)
                time.sleep(STREAM_RETRY_PAUSE_S)
                attempt += 1

    async def stream_answer(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
    ) -> AsyncIterator[str]:
        started = time.perf_counter()
        _trace_info("gemini.stream.start model=%s prompt_len=%s", self.config.model, len(user_prompt or ""))

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        state: Dict[str, Any] = {"error": None, "emitted": 0}

        def emit(text: Optional[str]) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, text)

        def run() -> None:
            try:
                self._stream_worker(system_prompt, user_prompt, emit, state)
            finally:
                emit(None)

        threading.Thread(target=run, daemon=True).start()

        delivered = 0
        while (item := await queue.get()) is not None:
            delivered += 1
            yield item

        if state["error"] is not None and delivered == 0:
            # nothing reached the caller yet: answer with one blocking call instead
            timeout_s = float(os.getenv("GEMINI_SYNC_FALLBACK_TIMEOUT_S", "12"))
            _trace_warning("gemini.stream.fallback.start timeout_s=%s", timeout_s)
            try:
                text = await asyncio.wait_for(
                    asyncio.to_thread(self._generate_text, system_prompt, user_prompt),
                    timeout=timeout_s,
                )
            except Exception as exc:
                _trace_exception("gemini.stream.fallback.error")
                raise StreamTransportError(f"model stream failed: {type(exc).__name__}") from exc
            text = (text or "").strip()
            for i in range(0, len(text), FALLBACK_CHUNK_CHARS):
                delivered += 1
                yield text[i:i + FALLBACK_CHUNK_CHARS]

        _trace_info(
            "gemini.stream.done elapsed_ms=%s chunks=%s",
            int((time.perf_counter() - started) * 1000),
            delivered,
        )


# ── Singleton ────────────────────────────────────────────────────────────

_shared_client: Optional[GeminiStreamClient] = None
_shared_client_lock = threading.Lock()


def get_shared_gemini_client() -> GeminiStreamClient:
    global _shared_client
    if _shared_client is None:
        with _shared_client_lock:
            if _shared_client is None:
                _shared_client = GeminiStreamClient()
    return _shared_client
