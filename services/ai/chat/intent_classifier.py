from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Protocol

from services.ai.chat.chat_errors import ClassificationFailure
from services.ai.chat.chat_models import ALLOWED_INTENTS, MAX_ENTITIES, IntentDetectionResult
from services.ai.chat.chat_prompts import (
    INTENT_CLASSIFIER_SYSTEM_PROMPT,
    INTENT_RESPONSE_SCHEMA,
    build_intent_user_prompt,
)
from services.ai.chat.text_normalizer import collapse_whitespace

logger = logging.getLogger(__name__)


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_warning(msg: str, *args: Any) -> None:
    logger.warning(msg, *args)


class JsonModelBackend(Protocol):
    async def generate_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_schema: Dict[str, Any],
        model_override: Optional[str] = None,
    ) -> Dict[str, Any]: ...


def _normalize_intents(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    out: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        intent = item.strip()
        if intent in ALLOWED_INTENTS and intent not in out:
            out.append(intent)
    return out


def normalize_entities(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    out: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        entity = collapse_whitespace(item)
        if entity and entity not in out:
            out.append(entity)
        if len(out) >= MAX_ENTITIES:
            break
    return out


def _normalize_language(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    lang = raw.strip().lower()
    if len(lang) != 2 or not lang.isalpha():
        return None
    return lang


class IntentClassifier:
    """Ranks intents for one utterance. Returns ``None`` whenever the model
    cannot be reached or answers outside the schema."""

    def __init__(self, backend: Optional[JsonModelBackend], timeout_s: Optional[float] = None):
        self.backend = backend
        self.timeout_s = float(
            timeout_s if timeout_s is not None else os.getenv("CHAT_CLASSIFIER_TIMEOUT_S", "3.0")
        )
        self.intent_model = os.getenv("GEMINI_INTENT_MODEL") or "gemini-2.0-flash-lite"

    async def _request(self, message: str) -> Dict[str, Any]:
        if self.backend is None:
            raise ClassificationFailure("no model backend configured")
        try:
            raw = await asyncio.wait_for(
                self.backend.generate_json(
                    system_prompt=INTENT_CLASSIFIER_SYSTEM_PROMPT,
                    user_prompt=build_intent_user_prompt(message),
                    response_schema=INTENT_RESPONSE_SCHEMA,
                    model_override=self.intent_model,
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise ClassificationFailure(f"timed out after {self.timeout_s:.2f}s") from exc
        except Exception as exc:
            raise ClassificationFailure(type(exc).__name__) from exc
        if not isinstance(raw, dict):
            raise ClassificationFailure("malformed model output")
        return raw

    async def classify(self, message: str, *, request_id: Optional[str] = None) -> Optional[IntentDetectionResult]:
        if self.backend is None or not (message or "").strip():
            return None

        started = time.perf_counter()
        _trace_info(
            "intent.classify.start req_id=%s timeout_s=%.2f model=%s msg_len=%s",
            request_id,
            self.timeout_s,
            self.intent_model,
            len(message),
        )
        try:
            raw = await self._request(message)
        except ClassificationFailure as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            _trace_warning(
                "intent.classify.failed req_id=%s elapsed_ms=%s code=%s err=%s",
                request_id,
                elapsed_ms,
                exc.code,
                exc,
            )
            return None

        result = IntentDetectionResult(
            intents=_normalize_intents(raw.get("intent") or raw.get("intents")) or ["general_advice"],
            entities=normalize_entities(raw.get("entities")),
            language=_normalize_language(raw.get("language")),
            raw=json.dumps(raw, ensure_ascii=False),
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        _trace_info(
            "intent.classify.done req_id=%s elapsed_ms=%s primary=%s intents=%s entities=%s lang=%s",
            request_id,
            elapsed_ms,
            result.primary_intent,
            len(result.intents),
            len(result.entities),
            result.language,
        )
        return result
