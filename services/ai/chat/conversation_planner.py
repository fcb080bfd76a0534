from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from services.ai.chat.chat_models import ALLOWED_INTENTS, ConversationPlan, IntentDetectionResult
from services.ai.chat.chat_prompts import (
    PLANNER_RESPONSE_SCHEMA,
    build_planner_system_prompt,
    build_planner_user_prompt,
)
from services.ai.chat.intent_classifier import JsonModelBackend, normalize_entities
from services.ai.chat.text_normalizer import normalize_variants

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 6
MAX_QUERY_CHARS = 400

_DOCUMENT_HINTS = re.compile(
    r"\b(?:dokument\w*|bifog\w*|uppladd\w*|pdf|filen|rapporten|document\w*|attach\w*|upload\w*|file)\b"
)
_OWN_HOLDINGS_HINTS = re.compile(
    r"\b(?:min portf\w*|mina innehav|mitt innehav|mina aktier|min riskprofil|borde jag|ska jag|"
    r"my portfolio|my holdings|my positions|my stocks|should i)\b"
)
_REALTIME_HINTS = re.compile(
    r"\b(?:idag|i dag|just nu|senaste|nyhet\w*|kursen|rapport\w*|kvartal\w*|"
    r"today|right now|latest|news|this week|earnings|quarterly)\b"
)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "ja"}
    return bool(value)


def _clamp_days(value: Any) -> Optional[int]:
    # None selects the search client's default window
    if value is None or isinstance(value, bool):
        return None
    try:
        days = int(value)
    except (TypeError, ValueError):
        return None
    return max(1, min(30, days))


def _matches(pattern: re.Pattern[str], message: str) -> bool:
    return any(pattern.search(v) for v in normalize_variants(message))


def normalize_plan(
    raw: Dict[str, Any],
    *,
    message: str,
    detection: Optional[IntentDetectionResult] = None,
) -> ConversationPlan:
    """Coerce a loosely-shaped model answer into a valid plan."""
    primary = str(raw.get("primaryIntent") or "").strip()
    if primary not in ALLOWED_INTENTS:
        primary = detection.primary_intent if detection else "general_advice"

    secondary: List[str] = []
    raw_secondary = raw.get("secondaryIntents")
    if not isinstance(raw_secondary, list):
        raw_secondary = list(detection.intents[1:]) if detection else []
    for item in raw_secondary:
        intent = str(item or "").strip()
        if intent in ALLOWED_INTENTS and intent != primary and intent not in secondary:
            secondary.append(intent)

    needs_realtime = _as_bool(raw.get("needsRealtimeData"))
    query = raw.get("searchQuery")
    query = query.strip()[:MAX_QUERY_CHARS] if isinstance(query, str) else ""
    if needs_realtime and not query:
        query = message.strip()[:MAX_QUERY_CHARS]
    if not needs_realtime:
        query = ""

    topic = raw.get("searchTopic")
    if topic not in {"news", "finance", "general"}:
        topic = "finance" if needs_realtime else "general"
    depth = raw.get("searchDepth")
    if depth not in {"basic", "advanced"}:
        depth = "basic"

    entities = normalize_entities(raw.get("detectedEntities"))
    if not entities and detection:
        entities = list(detection.entities)

    language = raw.get("language")
    if language not in {"sv", "en"}:
        language = detection.language if detection and detection.language in {"sv", "en"} else "sv"

    return ConversationPlan(
        primary_intent=primary,
        secondary_intents=secondary,
        needs_realtime_data=needs_realtime,
        search_query=query or None,
        search_topic=topic,
        search_depth=depth,
        search_days=_clamp_days(raw.get("searchDays")),
        detected_entities=entities,
        language=language,
        requires_profile_context=_as_bool(raw.get("requiresProfileContext")),
        reasoning=str(raw.get("reasoning") or "")[:500],
    )


def apply_guards(plan: ConversationPlan, *, message: str, has_uploaded_documents: bool) -> ConversationPlan:
    """Deterministic overrides on top of the model's plan."""
    updates: Dict[str, Any] = {}

    if has_uploaded_documents and _matches(_DOCUMENT_HINTS, message) and plan.primary_intent != "document_summary":
        secondary = [plan.primary_intent] + [i for i in plan.secondary_intents if i != plan.primary_intent]
        updates["primary_intent"] = "document_summary"
        updates["secondary_intents"] = [i for i in secondary if i != "document_summary"]

    if not plan.requires_profile_context and _matches(_OWN_HOLDINGS_HINTS, message):
        updates["requires_profile_context"] = True

    if not plan.needs_realtime_data and _matches(_REALTIME_HINTS, message):
        updates["needs_realtime_data"] = True
        updates["search_query"] = message.strip()[:MAX_QUERY_CHARS]
        updates["search_topic"] = "finance"

    if not updates:
        return plan
    return ConversationPlan.model_validate({**plan.model_dump(), **updates})


def merge_detection(plan: ConversationPlan, detection: Optional[IntentDetectionResult]) -> ConversationPlan:
    """Fold a concurrently produced classification into the plan."""
    if detection is None:
        return plan
    secondary = list(plan.secondary_intents)
    for intent in detection.intents:
        if intent != plan.primary_intent and intent not in secondary:
            secondary.append(intent)
    entities = list(plan.detected_entities)
    for entity in detection.entities:
        if entity not in entities:
            entities.append(entity)
    return plan.model_copy(
        update={"secondary_intents": secondary, "detected_entities": normalize_entities(entities)}
    )


class ConversationPlanner:
    """Produces a ``ConversationPlan`` from one planning call.

    Never raises: any failure yields ``ConversationPlan.fallback()``.
    """

    def __init__(self, backend: Optional[JsonModelBackend], timeout_s: Optional[float] = None):
        self.backend = backend
        self.timeout_s = float(
            timeout_s if timeout_s is not None else os.getenv("CHAT_PLANNER_TIMEOUT_S", "4.0")
        )
        self.planner_model = os.getenv("GEMINI_PLANNER_MODEL") or "gemini-2.0-flash-lite"

    async def plan(
        self,
        message: str,
        recent_history: Sequence[str] = (),
        *,
        has_portfolio: bool = False,
        has_uploaded_documents: bool = False,
        detection: Optional[IntentDetectionResult] = None,
        request_id: Optional[str] = None,
    ) -> ConversationPlan:
        if self.backend is None or not (message or "").strip():
            return ConversationPlan.fallback()

        started = time.perf_counter()
        history = [str(h) for h in list(recent_history)[-MAX_HISTORY_ENTRIES:]]
        logger.info(
            "planner.start req_id=%s timeout_s=%.2f model=%s history=%s",
            request_id,
            self.timeout_s,
            self.planner_model,
            len(history),
        )
        try:
            raw = await asyncio.wait_for(
                self.backend.generate_json(
                    system_prompt=build_planner_system_prompt(
                        has_portfolio=has_portfolio,
                        has_uploaded_documents=has_uploaded_documents,
                    ),
                    user_prompt=build_planner_user_prompt(message, history),
                    response_schema=PLANNER_RESPONSE_SCHEMA,
                    model_override=self.planner_model,
                ),
                timeout=self.timeout_s,
            )
            if not isinstance(raw, dict):
                raise ValueError("planner returned a non-object")
            plan = normalize_plan(raw, message=message, detection=detection)
            plan = apply_guards(plan, message=message, has_uploaded_documents=has_uploaded_documents)
        except asyncio.TimeoutError:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("planner.timeout req_id=%s elapsed_ms=%s fallback=true", request_id, elapsed_ms)
            return ConversationPlan.fallback()
        except (ValidationError, ValueError) as exc:
            logger.warning("planner.malformed req_id=%s err=%s fallback=true", request_id, exc)
            return ConversationPlan.fallback()
        except Exception:
            logger.exception("planner.error req_id=%s fallback=true", request_id)
            return ConversationPlan.fallback()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "planner.done req_id=%s elapsed_ms=%s primary=%s realtime=%s topic=%s days=%s profile=%s",
            request_id,
            elapsed_ms,
            plan.primary_intent,
            plan.needs_realtime_data,
            plan.search_topic,
            plan.search_days,
            plan.requires_profile_context,
        )
        return plan
