"""Assembles the layered system prompt for the final answer.

Layers:
  1. Base persona (reply language from the plan)
  2. Investor profile (only when the plan asks for it)
  3. External realtime context + numbered references
  4. Behavioral rules derived from the plan
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from services.ai.chat.chat_models import ConversationPlan, HistoryItem
from services.ai.chat.chat_prompts import build_finance_system_prompt
from services.ai.chat.profile_intent_matcher import ProfileIntentMatcher
from services.ai.chat.profile_update_rules import FIELD_LABELS
from services.ai.chat.realtime_context import RealtimeContext

logger = logging.getLogger(__name__)

MAX_PROMPT_HISTORY = 10

_EXTRA_PROFILE_LABELS = {
    "sv": {"age": "Ålder", "experience_level": "Erfarenhet"},
    "en": {"age": "Age", "experience_level": "Experience"},
}


def _profile_layer(profile: Dict[str, Any], language: str) -> Optional[str]:
    known = {k: v for k, v in profile.items() if v not in (None, "")}
    if not known:
        return None
    lang = language if language in FIELD_LABELS else "sv"
    lines = ["\n## Investerarprofil" if lang == "sv" else "\n## Investor Profile"]
    described = {k: v for k, v in known.items() if k in FIELD_LABELS[lang]}
    if described:
        for part in ProfileIntentMatcher.describe_changes(described, lang).split("; "):
            lines.append(f"- {part}")
    for name, label in _EXTRA_PROFILE_LABELS[lang].items():
        if name in known:
            lines.append(f"- {label}: {known[name]}")
    lines.append(
        "\nAnpassa ton och djup efter profilen. En nybörjare behöver enklare språk."
        if lang == "sv"
        else "\nCalibrate tone and depth to this profile. A beginner needs simpler language."
    )
    return "\n".join(lines)


def _realtime_layer(realtime: RealtimeContext) -> Optional[str]:
    if realtime.is_empty:
        return None
    parts: List[str] = ["\n## Realtidsdata"]
    if realtime.context_block:
        parts.append(realtime.context_block)
    if realtime.references:
        refs = ["Källor:"]
        for idx, ref in enumerate(realtime.references, start=1):
            date = f" ({ref.published_at[:10]})" if ref.published_at else ""
            refs.append(f"[{idx}] {ref.headline} - {ref.source}{date} {ref.url}")
        parts.append("\n".join(refs))
    return "\n\n".join(parts)


def _rules_layer(plan: ConversationPlan, has_realtime: bool) -> str:
    rules = ["\n## Beteenderegler"]
    if plan.primary_intent == "document_summary":
        rules.append("- Sammanfatta användarens uppladdade dokument och håll dig till dess innehåll.")
    if plan.primary_intent in ("buy_sell_decisions", "prediction_analysis"):
        rules.append("- Ge inga garantier om framtida kurser. Beskriv scenarier och risker.")
    if plan.detected_entities:
        rules.append(f"- Frågan gäller: {', '.join(plan.detected_entities)}.")
    if has_realtime:
        rules.append("- Hänvisa till källorna med [n] när du använder realtidsdata.")
    else:
        rules.append("- Ingen realtidsdata hämtades. Påstå inte att siffror är aktuella.")
    return "\n".join(rules)


# ── Public API ──────────────────────────────────────────────────────────

def build_system_prompt(
    plan: ConversationPlan,
    *,
    profile: Optional[Dict[str, Any]] = None,
    realtime: Optional[RealtimeContext] = None,
) -> str:
    """Build the full multi-layer system prompt."""
    realtime = realtime or RealtimeContext()
    parts: List[str] = [build_finance_system_prompt(plan.language).strip()]

    if plan.requires_profile_context and profile:
        layer = _profile_layer(profile, plan.language)
        if layer:
            parts.append(layer)

    layer = _realtime_layer(realtime)
    if layer:
        parts.append(layer)

    parts.append(_rules_layer(plan, has_realtime=not realtime.is_empty))
    prompt = "\n".join(parts)
    logger.debug("context_assembler: prompt_chars=%s layers=%s", len(prompt), len(parts))
    return prompt


def recent_history_lines(history: Sequence[HistoryItem], limit: int = MAX_PROMPT_HISTORY) -> List[str]:
    return [f"{item.role.upper()}: {item.content}" for item in list(history)[-limit:]]


def build_user_prompt(message: str, history: Sequence[HistoryItem] = ()) -> str:
    lines = recent_history_lines(history)
    if not lines:
        return message
    conversation = "\n".join(lines)
    return f"Konversation hittills:\n{conversation}\n\nSenaste fråga:\n{message}"
