from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from services.ai.chat import profile_update_rules as rules
from services.ai.chat.chat_models import ProfileUpdateIntent
from services.ai.chat.text_normalizer import normalize_variants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CompiledRule:
    field: str
    value: str
    stage: str
    patterns: Tuple[Pattern[str], ...]


def _compile(patterns: Iterable[str]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


def _any_match(patterns: Sequence[Pattern[str]], variants: Sequence[str]) -> bool:
    return any(p.search(v) for p in patterns for v in variants)


def parse_amount(raw: str) -> Optional[float]:
    """Parse "5 000", "5.000", "5,000", "2 500,50" and "1500.5" into a number.

    A trailing separator followed by one or two digits is a decimal mark;
    every other separator groups thousands.
    """
    text = re.sub(r"\s", "", raw or "")
    if not text:
        return None
    last_sep = max(text.rfind(","), text.rfind("."))
    try:
        if last_sep == -1:
            return float(text)
        decimals = text[last_sep + 1:]
        if 1 <= len(decimals) <= 2:
            integer = re.sub(r"[.,]", "", text[:last_sep])
            return float(f"{integer or '0'}.{decimals}")
        return float(re.sub(r"[.,]", "", text))
    except ValueError:
        return None


def _clean_number(value: float) -> Any:
    return int(value) if float(value).is_integer() else round(value, 2)


class ProfileIntentMatcher:
    """Detects profile-change commands locally, without a model call.

    Pure classification: returns a ``ProfileUpdateIntent`` or ``None``.
    The matching engine is independent of the rule table it is given.
    """

    def __init__(
        self,
        *,
        level_rules: Sequence[rules.LevelRule] = rules.LEVEL_RULES,
        change_signals: Sequence[str] = rules.CHANGE_SIGNALS,
        domain_keywords: Optional[Dict[str, Sequence[str]]] = None,
    ):
        self._rules = [
            _CompiledRule(r.field, r.value, r.stage, _compile(r.patterns)) for r in level_rules
        ]
        self._change_signals = _compile(change_signals)
        self._domains = {
            field: _compile(patterns)
            for field, patterns in (domain_keywords or rules.DOMAIN_KEYWORDS).items()
        }
        self._monthly = _compile(rules.MONTHLY_KEYWORDS)
        self._amounts = _compile(rules.AMOUNT_PATTERNS)
        self._amount_increase = re.compile(rules.AMOUNT_INCREASE)
        self._amount_decrease = re.compile(rules.AMOUNT_DECREASE)
        self._relative_marker = re.compile(rules.AMOUNT_RELATIVE_MARKER)
        self._swedish = re.compile(rules.SWEDISH_HINTS)

    # ── levels ──────────────────────────────────────────────────────

    def _resolve_level(self, field: str, variants: Sequence[str]) -> Optional[str]:
        for stage in rules.STAGE_ORDER:
            for rule in self._rules:
                if rule.field != field or rule.stage != stage:
                    continue
                if _any_match(rule.patterns, variants):
                    return rule.value
        return None

    def _detect_levels(self, variants: Sequence[str]) -> Dict[str, Any]:
        if not _any_match(self._change_signals, variants):
            return {}
        updates: Dict[str, Any] = {}
        for field, keywords in self._domains.items():
            if not _any_match(keywords, variants):
                continue
            level = self._resolve_level(field, variants)
            if level:
                updates[field] = level
        return updates

    # ── monthly amount ──────────────────────────────────────────────

    def _detect_amount(self, variants: Sequence[str], current_amount: Optional[float]) -> Optional[Any]:
        if not _any_match(self._monthly, variants):
            return None
        for variant in variants:
            for pattern in self._amounts:
                match = pattern.search(variant)
                if not match:
                    continue
                amount = parse_amount(match.group("num"))
                if amount is None or amount < 0:
                    continue
                prefix = variant[: match.start()]
                relative = bool(self._relative_marker.search(prefix))
                if current_amount is not None and relative:
                    if self._amount_increase.search(variant):
                        return _clean_number(current_amount + amount)
                    if self._amount_decrease.search(variant):
                        return _clean_number(max(0.0, current_amount - amount))
                return _clean_number(amount)
        return None

    # ── public ──────────────────────────────────────────────────────

    @staticmethod
    def describe_changes(updates: Dict[str, Any], language: str = "sv") -> str:
        lang = language if language in rules.FIELD_LABELS else "en"
        field_labels = rules.FIELD_LABELS[lang]
        value_labels = rules.VALUE_LABELS[lang]
        parts: List[str] = []
        for field, value in updates.items():
            label = field_labels.get(field, field)
            if field == rules.MONTHLY_AMOUNT and isinstance(value, (int, float)):
                shown = f"{value:,}".replace(",", " ") + (" kr" if lang == "sv" else "")
            else:
                shown = value_labels.get(str(value), str(value))
            parts.append(f"{label}: {shown}")
        return "; ".join(parts)

    def summarize(self, updates: Dict[str, Any], language: str = "sv") -> str:
        prefix = "Vill du uppdatera din profil? " if language == "sv" else "Update your profile? "
        return prefix + self.describe_changes(updates, language)

    def match(
        self,
        text: str,
        *,
        current_amount: Optional[float] = None,
        language: Optional[str] = None,
    ) -> Optional[ProfileUpdateIntent]:
        variants = normalize_variants(text)
        if not any(variants):
            return None

        updates = self._detect_levels(variants)
        amount = self._detect_amount(variants, current_amount)
        if amount is not None:
            updates[rules.MONTHLY_AMOUNT] = amount

        if not updates:
            return None

        lang = language or ("sv" if _any_match((self._swedish,), variants) else "en")
        logger.info("profile_matcher.hit fields=%s", ",".join(sorted(updates)))
        return ProfileUpdateIntent(updates=updates, summary=self.summarize(updates, lang))


_default_matcher: Optional[ProfileIntentMatcher] = None


def get_profile_intent_matcher() -> ProfileIntentMatcher:
    global _default_matcher
    if _default_matcher is None:
        _default_matcher = ProfileIntentMatcher()
    return _default_matcher


def detect_profile_update(text: str, *, current_amount: Optional[float] = None) -> Optional[ProfileUpdateIntent]:
    return get_profile_intent_matcher().match(text, current_amount=current_amount)
