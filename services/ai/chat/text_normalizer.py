"""Comparable text variants for deterministic pattern matching.

Every utterance yields the diacritic-stripped form first and, when it
differs, the lower-cased form with diacritics kept. Matchers run against
both so "sänk risken" and "sank risken" classify the same way.
"""
from __future__ import annotations

import unicodedata
from typing import List, Optional

from services.ai.chat.chat_models import Utterance


def collapse_whitespace(text: str) -> str:
    return " ".join((text or "").split())


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_variants(raw: str) -> List[str]:
    preserved = collapse_whitespace(unicodedata.normalize("NFC", raw or "").lower())
    stripped = strip_diacritics(preserved)
    variants = [stripped]
    if preserved != stripped:
        variants.append(preserved)
    return variants


def build_utterance(raw: str, language: Optional[str] = None) -> Utterance:
    return Utterance(text=raw or "", variants=normalize_variants(raw), language=language)
