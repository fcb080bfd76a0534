"""Rule table for detecting "change my profile" commands.

Patterns are written against lower-cased text. Most target the
diacritic-stripped variant ("sank", "hog risk"); a few only make sense
with diacritics kept ("ändra", since "andra" also means "other").

Each field resolves its level in stage order: ``direct`` phrasing first,
then a standalone ``adjective``, then a ``directional`` verb. Within a
stage the first matching rule wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Tuple

Stage = Literal["direct", "adjective", "directional"]

STAGE_ORDER: Tuple[Stage, ...] = ("direct", "adjective", "directional")

RISK_TOLERANCE = "risk_tolerance"
INVESTMENT_HORIZON = "investment_horizon"
MONTHLY_AMOUNT = "monthly_investment_amount"

RISK_LEVELS = ("conservative", "moderate", "aggressive")
HORIZON_LEVELS = ("short", "medium", "long")

ALLOWED_PROFILE_VALUES: Dict[str, Tuple[str, ...]] = {
    RISK_TOLERANCE: RISK_LEVELS,
    INVESTMENT_HORIZON: HORIZON_LEVELS,
}


@dataclass(frozen=True)
class LevelRule:
    field: str
    value: str
    stage: Stage
    patterns: Tuple[str, ...]


_INCREASE = r"\b(?:increase|raise|higher|more|bump|oka|öka|okar|ökar|hoj|höj|hoja|höja|hojer|höjer|hogre|högre|mer)\b"
_DECREASE = r"\b(?:decrease|lower|reduce|less|cut|sank|sänk|sanka|sänka|sanker|sänker|minska|minskar|lagre|lägre|mindre)\b"

# verb that signals the user wants something changed
CHANGE_SIGNALS: Tuple[str, ...] = (
    r"\b(?:change|alter|adjust|set|update|switch|modify|move|increase|raise|lower|decrease|reduce|bump|cut)\b",
    r"\b(?:ändra|ändrar|andrar|justera|justerar|satt|sätt|satta|sätta|uppdatera|uppdaterar|byt|byta)\b",
    r"\b(?:oka|öka|okar|ökar|hoj|höj|hoja|höja|hojer|höjer|sank|sänk|sanka|sänka|sanker|sänker|minska|minskar)\b",
)

DOMAIN_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    RISK_TOLERANCE: (r"\brisk\w*",),
    INVESTMENT_HORIZON: (
        r"\b(?:tids)?horisont\w*",
        r"\bhorizon\w*",
        r"\bsikt\b",
        r"\btime ?frame\b",
        r"\binvestment period\b",
    ),
}

LEVEL_RULES: Tuple[LevelRule, ...] = (
    # ── risk: direct phrasing ──
    LevelRule(RISK_TOLERANCE, "aggressive", "direct", (
        r"\b(?:to|till|mot|as|som) (?:an? |en )?(?:more |mer )?(?:aggressiv\w*|offensiv\w*|high(?:[- ]risk)?|hog|hög)\b",
        r"\b(?:hog|hög|hogre|högre) risk\w*",
        r"\bhigh(?:er)? risk\b",
        r"\b(?:mer|more) risk\b",
    )),
    LevelRule(RISK_TOLERANCE, "conservative", "direct", (
        r"\b(?:to|till|mot|as|som) (?:an? |en )?(?:more |mer )?(?:konservativ\w*|conservative|forsiktig\w*|försiktig\w*|low(?:[- ]risk)?|safe|lag|låg)\b",
        r"\b(?:lag|låg|lagre|lägre) risk\w*",
        r"\blow(?:er)? risk\b",
        r"\b(?:mindre|less) risk\b",
    )),
    LevelRule(RISK_TOLERANCE, "moderate", "direct", (
        r"\b(?:to|till|mot|as|som) (?:an? |en )?(?:moderat\w*|moderate|mattlig\w*|måttlig\w*|balanserad\w*|balanced|medium|medel)\b",
        r"\b(?:medel|medium) ?risk\w*",
    )),
    # ── risk: standalone adjective ──
    LevelRule(RISK_TOLERANCE, "aggressive", "adjective", (r"\baggressiv\w*", r"\boffensiv\w*")),
    LevelRule(RISK_TOLERANCE, "conservative", "adjective", (
        r"\bkonservativ\w*", r"\bconservative\b", r"\bforsiktig\w*", r"\bförsiktig\w*", r"\bcautious\b",
    )),
    LevelRule(RISK_TOLERANCE, "moderate", "adjective", (
        r"\bmoderat\w*", r"\bmoderate\b", r"\bmattlig\w*", r"\bmåttlig\w*", r"\bbalanser\w*", r"\bbalanced\b",
    )),
    # ── risk: direction only ──
    LevelRule(RISK_TOLERANCE, "aggressive", "directional", (_INCREASE,)),
    LevelRule(RISK_TOLERANCE, "conservative", "directional", (_DECREASE,)),

    # ── horizon: direct phrasing ──
    LevelRule(INVESTMENT_HORIZON, "long", "direct", (
        r"\b(?:to|till|mot) (?:an? |en )?(?:lang\w*|lång\w*|long(?:er)?(?:[- ]term)?)\b",
        r"\b(?:lang|lång) ?sikt\w*",
        r"\blong[- ]term\b",
        r"(?:\b7\+|\bover 7\b|\böver 7\b|\bmore than 7\b)",
    )),
    LevelRule(INVESTMENT_HORIZON, "short", "direct", (
        r"\b(?:to|till|mot) (?:an? |en )?(?:kort\w*|short(?:er)?(?:[- ]term)?)\b",
        r"\bkort ?sikt\w*",
        r"\bshort[- ]term\b",
        r"\b1-3\b",
    )),
    LevelRule(INVESTMENT_HORIZON, "medium", "direct", (
        r"\b(?:to|till|mot) (?:an? |en )?(?:medel\w*|mellan\w*|medium(?:[- ]term)?)\b",
        r"\bmedel ?sikt\w*",
        r"\bmellan(?:lang|lång)\w*",
        r"\bmedium[- ]term\b",
        r"\b3-7\b",
    )),
    # ── horizon: standalone adjective ──
    LevelRule(INVESTMENT_HORIZON, "long", "adjective", (r"\b(?:lang|lång|long)\b",)),
    LevelRule(INVESTMENT_HORIZON, "short", "adjective", (r"\b(?:kort|short)\b",)),
    LevelRule(INVESTMENT_HORIZON, "medium", "adjective", (r"\b(?:medel|medium)\b",)),
    # ── horizon: direction only ──
    LevelRule(INVESTMENT_HORIZON, "long", "directional", (
        r"\b(?:longer|extend|forlang\w*|förläng\w*)\b", _INCREASE,
    )),
    LevelRule(INVESTMENT_HORIZON, "short", "directional", (
        r"\b(?:shorter|shorten|korta\w*|forkort\w*|förkort\w*)\b", _DECREASE,
    )),
)

# ── monthly contribution ──

MONTHLY_KEYWORDS: Tuple[str, ...] = (
    r"\bmanad\w*",
    r"\bmånad\w*",
    r"\bmonth\w*",
    r"\bcontribution\w*",
)

_NUMBER = r"\d{1,3}(?:[ .,]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"

AMOUNT_PATTERNS: Tuple[str, ...] = (
    rf"(?P<num>{_NUMBER})\s*(?:kr\b|kronor\b|sek\b|:-|usd\b|dollars?\b|eur\b|euros?\b|\$|€)",
    rf"(?:\$|€)\s*(?P<num>{_NUMBER})",
)

AMOUNT_INCREASE = r"\b(?:increase|raise|add|oka|öka|okar|ökar|hoj|höj|hoja|höja|hojer|höjer)\b"
AMOUNT_DECREASE = r"\b(?:decrease|reduce|lower|cut|minska|minskar|sank|sänk|sanka|sänka|sanker|sänker)\b"
# "med 500 kr" / "by 500" means relative; "till 500 kr" / "to 500" means absolute
AMOUNT_RELATIVE_MARKER = r"\b(?:med|by)\s*(?:\$|€)?\s*$"

SWEDISH_HINTS = r"\b(?:jag|min|mitt|mina|och|till|risken|vill|sank|sänk|oka|öka|ändra|manad\w*|månad\w*|sikt|kronor|kr)\b"

FIELD_LABELS = {
    "sv": {
        RISK_TOLERANCE: "Risktolerans",
        INVESTMENT_HORIZON: "Investeringshorisont",
        MONTHLY_AMOUNT: "Månadssparande",
    },
    "en": {
        RISK_TOLERANCE: "Risk tolerance",
        INVESTMENT_HORIZON: "Investment horizon",
        MONTHLY_AMOUNT: "Monthly contribution",
    },
}

VALUE_LABELS = {
    "sv": {
        "conservative": "Konservativ",
        "moderate": "Måttlig",
        "aggressive": "Aggressiv",
        "short": "Kort (1-3 år)",
        "medium": "Medel (3-7 år)",
        "long": "Lång (7+ år)",
    },
    "en": {
        "conservative": "Conservative",
        "moderate": "Moderate",
        "aggressive": "Aggressive",
        "short": "Short (1-3 years)",
        "medium": "Medium (3-7 years)",
        "long": "Long (7+ years)",
    },
}
