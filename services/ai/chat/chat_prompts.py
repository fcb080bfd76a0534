from __future__ import annotations

import json
from typing import Any, Dict, List

from services.ai.chat.chat_models import ALLOWED_INTENTS, MAX_ENTITIES

INTENT_CLASSIFIER_SYSTEM_PROMPT = "\n".join([
    "Du är en svensk finansiell assistent som tolkar användares frågor.",
    "",
    "Instruktioner:",
    f"- Identifiera vilka av följande intents som passar: {', '.join(ALLOWED_INTENTS)}.",
    "- Välj en eller flera intents som bäst matchar frågan, viktigast först.",
    "- Om användaren ber om en sammanfattning av bifogat material eller hänvisar till uppladdade dokument, välj document_summary.",
    "- Frågor om sannolikheter, odds eller prognosmarknader är prediction_analysis.",
    f"- Identifiera högst {MAX_ENTITIES} viktiga entiteter: bolag, tickers, index, sektorer eller makroteman.",
    '- Ange språket som "sv" om användaren skriver på svenska, annars "en".',
    "- Returnera alltid ett JSON-objekt med fälten intent (lista), entities (lista), language (sträng).",
    "- Om inget passar, välj endast general_advice.",
    "- Svara ENDAST med JSON, inga förklaringar.",
])

INTENT_EXAMPLES: List[Dict[str, Any]] = [
    {
        "user": "Måste jag sälja Tesla nu?",
        "assistant": {"intent": ["stock_analysis", "buy_sell_decisions"], "entities": ["Tesla", "TSLA"], "language": "sv"},
    },
    {
        "user": "Har det hänt något med OMXS30 idag?",
        "assistant": {"intent": ["news_update", "market_analysis"], "entities": ["OMXS30"], "language": "sv"},
    },
    {
        "user": "Can you help me rebalance my portfolio towards green energy?",
        "assistant": {"intent": ["portfolio_optimization"], "entities": ["Green energy"], "language": "en"},
    },
    {
        "user": "Kan du sammanfatta det bifogade dokumentet?",
        "assistant": {"intent": ["document_summary"], "entities": [], "language": "sv"},
    },
]

INTENT_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "intent": {
            "type": "ARRAY",
            "items": {"type": "STRING", "enum": list(ALLOWED_INTENTS)},
        },
        "entities": {"type": "ARRAY", "items": {"type": "STRING"}},
        "language": {"type": "STRING", "enum": ["sv", "en"]},
    },
    "required": ["intent", "entities", "language"],
}


def build_intent_user_prompt(message: str) -> str:
    shots = "\n\n".join(
        f"Fråga: {ex['user']}\nSvar: {json.dumps(ex['assistant'], ensure_ascii=False)}"
        for ex in INTENT_EXAMPLES
    )
    return f"Exempel:\n{shots}\n\nFråga: {message.strip()}\nSvar:"


def build_planner_system_prompt(*, has_portfolio: bool, has_uploaded_documents: bool) -> str:
    return f"""Du är hjärnan i en finansiell AI-rådgivare. Din uppgift är att analysera användarens inkommande fråga och skapa en EXEKVERINGSPLAN.

Regler:
1. Intent: avgör vad användaren egentligen vill. Nämns specifika aktier, välj stock_analysis. Gäller frågan portföljen, välj portfolio_optimization eller news_update.
2. Realtidsdata: var generös med needsRealtimeData om frågan rör marknadsläget, specifika instrument eller nyheter. Vi vill inte gissa.
3. Sökning: om realtidsdata behövs, skriv en searchQuery som är bättre än användarens fråga (t.ex. "latest earnings report"). Annars ska searchQuery vara null.
4. Dokument: om uppladdade dokument finns och frågan rör dem, välj document_summary.
5. Kontext: om användaren frågar "borde jag sälja X?" eller "hur går min portfölj?", sätt requiresProfileContext till true.
6. searchDays anger hur många dagar bakåt sökningen ska gå (1-30).

Användaren har portföljdata: {'Ja' if has_portfolio else 'Nej'}
Uppladdade dokument finns: {'Ja' if has_uploaded_documents else 'Nej'}
"""


PLANNER_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "primaryIntent": {"type": "STRING", "enum": list(ALLOWED_INTENTS)},
        "secondaryIntents": {"type": "ARRAY", "items": {"type": "STRING"}},
        "needsRealtimeData": {"type": "BOOLEAN"},
        "searchQuery": {"type": "STRING", "nullable": True},
        "searchTopic": {"type": "STRING", "enum": ["news", "finance", "general"]},
        "searchDepth": {"type": "STRING", "enum": ["basic", "advanced"]},
        "searchDays": {"type": "INTEGER"},
        "detectedEntities": {"type": "ARRAY", "items": {"type": "STRING"}},
        "language": {"type": "STRING", "enum": ["sv", "en"]},
        "requiresProfileContext": {"type": "BOOLEAN"},
        "reasoning": {"type": "STRING"},
    },
    "required": ["primaryIntent", "needsRealtimeData", "language", "reasoning"],
}


def build_planner_user_prompt(message: str, recent_history: List[str]) -> str:
    history = "\n".join(recent_history) if recent_history else "(ingen)"
    return f'Historik:\n{history}\n\nNuvarande fråga: "{message.strip()}"'


def build_finance_system_prompt(language: str = "sv") -> str:
    reply_language = "svenska" if language == "sv" else "engelska"
    return f"""Du är en erfaren finansiell assistent i en investeringsapp.
Din roll är att ge pedagogisk och praktisk marknadsvägledning, inte personlig finansiell rådgivning.

Svarsregler:
- Börja med en direkt slutsats i en mening.
- Ge sedan en kort motivering grundad i tillgänglig data.
- För rekommendationsfrågor: ange skäl, huvudsakliga risker och 1-2 konkreta nästa steg.
- Håll svaren koncisa om användaren inte ber om mer djup.
- Svara på {reply_language}.

Dataintegritet:
- Hitta aldrig på kurser, nyckeltal, datum eller händelser.
- Om data saknas eller är osäker, säg det tydligt.
- Skilj på observerade fakta och slutsatser.
- Om realtidskällor finns nedan, hänvisa till dem. Annars, antyd inte att informationen är realtidsverifierad.
- Ändra aldrig användarens profil själv. Profiländringar bekräftas alltid av användaren i appen.
"""
