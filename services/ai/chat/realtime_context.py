from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from dateutil import parser
from pydantic import BaseModel, ConfigDict, Field

from services.ai.chat.chat_errors import AugmentationFailure
from services.ai.chat.chat_models import ConversationPlan
from services.tavily import client as tavily_client
from services.tavily.domains import TRUSTED_DOMAINS, EXCLUDED_DOMAINS, canonicalize_url, extract_domain, is_excluded

logger = logging.getLogger(__name__)

REALTIME_RECENCY_DAYS = float(os.getenv("REALTIME_RECENCY_DAYS", "1.5"))
REALTIME_MAX_RESULTS = int(os.getenv("REALTIME_MAX_RESULTS", "6"))
REALTIME_MIN_RESULTS = int(os.getenv("REALTIME_MIN_RESULTS", "3"))
REALTIME_TIMEOUT_S = float(os.getenv("REALTIME_TIMEOUT_S", "12"))
REALTIME_SNIPPET_MAX_CHARS = int(os.getenv("REALTIME_SNIPPET_MAX_CHARS", "900"))
REALTIME_CONTEXT_MAX_CHARS = int(os.getenv("REALTIME_CONTEXT_MAX_CHARS", "6000"))

_RELEASE_QUERY = re.compile(
    r"\b(?:releaser?|lansering\w*|pipeline|spelkalender|upcoming releases?|product launch\w*|product pipeline)\b",
    re.IGNORECASE,
)

SearchFn = Callable[..., Awaitable[Dict[str, Any]]]


class RealtimeReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    headline: str
    source: str
    url: str
    published_at: Optional[str] = Field(default=None, alias="publishedAt")


class RealtimeContext(BaseModel):
    context_block: str = ""
    references: List[RealtimeReference] = Field(default_factory=list)
    answer: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.context_block and not self.references


def _normalize_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return " ".join(value.strip().split())


def _truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "…"


def parse_published_at(value: Any) -> Optional[datetime]:
    raw = _normalize_text(value)
    if not raw:
        return None
    try:
        parsed = parser.parse(raw)
    except (ValueError, OverflowError, parser.ParserError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def select_results(
    results: Iterable[Any],
    *,
    recency_days: float,
    max_results: int,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Drop excluded domains, duplicates and stale items. Undated items are kept."""
    now = now or datetime.now(timezone.utc)
    kept: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for item in results:
        if not isinstance(item, dict):
            continue
        url = canonicalize_url(_normalize_text(item.get("url") or item.get("link")))
        if not url or is_excluded(url):
            continue
        key = url.lower()
        if key in seen:
            continue
        title = _normalize_text(item.get("title") or item.get("headline"))
        snippet = _normalize_text(item.get("raw_content") or item.get("content") or item.get("snippet"))
        if not title and not snippet:
            continue
        published_at = parse_published_at(item.get("published_date") or item.get("published"))
        if published_at is not None:
            age_days = (now - published_at).total_seconds() / 86400.0
            if age_days > recency_days:
                continue
        seen.add(key)
        kept.append(
            {
                "title": title or extract_domain(url),
                "url": url,
                "source": extract_domain(url),
                "published_at": published_at,
                "snippet": _truncate(snippet, REALTIME_SNIPPET_MAX_CHARS),
            }
        )
        if len(kept) >= max_results:
            break
    return kept


def format_context(answer: Optional[str], items: List[Dict[str, Any]]) -> str:
    sections: List[str] = []
    if answer:
        sections.append(f"Sammanfattning från realtidssökning: {answer}")
    if items:
        lines = []
        for item in items:
            parts = [f"• {item['title']}"]
            if item["published_at"] is not None:
                parts.append(f"({item['published_at'].date().isoformat()})")
            if item["snippet"]:
                parts.append(f"- {item['snippet']}")
            parts.append(f"Källa: {item['url']}")
            lines.append(" ".join(parts))
        sections.append("Detaljer från realtidssökning:\n" + "\n".join(lines))
    if not sections:
        return ""
    return _truncate("Extern realtidskontext:\n" + "\n\n".join(sections), REALTIME_CONTEXT_MAX_CHARS)


class RealtimeContextClient:
    """One bounded external search per plan. Never raises."""

    def __init__(self, search_fn: Optional[SearchFn] = None, timeout_s: float = REALTIME_TIMEOUT_S):
        self._search = search_fn or tavily_client.search
        self.timeout_s = float(timeout_s)

    async def _search_once(self, query: str, **kwargs: Any) -> Dict[str, Any]:
        """Bounded search call. Every failure surfaces as ``AugmentationFailure``."""
        try:
            data = await asyncio.wait_for(self._search(query, **kwargs), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise AugmentationFailure(f"search timed out after {self.timeout_s:.2f}s") from exc
        except tavily_client.TavilyClientError as exc:
            raise AugmentationFailure(str(exc)) from exc
        except Exception as exc:
            logger.exception("realtime.search.error")
            raise AugmentationFailure(type(exc).__name__) from exc
        if not isinstance(data, dict):
            raise AugmentationFailure("search returned a non-object")
        return data

    async def fetch(self, plan: ConversationPlan, *, request_id: Optional[str] = None) -> RealtimeContext:
        query = (plan.search_query or "").strip()
        if not plan.needs_realtime_data or not query:
            return RealtimeContext()

        recency_days = float(plan.search_days) if plan.search_days else REALTIME_RECENCY_DAYS
        max_results = max(REALTIME_MIN_RESULTS, plan.search_max_results or REALTIME_MAX_RESULTS)
        is_release = bool(_RELEASE_QUERY.search(query))
        topic = "general" if is_release else plan.search_topic

        started = time.perf_counter()
        logger.info(
            "realtime.fetch.start req_id=%s topic=%s depth=%s days=%s max_results=%s",
            request_id,
            topic,
            plan.search_depth,
            recency_days,
            max_results,
        )
        try:
            data = await self._search_once(
                query,
                max_results=max_results,
                topic=topic,
                days=recency_days,
                include_answer=True,
                search_depth=plan.search_depth,
                include_domains=None if is_release else list(TRUSTED_DOMAINS),
                exclude_domains=list(EXCLUDED_DOMAINS),
            )
        except AugmentationFailure as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("realtime.fetch.failed req_id=%s elapsed_ms=%s err=%s", request_id, elapsed_ms, exc)
            return RealtimeContext()

        results = data.get("results")
        items = select_results(
            results if isinstance(results, list) else [],
            recency_days=recency_days,
            max_results=max_results,
        )
        answer = _normalize_text(data.get("answer")) or None
        context = RealtimeContext(
            context_block=format_context(answer, items),
            answer=answer,
            references=[
                RealtimeReference(
                    headline=item["title"],
                    source=item["source"],
                    url=item["url"],
                    published_at=item["published_at"].isoformat() if item["published_at"] else None,
                )
                for item in items
            ],
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "realtime.fetch.done req_id=%s elapsed_ms=%s raw=%s kept=%s has_answer=%s",
            request_id,
            elapsed_ms,
            len(results) if isinstance(results, list) else 0,
            len(items),
            bool(answer),
        )
        return context
