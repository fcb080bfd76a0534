from __future__ import annotations

import asyncio
import logging
import os
import random
from typing import Any, Dict, Optional, Sequence

import httpx

TAVILY_API_URL = os.getenv("TAVILY_API_URL", "https://api.tavily.com/search")
TAVILY_API_KEY = os.getenv("TAVILY_API_KEY", "")
TAVILY_TIMEOUT_SEC = float(os.getenv("TAVILY_TIMEOUT_SEC", "10"))

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRIES = 2

logger = logging.getLogger(__name__)


class TavilyClientError(RuntimeError):
    """Raised when Tavily requests fail or are misconfigured."""


def build_payload(
    query: str,
    *,
    max_results: int,
    topic: str = "finance",
    days: Optional[float] = None,
    include_answer: bool = True,
    include_raw_content: bool = False,
    search_depth: str = "basic",
    include_domains: Optional[Sequence[str]] = None,
    exclude_domains: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "query": query,
        "max_results": int(max_results),
        "include_answer": bool(include_answer),
        "include_raw_content": bool(include_raw_content),
        "search_depth": search_depth if search_depth in {"basic", "advanced"} else "basic",
        "topic": topic if topic in {"news", "finance", "general"} else "finance",
    }
    if days is not None:
        # the API only takes whole days; recency is re-checked on our side
        payload["days"] = max(1, int(-(-float(days) // 1)))
    if include_domains:
        payload["include_domains"] = list(include_domains)
    if exclude_domains:
        payload["exclude_domains"] = list(exclude_domains)
    return payload


def _retry_delay(attempt: int) -> float:
    return (0.6 * (2**attempt)) + random.random() * 0.3


def _is_retryable(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRY_STATUS_CODES
    return False


async def _post_with_retries(
    client: httpx.AsyncClient,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> Dict[str, Any]:
    last_exc: Optional[Exception] = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = await client.post(TAVILY_API_URL, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            last_exc = exc
            if not _is_retryable(exc) or attempt == MAX_RETRIES:
                break
            logger.warning("tavily.retry attempt=%s err=%s", attempt + 1, type(exc).__name__)
            await asyncio.sleep(_retry_delay(attempt))
            continue
        except ValueError as exc:
            raise TavilyClientError("Tavily returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TavilyClientError("Tavily returned a non-object body")
        return data
    raise TavilyClientError(f"Tavily request failed: {type(last_exc).__name__ if last_exc else 'unknown'}")


async def search(
    query: str,
    *,
    max_results: int,
    topic: str = "finance",
    days: Optional[float] = None,
    include_answer: bool = True,
    include_raw_content: bool = False,
    search_depth: str = "basic",
    include_domains: Optional[Sequence[str]] = None,
    exclude_domains: Optional[Sequence[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """One Tavily search. Retries timeouts and 429/5xx, then raises ``TavilyClientError``."""
    if not TAVILY_API_KEY:
        raise TavilyClientError("Missing TAVILY_API_KEY")

    payload = build_payload(
        query,
        max_results=max_results,
        topic=topic,
        days=days,
        include_answer=include_answer,
        include_raw_content=include_raw_content,
        search_depth=search_depth,
        include_domains=include_domains,
        exclude_domains=exclude_domains,
    )
    headers = {"Authorization": f"Bearer {TAVILY_API_KEY}"}

    if client is not None:
        return await _post_with_retries(client, payload, headers)
    async with httpx.AsyncClient(timeout=httpx.Timeout(TAVILY_TIMEOUT_SEC)) as own_client:
        return await _post_with_retries(own_client, payload, headers)
