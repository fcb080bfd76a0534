from __future__ import annotations

import re
from typing import Iterable, Tuple
from urllib.parse import urlparse

SWEDISH_DOMAINS: Tuple[str, ...] = (
    "di.se",
    "affarsvarlden.se",
    "placera.se",
    "privataaffarer.se",
    "svd.se",
    "dn.se",
    "efn.se",
    "breakit.se",
    "news.cision.com",
)

INTERNATIONAL_DOMAINS: Tuple[str, ...] = (
    "reuters.com",
    "bloomberg.com",
    "ft.com",
    "cnbc.com",
    "wsj.com",
    "marketwatch.com",
    "finance.yahoo.com",
    "investing.com",
    "morningstar.com",
    "marketscreener.com",
    "seekingalpha.com",
    "benzinga.com",
    "globenewswire.com",
    "sec.gov",
)

TRUSTED_DOMAINS: Tuple[str, ...] = tuple(dict.fromkeys(SWEDISH_DOMAINS + INTERNATIONAL_DOMAINS))

EXCLUDED_DOMAINS: Tuple[str, ...] = (
    "reddit.com",
    "quora.com",
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "tiktok.com",
    "youtube.com",
    "linkedin.com",
    "medium.com",
    "stocktwits.com",
    "discord.com",
    "pinterest.com",
)

_TRACKING_PARAMS = {"gclid", "fbclid", "mc_cid", "mc_eid", "ref", "cmpid"}


def extract_domain(url: str) -> str:
    try:
        domain = urlparse(url).netloc.lower()
    except Exception:
        return ""
    domain = domain.split(":", 1)[0]
    return domain[4:] if domain.startswith("www.") else domain


def canonicalize_url(url: str) -> str:
    if not url:
        return ""
    parsed = urlparse(url)
    if not parsed.netloc and parsed.path:
        parsed = urlparse(f"https://{url}")
    scheme = "https"
    netloc = parsed.netloc.lower()
    netloc = netloc[4:] if netloc.startswith("www.") else netloc
    path = re.sub(r"/+$", "", parsed.path)
    query = parsed.query
    if query:
        params = []
        for pair in query.split("&"):
            key = pair.split("=", 1)[0].lower()
            if key.startswith("utm_") or key in _TRACKING_PARAMS:
                continue
            params.append(pair)
        query = "&".join(params)
    rebuilt = f"{scheme}://{netloc}{path}"
    if query:
        rebuilt = f"{rebuilt}?{query}"
    return rebuilt


def domain_in(domain: str, candidates: Iterable[str]) -> bool:
    """True when ``domain`` equals or is a subdomain of any candidate."""
    domain = (domain or "").lower()
    if not domain:
        return False
    for candidate in candidates:
        candidate = candidate.lower()
        candidate = candidate[4:] if candidate.startswith("www.") else candidate
        if domain == candidate or domain.endswith(f".{candidate}"):
            return True
    return False


def is_excluded(url: str) -> bool:
    return domain_in(extract_domain(url), EXCLUDED_DOMAINS)
