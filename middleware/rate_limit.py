# middleware/rate_limit.py
"""
Rate limiting configuration using slowapi.

Usage in route files:
    from middleware.rate_limit import limiter, CHAT_STREAM_RATE_LIMIT

    @router.post("/stream")
    @limiter.limit(CHAT_STREAM_RATE_LIMIT)
    async def chat_stream(request: Request, ...):
        ...
"""
import logging
import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def _get_rate_limit_key(request: Request) -> str:
    """
    Identify the caller for rate-limiting: per user when the request names
    one, otherwise per client IP.
    """
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


# ─── Default limits ────────────────────────────────────────────────
# Env-overridable so you can tune per-environment without redeploying.
DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")
CHAT_STREAM_RATE_LIMIT = os.getenv("RATE_LIMIT_CHAT_STREAM", "20/minute")

limiter = Limiter(
    key_func=_get_rate_limit_key,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
    strategy="fixed-window",
)
