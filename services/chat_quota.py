# services/chat_quota.py
"""
Daily AI chat message quota.

Usage in a route:
    quota = check_chat_quota(db, user_id)
    if not quota.allowed:
        raise HTTPException(status_code=403, detail=quota_exceeded_detail(quota))
    ...
    record_chat_message(db, user_id)
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models.user_subscription import UserSubscription
from services.ai.chat.chat_errors import QuotaExceeded
from services.ai.chat.chat_models import QuotaStatus
from services.cache.cache_backend import cache_get, cache_set, counter_get, counter_incr

logger = logging.getLogger(__name__)

DAY_SEC = 86_400
PLAN_CACHE_TTL_SEC = 60

# Messages per rolling day. -1 = unlimited.
CHAT_MESSAGE_LIMITS: Dict[str, int] = {
    "free": 5,
    "premium": 200,
    "pro": -1,
}


def get_user_plan(db: Session, user_id: str) -> str:
    """Return the active plan string for a user ('free' | 'premium' | 'pro')."""
    cached = cache_get(f"chat:plan:{user_id}")
    if isinstance(cached, str):
        return cached

    sub: Optional[UserSubscription] = (
        db.query(UserSubscription)
        .filter_by(user_id=user_id)
        .first()
    )
    plan = "free"
    # Only count as paid if subscription is actually active or trialing
    if sub and sub.status in ("active", "trialing") and sub.plan in CHAT_MESSAGE_LIMITS:
        plan = sub.plan
    cache_set(f"chat:plan:{user_id}", plan, ttl_seconds=PLAN_CACHE_TTL_SEC)
    return plan


def get_limit(plan: str) -> int:
    return CHAT_MESSAGE_LIMITS.get(plan, CHAT_MESSAGE_LIMITS["free"])


def _usage_key(user_id: str) -> str:
    # one counter per UTC day
    day = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"chat:usage:d:{day}:{user_id}"


def get_usage(user_id: str) -> int:
    return counter_get(_usage_key(user_id))


def check_chat_quota(db: Session, user_id: str) -> QuotaStatus:
    plan = get_user_plan(db, user_id)
    limit = get_limit(plan)
    used = get_usage(user_id)
    allowed = limit == -1 or used < limit
    return QuotaStatus(allowed=allowed, used=used, limit=limit, plan=plan)


def record_chat_message(db: Session, user_id: str) -> QuotaStatus:
    """Count one successful send and return the updated status."""
    plan = get_user_plan(db, user_id)
    used = counter_incr(_usage_key(user_id), ttl_seconds=DAY_SEC)
    limit = get_limit(plan)
    logger.info("chat_quota.record plan=%s used=%s limit=%s", plan, used, limit)
    return QuotaStatus(allowed=limit == -1 or used < limit, used=used, limit=limit, plan=plan)


def quota_exceeded_detail(status: QuotaStatus) -> Dict[str, Any]:
    """JSON body the client maps to ``QuotaExceeded``."""
    return {
        "message": QuotaExceeded.default_user_message,
        "code": QuotaExceeded.code,
        "plan": status.plan,
        "limit": status.limit,
        "used": status.used,
    }
