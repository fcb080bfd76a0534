# services/profile_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models.risk_profile import UserRiskProfile
from services.ai.chat.profile_update_rules import ALLOWED_PROFILE_VALUES, MONTHLY_AMOUNT

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("risk_tolerance", "investment_horizon", MONTHLY_AMOUNT, "age", "experience_level")
UPDATABLE_FIELDS = tuple(ALLOWED_PROFILE_VALUES) + (MONTHLY_AMOUNT,)


def profile_to_dict(profile: UserRiskProfile) -> Dict[str, Any]:
    return {name: getattr(profile, name) for name in PROFILE_FIELDS}


def load_profile(db: Session, user_id: str) -> Optional[Dict[str, Any]]:
    profile = db.query(UserRiskProfile).filter(UserRiskProfile.user_id == user_id).first()
    return profile_to_dict(profile) if profile else None


def validate_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Raise ``ValueError`` for unknown fields or out-of-range values."""
    clean: Dict[str, Any] = {}
    for name, value in (updates or {}).items():
        if name not in UPDATABLE_FIELDS:
            raise ValueError(f"unsupported profile field: {name}")
        if name == MONTHLY_AMOUNT:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"invalid amount for {name}")
            clean[name] = float(value)
            continue
        if value not in ALLOWED_PROFILE_VALUES[name]:
            raise ValueError(f"invalid value for {name}: {value}")
        clean[name] = value
    if not clean:
        raise ValueError("no profile updates given")
    return clean


def apply_profile_updates(db: Session, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply confirmed updates, creating the profile row on first use."""
    clean = validate_updates(updates)
    profile = db.query(UserRiskProfile).filter(UserRiskProfile.user_id == user_id).first()
    if profile is None:
        profile = UserRiskProfile(user_id=user_id)
        db.add(profile)
    for name, value in clean.items():
        setattr(profile, name, value)
    db.commit()
    db.refresh(profile)
    logger.info("profile.updated fields=%s", ",".join(sorted(clean)))
    return profile_to_dict(profile)
