# models/risk_profile.py
from datetime import datetime, timezone

from sqlalchemy import String, Float, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRiskProfile(Base):
    __tablename__ = "user_risk_profiles"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    user_id: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        index=True,
        nullable=False,
    )

    # Fields the chat assistant may propose changes to
    risk_tolerance: Mapped[str | None] = mapped_column(String(16), nullable=True)      # conservative/moderate/aggressive
    investment_horizon: Mapped[str | None] = mapped_column(String(16), nullable=True)  # short/medium/long
    monthly_investment_amount: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Read-only context for prompts
    age: Mapped[int | None] = mapped_column(nullable=True)
    experience_level: Mapped[str | None] = mapped_column(String(16), nullable=True)  # beginner/intermediate/advanced

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
