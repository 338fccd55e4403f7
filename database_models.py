import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserAccess(Base):
    """
    Plan, trial and Stripe linkage for one identity-provider user.
    A row is created lazily on the user's first authenticated request.
    """
    __tablename__ = "user_access"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)

    plan = Column(String, default="free", nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    trial_started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    has_used_trial = Column(Boolean, default=False, nullable=False)

    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=True)
    subscription_status = Column(String, default="none", nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Deal(Base):
    """A saved deal calculator snapshot. The full client payload is kept as JSON."""
    __tablename__ = "deals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    year = Column(Integer, default=2024, nullable=False)
    title = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class FeatureUsage(Base):
    """Per-user, per-feature counter for one UTC day."""
    __tablename__ = "feature_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "feature", "day", name="uq_feature_usage_user_feature_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    feature = Column(String, nullable=False)
    day = Column(Date, nullable=False)
    count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
