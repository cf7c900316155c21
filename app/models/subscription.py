from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, TimestampMixin

class SubscriptionStatus(str, enum.Enum):
    """Local subscription state machine"""
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

class Subscription(Base, TimestampMixin):
    """One row per provider subscription; the newest non-canceled row is the user's current one"""
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(String, nullable=False, index=True)  # References user in Supabase auth
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True)  # NULL for placeholders and one-time packs
    plan_type = Column(String(50), nullable=False)  # Plan catalog key
    status = Column(
        SQLEnum(SubscriptionStatus, name="subscription_status", values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionStatus.INCOMPLETE,
        nullable=False,
    )
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)

    # Credit ledger
    monthly_token_limit = Column(Integer, default=0, nullable=False)  # Credits granted for the usage period
    tokens_used = Column(Integer, default=0, nullable=False)  # Credits consumed in the usage period
    usage_period_start = Column(DateTime, nullable=True)  # Period the tokens_used counter belongs to

    # Provider "created" time of the newest applied webhook event
    last_event_at = Column(DateTime, nullable=True)

    @property
    def tokens_remaining(self) -> int:
        return max(0, (self.monthly_token_limit or 0) - (self.tokens_used or 0))
