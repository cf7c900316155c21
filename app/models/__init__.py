# Database models package

from .base import Base
from .subscription import Subscription, SubscriptionStatus
from .usage_record import UsageRecord, OperationKind
from .stripe_webhook import StripeWebhook

__all__ = [
    'Base',
    'Subscription',
    'SubscriptionStatus',
    'UsageRecord',
    'OperationKind',
    'StripeWebhook',
]
