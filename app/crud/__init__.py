# CRUD operations package

from .subscription import subscription_crud
from .usage_record import usage_record_crud
from .stripe_webhook import stripe_webhook_crud

__all__ = [
    'subscription_crud',
    'usage_record_crud',
    'stripe_webhook_crud'
]
