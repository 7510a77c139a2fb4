"""
Database Models
"""
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.models.webhook_delivery import WebhookDelivery, DeliveryStatus

__all__ = [
    "WebhookSubscription",
    "WebhookDelivery",
    "DeliveryStatus",
]
