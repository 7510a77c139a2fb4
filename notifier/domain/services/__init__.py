"""
Domain Services
"""
from notifier.domain.services.delivery_worker import DeliveryWorker, send_webhook
from notifier.domain.services.dispatcher import WebhookDispatcher
from notifier.domain.services.retry_scheduler import RetryScheduler
from notifier.domain.services.stats_service import StatsService, SubscriptionStats
from notifier.domain.services.subscription_service import (
    SubscriptionService,
    cleanup_old_deliveries,
)

__all__ = [
    "DeliveryWorker",
    "send_webhook",
    "WebhookDispatcher",
    "RetryScheduler",
    "StatsService",
    "SubscriptionStats",
    "SubscriptionService",
    "cleanup_old_deliveries",
]
