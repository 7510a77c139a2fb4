"""
Stats Service - delivery health of one subscription
"""
from __future__ import annotations

from dataclasses import dataclass, field

from notifier.db.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from notifier.db.store import DeliveryStore

RECENT_FAILURES_LIMIT = 5


@dataclass
class SubscriptionStats:
    total_deliveries: int
    success_rate: float
    avg_response_time_ms: int
    counts_by_status: dict[DeliveryStatus, int]
    recent_failures: list[WebhookDelivery] = field(default_factory=list)


class StatsService:
    """Read-only aggregation over the delivery history."""

    def __init__(self, store: DeliveryStore):
        self.store = store

    async def stats(self, subscription_id: str) -> SubscriptionStats:
        """
        Totals, success rate (percent, 2 decimals), mean latency of DELIVERED
        records and the most recent FAILED ones. Has no side effects.
        """
        grouped = await self.store.count_by_status(subscription_id)
        counts = {status: grouped.get(status, 0) for status in DeliveryStatus}
        total = sum(counts.values())

        success_rate = 0.0
        if total:
            success_rate = round(counts[DeliveryStatus.DELIVERED] / total * 100, 2)

        return SubscriptionStats(
            total_deliveries=total,
            success_rate=success_rate,
            avg_response_time_ms=await self.store.average_response_time_ms(subscription_id),
            counts_by_status=counts,
            recent_failures=await self.store.recent_failures(
                subscription_id, RECENT_FAILURES_LIMIT
            ),
        )
