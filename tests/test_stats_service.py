"""
Tests for subscription delivery statistics
"""
from datetime import timedelta

import pytest

from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import DeliveryStatus
from notifier.domain.services.stats_service import StatsService


class TestStats:

    @pytest.mark.unit
    async def test_empty_history(self, store, subscription_factory):
        subscription = await subscription_factory()

        stats = await StatsService(store).stats(subscription.id)

        assert stats.total_deliveries == 0
        assert stats.success_rate == 0
        assert stats.avg_response_time_ms == 0
        assert stats.recent_failures == []
        assert stats.counts_by_status == {status: 0 for status in DeliveryStatus}

    @pytest.mark.unit
    async def test_rates_and_latency(self, store, subscription_factory, delivery_factory):
        subscription = await subscription_factory()
        await delivery_factory(subscription.id, status=DeliveryStatus.DELIVERED, response_time_ms=100)
        await delivery_factory(subscription.id, status=DeliveryStatus.DELIVERED, response_time_ms=200)
        await delivery_factory(subscription.id, status=DeliveryStatus.FAILED, response_time_ms=9000)

        stats = await StatsService(store).stats(subscription.id)

        assert stats.total_deliveries == 3
        assert stats.success_rate == 66.67
        # latency of DELIVERED records only, rounded
        assert stats.avg_response_time_ms == 150
        assert stats.counts_by_status[DeliveryStatus.DELIVERED] == 2
        assert stats.counts_by_status[DeliveryStatus.FAILED] == 1
        assert stats.counts_by_status[DeliveryStatus.PENDING] == 0

    @pytest.mark.unit
    async def test_recent_failures_are_newest_five(
        self, store, subscription_factory, delivery_factory
    ):
        subscription = await subscription_factory()
        now = utcnow()
        created = []
        for minutes_ago in range(7):
            delivery = await delivery_factory(
                subscription.id,
                status=DeliveryStatus.FAILED,
                created_at=now - timedelta(minutes=minutes_ago),
            )
            created.append(delivery.id)

        stats = await StatsService(store).stats(subscription.id)

        assert [d.id for d in stats.recent_failures] == created[:5]

    @pytest.mark.unit
    async def test_other_subscriptions_do_not_count(
        self, store, subscription_factory, delivery_factory
    ):
        subscription = await subscription_factory()
        other = await subscription_factory()
        await delivery_factory(other.id, status=DeliveryStatus.DELIVERED)

        assert (await StatsService(store).stats(subscription.id)).total_deliveries == 0

    @pytest.mark.unit
    async def test_stats_are_read_only(self, store, subscription_factory, delivery_factory):
        subscription = await subscription_factory()
        await delivery_factory(subscription.id, status=DeliveryStatus.RETRYING, attempts=1)
        service = StatsService(store)

        first = await service.stats(subscription.id)
        second = await service.stats(subscription.id)

        assert first == second
