"""
Tests for Celery Workers - notifier/workers/tasks.py

Covers:
- First delivery attempt task (happy path, missing records, contained errors)
- Event dispatch task
- Retry sweep and retention cleanup tasks
- Event loop management in Celery
- Beat schedule
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import DeliveryStatus


@contextmanager
def _patch_run_async_for_test():
    """
    run_async replacement for calling sync Celery tasks from an async test.

    The tasks create a fresh event loop, but a test already runs inside one,
    so the coroutine is run on a new loop in a separate thread instead.
    """
    import concurrent.futures

    def _test_run_async(coro, correlation_id=None):
        from notifier.core.logging import set_correlation_id
        set_correlation_id(correlation_id)

        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_run_in_thread)
            return future.result(timeout=30)

    with patch("notifier.workers.tasks.run_async", side_effect=_test_run_async):
        yield


@contextmanager
def _patch_task_session(db_session: AsyncSession):
    """get_task_session yields the test session"""
    with patch("notifier.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield mock_session_ctx


class TestDeliverWebhook:
    """Tests for deliver_webhook"""

    @pytest.mark.asyncio
    async def test_first_attempt_delivers(
        self, db_session, store, subscription_factory, delivery_factory, mock_webhook_endpoint
    ) -> None:
        from notifier.workers.tasks import deliver_webhook

        subscription = await subscription_factory()
        delivery = await delivery_factory(subscription.id)

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = deliver_webhook(delivery.id)

        assert result == {"status": "DELIVERED", "attempts": 1}
        mock_webhook_endpoint.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_first_attempt_schedules_retry(
        self, db_session, store, subscription_factory, delivery_factory,
        mock_webhook_endpoint, webhook_response
    ) -> None:
        from notifier.workers.tasks import deliver_webhook

        subscription = await subscription_factory()
        delivery = await delivery_factory(subscription.id)
        mock_webhook_endpoint.post.return_value = webhook_response(500)

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = deliver_webhook(delivery.id)

        assert result == {"status": "RETRYING", "attempts": 1}
        refreshed = await store.get_delivery(delivery.id)
        assert refreshed.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_missing_delivery(self, db_session, mock_webhook_endpoint) -> None:
        from notifier.workers.tasks import deliver_webhook

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = deliver_webhook("no-such-delivery")

        assert result == {"error": "Delivery not found"}
        mock_webhook_endpoint.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_subscription(
        self, db_session, delivery_factory, mock_webhook_endpoint
    ) -> None:
        from notifier.workers.tasks import deliver_webhook

        delivery = await delivery_factory("00000000-0000-0000-0000-000000000000")

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = deliver_webhook(delivery.id)

        assert result == {"error": "Subscription not found"}

    @pytest.mark.asyncio
    async def test_already_attempted_delivery_is_skipped(
        self, db_session, subscription_factory, delivery_factory, mock_webhook_endpoint
    ) -> None:
        from notifier.workers.tasks import deliver_webhook

        subscription = await subscription_factory()
        delivery = await delivery_factory(subscription.id, status=DeliveryStatus.DELIVERED, attempts=1)

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = deliver_webhook(delivery.id)

        assert result == {"skipped": True}
        mock_webhook_endpoint.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_submitted_twice_is_attempted_once(
        self, db_session, store, subscription_factory, delivery_factory,
        mock_webhook_endpoint
    ) -> None:
        from notifier.workers.tasks import deliver_webhook

        subscription = await subscription_factory()
        delivery = await delivery_factory(
            subscription.id,
            status=DeliveryStatus.RETRYING,
            attempts=1,
            next_retry_at=utcnow() - timedelta(seconds=1),
        )

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            first = deliver_webhook(delivery.id, expected_attempts=1)
            second = deliver_webhook(delivery.id, expected_attempts=1)

        assert first == {"status": "DELIVERED", "attempts": 2}
        assert second == {"skipped": True}
        mock_webhook_endpoint.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_errors_are_contained(self) -> None:
        from notifier.workers.tasks import deliver_webhook

        with _patch_run_async_for_test():
            with patch("notifier.workers.tasks.get_task_session") as mock_session_ctx:
                mock_session_ctx.return_value.__aenter__ = AsyncMock(
                    side_effect=RuntimeError("database unavailable")
                )
                mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)

                result = deliver_webhook("any-id")

        assert result == {"error": "Delivery task failed"}


class TestDispatchEvent:
    """Tests for dispatch_event"""

    @pytest.mark.asyncio
    async def test_creates_deliveries_and_enqueues_them(
        self, db_session, store, subscription_factory
    ) -> None:
        from notifier.workers.tasks import dispatch_event

        subscription = await subscription_factory(events=["report.generated"])

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            with patch("notifier.workers.tasks.deliver_webhook.delay") as mock_delay:
                result = dispatch_event(subscription.organization_id, "report.generated", {"report_id": "r-1"})

        assert len(result["deliveries"]) == 1
        mock_delay.assert_called_once()
        assert mock_delay.call_args.args == (result["deliveries"][0],)
        assert mock_delay.call_args.kwargs["expected_attempts"] == 0
        delivery = await store.get_delivery(result["deliveries"][0])
        assert delivery.subscription_id == subscription.id
        assert delivery.status == DeliveryStatus.PENDING


class TestPeriodicTasks:
    """Tests for retry_webhook_deliveries and cleanup_old_deliveries"""

    @pytest.mark.asyncio
    async def test_retry_sweep(
        self, db_session, store, subscription_factory, delivery_factory, mock_webhook_endpoint
    ) -> None:
        from notifier.workers.tasks import retry_webhook_deliveries

        subscription = await subscription_factory()
        delivery = await delivery_factory(
            subscription.id,
            status=DeliveryStatus.RETRYING,
            attempts=1,
            next_retry_at=utcnow() - timedelta(seconds=1),
        )

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            with patch("notifier.workers.tasks.deliver_webhook.delay") as mock_delay:
                result = retry_webhook_deliveries()

        assert result == {"retried": 1}
        mock_delay.assert_called_once()
        assert mock_delay.call_args.args == (delivery.id,)
        assert mock_delay.call_args.kwargs["expected_attempts"] == 1
        mock_webhook_endpoint.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention_window(
        self, db_session, store, subscription_factory, delivery_factory
    ) -> None:
        from notifier.workers.tasks import cleanup_old_deliveries

        subscription = await subscription_factory()
        old = await delivery_factory(
            subscription.id,
            status=DeliveryStatus.DELIVERED,
            created_at=utcnow() - timedelta(days=60),
        )
        recent = await delivery_factory(
            subscription.id,
            status=DeliveryStatus.DELIVERED,
            created_at=utcnow() - timedelta(days=5),
        )

        with _patch_run_async_for_test(), _patch_task_session(db_session):
            result = cleanup_old_deliveries()

        assert result == {"deleted": 1}
        assert await store.get_delivery(old.id) is None
        assert await store.get_delivery(recent.id) is not None


class TestEventLoopManagement:
    """Tests for get_event_loop and run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        from notifier.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        from notifier.workers.tasks import run_async

        async def _coro():
            return 42

        assert run_async(_coro()) == 42


class TestBeatSchedule:

    def test_periodic_tasks_are_registered(self) -> None:
        from notifier.core.config import settings
        from notifier.workers.celery_app import celery_app

        schedule = celery_app.conf.beat_schedule

        assert schedule["retry-webhook-deliveries"]["task"] == (
            "notifier.workers.tasks.retry_webhook_deliveries"
        )
        assert schedule["retry-webhook-deliveries"]["schedule"] == settings.WEBHOOK_RETRY_SWEEP_SECONDS
        assert schedule["cleanup-old-webhook-deliveries"]["task"] == (
            "notifier.workers.tasks.cleanup_old_deliveries"
        )
