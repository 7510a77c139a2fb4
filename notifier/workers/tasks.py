"""
Celery Tasks for Webhook Delivery

Each outbound delivery attempt runs in its own task, so a slow or failing
subscriber never holds up the producer or sibling deliveries. Periodic
tasks (see ``celery_app.beat_schedule``) drive the retry sweep and
retention cleanup.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any

from notifier.workers.celery_app import celery_app
from notifier.core.config import settings
from notifier.core.logging import get_logger, set_correlation_id
from notifier.db.database import get_task_session
from notifier.db.sqlalchemy_store import SQLAlchemyDeliveryStore
from notifier.domain.services.delivery_worker import DeliveryWorker
from notifier.domain.services.dispatcher import WebhookDispatcher
from notifier.domain.services.retry_scheduler import RetryScheduler
from notifier.domain.services.subscription_service import cleanup_old_deliveries as cleanup_deliveries

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: str | None = None):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Reuse the producer's correlation ID when one was passed along
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="notifier.workers.tasks.dispatch_event")
def dispatch_event(
    organization_id: str,
    event: str,
    data: dict[str, Any],
    correlation_id: str | None = None,
):
    """Fan an event out to the organization's subscriptions"""

    async def _dispatch():
        async with get_task_session() as db:
            dispatcher = WebhookDispatcher(SQLAlchemyDeliveryStore(db))
            delivery_ids = await dispatcher.dispatch(organization_id, event, data)
            return {"deliveries": delivery_ids}

    return run_async(_dispatch(), correlation_id)


@celery_app.task(name="notifier.workers.tasks.deliver_webhook")
def deliver_webhook(
    delivery_id: str,
    expected_attempts: int | None = None,
    correlation_id: str | None = None,
):
    """
    One attempt of a delivery, submitted by the dispatcher or the retry sweep.

    With ``expected_attempts`` the attempt only runs while the delivery still
    has that many attempts; a duplicate submission finds it moved on and is
    skipped. Errors stop here: the producer already moved on and the delivery
    keeps whatever state was last committed.
    """

    async def _deliver():
        async with get_task_session() as db:
            store = SQLAlchemyDeliveryStore(db)

            delivery = await store.get_delivery(delivery_id)
            if not delivery:
                return {"error": "Delivery not found"}

            if expected_attempts is not None and delivery.attempts != expected_attempts:
                return {"skipped": True}

            subscription = await store.get_subscription(delivery.subscription_id)
            if not subscription:
                logger.warning(
                    "Subscription gone before delivery attempt",
                    extra_data={"delivery_id": delivery_id},
                )
                return {"error": "Subscription not found"}

            result = await DeliveryWorker(store).attempt(subscription, delivery)
            if result is None:
                return {"skipped": True}
            return {"status": result.status.value, "attempts": result.attempts}

    try:
        return run_async(_deliver(), correlation_id)
    except Exception as e:
        logger.error(
            "Webhook delivery task failed",
            extra_data={"delivery_id": delivery_id, "error": str(e)},
            exc_info=True
        )
        return {"error": "Delivery task failed"}


@celery_app.task(name="notifier.workers.tasks.retry_webhook_deliveries")
def retry_webhook_deliveries():
    """
    Submit RETRYING deliveries whose backoff elapsed to deliver_webhook.
    Runs every WEBHOOK_RETRY_SWEEP_SECONDS via beat.
    """

    async def _sweep():
        async with get_task_session() as db:
            scheduler = RetryScheduler(SQLAlchemyDeliveryStore(db))
            submitted = await scheduler.retry_due_deliveries()
            return {"retried": submitted}

    return run_async(_sweep())


@celery_app.task(name="notifier.workers.tasks.cleanup_old_deliveries")
def cleanup_old_deliveries(days: int | None = None):
    """Delete DELIVERED records older than the retention window"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await cleanup_deliveries(
                SQLAlchemyDeliveryStore(db), days or settings.WEBHOOK_RETENTION_DAYS
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
