"""
Retry Scheduler - periodic sweep over due RETRYING deliveries

The sweep never performs HTTP itself: each due delivery is submitted to the
worker pool, so one slow subscriber cannot stretch a sweep past its time limit.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from notifier.core.config import Settings, settings as default_settings
from notifier.core.logging import get_logger, log_async_operation
from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import DeliveryStatus
from notifier.db.store import DeliveryStore
from notifier.domain.services.dispatcher import enqueue_delivery

logger = get_logger(__name__)

ABANDONED_ATTEMPT_ERROR = "Final attempt did not complete"


class RetryScheduler:
    """Submits deliveries whose backoff has elapsed for another attempt."""

    def __init__(
        self,
        store: DeliveryStore,
        config: Settings = default_settings,
        submit: Callable[[str, int], None] = enqueue_delivery,
    ):
        self.store = store
        self.config = config
        self.submit = submit

    @log_async_operation("webhook_retry_sweep")
    async def retry_due_deliveries(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> int:
        """
        Run one sweep and return how many retries were submitted.

        Deliveries of inactive or deleted subscriptions are left RETRYING.
        A due delivery with no attempts left (its worker died during the last
        attempt) is marked FAILED here. Each submission carries the attempt
        count read by the sweep, so a delivery submitted twice before a worker
        picks it up is still attempted once.
        """
        now = now or utcnow()
        limit = limit or self.config.WEBHOOK_RETRY_BATCH_SIZE

        due = await self.store.get_due_retries(now, limit)
        submitted = 0

        for delivery in due:
            if delivery.status != DeliveryStatus.RETRYING:
                continue

            subscription = await self.store.get_subscription(delivery.subscription_id)
            if subscription is None or not subscription.is_active:
                continue

            if delivery.attempts >= delivery.max_attempts:
                finalized = await self.store.mark_exhausted(
                    delivery.id, subscription.id, delivery.attempts, ABANDONED_ATTEMPT_ERROR
                )
                if finalized:
                    logger.warning(
                        "Delivery finalized after abandoned attempt",
                        extra_data={"delivery_id": delivery.id, "attempts": delivery.attempts},
                    )
                continue

            try:
                self.submit(delivery.id, delivery.attempts)
                submitted += 1
            except Exception as exc:
                # still due; the next sweep submits it again
                logger.error(
                    "Failed to submit webhook retry",
                    extra_data={"delivery_id": delivery.id, "error": str(exc)},
                    exc_info=True,
                )

        if due:
            logger.info(
                "Retry sweep finished",
                extra_data={"due": len(due), "submitted": submitted},
            )
        return submitted
