"""
Webhook Dispatcher - fans a domain event out to matching subscriptions

One PENDING delivery is persisted per active subscription listening to the
event; each is then handed to its own background task. The caller never waits
for an HTTP attempt and never sees a delivery failure.
"""
from __future__ import annotations

import uuid
from typing import Any, Callable

from notifier.core.config import Settings, settings as default_settings
from notifier.core.logging import get_correlation_id, get_logger
from notifier.db.database import utcnow
from notifier.db.store import DeliveryStore

logger = get_logger(__name__)


def format_timestamp() -> str:
    """ISO-8601 UTC with milliseconds, e.g. ``2026-01-31T12:00:00.000Z``."""
    return utcnow().isoformat(timespec="milliseconds") + "Z"


def build_payload(event_name: str, data: dict[str, Any]) -> dict[str, Any]:
    """Fresh ``{id, event, timestamp, data}`` envelope."""
    return {
        "id": str(uuid.uuid4()),
        "event": event_name,
        "timestamp": format_timestamp(),
        "data": data,
    }


def enqueue_delivery(delivery_id: str, expected_attempts: int = 0) -> None:
    """
    Submit one attempt to the Celery worker pool under the current correlation id.

    The task only runs the attempt while the delivery still has
    ``expected_attempts`` attempts, so submitting the same attempt twice
    delivers it once.
    """
    from notifier.workers.tasks import deliver_webhook

    deliver_webhook.delay(
        delivery_id,
        expected_attempts=expected_attempts,
        correlation_id=get_correlation_id(),
    )


class WebhookDispatcher:
    """Creates delivery records and submits them for asynchronous delivery."""

    def __init__(
        self,
        store: DeliveryStore,
        submit: Callable[[str], None] = enqueue_delivery,
        config: Settings = default_settings,
    ):
        self.store = store
        self.submit = submit
        self.config = config

    async def dispatch(
        self, organization_id: str, event_name: str, data: dict[str, Any]
    ) -> list[str]:
        """
        Fan ``event_name`` out to the organization's subscribers.

        Returns the ids of the created deliveries (empty when nobody listens).
        Each delivery gets its own payload id and is committed on its own, so
        a failure while creating one leaves the ones before it in place.
        """
        subscriptions = await self.store.find_active_subscriptions(organization_id, event_name)
        if not subscriptions:
            logger.debug(
                "No subscriptions for event",
                extra_data={"organization_id": organization_id, "event": event_name},
            )
            return []

        delivery_ids: list[str] = []
        for subscription in subscriptions:
            delivery = await self.store.create_delivery(
                subscription_id=subscription.id,
                event=event_name,
                payload=build_payload(event_name, data),
                max_attempts=self.config.WEBHOOK_MAX_ATTEMPTS,
            )
            delivery_ids.append(delivery.id)

            try:
                self.submit(delivery.id)
            except Exception as exc:
                # stays PENDING; a manual retry can still deliver it
                logger.error(
                    "Failed to submit webhook delivery",
                    extra_data={
                        "delivery_id": delivery.id,
                        "subscription_id": subscription.id,
                        "event": event_name,
                        "error": str(exc),
                    },
                    exc_info=True,
                )

        logger.info(
            "Event dispatched",
            extra_data={
                "organization_id": organization_id,
                "event": event_name,
                "deliveries": len(delivery_ids),
            },
        )
        return delivery_ids
