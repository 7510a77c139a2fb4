"""
Subscription Service - operator management of webhook subscriptions

Every operation is scoped to an organization: a subscription (or a delivery
of one) that belongs to another organization is reported as not found.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from notifier.core.config import Settings, settings as default_settings
from notifier.core.exceptions import (
    DeliveryAlreadySucceededError,
    DeliveryConflictError,
    DeliveryNotFoundError,
    ErrorCode,
    SubscriptionNotFoundError,
    ValidationException,
)
from notifier.core.logging import get_logger, log_async_operation
from notifier.core.signing import generate_secret
from notifier.core.validation import HeaderValidator, WebhookUrlValidator
from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.store import DeliveryStore
from notifier.domain.delivery_state import HttpResult, can_manually_retry
from notifier.domain.events import TEST_EVENT, is_known_event
from notifier.domain.services.delivery_worker import DeliveryWorker, send_webhook
from notifier.domain.services.dispatcher import build_payload
from notifier.domain.services.stats_service import StatsService, SubscriptionStats

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("name", "url", "events", "headers", "is_active")
DEFAULT_PAGE_SIZE = 20


class SubscriptionService:
    """CRUD, secret rotation, test events, history and manual retry."""

    def __init__(self, store: DeliveryStore, config: Settings = default_settings):
        self.store = store
        self.config = config

    # ── Validation ──

    def _validate_url(self, url: str) -> str:
        is_valid, error = WebhookUrlValidator.validate(
            url, allow_private=self.config.allow_private_webhook_urls
        )
        if not is_valid:
            raise ValidationException(error, field="url", error_code=ErrorCode.INVALID_WEBHOOK_URL)
        return url.strip()

    @staticmethod
    def _validate_events(events: list[str]) -> list[str]:
        if not events:
            raise ValidationException(
                "At least one event is required", field="events", error_code=ErrorCode.UNKNOWN_EVENT
            )
        unknown = sorted({name for name in events if not is_known_event(name)})
        if unknown:
            raise ValidationException(
                f"Unknown events: {', '.join(unknown)}",
                field="events",
                error_code=ErrorCode.UNKNOWN_EVENT,
                details={"unknown_events": unknown},
            )
        return list(dict.fromkeys(events))

    @staticmethod
    def _validate_headers(headers: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        if not headers:
            return None
        is_valid, error = HeaderValidator.validate(headers)
        if not is_valid:
            raise ValidationException(error, field="headers", error_code=ErrorCode.INVALID_HEADERS)
        return dict(headers)

    # ── Subscriptions ──

    async def create_subscription(
        self,
        organization_id: str,
        name: str,
        url: str,
        events: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> WebhookSubscription:
        """Create an active subscription with a fresh secret (the only time it is shown)."""
        subscription = WebhookSubscription(
            organization_id=organization_id,
            name=name,
            url=self._validate_url(url),
            secret=generate_secret(),
            events=self._validate_events(events),
            headers=self._validate_headers(headers),
            is_active=True,
        )
        subscription = await self.store.add_subscription(subscription)

        logger.info(
            "Webhook subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "organization_id": organization_id,
                "url": WebhookUrlValidator.mask(subscription.url),
                "events": subscription.events,
            },
        )
        return subscription

    async def list_subscriptions(self, organization_id: str) -> list[WebhookSubscription]:
        return await self.store.list_subscriptions(organization_id)

    async def get_subscription(
        self, organization_id: str, subscription_id: str
    ) -> WebhookSubscription:
        subscription = await self.store.get_subscription(subscription_id, organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def update_subscription(
        self, organization_id: str, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription:
        """
        Apply a partial update. Only ``UPDATABLE_FIELDS`` may change; the
        secret changes only through ``rotate_secret``.
        """
        subscription = await self.get_subscription(organization_id, subscription_id)

        unexpected = set(changes) - set(UPDATABLE_FIELDS)
        if unexpected:
            raise ValidationException(
                f"Fields cannot be updated: {', '.join(sorted(unexpected))}",
                details={"fields": sorted(unexpected)},
            )

        validated: dict[str, Any] = {}
        for field, value in changes.items():
            if field == "url":
                validated[field] = self._validate_url(value)
            elif field == "events":
                validated[field] = self._validate_events(value)
            elif field == "headers":
                validated[field] = self._validate_headers(value)
            elif field == "name":
                if not value or not str(value).strip():
                    raise ValidationException("Name is required", field="name")
                validated[field] = str(value).strip()
            else:
                validated[field] = bool(value)

        if not validated:
            return subscription

        subscription = await self.store.update_subscription(subscription, validated)
        logger.info(
            "Webhook subscription updated",
            extra_data={"subscription_id": subscription_id, "fields": sorted(validated)},
        )
        return subscription

    async def delete_subscription(self, organization_id: str, subscription_id: str) -> None:
        """Delete the subscription; its delivery history stays for audit."""
        subscription = await self.get_subscription(organization_id, subscription_id)
        await self.store.delete_subscription(subscription)
        logger.info(
            "Webhook subscription deleted",
            extra_data={"subscription_id": subscription_id, "organization_id": organization_id},
        )

    async def rotate_secret(
        self, organization_id: str, subscription_id: str
    ) -> WebhookSubscription:
        """
        Replace the signing secret. Attempts made from now on (including
        retries of older deliveries) are signed with the new secret.
        """
        subscription = await self.get_subscription(organization_id, subscription_id)
        subscription = await self.store.update_subscription(
            subscription, {"secret": generate_secret()}
        )
        logger.info("Webhook secret rotated", extra_data={"subscription_id": subscription_id})
        return subscription

    async def send_test_event(self, organization_id: str, subscription_id: str) -> HttpResult:
        """POST a signed ``test.ping`` once; nothing is recorded."""
        subscription = await self.get_subscription(organization_id, subscription_id)
        payload = build_payload(
            TEST_EVENT,
            {
                "message": "This is a test webhook delivery",
                "webhookId": subscription.id,
                "webhookName": subscription.name,
            },
        )
        return await send_webhook(subscription, payload, config=self.config)

    async def stats(self, organization_id: str, subscription_id: str) -> SubscriptionStats:
        await self.get_subscription(organization_id, subscription_id)
        return await StatsService(self.store).stats(subscription_id)

    # ── Deliveries ──

    async def list_deliveries(
        self,
        organization_id: str,
        subscription_id: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[WebhookDelivery], int]:
        await self.get_subscription(organization_id, subscription_id)
        if page < 1 or page_size < 1:
            raise ValidationException("page and page_size must be at least 1")
        return await self.store.list_deliveries(subscription_id, page, page_size)

    async def _get_owned_delivery(
        self, organization_id: str, delivery_id: str
    ) -> tuple[WebhookDelivery, Optional[WebhookSubscription]]:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        subscription = await self.store.get_subscription(delivery.subscription_id)
        if subscription is not None and subscription.organization_id != organization_id:
            raise DeliveryNotFoundError(delivery_id)
        return delivery, subscription

    async def get_delivery(self, organization_id: str, delivery_id: str) -> WebhookDelivery:
        delivery, subscription = await self._get_owned_delivery(organization_id, delivery_id)
        if subscription is None:
            # ownership cannot be established once the subscription is gone
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def retry_delivery(self, organization_id: str, delivery_id: str) -> WebhookDelivery:
        """
        Reset a delivery to PENDING with zero attempts and make one attempt now.

        Raises:
            DeliveryNotFoundError: unknown delivery or another organization's
            SubscriptionNotFoundError: the subscription was deleted
            DeliveryAlreadySucceededError: the delivery is DELIVERED
            DeliveryConflictError: the delivery changed between read and reset
        """
        delivery, subscription = await self._get_owned_delivery(organization_id, delivery_id)
        if subscription is None:
            raise SubscriptionNotFoundError(delivery.subscription_id)

        if not can_manually_retry(delivery.status):
            raise DeliveryAlreadySucceededError(delivery_id)

        reset = await self.store.reset_for_manual_retry(
            delivery_id, delivery.status, delivery.attempts
        )
        if reset is None:
            current = await self.store.get_delivery(delivery_id)
            if current is not None and not can_manually_retry(current.status):
                raise DeliveryAlreadySucceededError(delivery_id)
            raise DeliveryConflictError(
                delivery_id, current.status.value if current else "deleted"
            )

        logger.info(
            "Manual retry requested",
            extra_data={"delivery_id": delivery_id, "subscription_id": subscription.id},
        )

        attempted = await DeliveryWorker(self.store, self.config).attempt(subscription, reset)
        if attempted is None:
            # a concurrent attempt won the claim; report its state
            return await self.store.get_delivery(delivery_id)
        return attempted


@log_async_operation("webhook_delivery_cleanup")
async def cleanup_old_deliveries(
    store: DeliveryStore, days: int = 30, now: Optional[datetime] = None
) -> int:
    """Delete DELIVERED records created more than ``days`` days ago."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    deleted = await store.delete_delivered_before(cutoff)
    logger.info(
        "Old webhook deliveries deleted",
        extra_data={"deleted": deleted, "cutoff": cutoff.isoformat()},
    )
    return deleted
