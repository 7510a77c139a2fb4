"""
Delivery Store interface - Dependency Inversion.

The dispatcher, worker, retry sweep and stats depend only on this interface.
``SQLAlchemyDeliveryStore`` (notifier.db.sqlalchemy_store) is the production
implementation.

Every method that moves a delivery forward is a compare-and-set: it returns
``None`` (or ``False``) when the row no longer matches what the caller read,
which is how concurrent workers avoid delivering the same attempt twice.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from notifier.db.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.domain.delivery_state import AttemptOutcome


class DeliveryStore(ABC):
    """Persistence for subscriptions and their delivery history."""

    # ── Subscriptions ──

    @abstractmethod
    async def add_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        """Persist a new subscription."""

    @abstractmethod
    async def get_subscription(
        self, subscription_id: str, organization_id: Optional[str] = None
    ) -> Optional[WebhookSubscription]:
        """Fetch one subscription, optionally scoped to an organization."""

    @abstractmethod
    async def list_subscriptions(self, organization_id: str) -> list[WebhookSubscription]:
        """All subscriptions of an organization, newest first."""

    @abstractmethod
    async def update_subscription(
        self, subscription: WebhookSubscription, changes: dict[str, Any]
    ) -> WebhookSubscription:
        """Apply ``changes`` (column name -> value) and persist."""

    @abstractmethod
    async def delete_subscription(self, subscription: WebhookSubscription) -> None:
        """Remove a subscription; its deliveries are kept."""

    @abstractmethod
    async def find_active_subscriptions(
        self, organization_id: str, event: str
    ) -> list[WebhookSubscription]:
        """Active subscriptions of ``organization_id`` listening to ``event``."""

    # ── Deliveries ──

    @abstractmethod
    async def create_delivery(
        self,
        subscription_id: str,
        event: str,
        payload: dict[str, Any],
        max_attempts: int,
    ) -> WebhookDelivery:
        """Persist a PENDING delivery with zero attempts."""

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """Fetch one delivery."""

    @abstractmethod
    async def list_deliveries(
        self, subscription_id: str, page: int, page_size: int
    ) -> tuple[list[WebhookDelivery], int]:
        """One page of a subscription's history (newest first) and the total count."""

    @abstractmethod
    async def claim_attempt(
        self, delivery_id: str, expected_attempts: int, lease_until: datetime
    ) -> Optional[WebhookDelivery]:
        """
        Start attempt ``expected_attempts + 1``.

        Succeeds only while the delivery is PENDING/RETRYING, still has
        ``expected_attempts`` attempts and is below its maximum. Increments
        ``attempts``, moves the delivery to RETRYING and parks ``next_retry_at``
        at ``lease_until``: the retry sweep leaves the in-flight attempt alone
        until the lease runs out, then picks it up if the worker never reported.
        """

    @abstractmethod
    async def record_attempt(
        self, delivery_id: str, subscription_id: str, outcome: AttemptOutcome
    ) -> Optional[WebhookDelivery]:
        """
        Persist ``outcome`` and the subscription counters in one transaction.

        Returns ``None`` (and writes nothing) when the delivery no longer holds
        the claimed attempt, e.g. an operator reset it meanwhile.
        """

    @abstractmethod
    async def reset_for_manual_retry(
        self, delivery_id: str, expected_status: DeliveryStatus, expected_attempts: int
    ) -> Optional[WebhookDelivery]:
        """PENDING, zero attempts, no retry time, no error; compare-and-set."""

    @abstractmethod
    async def mark_exhausted(
        self,
        delivery_id: str,
        subscription_id: str,
        expected_attempts: int,
        error_message: str,
    ) -> bool:
        """
        Finalize a RETRYING delivery whose last attempt never reported back.

        Counts the failure on the subscription in the same transaction.
        """

    @abstractmethod
    async def get_due_retries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """RETRYING deliveries with ``next_retry_at <= now``."""

    @abstractmethod
    async def delete_delivered_before(self, cutoff: datetime) -> int:
        """Delete DELIVERED records created before ``cutoff``; returns the count."""

    # ── Aggregation ──

    @abstractmethod
    async def count_by_status(self, subscription_id: str) -> dict[DeliveryStatus, int]:
        """Delivery counts grouped by status (missing statuses omitted)."""

    @abstractmethod
    async def average_response_time_ms(self, subscription_id: str) -> int:
        """Mean latency of DELIVERED records, 0 when there are none."""

    @abstractmethod
    async def recent_failures(self, subscription_id: str, limit: int) -> list[WebhookDelivery]:
        """Most recent FAILED records, newest first."""
