"""
SQLAlchemy implementation of the Delivery Store.

Works on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.
State changes are conditional UPDATE statements; after each write the touched
rows are re-read with ``populate_existing`` so ORM objects held by callers never
carry expired attributes (an expired attribute would trigger lazy IO outside
the async context).
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifier.core.logging import get_logger
from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import ACTIVE_STATUSES, DeliveryStatus, WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.store import DeliveryStore
from notifier.domain.delivery_state import AttemptOutcome

logger = get_logger(__name__)


class SQLAlchemyDeliveryStore(DeliveryStore):
    """Delivery store over an ``AsyncSession``"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def _reload_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return await self.db.get(WebhookDelivery, delivery_id, populate_existing=True)

    # ── Subscriptions ──

    async def add_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.db.add(subscription)
        await self._commit()
        await self.db.refresh(subscription)
        return subscription

    async def get_subscription(
        self, subscription_id: str, organization_id: Optional[str] = None
    ) -> Optional[WebhookSubscription]:
        query = select(WebhookSubscription).where(WebhookSubscription.id == subscription_id)
        if organization_id is not None:
            query = query.where(WebhookSubscription.organization_id == organization_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_subscriptions(self, organization_id: str) -> list[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.organization_id == organization_id)
            .order_by(WebhookSubscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_subscription(
        self, subscription: WebhookSubscription, changes: dict[str, Any]
    ) -> WebhookSubscription:
        for field, value in changes.items():
            setattr(subscription, field, value)
        await self._commit()
        await self.db.refresh(subscription)
        return subscription

    async def delete_subscription(self, subscription: WebhookSubscription) -> None:
        await self.db.delete(subscription)
        await self._commit()

    async def find_active_subscriptions(
        self, organization_id: str, event: str
    ) -> list[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.organization_id == organization_id,
                WebhookSubscription.is_active == True,  # noqa: E712
            )
        )
        # events is a JSON list; membership is checked here so the query stays
        # portable between PostgreSQL JSON and SQLite
        return [sub for sub in result.scalars().all() if sub.listens_to(event)]

    # ── Deliveries ──

    async def create_delivery(
        self,
        subscription_id: str,
        event: str,
        payload: dict[str, Any],
        max_attempts: int,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            subscription_id=subscription_id,
            event=event,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
        )
        self.db.add(delivery)
        await self._commit()
        await self.db.refresh(delivery)
        return delivery

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return await self._reload_delivery(delivery_id)

    async def list_deliveries(
        self, subscription_id: str, page: int, page_size: int
    ) -> tuple[list[WebhookDelivery], int]:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.subscription_id == subscription_id)
            .order_by(WebhookDelivery.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        deliveries = list(result.scalars().all())

        total = await self.db.scalar(
            select(func.count(WebhookDelivery.id)).where(
                WebhookDelivery.subscription_id == subscription_id
            )
        )
        return deliveries, int(total or 0)

    async def claim_attempt(
        self, delivery_id: str, expected_attempts: int, lease_until: datetime
    ) -> Optional[WebhookDelivery]:
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status.in_(ACTIVE_STATUSES),
                WebhookDelivery.attempts == expected_attempts,
                WebhookDelivery.attempts < WebhookDelivery.max_attempts,
            )
            .values(
                status=DeliveryStatus.RETRYING,
                attempts=WebhookDelivery.attempts + 1,
                next_retry_at=lease_until,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # nothing was written; end the transaction without expiring loaded objects
            await self._commit()
            return None

        await self._commit()
        return await self._reload_delivery(delivery_id)

    async def record_attempt(
        self, delivery_id: str, subscription_id: str, outcome: AttemptOutcome
    ) -> Optional[WebhookDelivery]:
        values: dict[str, Any] = {
            "status": outcome.status,
            "status_code": outcome.status_code,
            "response_body": outcome.response_body,
            "response_time_ms": outcome.response_time_ms,
            "error_message": outcome.error_message,
            "next_retry_at": outcome.next_retry_at,
            "updated_at": outcome.occurred_at,
        }
        if outcome.delivered_at is not None:
            values["delivered_at"] = outcome.delivered_at

        if outcome.succeeded:
            counters: dict[str, Any] = {
                "success_count": WebhookSubscription.success_count + 1,
                "last_triggered_at": outcome.occurred_at,
                "last_success_at": outcome.occurred_at,
                "last_error": None,
            }
        else:
            counters = {
                "failure_count": WebhookSubscription.failure_count + 1,
                "last_triggered_at": outcome.occurred_at,
                "last_failure_at": outcome.occurred_at,
                "last_error": outcome.error_message,
            }

        try:
            result = await self.db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status.in_(ACTIVE_STATUSES),
                    WebhookDelivery.attempts == outcome.attempt_number,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.commit()
                logger.warning(
                    "Attempt outcome discarded - delivery changed while in flight",
                    extra_data={
                        "delivery_id": delivery_id,
                        "attempt": outcome.attempt_number,
                        "outcome": outcome.status.value,
                    },
                )
                return None

            # Same transaction: a counter update never exists without its record
            await self.db.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription_id)
                .values(**counters)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        await self.db.get(WebhookSubscription, subscription_id, populate_existing=True)
        return await self._reload_delivery(delivery_id)

    async def reset_for_manual_retry(
        self, delivery_id: str, expected_status: DeliveryStatus, expected_attempts: int
    ) -> Optional[WebhookDelivery]:
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == expected_status,
                WebhookDelivery.attempts == expected_attempts,
            )
            .values(
                status=DeliveryStatus.PENDING,
                attempts=0,
                next_retry_at=None,
                error_message=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._commit()
            return None

        await self._commit()
        return await self._reload_delivery(delivery_id)

    async def mark_exhausted(
        self,
        delivery_id: str,
        subscription_id: str,
        expected_attempts: int,
        error_message: str,
    ) -> bool:
        now = utcnow()
        try:
            result = await self.db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == DeliveryStatus.RETRYING,
                    WebhookDelivery.attempts == expected_attempts,
                    WebhookDelivery.attempts >= WebhookDelivery.max_attempts,
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    next_retry_at=None,
                    error_message=error_message,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.commit()
                return False

            await self.db.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription_id)
                .values(
                    failure_count=WebhookSubscription.failure_count + 1,
                    last_failure_at=now,
                    last_error=error_message,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        await self.db.get(WebhookSubscription, subscription_id, populate_existing=True)
        await self._reload_delivery(delivery_id)
        return True

    async def get_due_retries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.RETRYING,
                WebhookDelivery.next_retry_at <= now,
            )
            .order_by(WebhookDelivery.next_retry_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.DELIVERED,
                WebhookDelivery.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        await self._commit()
        return deleted

    # ── Aggregation ──

    async def count_by_status(self, subscription_id: str) -> dict[DeliveryStatus, int]:
        result = await self.db.execute(
            select(WebhookDelivery.status, func.count(WebhookDelivery.id))
            .where(WebhookDelivery.subscription_id == subscription_id)
            .group_by(WebhookDelivery.status)
        )
        return {DeliveryStatus(row_status): count for row_status, count in result.all()}

    async def average_response_time_ms(self, subscription_id: str) -> int:
        average = await self.db.scalar(
            select(func.avg(func.coalesce(WebhookDelivery.response_time_ms, 0))).where(
                WebhookDelivery.subscription_id == subscription_id,
                WebhookDelivery.status == DeliveryStatus.DELIVERED,
            )
        )
        return round(float(average)) if average is not None else 0

    async def recent_failures(self, subscription_id: str, limit: int) -> list[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.subscription_id == subscription_id,
                WebhookDelivery.status == DeliveryStatus.FAILED,
            )
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
