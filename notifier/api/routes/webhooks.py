"""
Webhook Management API Routes

Operator surface over SubscriptionService. Every route requires the admin API
key and is scoped by the ``organization_id`` query parameter.
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from notifier.api.dependencies.admin_auth import require_admin_api_key
from notifier.core.config import settings
from notifier.core.signing import secret_prefix
from notifier.core.validation import events_validator, headers_validator, webhook_url_validator
from notifier.db.database import get_db
from notifier.db.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.sqlalchemy_store import SQLAlchemyDeliveryStore
from notifier.domain.events import available_events
from notifier.domain.services.subscription_service import DEFAULT_PAGE_SIZE, SubscriptionService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def get_subscription_service(db: AsyncSession = Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(SQLAlchemyDeliveryStore(db))


# ==================== Schemas ====================


class SubscriptionCreate(BaseModel):
    """Schema for registering a webhook endpoint"""
    name: str = Field(..., min_length=1, max_length=100)
    url: str
    events: list[str]
    headers: dict[str, str] | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return webhook_url_validator(v, allow_private=settings.allow_private_webhook_urls)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        return events_validator(v)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        return headers_validator(v)


class SubscriptionUpdate(BaseModel):
    """Partial update; omitted fields stay unchanged, ``headers: {}`` clears them"""
    name: str | None = Field(None, min_length=1, max_length=100)
    url: str | None = None
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    is_active: bool | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return webhook_url_validator(v, allow_private=settings.allow_private_webhook_urls)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str] | None) -> list[str] | None:
        return events_validator(v)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        return headers_validator(v)


class SubscriptionResponse(BaseModel):
    """Subscription as shown after creation: the secret only as a prefix"""
    id: str
    organization_id: str
    name: str
    url: str
    events: list[str]
    header_names: list[str]
    is_active: bool
    secret_prefix: str
    success_count: int
    failure_count: int
    last_triggered_at: datetime | None
    last_success_at: datetime | None
    last_failure_at: datetime | None
    last_error: str | None
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            organization_id=subscription.organization_id,
            name=subscription.name,
            url=subscription.url,
            events=list(subscription.events or []),
            header_names=sorted((subscription.headers or {}).keys()),
            is_active=subscription.is_active,
            secret_prefix=secret_prefix(subscription.secret),
            success_count=subscription.success_count,
            failure_count=subscription.failure_count,
            last_triggered_at=subscription.last_triggered_at,
            last_success_at=subscription.last_success_at,
            last_failure_at=subscription.last_failure_at,
            last_error=subscription.last_error,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class SubscriptionCreatedResponse(SubscriptionResponse):
    """Creation response; the only place the full secret is returned"""
    secret: str


class SubscriptionListResponse(BaseModel):
    webhooks: list[SubscriptionResponse]
    available_events: list[dict[str, str]]


class SecretRotatedResponse(BaseModel):
    id: str
    secret: str


class PingResultResponse(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: int
    error: str | None = None


class DeliveryResponse(BaseModel):
    """Response schema for a delivery record"""
    id: str
    subscription_id: str
    event: str
    payload: dict[str, Any]
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    status_code: int | None
    response_body: str | None
    response_time_ms: int | None
    error_message: str | None
    next_retry_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class DeliveryListResponse(BaseModel):
    deliveries: list[DeliveryResponse]
    total: int
    page: int
    page_size: int


class StatsResponse(BaseModel):
    total_deliveries: int
    success_rate: float
    avg_response_time_ms: int
    counts_by_status: dict[str, int]
    recent_failures: list[DeliveryResponse]


class SuccessResponse(BaseModel):
    success: bool


def _delivery_response(delivery: WebhookDelivery) -> DeliveryResponse:
    return DeliveryResponse.model_validate(delivery)


# ==================== Deliveries ====================
# Declared before "/{subscription_id}" routes


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryResponse,
    summary="Get a delivery",
)
async def get_delivery(
    delivery_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> DeliveryResponse:
    delivery = await service.get_delivery(organization_id, delivery_id)
    return _delivery_response(delivery)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=DeliveryResponse,
    summary="Manually retry a delivery",
    description=(
        "Resets the delivery to PENDING with zero attempts and makes one attempt "
        "immediately. Rejected for deliveries that already succeeded."
    ),
    responses={
        400: {"description": "Delivery already succeeded"},
        404: {"description": "Delivery or subscription not found"},
        409: {"description": "Delivery changed concurrently"},
    },
)
async def retry_delivery(
    delivery_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> DeliveryResponse:
    delivery = await service.retry_delivery(organization_id, delivery_id)
    return _delivery_response(delivery)


# ==================== Subscriptions ====================


@router.post(
    "",
    response_model=SubscriptionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
    responses={
        400: {"description": "Invalid URL, event or header"},
        422: {"description": "Validation error in request data"},
    },
)
async def create_webhook(
    data: SubscriptionCreate,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionCreatedResponse:
    subscription = await service.create_subscription(
        organization_id=organization_id,
        name=data.name,
        url=data.url,
        events=data.events,
        headers=data.headers,
    )
    base = SubscriptionResponse.from_subscription(subscription)
    return SubscriptionCreatedResponse(**base.model_dump(), secret=subscription.secret)


@router.get(
    "",
    response_model=SubscriptionListResponse,
    summary="List webhook endpoints and the event catalog",
)
async def list_webhooks(
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionListResponse:
    subscriptions = await service.list_subscriptions(organization_id)
    return SubscriptionListResponse(
        webhooks=[SubscriptionResponse.from_subscription(s) for s in subscriptions],
        available_events=available_events(),
    )


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_webhook(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await service.get_subscription(organization_id, subscription_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_webhook(
    subscription_id: str,
    data: SubscriptionUpdate,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await service.update_subscription(
        organization_id,
        subscription_id,
        data.model_dump(exclude_unset=True, exclude_none=True),
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.delete("/{subscription_id}", response_model=SuccessResponse)
async def delete_webhook(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SuccessResponse:
    await service.delete_subscription(organization_id, subscription_id)
    return SuccessResponse(success=True)


@router.post(
    "/{subscription_id}/rotate-secret",
    response_model=SecretRotatedResponse,
    summary="Rotate the signing secret",
)
async def rotate_secret(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SecretRotatedResponse:
    subscription = await service.rotate_secret(organization_id, subscription_id)
    return SecretRotatedResponse(id=subscription.id, secret=subscription.secret)


@router.post(
    "/{subscription_id}/test",
    response_model=PingResultResponse,
    summary="Send a test.ping event",
    description="Sends one signed test event synchronously. Nothing is recorded.",
)
async def send_test_event(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> PingResultResponse:
    result = await service.send_test_event(organization_id, subscription_id)
    return PingResultResponse(
        success=result.success,
        status_code=result.status_code,
        response_time_ms=result.response_time_ms,
        error=result.error_message,
    )


@router.get(
    "/{subscription_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="Delivery history, newest first",
)
async def list_deliveries(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    service: SubscriptionService = Depends(get_subscription_service),
) -> DeliveryListResponse:
    deliveries, total = await service.list_deliveries(
        organization_id, subscription_id, page=page, page_size=page_size
    )
    return DeliveryListResponse(
        deliveries=[_delivery_response(d) for d in deliveries],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{subscription_id}/stats", response_model=StatsResponse)
async def get_stats(
    subscription_id: str,
    organization_id: str = Query(..., min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
) -> StatsResponse:
    stats = await service.stats(organization_id, subscription_id)
    return StatsResponse(
        total_deliveries=stats.total_deliveries,
        success_rate=stats.success_rate,
        avg_response_time_ms=stats.avg_response_time_ms,
        counts_by_status={s.value: count for s, count in stats.counts_by_status.items()},
        recent_failures=[_delivery_response(d) for d in stats.recent_failures],
    )
