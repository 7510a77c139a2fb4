"""
Event Intake API Route

Producers post domain events here; matching subscriptions get one delivery
each and the HTTP attempts run in background tasks.
"""
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from notifier.api.dependencies.admin_auth import require_admin_api_key
from notifier.db.database import get_db
from notifier.db.sqlalchemy_store import SQLAlchemyDeliveryStore
from notifier.domain.services.dispatcher import WebhookDispatcher

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class EventCreate(BaseModel):
    """A domain event to fan out"""
    organization_id: str = Field(..., min_length=1, max_length=64)
    event: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)


class EventAccepted(BaseModel):
    event: str
    delivery_ids: list[str]


@router.post(
    "",
    response_model=EventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Dispatch an event to subscribed webhooks",
    description=(
        "Creates one PENDING delivery per active subscription listening to the "
        "event and returns without waiting for any HTTP attempt."
    ),
)
async def dispatch_event(
    data: EventCreate,
    db: AsyncSession = Depends(get_db),
) -> EventAccepted:
    dispatcher = WebhookDispatcher(SQLAlchemyDeliveryStore(db))
    delivery_ids = await dispatcher.dispatch(data.organization_id, data.event, data.data)
    return EventAccepted(event=data.event, delivery_ids=delivery_ids)
