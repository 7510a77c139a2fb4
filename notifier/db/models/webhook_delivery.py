"""
Webhook Delivery Model - one event instance sent to one subscription

subscription_id is deliberately not a foreign key: deliveries outlive the
subscription they were sent to and stay available for audit.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Index

from notifier.db.database import Base, utcnow
from notifier.db.models.webhook_subscription import generate_id


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"


# A worker may still move these forward
ACTIVE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)


class WebhookDelivery(Base):
    """Delivery record with retry tracking"""

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=generate_id)
    subscription_id = Column(String(36), nullable=False, index=True)

    event = Column(String(100), nullable=False)
    # {id, event, timestamp, data}; written once at creation
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    # Outcome of the most recent attempt
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(String(500), nullable=True)

    next_retry_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_deliveries_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_subscription_created", "subscription_id", "created_at"),
    )
