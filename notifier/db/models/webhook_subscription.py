"""
Webhook Subscription Model - registered destination endpoints
"""
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index

from notifier.db.database import Base, utcnow


def generate_id() -> str:
    return str(uuid.uuid4())


class WebhookSubscription(Base):
    """An organization's webhook endpoint and the events it listens to"""

    __tablename__ = "webhook_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    url = Column(String(2048), nullable=False)
    # Only changed through rotation; never returned in full after creation
    secret = Column(String(100), nullable=False)

    events = Column(JSON, nullable=False, default=list)
    headers = Column(JSON, nullable=True)  # custom headers merged into every delivery

    is_active = Column(Boolean, nullable=False, default=True)

    # Aggregate counters, written only by the delivery worker
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_subscriptions_org_active", "organization_id", "is_active"),
    )

    def listens_to(self, event: str) -> bool:
        return event in (self.events or [])
