"""
Webhook Subscription Model - who wants which events, and in what shape.
"""
import enum
import json
from sqlalchemy import Column, String, Boolean, DateTime, JSON, Index

from app.db.database import Base, utcnow


class SubscriberSystem(str, enum.Enum):
    # raw event envelope, HMAC signed
    GENERIC = "generic"
    # payload transformed into the pharmacy order-notes API shape
    PHARMACY = "pharmacy"


class WebhookSubscription(Base):
    """Tenant-scoped subscriber endpoint. Managed externally, read-only here."""

    __tablename__ = "webhook_subscriptions"

    subscription_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)

    url = Column(String(1000), nullable=False)
    secret = Column(String(200), nullable=False)
    event_types = Column(JSON, nullable=False, default=list)  # e.g. ["note.created"]
    enabled = Column(Boolean, nullable=False, default=True)
    subscriber_system = Column(String(32), nullable=False, default=SubscriberSystem.GENERIC.value)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_subscriptions_tenant_enabled", "tenant_id", "enabled"),
    )

    def subscribes_to(self, event_type: str) -> bool:
        event_types = self.event_types or []
        # עמודת JSON ישנה יכולה להכיל מחרוזת JSON במקום רשימה
        if isinstance(event_types, str):
            event_types = json.loads(event_types)
        return event_type in event_types
