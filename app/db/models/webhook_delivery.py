"""
Webhook Delivery Model - one durable, independently retried delivery per
(emitted event, interested subscription).

Rows are never deleted: together they form the delivery audit trail.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Index

from app.db.database import Base, utcnow


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # dead-letter, terminal


class WebhookDelivery(Base):
    """Delivery record with retry and lease tracking"""

    __tablename__ = "webhook_deliveries"

    delivery_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    subscription_id = Column(
        String(36), ForeignKey("webhook_subscriptions.subscription_id"), nullable=False
    )

    event_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)  # full EventEnvelope

    status = Column(String(16), nullable=False, default=DeliveryStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)  # relevant only while pending
    locked_until = Column(DateTime, nullable=True)  # lease, future value = owned by a worker

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_deliveries_due", "status", "next_attempt_at"),
    )
