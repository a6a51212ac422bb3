"""
Webhook Event Service - Transactional Outbox for domain events.

Instead of calling subscribers inline, a committed domain change is turned
into one pending WebhookDelivery row per interested subscription. The rows
are added to the caller's session so they commit with the business write;
the dispatcher drains them later.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_delivery import WebhookDelivery, DeliveryStatus
from app.db.models.webhook_subscription import WebhookSubscription

logger = get_logger(__name__)


def build_event_envelope(
    event_id: str, event_type: str, tenant_id: str, data: dict[str, Any]
) -> dict[str, Any]:
    """The immutable body every subscriber of one emission receives"""
    return {
        "event_id": event_id,
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "tenant_id": tenant_id,
        "data": data,
    }


class WebhookEventService:
    """Fan-out of domain events to enabled subscriptions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_matching_subscriptions(
        self, tenant_id: str, event_type: str
    ) -> List[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.tenant_id == tenant_id,
                WebhookSubscription.enabled == True,  # noqa: E712
            )
        )
        # event_types הוא JSON, הסינון נעשה בפייתון כדי להישאר נייד בין PostgreSQL ל-SQLite
        return [s for s in result.scalars().all() if s.subscribes_to(event_type)]

    async def emit_event(
        self, tenant_id: str, event_type: str, data: dict[str, Any]
    ) -> List[WebhookDelivery]:
        """Queue one delivery per matching subscription. Does not commit."""
        subscriptions = await self.get_matching_subscriptions(tenant_id, event_type)
        if not subscriptions:
            return []

        event_id = str(uuid.uuid4())
        envelope = build_event_envelope(event_id, event_type, tenant_id, data)
        now = utcnow()

        deliveries = []
        for subscription in subscriptions:
            delivery = WebhookDelivery(
                delivery_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                subscription_id=subscription.subscription_id,
                event_id=event_id,
                event_type=event_type,
                payload=envelope,
                status=DeliveryStatus.PENDING.value,
                attempt_count=0,
                next_attempt_at=now,
            )
            self.db.add(delivery)
            deliveries.append(delivery)

        logger.info(
            "Event queued for delivery",
            extra_data={
                "tenant_id": tenant_id,
                "event_type": event_type,
                "event_id": event_id,
                "deliveries": len(deliveries),
            },
        )
        return deliveries

    async def emit_event_safely(
        self, tenant_id: str, event_type: str, data: dict[str, Any]
    ) -> List[WebhookDelivery]:
        """
        Like emit_event, but a failure unrelated to storage is logged and
        swallowed so it cannot fail the business transaction that triggered it.
        """
        try:
            return await self.emit_event(tenant_id, event_type, data)
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.error(
                "Failed to queue event",
                extra_data={"tenant_id": tenant_id, "event_type": event_type, "error": str(e)},
                exc_info=True,
            )
            return []
