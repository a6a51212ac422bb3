"""
Order Status Service - guarded order-status transitions.

Implements the following atomic operation:
1. Validate input (reason required for CANCELLED / REFUND) before locking
2. Lock the order row (SELECT ... FOR UPDATE) by its pharmacy order number
3. Reject locked statuses and edges missing from the transition graph
4. Update status, plus the per-order side table for the target status
5. Commit (releases the lock) or roll back everything
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InvalidStatusTransitionError,
    OrderNotFoundError,
    OrderStatusLockedError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.order import (
    AssessmentStatus,
    Order,
    OrderAssessmentStatus,
    OrderStatus,
    OrderWorkQueue,
    WorkQueueStatus,
)

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderStatus.PAYMENT_RECEIVED.value: frozenset({OrderStatus.PENDING.value, OrderStatus.CANCELLED.value}),
    OrderStatus.PENDING.value: frozenset({OrderStatus.APPROVED.value}),
    OrderStatus.CANCELLED.value: frozenset({OrderStatus.REFUND.value}),
}

# אין יציאה מהסטטוסים האלה, לא משנה מה היעד
LOCKED_STATUSES: frozenset[str] = frozenset({
    OrderStatus.APPROVED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.REFUND.value,
})

REASON_REQUIRED_STATUSES: frozenset[str] = frozenset({
    OrderStatus.CANCELLED.value,
    OrderStatus.REFUND.value,
})


def normalize_status(status: Optional[str]) -> str:
    return (status or "").strip().upper()


def can_transition(current_status: Optional[str], target_status: str) -> bool:
    current = normalize_status(current_status)
    if current in LOCKED_STATUSES:
        return False
    return normalize_status(target_status) in ALLOWED_TRANSITIONS.get(current, frozenset())


class OrderStatusService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def transition(
        self,
        tenant_id: str,
        order_number: str,
        target_status: str,
        reason: Optional[str] = None,
        *,
        commit: bool = True,
    ) -> dict[str, Any]:
        """
        Move an order to ``target_status``.

        Returns {"order_id", "previous_status", "new_status"}. With ``commit=False`` the
        caller owns the transaction (and the row lock) and must commit or
        roll back itself; the idempotency ledger uses this to commit the
        transition and its ledger row together.
        """
        target = normalize_status(target_status)
        if not target:
            raise ValidationException("target status is required", field="status")

        reason = (reason or "").strip() or None
        if target in REASON_REQUIRED_STATUSES and not reason:
            raise ValidationException(
                f"reason is required when moving an order to {target}",
                field="reason",
                details={"reason": "reason_required"},
            )

        try:
            order = await self._lock_order(tenant_id, order_number)
            if order is None:
                raise OrderNotFoundError(order_number)

            current = normalize_status(order.status)
            if current in LOCKED_STATUSES:
                raise OrderStatusLockedError(order_number, current, target)
            if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
                raise InvalidStatusTransitionError(order_number, order.status, target)

            now = utcnow()
            order.status = target
            order.updated_at = now

            if target == OrderStatus.PENDING.value:
                await self._upsert_work_queue(tenant_id, order.order_id, now)
            elif target == OrderStatus.REFUND.value:
                await self._upsert_assessment_status(tenant_id, order.order_id, reason, now)

            await self.db.flush()
            if commit:
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order status changed",
            extra_data={
                "tenant_id": tenant_id,
                "order_number": order_number,
                "previous_status": current,
                "new_status": target,
            },
        )
        return {"order_id": order.order_id, "previous_status": current, "new_status": target}

    async def _lock_order(self, tenant_id: str, order_number: str) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(
                Order.tenant_id == tenant_id,
                Order.pharmacy_order_ref == order_number,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _upsert_work_queue(self, tenant_id: str, order_id: int, now) -> None:
        result = await self.db.execute(
            select(OrderWorkQueue).where(
                OrderWorkQueue.tenant_id == tenant_id,
                OrderWorkQueue.order_id == order_id,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            self.db.add(OrderWorkQueue(
                tenant_id=tenant_id,
                order_id=order_id,
                status=WorkQueueStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            ))
        else:
            entry.status = WorkQueueStatus.QUEUED.value
            entry.updated_at = now

    async def _upsert_assessment_status(
        self, tenant_id: str, order_id: int, reason: Optional[str], now
    ) -> None:
        result = await self.db.execute(
            select(OrderAssessmentStatus).where(
                OrderAssessmentStatus.tenant_id == tenant_id,
                OrderAssessmentStatus.order_id == order_id,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            self.db.add(OrderAssessmentStatus(
                tenant_id=tenant_id,
                order_id=order_id,
                status=AssessmentStatus.REFUNDED.value,
                reason=reason,
                created_at=now,
                updated_at=now,
            ))
        else:
            entry.status = AssessmentStatus.REFUNDED.value
            entry.reason = reason
            entry.updated_at = now
