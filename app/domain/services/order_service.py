"""
Order Service - linking Perch orders to members and to pharmacy orders.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import MemberNotFoundError, PharmacyOrderRefInUseError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.order import Order
from app.domain.services.member_service import MemberService, ensure_member
from app.domain.services.pharmacy_client import PharmacyClient
from app.domain.services.webhook_service import WebhookEventService

logger = get_logger(__name__)

ORDER_LINK_UPDATED = "order.link.updated"
ORDER_STATUS_UPDATED = "order.status.updated"


class OrderService:
    def __init__(self, db: AsyncSession, pharmacy: PharmacyClient | None = None):
        self.db = db
        self.pharmacy = pharmacy
        self.events = WebhookEventService(db)

    async def _ref_holder(self, tenant_id: str, order_id: int, pharmacy_order_ref: str) -> int | None:
        result = await self.db.execute(
            select(Order.order_id).where(
                Order.tenant_id == tenant_id,
                Order.pharmacy_order_ref == pharmacy_order_ref,
                Order.order_id != order_id,
            )
        )
        return result.scalars().first()

    async def upsert_order(
        self,
        tenant_id: str,
        order_id: int,
        member_id: int,
        pharmacy_order_ref: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Order:
        """
        Insert or update; None values keep what is already stored.
        Raises PharmacyOrderRefInUseError when another order of the tenant holds the ref.
        """
        if pharmacy_order_ref is not None:
            holder = await self._ref_holder(tenant_id, order_id, pharmacy_order_ref)
            if holder is not None:
                logger.warning(
                    "Pharmacy order reference already linked",
                    extra_data={"order_id": order_id, "holder_order_id": holder},
                )
                raise PharmacyOrderRefInUseError(pharmacy_order_ref, order_id, holder)

        order = await self.db.get(Order, (tenant_id, order_id))
        now = utcnow()
        if order is None:
            order = Order(
                tenant_id=tenant_id,
                order_id=order_id,
                member_id=member_id,
                pharmacy_order_ref=pharmacy_order_ref,
                status=status,
                created_at=now,
                updated_at=now,
            )
            self.db.add(order)
        else:
            order.member_id = member_id
            if pharmacy_order_ref is not None:
                order.pharmacy_order_ref = pharmacy_order_ref
            if status is not None:
                order.status = status
            order.updated_at = now
        try:
            await self.db.flush()
        except IntegrityError as e:
            # הזמנה אחרת תפסה את ה-ref בין הבדיקה ל-flush
            if pharmacy_order_ref is None:
                raise
            raise PharmacyOrderRefInUseError(pharmacy_order_ref, order_id) from e
        return order

    async def link_order(
        self,
        tenant_id: str,
        order_id: int,
        member_id: int,
        pharmacy_order_ref: Optional[str] = None,
        status: Optional[str] = None,
    ) -> dict[str, Any]:
        await ensure_member(self.db, tenant_id, member_id)
        await self.upsert_order(tenant_id, order_id, member_id, pharmacy_order_ref, status)
        await self.events.emit_event_safely(
            tenant_id, ORDER_LINK_UPDATED, {"orderID": order_id, "memberID": member_id}
        )
        return {"ok": True, "pharmacy_order_ref": pharmacy_order_ref}

    async def create_pharmacy_order(
        self, tenant_id: str, order_id: int, order: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Create the order at the pharmacy for a member already linked to a
        pharmacy customer, then store the returned order number.
        """
        member_id = await MemberService(self.db).find_by_customer_id(tenant_id, order["customerId"])
        if member_id is None:
            raise MemberNotFoundError(order["customerId"])

        order_number = await self.pharmacy.create_order(order)
        await self.upsert_order(tenant_id, order_id, member_id, pharmacy_order_ref=order_number)
        await self.events.emit_event_safely(
            tenant_id, ORDER_LINK_UPDATED, {"orderID": order_id, "memberID": member_id}
        )
        return {"ok": True, "orderNumber": order_number}

    async def emit_status_updated(
        self,
        tenant_id: str,
        order_id: int,
        order_number: str,
        outcome: dict[str, str],
        reason: Optional[str] = None,
    ) -> None:
        await self.events.emit_event_safely(tenant_id, ORDER_STATUS_UPDATED, {
            "orderID": order_id,
            "order_number": order_number,
            "previous_status": outcome["previous_status"],
            "new_status": outcome["new_status"],
            "reason": reason,
        })
