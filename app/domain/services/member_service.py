"""
Member Service - Perch members and their pharmacy customer link.

Linking a member creates the customer at the pharmacy first; the returned
customerId is stored as ``pharmacy_patient_ref`` so later order-create calls
can find the member by it.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.member import Member
from app.domain.services.pharmacy_client import PharmacyClient
from app.domain.services.webhook_service import WebhookEventService

logger = get_logger(__name__)

MEMBER_LINK_UPDATED = "member.link.updated"

# שדות חובה ליצירת לקוח בבית המרקחת
CUSTOMER_REQUIRED_FIELDS = (
    "email", "name", "dob", "phone", "gender", "addressLine1", "city", "postCode", "country",
)


async def ensure_member(db: AsyncSession, tenant_id: str, member_id: int) -> Member:
    """Insert-if-missing for the (tenant, member) pair"""
    member = await db.get(Member, (tenant_id, member_id))
    if member is None:
        now = utcnow()
        member = Member(tenant_id=tenant_id, member_id=member_id, created_at=now, updated_at=now)
        db.add(member)
        await db.flush()
    return member


def customer_payload(fields: dict[str, Any]) -> dict[str, Any]:
    """
    Build the pharmacy customer body from a link request.

    ``email`` falls back to ``memberEmail`` and ``name`` to first + last name.
    Raises ValidationException listing every missing required field.
    """
    first_last = " ".join(p for p in (fields.get("first_name"), fields.get("last_name")) if p).strip()
    payload = {
        **{name: fields.get(name) for name in CUSTOMER_REQUIRED_FIELDS},
        "email": fields.get("email") or fields.get("memberEmail"),
        "name": fields.get("name") or first_last,
    }
    missing = [name for name in CUSTOMER_REQUIRED_FIELDS if not payload[name]]
    if missing:
        raise ValidationException(
            "Missing required pharmacy customer fields",
            details={"reason": "missing_customer_fields", "missing": missing},
        )
    return payload


class MemberService:
    def __init__(self, db: AsyncSession, pharmacy: PharmacyClient | None = None):
        self.db = db
        self.pharmacy = pharmacy
        self.events = WebhookEventService(db)

    async def link_member(
        self, tenant_id: str, member_id: int, fields: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Create the pharmacy customer, then upsert the member.
        Profile values left out (or None) keep what is stored.
        """
        payload = customer_payload(fields)
        customer_id = await self.pharmacy.create_customer(payload)
        logger.info(
            "Pharmacy customer created",
            extra_data={"member_id": member_id, "customer_id": customer_id},
        )

        member = await ensure_member(self.db, tenant_id, member_id)
        updates = {
            "email": payload["email"],
            "first_name": fields.get("first_name"),
            "last_name": fields.get("last_name"),
            "phone": payload["phone"],
            "pharmacy_patient_ref": customer_id,
        }
        for name, value in updates.items():
            if value is not None:
                setattr(member, name, value)
        member.updated_at = utcnow()
        await self.db.flush()

        await self.events.emit_event_safely(tenant_id, MEMBER_LINK_UPDATED, {"memberID": member_id})
        return {"ok": True, "memberID": member_id, "customerId": customer_id}

    async def find_by_customer_id(self, tenant_id: str, customer_id: str) -> int | None:
        result = await self.db.execute(
            select(Member.member_id).where(
                Member.tenant_id == tenant_id,
                Member.pharmacy_patient_ref == customer_id,
            )
        )
        return result.scalars().first()
