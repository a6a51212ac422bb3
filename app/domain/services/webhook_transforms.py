"""
Per-subscriber payload transforms.

Each subscriber kind resolves to one transform whose ``build`` returns
either an OutboundPayload to POST or a SkipDelivery marker (an intentional
no-op the dispatcher records as sent). Missing cross-reference data is
raised as LinkageMissingError and retried like any other failed attempt.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LinkageMissingError
from app.core.signing import canonical_json, signature_header
from app.db.models.note import Note, NoteScope, NoteType
from app.db.models.order import Order
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import SubscriberSystem, WebhookSubscription
from app.domain.services.pharmacy_client import PharmacyClient, pharmacy_note_type

NOTE_CREATED = "note.created"


@dataclass(frozen=True)
class OutboundPayload:
    url: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SkipDelivery:
    reason: str


BuildResult = Union[OutboundPayload, SkipDelivery]


class PayloadTransform(Protocol):
    async def build(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempted_at: datetime,
    ) -> BuildResult:
        ...


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


class GenericTransform:
    """Relays the raw event envelope, HMAC-signed with the subscription secret"""

    async def build(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempted_at: datetime,
    ) -> BuildResult:
        raw_body = canonical_json(delivery.payload)
        return OutboundPayload(
            url=subscription.url,
            body=raw_body,
            headers={
                "Content-Type": "application/json",
                "X-Event-Id": delivery.event_id,
                "X-Event-Type": delivery.event_type,
                "X-Event-Timestamp": _iso_utc(attempted_at),
                "X-Signature": signature_header(subscription.secret, raw_body),
            },
        )


class PharmacyTransform:
    """
    Turns order-scoped ``note.created`` events into a pharmacy order-note call.

    Everything else is skipped: other event types, patient-scoped notes and,
    when ``only_admin_notes`` is on, notes that are not admin notes.
    """

    def __init__(self, db: AsyncSession, pharmacy: PharmacyClient, only_admin_notes: bool = True):
        self.db = db
        self.pharmacy = pharmacy
        self.only_admin_notes = only_admin_notes

    async def build(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempted_at: datetime,
    ) -> BuildResult:
        envelope = delivery.payload or {}
        data = envelope.get("data") or {}

        if envelope.get("event_type") != NOTE_CREATED or data.get("scope") != NoteScope.ORDER.value:
            return SkipDelivery("pharmacy accepts only order-scoped note.created events")

        note_id = data.get("note_id")
        order_id = data.get("orderID")
        if not note_id or not data.get("memberID") or order_id is None:
            raise LinkageMissingError(
                "Pharmacy requires order-scoped note.created events with orderID",
                details={"note_id": note_id, "order_id": order_id},
            )

        order_number = await self._get_order_number(delivery.tenant_id, order_id)
        if not order_number:
            raise LinkageMissingError(
                f"Missing pharmacy_order_ref for orderID={order_id}",
                details={"order_id": order_id},
            )

        note = await self._get_note(delivery.tenant_id, note_id)
        if note is None:
            raise LinkageMissingError(
                f"Note not found for note_id={note_id}",
                details={"note_id": note_id},
            )

        if self.only_admin_notes and note.note_type != NoteType.ADMIN_NOTE.value:
            return SkipDelivery(f"note_type {note.note_type} filtered by admin-only policy")

        author = note.created_by_display_name or note.created_by_user_id or note.created_by_role
        return OutboundPayload(
            url=self.pharmacy.order_notes_url(order_number),
            body=self.pharmacy.order_note_body(note.body, pharmacy_note_type(note.note_type), author),
            headers=self.pharmacy.headers(),
        )

    async def _get_order_number(self, tenant_id: str, order_id) -> str | None:
        result = await self.db.execute(
            select(Order.pharmacy_order_ref).where(
                Order.tenant_id == tenant_id,
                Order.order_id == int(order_id),
            )
        )
        return result.scalar_one_or_none()

    async def _get_note(self, tenant_id: str, note_id: str) -> Note | None:
        result = await self.db.execute(
            select(Note).where(Note.tenant_id == tenant_id, Note.note_id == note_id)
        )
        return result.scalar_one_or_none()


def resolve_transform(
    subscriber_system: str | None,
    *,
    db: AsyncSession,
    pharmacy: PharmacyClient,
    only_admin_notes: bool,
) -> PayloadTransform:
    """Closed set: unknown kinds fall back to the generic relay"""
    if subscriber_system == SubscriberSystem.PHARMACY.value:
        return PharmacyTransform(db, pharmacy, only_admin_notes=only_admin_notes)
    return GenericTransform()
