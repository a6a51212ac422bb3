"""
Note Service - notes, replies and member messages.

Write methods add rows and queue the matching domain event in the same
session without committing; the caller (normally the idempotency ledger)
commits the whole unit of work.
"""
from __future__ import annotations

import uuid
from datetime import timezone
from typing import Any, Optional

from sqlalchemy import case, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NoteNotFoundError, OrderNotLinkedError
from app.db.database import utcnow
from app.db.models.note import Message, Note, NoteReply, NoteScope, NoteStatus
from app.db.models.order import Order
from app.domain.services.member_service import ensure_member
from app.domain.services.webhook_service import WebhookEventService

NOTE_CREATED = "note.created"
NOTE_REPLY_CREATED = "note.reply.created"
MESSAGE_CREATED = "message.created"


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def note_to_dict(note: Note, replies: list[NoteReply] | None = None) -> dict[str, Any]:
    return {
        "note_id": note.note_id,
        "scope": note.scope,
        "memberID": note.member_id,
        "orderID": note.order_id,
        "note_type": note.note_type,
        "title": note.title,
        "body": note.body,
        "status": note.status,
        "created_by": {
            "role": note.created_by_role,
            "user_id": note.created_by_user_id,
            "display_name": note.created_by_display_name,
        },
        "external_note_ref": note.external_note_ref,
        "created_at": _iso(note.created_at),
        "replies": [reply_to_dict(r) for r in (replies or [])],
    }


def reply_to_dict(reply: NoteReply) -> dict[str, Any]:
    return {
        "note_reply_id": reply.note_reply_id,
        "note_id": reply.note_id,
        "body": reply.body,
        "created_by": {
            "role": reply.created_by_role,
            "user_id": reply.created_by_user_id,
            "display_name": reply.created_by_display_name,
        },
        "external_reply_ref": reply.external_reply_ref,
        "created_at": _iso(reply.created_at),
    }


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "message_id": message.message_id,
        "memberID": message.member_id,
        "channel": message.channel,
        "body": message.body,
        "sender": {
            "role": message.sender_role,
            "user_id": message.sender_user_id,
            "display_name": message.sender_display_name,
        },
        "external_message_ref": message.external_message_ref,
        "created_at": _iso(message.created_at),
    }


class NoteService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = WebhookEventService(db)

    async def create_member_note(
        self, tenant_id: str, member_id: int, note: dict[str, Any]
    ) -> dict[str, Any]:
        await ensure_member(self.db, tenant_id, member_id)
        row = self._new_note(tenant_id, NoteScope.PATIENT, member_id, None, note)
        self.db.add(row)
        await self.db.flush()

        await self.events.emit_event_safely(tenant_id, NOTE_CREATED, {
            "note_id": row.note_id,
            "memberID": member_id,
            "scope": NoteScope.PATIENT.value,
        })

        return {
            "note_id": row.note_id,
            "thread_root_id": row.note_id,
            "scope": NoteScope.PATIENT.value,
            "memberID": member_id,
            "orderID": None,
            "note_type": row.note_type,
            "status": row.status,
            "created_at": _iso(row.created_at),
        }

    async def create_order_note(
        self, tenant_id: str, order_id: int, note: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Order notes require a linked order that already has a pharmacy order
        reference; the pharmacy copy is delivered by the webhook pipeline.
        """
        order = await self.db.get(Order, (tenant_id, order_id))
        if order is None or order.member_id is None:
            raise OrderNotLinkedError(
                f"Order is not linked. Call POST /v1/perch/orders/{order_id}/link first.",
                order_id,
            )
        if not order.pharmacy_order_ref:
            raise OrderNotLinkedError(
                "Order is missing pharmacy_order_ref. Link the order with pharmacy_order_ref first.",
                order_id,
            )

        row = self._new_note(tenant_id, NoteScope.ORDER, order.member_id, order_id, note)
        self.db.add(row)
        await self.db.flush()

        await self.events.emit_event_safely(tenant_id, NOTE_CREATED, {
            "note_id": row.note_id,
            "memberID": order.member_id,
            "orderID": order_id,
            "scope": NoteScope.ORDER.value,
        })

        return {
            "note_id": row.note_id,
            "thread_root_id": row.note_id,
            "scope": NoteScope.ORDER.value,
            "memberID": order.member_id,
            "orderID": order_id,
            "note_type": row.note_type,
            "status": row.status,
            "created_at": _iso(row.created_at),
        }

    async def create_reply(
        self, tenant_id: str, note_lookup_id: str, reply: dict[str, Any]
    ) -> dict[str, Any]:
        """Reply to a note addressed by its id or by its external reference"""
        result = await self.db.execute(
            select(Note)
            .where(
                Note.tenant_id == tenant_id,
                or_(Note.note_id == note_lookup_id, Note.external_note_ref == note_lookup_id),
            )
            # התאמה לפי external ref קודמת להתאמה לפי id
            .order_by(case((Note.external_note_ref == note_lookup_id, 0), else_=1))
            .limit(1)
        )
        note = result.scalar_one_or_none()
        if note is None:
            raise NoteNotFoundError(note_lookup_id)

        created_by = reply["created_by"]
        row = NoteReply(
            note_reply_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            note_id=note.note_id,
            body=reply["body"],
            created_by_role=created_by["role"],
            created_by_user_id=created_by.get("user_id"),
            created_by_display_name=created_by.get("display_name"),
            external_reply_ref=reply.get("external_reply_ref"),
            created_at=utcnow(),
        )
        self.db.add(row)
        await self.db.flush()

        await self.events.emit_event_safely(tenant_id, NOTE_REPLY_CREATED, {
            "note_id": note.note_id,
            "note_reply_id": row.note_reply_id,
            "memberID": note.member_id,
            "orderID": note.order_id,
        })

        return {
            "note_reply_id": row.note_reply_id,
            "note_id": note_lookup_id,
            "created_at": _iso(row.created_at),
        }

    async def create_message(
        self, tenant_id: str, member_id: int, message: dict[str, Any]
    ) -> dict[str, Any]:
        await ensure_member(self.db, tenant_id, member_id)
        sender = message["sender"]
        row = Message(
            message_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            member_id=member_id,
            channel=message["channel"],
            body=message["body"],
            sender_role=sender["role"],
            sender_user_id=sender.get("user_id"),
            sender_display_name=sender.get("display_name"),
            external_message_ref=message.get("external_message_ref"),
            created_at=utcnow(),
        )
        self.db.add(row)
        await self.db.flush()

        await self.events.emit_event_safely(tenant_id, MESSAGE_CREATED, {
            "message_id": row.message_id,
            "memberID": member_id,
            "channel": row.channel,
        })

        return {
            "message_id": row.message_id,
            "memberID": member_id,
            "channel": row.channel,
            "created_at": _iso(row.created_at),
        }

    async def list_member_notes(self, tenant_id: str, member_id: int, limit: int = 200) -> list[dict]:
        result = await self.db.execute(
            select(Note)
            .where(Note.tenant_id == tenant_id, Note.member_id == member_id)
            .order_by(Note.created_at.desc())
            .limit(limit)
        )
        return await self._with_replies(tenant_id, list(result.scalars().all()))

    async def list_tenant_notes(
        self, tenant_id: str, scope: str = NoteScope.PATIENT.value, limit: int = 2000
    ) -> list[dict]:
        """All notes of the tenant with replies, grouped by member; scope "all" drops the filter"""
        query = select(Note).where(Note.tenant_id == tenant_id)
        if scope != "all":
            query = query.where(Note.scope == scope)
        result = await self.db.execute(
            query.order_by(Note.member_id.asc(), Note.created_at.desc()).limit(limit)
        )
        notes = await self._with_replies(tenant_id, list(result.scalars().all()))

        by_member: dict[int, list[dict]] = {}
        for note in notes:
            by_member.setdefault(note["memberID"], []).append(note)
        return [{"memberID": member_id, "notes": member_notes} for member_id, member_notes in by_member.items()]

    async def list_order_notes(self, tenant_id: str, order_id: int, limit: int = 200) -> list[dict]:
        result = await self.db.execute(
            select(Note)
            .where(
                Note.tenant_id == tenant_id,
                Note.order_id == order_id,
                Note.scope == NoteScope.ORDER.value,
            )
            .order_by(Note.created_at.desc())
            .limit(limit)
        )
        return await self._with_replies(tenant_id, list(result.scalars().all()))

    async def list_member_messages(
        self, tenant_id: str, member_id: int, channel: str = "all", limit: int = 500
    ) -> list[dict]:
        query = select(Message).where(Message.tenant_id == tenant_id, Message.member_id == member_id)
        if channel != "all":
            query = query.where(Message.channel == channel)
        result = await self.db.execute(query.order_by(Message.created_at.desc()).limit(limit))
        return [message_to_dict(m) for m in result.scalars().all()]

    async def _with_replies(self, tenant_id: str, notes: list[Note]) -> list[dict]:
        if not notes:
            return []
        result = await self.db.execute(
            select(NoteReply)
            .where(
                NoteReply.tenant_id == tenant_id,
                NoteReply.note_id.in_([n.note_id for n in notes]),
            )
            .order_by(NoteReply.created_at.asc())
        )
        replies_by_note: dict[str, list[NoteReply]] = {}
        for reply in result.scalars().all():
            replies_by_note.setdefault(reply.note_id, []).append(reply)
        return [note_to_dict(n, replies_by_note.get(n.note_id)) for n in notes]

    @staticmethod
    def _new_note(
        tenant_id: str,
        scope: NoteScope,
        member_id: int,
        order_id: Optional[int],
        note: dict[str, Any],
    ) -> Note:
        created_by = note["created_by"]
        return Note(
            note_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            scope=scope.value,
            member_id=member_id,
            order_id=order_id,
            note_type=note["note_type"],
            title=note.get("title"),
            body=note["body"],
            status=note.get("status") or NoteStatus.OPEN.value,
            created_by_role=created_by["role"],
            created_by_user_id=created_by.get("user_id"),
            created_by_display_name=created_by.get("display_name"),
            external_note_ref=note.get("external_note_ref"),
            created_at=utcnow(),
        )
