"""
Member API Routes - patient notes, messages, pharmacy customer link and lookup
"""
from typing import Literal

from fastapi import APIRouter, Depends, Path, Query, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_tenant_id
from app.api.dependencies.idempotency import get_idempotency_key, run_idempotent
from app.api.dependencies.pharmacy import get_pharmacy_client
from app.api.routes.notes import ActorSchema, NoteCreate
from app.db.database import get_db
from app.db.models.note import MessageChannel
from app.domain.services.member_service import MemberService
from app.domain.services.note_service import NoteService
from app.domain.services.pharmacy_client import PharmacyClient

router = APIRouter()


class MessageCreate(BaseModel):
    channel: MessageChannel
    body: str = Field(max_length=20000)
    sender: ActorSchema
    external_message_ref: str | None = Field(default=None, max_length=100)

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


@router.post(
    "/{member_id}/notes",
    status_code=201,
    summary="Create a patient note",
    description="Creates a patient-scoped note for the member. Emits note.created.",
)
async def create_member_note(
    member_id: int,
    note: NoteCreate,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = note.model_dump(mode="json")

    async def handler():
        return await NoteService(db).create_member_note(tenant_id, member_id, body)

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/perch/members/{member_id}/notes",
        idempotency_key, body, handler,
    )


@router.get("/{member_id}/notes", summary="List member notes with replies")
async def list_member_notes(
    member_id: int,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    notes = await NoteService(db).list_member_notes(tenant_id, member_id)
    return {"memberID": member_id, "notes": notes}


@router.post(
    "/{member_id}/messages",
    status_code=201,
    summary="Create a member message",
    description="Stores a message on one of the member's channels. Emits message.created.",
)
async def create_member_message(
    member_id: int,
    message: MessageCreate,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = message.model_dump(mode="json")

    async def handler():
        return await NoteService(db).create_message(tenant_id, member_id, body)

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/perch/members/{member_id}/messages",
        idempotency_key, body, handler,
    )


@router.get("/{member_id}/messages", summary="List member messages")
async def list_member_messages(
    member_id: int,
    channel: Literal["admin_patient", "pharmacist_patient", "all"] = Query(default="all"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    messages = await NoteService(db).list_member_messages(tenant_id, member_id, channel)
    return {"memberID": member_id, "channel": channel, "messages": messages}


class MemberLink(BaseModel):
    """Pharmacy customer fields; email may come as memberEmail, name as first + last name"""
    email: str | None = Field(default=None, max_length=255)
    memberEmail: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=200)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=32)
    dob: str | None = Field(default=None, max_length=32)
    gender: str | None = Field(default=None, max_length=32)
    addressLine1: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=100)
    postCode: str | None = Field(default=None, max_length=32)
    country: str | None = Field(default=None, max_length=64)


@router.post(
    "/{member_id}/link",
    summary="Link a member to a pharmacy customer",
    description=(
        "Creates the customer at the pharmacy and stores the returned customerId on the member. "
        "Profile fields left out keep their stored value. Emits member.link.updated."
    ),
)
async def link_member(
    member_id: int,
    link: MemberLink,
    tenant_id: str = Depends(get_tenant_id),
    pharmacy: PharmacyClient = Depends(get_pharmacy_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await MemberService(db, pharmacy).link_member(tenant_id, member_id, link.model_dump())
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result


@router.get("/notes", summary="List all member notes of the tenant, grouped by member")
async def list_tenant_notes(
    scope: Literal["patient", "order", "all"] = Query(default="patient"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await NoteService(db).list_tenant_notes(tenant_id, scope)
    return {"items": items, "next_cursor": None}


customers_router = APIRouter()


@customers_router.get(
    "/{email}",
    summary="Look up a pharmacy customer by email",
    description="Proxies the pharmacy customer lookup; 404 when the pharmacy has no such customer.",
)
async def get_customer(
    email: str = Path(pattern=r"^[^@\s/]+@[^@\s/]+\.[^@\s/]+$", max_length=255),
    _: str = Depends(get_tenant_id),
    pharmacy: PharmacyClient = Depends(get_pharmacy_client),
) -> dict:
    return await pharmacy.get_customer_by_email(email)
