"""
Order API Routes - linking, order notes, pharmacy order creation and
guarded status changes
"""
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_tenant_id
from app.api.dependencies.idempotency import get_idempotency_key, run_idempotent
from app.api.dependencies.pharmacy import get_pharmacy_client
from app.api.routes.notes import NoteCreate
from app.db.database import get_db
from app.domain.services.note_service import NoteService
from app.domain.services.order_service import OrderService
from app.domain.services.order_status_service import OrderStatusService
from app.domain.services.pharmacy_client import PharmacyClient

router = APIRouter()


class OrderLink(BaseModel):
    memberID: int
    pharmacy_order_ref: str | None = Field(default=None, max_length=100)
    status: str | None = Field(default=None, max_length=32)


class OrderItem(BaseModel):
    productId: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class ShippingAddress(BaseModel):
    addressLine1: str = Field(min_length=1)
    addressLine2: str | None = None
    city: str = Field(min_length=1)
    postCode: str = Field(min_length=1)
    country: str = Field(min_length=1)


class AssessmentAnswer(BaseModel):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)


class OrderCreate(BaseModel):
    """Body forwarded as-is to the pharmacy order-create call"""
    customerId: str = Field(min_length=1)
    items: list[OrderItem] = Field(min_length=1)
    shipping: ShippingAddress
    assessment: list[AssessmentAnswer] | None = None
    notes: str | None = None


class StatusTransition(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    reason: str | None = Field(default=None, max_length=2000)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().upper()


@router.post(
    "/{order_id}/link",
    summary="Link an order to a member",
    description=(
        "Upserts the member and the order. Emits order.link.updated. "
        "409 when another order of the tenant already holds the pharmacy_order_ref."
    ),
)
async def link_order(
    order_id: int,
    link: OrderLink,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await OrderService(db).link_order(
            tenant_id, order_id, link.memberID, link.pharmacy_order_ref, link.status
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result


@router.post(
    "/{order_id}/create",
    status_code=201,
    summary="Create the order at the pharmacy",
    description=(
        "Creates the order upstream for a member linked to the given pharmacy customer "
        "and stores the returned order number. Emits order.link.updated."
    ),
)
async def create_order(
    order_id: int,
    order: OrderCreate,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    pharmacy: PharmacyClient = Depends(get_pharmacy_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = order.model_dump(mode="json", exclude_none=True)

    async def handler():
        return await OrderService(db, pharmacy).create_pharmacy_order(tenant_id, order_id, body)

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/perch/orders/{order_id}/create",
        idempotency_key, body, handler,
    )


@router.post(
    "/{order_id}/notes",
    status_code=201,
    summary="Create an order note",
    description=(
        "Requires a linked order with a pharmacy order reference. Emits note.created; "
        "the pharmacy copy is sent by the webhook dispatcher."
    ),
)
async def create_order_note(
    order_id: int,
    note: NoteCreate,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = note.model_dump(mode="json")

    async def handler():
        return await NoteService(db).create_order_note(tenant_id, order_id, body)

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/perch/orders/{order_id}/notes",
        idempotency_key, body, handler,
    )


@router.get("/{order_id}/notes", summary="List order notes with replies")
async def list_order_notes(
    order_id: int,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    notes = await NoteService(db).list_order_notes(tenant_id, order_id)
    return {"orderID": order_id, "notes": notes}


@router.post(
    "/by-number/{order_number}/status",
    summary="Change order status",
    description=(
        "Moves the order along PAYMENT_RECEIVED → PENDING → APPROVED or "
        "PAYMENT_RECEIVED → CANCELLED → REFUND. APPROVED, PROCESSING and REFUND are final. "
        "CANCELLED and REFUND require a reason. Emits order.status.updated."
    ),
)
async def change_order_status(
    order_number: str,
    transition: StatusTransition,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = transition.model_dump(mode="json")

    async def handler():
        outcome = await OrderStatusService(db).transition(
            tenant_id, order_number, transition.status, transition.reason, commit=False
        )
        await OrderService(db).emit_status_updated(
            tenant_id, outcome["order_id"], order_number, outcome, transition.reason
        )
        return {
            "ok": True,
            "order_number": order_number,
            "previous_status": outcome["previous_status"],
            "new_status": outcome["new_status"],
        }

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/perch/orders/by-number/{order_number}/status",
        idempotency_key, body, handler,
    )
