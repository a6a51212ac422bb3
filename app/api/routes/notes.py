"""
Note API Routes - shared request schemas and note replies
"""
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_tenant_id
from app.api.dependencies.idempotency import get_idempotency_key, run_idempotent
from app.db.database import get_db
from app.db.models.note import ActorRole, NoteStatus, NoteType
from app.domain.services.note_service import NoteService

router = APIRouter()


def _not_blank(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be empty")
    return v


class ActorSchema(BaseModel):
    """Who wrote a note, reply or message"""
    role: ActorRole
    user_id: str | None = Field(default=None, max_length=100)
    display_name: str | None = Field(default=None, max_length=200)


class NoteCreate(BaseModel):
    note_type: NoteType
    body: str = Field(max_length=20000)
    title: str | None = Field(default=None, max_length=255)
    status: NoteStatus = NoteStatus.OPEN
    created_by: ActorSchema
    external_note_ref: str | None = Field(default=None, max_length=100)

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        return _not_blank(v)


class ReplyCreate(BaseModel):
    body: str = Field(max_length=20000)
    created_by: ActorSchema
    external_reply_ref: str | None = Field(default=None, max_length=100)

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        return _not_blank(v)


@router.post(
    "/{note_id}/replies",
    status_code=201,
    summary="Reply to a note",
    description="The note is looked up by its id or by its external_note_ref. Emits note.reply.created.",
)
async def create_reply(
    note_id: str,
    reply: ReplyCreate,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = reply.model_dump(mode="json")

    async def handler():
        return await NoteService(db).create_reply(tenant_id, note_id, body)

    return await run_idempotent(
        db, response, tenant_id, f"POST /v1/notes/{note_id}/replies", idempotency_key, body, handler
    )
