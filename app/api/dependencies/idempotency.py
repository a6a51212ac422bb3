"""
Idempotency-Key header handling for write routes.

שימוש:
    @router.post("/members/{member_id}/notes")
    async def create_note(
        response: Response,
        idempotency_key: str | None = Depends(get_idempotency_key),
        ...
    ):
        return await run_idempotent(db, response, tenant_id, "POST /...", idempotency_key, body, handler)
"""
from typing import Any, Awaitable, Callable

from fastapi import Header, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationException
from app.domain.services.idempotency_service import IdempotencyService

REPLAYED_HEADER = "X-Idempotency-Replayed"
_MAX_KEY_LENGTH = 200


async def get_idempotency_key(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str | None:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if len(key) > _MAX_KEY_LENGTH:
        raise ValidationException(
            f"Idempotency-Key must be at most {_MAX_KEY_LENGTH} characters",
            field="Idempotency-Key",
        )
    return key or None


async def run_idempotent(
    db: AsyncSession,
    response: Response,
    tenant_id: str,
    endpoint: str,
    idempotency_key: str | None,
    request_body: Any,
    handler: Callable[[], Awaitable[Any]],
) -> Any:
    """Run the handler through the ledger and flag replays on the response"""
    outcome = await IdempotencyService(db).execute(
        tenant_id, endpoint, idempotency_key, request_body, handler
    )
    response.headers[REPLAYED_HEADER] = "true" if outcome.replayed else "false"
    return outcome.result
