"""
Idempotency Service - Command Ledger for retried write requests.

A client that sends ``Idempotency-Key`` gets the stored result back on a
retry instead of a second execution. The ledger row is added as the last
statement of the handler's own unit of work, so the handler's writes and
the ledger entry commit (or roll back) together.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import IdempotencyConflictError
from app.core.signing import canonical_json, sha256_hex
from app.core.logging import get_logger
from app.db.models.idempotency_key import IdempotencyKey

logger = get_logger(__name__)


def request_hash(request_body: Any) -> str:
    """sha256 hex of the request body; strings are hashed as-is"""
    raw = request_body if isinstance(request_body, str) else canonical_json(request_body)
    return sha256_hex(raw)


@dataclass(frozen=True)
class IdempotentResult:
    replayed: bool
    result: Any


class IdempotencyService:
    """
    Runs a write handler at most once per (tenant_id, endpoint, key).

    Outcomes:
    - no key: handler runs, nothing recorded
    - new key: handler runs, result recorded in the same commit
    - known key, same request hash: stored result returned, handler not run
    - known key, different hash: IdempotencyConflictError
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def execute(
        self,
        tenant_id: str,
        endpoint: str,
        idempotency_key: str | None,
        request_body: Any,
        handler: Callable[[], Awaitable[Any]],
    ) -> IdempotentResult:
        if not idempotency_key:
            try:
                result = await handler()
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return IdempotentResult(replayed=False, result=result)

        req_hash = request_hash(request_body)

        existing = await self._get_record(tenant_id, endpoint, idempotency_key)
        if existing is not None:
            return self._replay(existing, endpoint, idempotency_key, req_hash)

        try:
            result = await handler()
            # השמירה היא מה שהלקוח יקבל ב-replay, מחזירים בדיוק אותה צורה גם עכשיו
            stored = json.loads(canonical_json(result))

            self.db.add(IdempotencyKey(
                tenant_id=tenant_id,
                endpoint=endpoint,
                idempotency_key=idempotency_key,
                request_hash=req_hash,
                response_body=stored,
            ))
            await self.db.commit()
        except IntegrityError:
            # הגשה מקבילה ראשונה של אותו מפתח ניצחה, הכתיבות שלנו בוטלו
            await self.db.rollback()
            existing = await self._get_record(tenant_id, endpoint, idempotency_key)
            if existing is None:
                raise
            logger.warning(
                "Idempotency key inserted concurrently, returning winner's result",
                extra_data={"tenant_id": tenant_id, "endpoint": endpoint},
            )
            return self._replay(existing, endpoint, idempotency_key, req_hash)
        except Exception:
            await self.db.rollback()
            raise

        return IdempotentResult(replayed=False, result=stored)

    async def _get_record(
        self, tenant_id: str, endpoint: str, idempotency_key: str
    ) -> IdempotencyKey | None:
        result = await self.db.execute(
            select(IdempotencyKey).where(
                IdempotencyKey.tenant_id == tenant_id,
                IdempotencyKey.endpoint == endpoint,
                IdempotencyKey.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(
        record: IdempotencyKey, endpoint: str, idempotency_key: str, req_hash: str
    ) -> IdempotentResult:
        if record.request_hash != req_hash:
            raise IdempotencyConflictError(endpoint, idempotency_key)

        logger.info(
            "Idempotent replay",
            extra_data={"tenant_id": record.tenant_id, "endpoint": endpoint},
        )
        return IdempotentResult(replayed=True, result=record.response_body)
