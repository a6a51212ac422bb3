"""
Internal API Routes - worker trigger for webhook dispatch

מיועד ל-cron / worker חיצוני שלא מריץ Celery.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.worker_auth import require_worker_key
from app.db.database import get_db
from app.domain.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


@router.post(
    "/process-webhooks",
    summary="Run one webhook dispatch batch",
    description="Requires X-Worker-Key. Returns the number of deliveries processed.",
)
async def process_webhooks(
    limit: int = Query(default=50, ge=1, le=500),
    _: None = Depends(require_worker_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await WebhookDispatcher(db).run_batch(limit=limit)
