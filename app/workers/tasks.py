"""
Celery Tasks for webhook delivery

Implements the worker side of the webhook outbox: each run claims a batch
of due deliveries and sends them through the dispatcher.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id, log_async_operation
from app.db.database import get_task_session
from app.domain.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@log_async_operation("process_webhook_deliveries")
async def dispatch_webhook_batch(limit: int) -> dict:
    async with get_task_session() as db:
        return await WebhookDispatcher(db).run_batch(limit=limit)


@celery_app.task(name="app.workers.tasks.process_webhook_deliveries")
def process_webhook_deliveries(limit: int | None = None) -> dict:
    """
    Claim and send one batch of due webhook deliveries.
    Runs periodically from beat; several workers may run it concurrently.
    """
    return run_async(dispatch_webhook_batch(limit or settings.WEBHOOK_DISPATCH_BATCH_SIZE))
