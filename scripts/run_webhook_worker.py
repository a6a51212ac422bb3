#!/usr/bin/env python3
"""
Webhook worker - לולאת polling לסביבות שלא מריצות Celery

הרצה (מתוך תיקיית הפרויקט):
    python scripts/run_webhook_worker.py

או עם פרמטרים:
    python scripts/run_webhook_worker.py --batch-size 50 --interval 2 --once

אפשר להריץ כמה עותקים במקביל: כל שורה נתפסת ע"י worker אחד בלבד (lease).
"""
import argparse
import asyncio
import sys
from pathlib import Path

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.config import settings  # noqa: E402
from app.core.logging import get_logger, set_correlation_id, setup_logging  # noqa: E402
from app.db.database import AsyncSessionLocal, engine  # noqa: E402
from app.domain.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402

logger = get_logger("webhook_worker")


async def run_once(batch_size: int) -> int:
    set_correlation_id()
    async with AsyncSessionLocal() as db:
        result = await WebhookDispatcher(db).run_batch(limit=batch_size)
    return result["processed"]


async def run_single(batch_size: int) -> int:
    try:
        return await run_once(batch_size)
    finally:
        await engine.dispose()


async def run_forever(batch_size: int, interval: float) -> None:
    logger.info(
        "Webhook worker started",
        extra_data={"batch_size": batch_size, "interval_seconds": interval},
    )
    try:
        while True:
            try:
                await run_once(batch_size)
            except Exception as e:
                # DB / רשת לא זמינים, ממשיכים לנסות בסבב הבא
                logger.error(
                    "Webhook batch failed",
                    extra_data={"error_type": type(e).__name__, "error": str(e)},
                    exc_info=True,
                )
            await asyncio.sleep(interval)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Perch Relay webhook worker")
    parser.add_argument("--batch-size", type=int, default=settings.WEBHOOK_DISPATCH_BATCH_SIZE)
    parser.add_argument("--interval", type=float, default=settings.WEBHOOK_DISPATCH_INTERVAL_SECONDS)
    parser.add_argument("--once", action="store_true", help="run a single batch and exit")
    args = parser.parse_args()

    setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=not settings.DEBUG)

    if args.once:
        processed = asyncio.run(run_single(args.batch_size))
        print(f"processed={processed}")
        return

    try:
        asyncio.run(run_forever(args.batch_size, args.interval))
    except KeyboardInterrupt:
        logger.info("Webhook worker stopped")


if __name__ == "__main__":
    main()
