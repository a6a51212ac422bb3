"""
Perch Relay - FastAPI application

API: /api/v1/perch/... (members, orders, notes) and /api/v1/internal/...
שליחת ה-webhooks עצמה רצה ב-Celery beat או ב-scripts/run_webhook_worker.py.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.db.database import Base, engine

setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=not settings.DEBUG)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    # טבלאות נוצרות אם חסרות, אין מיגרציות בשלב הזה
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(
        "Perch Relay started",
        extra_data={"app_name": settings.APP_NAME, "debug": settings.DEBUG},
    )
    yield
    await engine.dispose()
    logger.info("Perch Relay stopped, database connections disposed")


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "Relay between Perch and the pharmacy: idempotent write commands, "
        "an event outbox and webhook delivery with retry."
    ),
    openapi_tags=[
        {"name": "Members", "description": "Patient notes, channel messages and pharmacy customer link."},
        {"name": "Orders", "description": "Order link, order notes and guarded status transitions."},
        {"name": "Notes", "description": "Replies by note_id or external_note_ref."},
        {"name": "Internal", "description": "Webhook batch trigger for an external worker."},
    ],
    lifespan=lifespan,
)

setup_middleware(app)
setup_exception_handlers(app)
app.include_router(api_router, prefix="/api")


@app.get("/health", summary="Liveness check", tags=["Health"])
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
