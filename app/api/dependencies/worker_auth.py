"""
אימות מפתח worker עבור ה-endpoint הפנימי שמריץ batch של webhooks.

שימוש:
    @router.post("/process-webhooks")
    async def process_webhooks(
        _: None = Depends(require_worker_key),
    ):
        ...
"""
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_worker_key_header = APIKeyHeader(name="X-Worker-Key", auto_error=False)


async def require_worker_key(
    worker_key: str | None = Depends(_worker_key_header),
) -> None:
    """
    403 אם המפתח חסר או לא תואם.
    אם INTERNAL_WORKER_KEY לא מוגדר בסביבה, הגישה חסומה לחלוטין.
    """
    if not settings.INTERNAL_WORKER_KEY:
        logger.warning("גישה ל-internal endpoint נדחתה, INTERNAL_WORKER_KEY לא מוגדר")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )

    if not worker_key or not secrets.compare_digest(worker_key, settings.INTERNAL_WORKER_KEY):
        logger.warning("גישה ל-internal endpoint נדחתה, מפתח worker שגוי או חסר")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )
