"""
FastAPI dependency ללקוח ה-API של בית המרקחת (member link, customer lookup, order create)
"""
from app.core.config import settings
from app.domain.services.pharmacy_client import PharmacyClient


def get_pharmacy_client() -> PharmacyClient:
    return PharmacyClient(
        settings.PHARMACY_API_BASE_URL,
        settings.PHARMACY_API_KEY,
        timeout_seconds=settings.WEBHOOK_REQUEST_TIMEOUT_SECONDS,
    )
