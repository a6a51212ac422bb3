"""
אימות JWT משותף: חילוץ tenant מתוך טוקן שהונפק ע"י Perch

הטוקן חתום ב-HS256 עם JWT_SHARED_SECRET. השירות לא מנפיק טוקנים בעצמו,
רק מאמת ומחלץ את ה-claim של ה-tenant.
"""
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class TokenPayload(BaseModel):
    """תוכן ה-JWT token"""
    tenant_id: Optional[str] = None
    sub: Optional[str] = None
    role: Optional[str] = None


def verify_token(token: str) -> Optional[TokenPayload]:
    """אימות JWT token, מחזיר None אם הטוקן לא תקין או פג"""
    if not settings.JWT_SHARED_SECRET:
        logger.warning("JWT_SHARED_SECRET לא מוגדר, כל טוקן נדחה")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SHARED_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        return None
    except pyjwt.InvalidTokenError as e:
        logger.warning("Invalid JWT token", extra_data={"error": str(e)})
        return None


def resolve_tenant_id(
    token_payload: Optional[TokenPayload],
    tenant_header: Optional[str],
) -> str:
    """claim בטוקן → header X-Tenant-Id → ברירת מחדל"""
    if token_payload and token_payload.tenant_id:
        return token_payload.tenant_id
    if tenant_header and tenant_header.strip():
        return tenant_header.strip()
    return settings.TENANT_DEFAULT
