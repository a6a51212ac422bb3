"""
FastAPI dependency לזיהוי ה-tenant של הבקשה

שימוש:
    @router.post("/members/{member_id}/notes")
    async def create_note(
        tenant_id: str = Depends(get_tenant_id),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.auth import resolve_tenant_id, verify_token
from app.core.logging import get_logger, set_tenant_id

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_tenant_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
) -> str:
    """
    כל בקשה חייבת Bearer token תקין, אחרת 401.
    X-Tenant-Id וברירת המחדל משמשים רק לטוקן תקין בלי claim של tenant_id.
    """
    if credentials is None:
        logger.warning("Rejected request without bearer token")
        raise _unauthorized("Missing bearer token")

    token_payload = verify_token(credentials.credentials)
    if token_payload is None:
        logger.warning("Rejected request with invalid bearer token")
        raise _unauthorized("Invalid or expired token")

    tenant_id = resolve_tenant_id(token_payload, x_tenant_id)
    set_tenant_id(tenant_id)
    return tenant_id
