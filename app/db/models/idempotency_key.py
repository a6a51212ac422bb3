"""
Idempotency Key Model - Command ledger for safely retried write requests.

שורה נוצרת פעם אחת, בהרצה המוצלחת הראשונה של handler עבור המפתח,
ולעולם לא מתעדכנת או נמחקת (נשמרת ל-audit ול-replay).
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from app.db.database import Base, utcnow


class IdempotencyKey(Base):
    """Outcome of a tenant-scoped write, keyed by the client's idempotency token"""

    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)

    tenant_id = Column(String(64), nullable=False)
    endpoint = Column(String(200), nullable=False)
    idempotency_key = Column(String(200), nullable=False)

    request_hash = Column(String(64), nullable=False)  # sha256 hex
    response_body = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # הגנה מפני race בין שתי הגשות ראשונות של אותו מפתח
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "endpoint", "idempotency_key", name="uq_idempotency_tenant_endpoint_key"
        ),
    )
