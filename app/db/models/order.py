"""
Order Model - Perch order linked to a member and to the pharmacy-side order.
"""
import enum
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, UniqueConstraint

from app.db.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    """Statuses the transition guard knows about. The column accepts others too."""

    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    REFUND = "REFUND"
    PROCESSING = "PROCESSING"


class Order(Base):
    __tablename__ = "orders"

    tenant_id = Column(String(64), primary_key=True)
    order_id = Column(BigInteger, primary_key=True, autoincrement=False)

    member_id = Column(BigInteger, nullable=True)
    # מספר ההזמנה בצד בית המרקחת ("order number")
    pharmacy_order_ref = Column(String(100), nullable=True)
    status = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "pharmacy_order_ref", name="uq_orders_tenant_pharmacy_ref"),
    )


class WorkQueueStatus(str, enum.Enum):
    QUEUED = "queued"


class OrderWorkQueue(Base):
    """Work-queue entry created when an order moves to PENDING (one per order)"""

    __tablename__ = "order_work_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    order_id = Column(BigInteger, nullable=False)
    status = Column(String(32), nullable=False, default=WorkQueueStatus.QUEUED.value)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_order_work_queue_order"),
    )


class AssessmentStatus(str, enum.Enum):
    REFUNDED = "refunded"


class OrderAssessmentStatus(Base):
    """Assessment status for an order, written as refunded (with reason) on REFUND"""

    __tablename__ = "order_assessment_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    order_id = Column(BigInteger, nullable=False)
    status = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_order_assessment_status_order"),
    )
