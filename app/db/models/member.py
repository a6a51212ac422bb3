"""
Member Model - Perch patient, optionally linked to a pharmacy customer.
"""
from sqlalchemy import Column, BigInteger, String, DateTime

from app.db.database import Base, utcnow


class Member(Base):
    __tablename__ = "members"

    tenant_id = Column(String(64), primary_key=True)
    member_id = Column(BigInteger, primary_key=True, autoincrement=False)

    email = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(32), nullable=True)
    pharmacy_patient_ref = Column(String(100), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
