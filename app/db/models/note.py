"""
Notes, note replies and member messages.

All three carry the same author columns (role / user id / display name)
and an optional external reference from the system that created them.
"""
import enum
from sqlalchemy import Column, BigInteger, String, DateTime, Text, ForeignKey, Index

from app.db.database import Base, utcnow


class NoteScope(str, enum.Enum):
    PATIENT = "patient"
    ORDER = "order"


class NoteType(str, enum.Enum):
    ADMIN_NOTE = "admin_note"
    CLINICAL_NOTE = "clinical_note"


class NoteStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class ActorRole(str, enum.Enum):
    ADMIN = "admin"
    PHARMACIST = "pharmacist"
    PATIENT = "patient"
    SYSTEM = "system"


class MessageChannel(str, enum.Enum):
    ADMIN_PATIENT = "admin_patient"
    PHARMACIST_PATIENT = "pharmacist_patient"


class Note(Base):
    __tablename__ = "notes"

    note_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    scope = Column(String(16), nullable=False)
    member_id = Column(BigInteger, nullable=False)
    order_id = Column(BigInteger, nullable=True)

    note_type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=NoteStatus.OPEN.value)

    created_by_role = Column(String(32), nullable=False)
    created_by_user_id = Column(String(100), nullable=True)
    created_by_display_name = Column(String(200), nullable=True)
    external_note_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_notes_tenant_member", "tenant_id", "member_id"),
        Index("ix_notes_tenant_order", "tenant_id", "order_id"),
        Index("ix_notes_tenant_external_ref", "tenant_id", "external_note_ref"),
    )


class NoteReply(Base):
    __tablename__ = "note_replies"

    note_reply_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    note_id = Column(String(36), ForeignKey("notes.note_id"), nullable=False, index=True)
    body = Column(Text, nullable=False)

    created_by_role = Column(String(32), nullable=False)
    created_by_user_id = Column(String(100), nullable=True)
    created_by_display_name = Column(String(200), nullable=True)
    external_reply_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)


class Message(Base):
    __tablename__ = "messages"

    message_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    member_id = Column(BigInteger, nullable=False)
    channel = Column(String(32), nullable=False)
    body = Column(Text, nullable=False)

    sender_role = Column(String(32), nullable=False)
    sender_user_id = Column(String(100), nullable=True)
    sender_display_name = Column(String(200), nullable=True)
    external_message_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_messages_tenant_member", "tenant_id", "member_id"),
    )
