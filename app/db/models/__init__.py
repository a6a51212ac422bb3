"""
Database Models
"""
from app.db.models.idempotency_key import IdempotencyKey
from app.db.models.webhook_subscription import WebhookSubscription
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.order import Order, OrderWorkQueue, OrderAssessmentStatus
from app.db.models.member import Member
from app.db.models.note import Note, NoteReply, Message

__all__ = [
    "IdempotencyKey",
    "WebhookSubscription",
    "WebhookDelivery",
    "Order",
    "OrderWorkQueue",
    "OrderAssessmentStatus",
    "Member",
    "Note",
    "NoteReply",
    "Message",
]
