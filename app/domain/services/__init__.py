"""
Domain Services
"""
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.webhook_service import WebhookEventService
from app.domain.services.webhook_dispatcher import WebhookDispatcher
from app.domain.services.order_status_service import OrderStatusService
from app.domain.services.order_service import OrderService
from app.domain.services.member_service import MemberService
from app.domain.services.note_service import NoteService

__all__ = [
    "IdempotencyService",
    "WebhookEventService",
    "WebhookDispatcher",
    "OrderStatusService",
    "OrderService",
    "MemberService",
    "NoteService",
]
