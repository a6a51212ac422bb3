"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- קריאות API תמציתיות (הערות, קישור הזמנה, מעבר סטטוס)
- הרצת batch של ה-dispatcher עם HTTP מזויף ושעון ידני
- פונקציות אימות על שורות webhook_deliveries
"""
import json

import pytest
from sqlalchemy import select

from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import SubscriberSystem
from app.domain.services.webhook_dispatcher import WebhookDispatcher

PHARMACY_HOST = "http://pharmacy.test"
SUBSCRIBER_URL = "https://subscriber.test/hook"


# ============================================================================
# קריאות API
# ============================================================================

async def link_order(client, headers, order_id=9001, member_id=501, ref="PH-1001", status="PAYMENT_RECEIVED"):
    response = await client.post(
        f"/api/v1/perch/orders/{order_id}/link",
        json={"memberID": member_id, "pharmacy_order_ref": ref, "status": status},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


async def post_order_note(client, headers, order_id=9001, *, note_type="admin_note", body="Check allergy list", **extra):
    response = await client.post(
        f"/api/v1/perch/orders/{order_id}/notes",
        json={
            "note_type": note_type,
            "body": body,
            "created_by": {"role": "admin", "user_id": "u-9", "display_name": "Dana Admin"},
            **extra,
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def change_status(client, headers, order_number, status, reason=None, key=None):
    request_headers = dict(headers)
    if key:
        request_headers["Idempotency-Key"] = key
    return await client.post(
        f"/api/v1/perch/orders/by-number/{order_number}/status",
        json={"status": status, "reason": reason},
        headers=request_headers,
    )


# ============================================================================
# Dispatcher
# ============================================================================

async def run_dispatcher(db, config, http, clock, limit=50) -> dict:
    return await WebhookDispatcher(db, config=config, http_client=http, clock=clock).run_batch(limit)


async def deliveries(db, *, event_type=None) -> list[WebhookDelivery]:
    query = select(WebhookDelivery).execution_options(populate_existing=True)
    if event_type:
        query = query.where(WebhookDelivery.event_type == event_type)
    result = await db.execute(query.order_by(WebhookDelivery.created_at))
    return list(result.scalars().all())


def calls_to(http, url_prefix: str) -> list[dict]:
    return [call for call in http.calls if call["url"].startswith(url_prefix)]


def json_body(call: dict) -> dict:
    return json.loads(call["body"])


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def pharmacy_subscription(subscription_factory):
    return await subscription_factory(
        event_types=["note.created"],
        url=f"{PHARMACY_HOST}/webhooks",
        subscriber_system=SubscriberSystem.PHARMACY,
    )


@pytest.fixture
async def generic_subscription(subscription_factory):
    return await subscription_factory(
        event_types=["note.created", "note.reply.created", "order.status.updated", "order.link.updated"],
        url=SUBSCRIBER_URL,
    )
