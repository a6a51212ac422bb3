"""
בדיקות API: הערות מטופל, הודעות, תגובות וקישור member

מכסה:
- יצירת הערה → 201 + delivery לכל מנוי מתאים
- Idempotency-Key: replay זהה עם X-Idempotency-Replayed, גוף אחר → 409
- רשימת הערות עם תגובות, תגובה לפי external_note_ref
- הודעות לפי ערוץ
- קישור member: יצירת לקוח בבית המרקחת → customerId נשמר + member.link.updated
- חיפוש לקוח לפי email, רשימת הערות של כל ה-tenant לפי member
"""
import json

import pytest
from sqlalchemy import select

from app.db.models.member import Member
from app.db.models.note import NoteScope
from app.db.models.webhook_delivery import WebhookDelivery
from app.domain.services.http_client import HttpResponse

from tests.conftest import OTHER_TENANT, TENANT, bearer_headers

NOTE_BODY = {
    "note_type": "admin_note",
    "body": "Patient asked about delivery window",
    "title": "Delivery",
    "created_by": {"role": "admin", "user_id": "u-1", "display_name": "Dana Admin"},
}


async def _deliveries(db, event_type=None):
    query = select(WebhookDelivery)
    if event_type:
        query = query.where(WebhookDelivery.event_type == event_type)
    return list((await db.execute(query)).scalars().all())


class TestMemberNotes:
    @pytest.mark.asyncio
    async def test_create_note_emits_event(
        self, test_client, db_session, subscription_factory, tenant_headers
    ):
        await subscription_factory(event_types=["note.created"])

        response = await test_client.post(
            "/api/v1/perch/members/501/notes", json=NOTE_BODY, headers=tenant_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["scope"] == "patient"
        assert data["memberID"] == 501
        assert data["thread_root_id"] == data["note_id"]
        assert response.headers["X-Idempotency-Replayed"] == "false"

        [delivery] = await _deliveries(db_session)
        assert delivery.payload["data"] == {
            "note_id": data["note_id"], "memberID": 501, "scope": "patient",
        }
        assert await db_session.get(Member, (TENANT, 501)) is not None

    @pytest.mark.asyncio
    async def test_idempotent_replay(self, test_client, db_session, subscription_factory, tenant_headers):
        await subscription_factory(event_types=["note.created"])
        headers = {**tenant_headers, "Idempotency-Key": "note-1"}

        first = await test_client.post("/api/v1/perch/members/501/notes", json=NOTE_BODY, headers=headers)
        second = await test_client.post("/api/v1/perch/members/501/notes", json=NOTE_BODY, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.headers["X-Idempotency-Replayed"] == "true"
        assert second.json() == first.json()
        # ה-handler לא רץ שוב, אין delivery נוסף
        assert len(await _deliveries(db_session)) == 1

    @pytest.mark.asyncio
    async def test_same_key_different_body_conflicts(self, test_client, tenant_headers):
        headers = {**tenant_headers, "Idempotency-Key": "note-1"}

        await test_client.post("/api/v1/perch/members/501/notes", json=NOTE_BODY, headers=headers)
        response = await test_client.post(
            "/api/v1/perch/members/501/notes",
            json={**NOTE_BODY, "body": "something else"},
            headers=headers,
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ERR_2001"
        assert error["details"]["reason"] == "idempotency_key_reused"

    @pytest.mark.asyncio
    async def test_invalid_body_is_rejected(self, test_client, tenant_headers):
        response = await test_client.post(
            "/api/v1/perch/members/501/notes",
            json={**NOTE_BODY, "note_type": "gossip"},
            headers=tenant_headers,
        )
        assert response.status_code == 422

        response = await test_client.post(
            "/api/v1/perch/members/501/notes",
            json={**NOTE_BODY, "body": "   "},
            headers=tenant_headers,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_notes_with_replies(self, test_client, tenant_headers):
        created = await test_client.post(
            "/api/v1/perch/members/501/notes",
            json={**NOTE_BODY, "external_note_ref": "perch-77"},
            headers=tenant_headers,
        )
        note_id = created.json()["note_id"]

        reply = await test_client.post(
            "/api/v1/notes/perch-77/replies",
            json={"body": "Called, all good", "created_by": {"role": "pharmacist"}},
            headers=tenant_headers,
        )
        assert reply.status_code == 201
        assert reply.json()["note_id"] == "perch-77"

        response = await test_client.get("/api/v1/perch/members/501/notes", headers=tenant_headers)

        assert response.status_code == 200
        [note] = response.json()["notes"]
        assert note["note_id"] == note_id
        assert note["external_note_ref"] == "perch-77"
        [only_reply] = note["replies"]
        assert only_reply["body"] == "Called, all good"
        assert only_reply["note_id"] == note_id

    @pytest.mark.asyncio
    async def test_notes_are_tenant_scoped(self, test_client):
        await test_client.post(
            "/api/v1/perch/members/501/notes", json=NOTE_BODY, headers=bearer_headers("tenant-a")
        )

        response = await test_client.get(
            "/api/v1/perch/members/501/notes", headers=bearer_headers("tenant-b")
        )

        assert response.json()["notes"] == []


class TestReplies:
    @pytest.mark.asyncio
    async def test_reply_by_note_id_emits_event(
        self, test_client, db_session, subscription_factory, note_factory, tenant_headers
    ):
        await subscription_factory(event_types=["note.reply.created"])
        note = await note_factory()

        response = await test_client.post(
            f"/api/v1/notes/{note.note_id}/replies",
            json={"body": "Noted", "created_by": {"role": "admin"}},
            headers=tenant_headers,
        )

        assert response.status_code == 201
        [delivery] = await _deliveries(db_session, "note.reply.created")
        assert delivery.payload["data"]["note_id"] == note.note_id
        assert delivery.payload["data"]["orderID"] == 9001

    @pytest.mark.asyncio
    async def test_reply_to_unknown_note(self, test_client, tenant_headers):
        response = await test_client.post(
            "/api/v1/notes/missing/replies",
            json={"body": "Noted", "created_by": {"role": "admin"}},
            headers=tenant_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"]["details"]["reason"] == "note_not_found"


class TestMessages:
    @pytest.mark.asyncio
    async def test_create_and_filter_by_channel(
        self, test_client, db_session, subscription_factory, tenant_headers
    ):
        await subscription_factory(event_types=["message.created"])

        for channel in ("admin_patient", "pharmacist_patient"):
            response = await test_client.post(
                "/api/v1/perch/members/501/messages",
                json={"channel": channel, "body": f"hello via {channel}", "sender": {"role": "admin"}},
                headers=tenant_headers,
            )
            assert response.status_code == 201

        everything = await test_client.get("/api/v1/perch/members/501/messages", headers=tenant_headers)
        filtered = await test_client.get(
            "/api/v1/perch/members/501/messages?channel=admin_patient", headers=tenant_headers
        )

        assert len(everything.json()["messages"]) == 2
        [message] = filtered.json()["messages"]
        assert message["channel"] == "admin_patient"
        assert len(await _deliveries(db_session, "message.created")) == 2

    @pytest.mark.asyncio
    async def test_unknown_channel_is_rejected(self, test_client, tenant_headers):
        response = await test_client.get(
            "/api/v1/perch/members/501/messages?channel=sms", headers=tenant_headers
        )
        assert response.status_code == 422


class TestMemberLink:
    URL = "/api/v1/perch/members/501/link"
    CUSTOMERS_URL = "http://pharmacy.test/api/customers"
    CUSTOMER = {
        "memberEmail": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone": "+44 7700 900000",
        "dob": "1990-12-10",
        "gender": "female",
        "addressLine1": "1 High St",
        "city": "Leeds",
        "postCode": "LS1 1AA",
        "country": "GB",
    }

    @pytest.mark.asyncio
    async def test_link_creates_pharmacy_customer(
        self, test_client, db_session, subscription_factory, pharmacy_http, tenant_headers
    ):
        await subscription_factory(event_types=["member.link.updated"])
        pharmacy_http.routes[self.CUSTOMERS_URL] = HttpResponse(
            201, json.dumps({"success": True, "data": {"customerId": "CUST-9"}})
        )

        response = await test_client.post(self.URL, json=self.CUSTOMER, headers=tenant_headers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "memberID": 501, "customerId": "CUST-9"}

        [call] = pharmacy_http.calls
        assert call["method"] == "POST"
        assert call["url"] == self.CUSTOMERS_URL
        assert call["headers"]["x-api-key"] == "test-pharmacy-key"
        sent = json.loads(call["body"])
        assert sent["email"] == "ada@example.com"
        assert sent["name"] == "Ada Lovelace"

        member = await db_session.get(Member, (TENANT, 501))
        await db_session.refresh(member)
        assert member.pharmacy_patient_ref == "CUST-9"
        assert member.email == "ada@example.com"
        assert len(await _deliveries(db_session, "member.link.updated")) == 1

    @pytest.mark.asyncio
    async def test_relink_keeps_fields_not_sent(
        self, test_client, db_session, member_factory, pharmacy_http, tenant_headers
    ):
        await member_factory(member_id=501, pharmacy_patient_ref="CUST-OLD")
        pharmacy_http.default = HttpResponse(200, json.dumps({"data": {"customerId": "CUST-9"}}))

        await test_client.post(self.URL, json=self.CUSTOMER, headers=tenant_headers)
        relink = {k: v for k, v in self.CUSTOMER.items() if k not in ("first_name", "last_name")}
        response = await test_client.post(
            self.URL, json={**relink, "name": "Ada King"}, headers=tenant_headers
        )

        assert response.status_code == 200
        member = await db_session.get(Member, (TENANT, 501))
        await db_session.refresh(member)
        assert member.first_name == "Ada"
        assert member.pharmacy_patient_ref == "CUST-9"

    @pytest.mark.asyncio
    async def test_missing_customer_fields(self, test_client, db_session, pharmacy_http, tenant_headers):
        body = {k: v for k, v in self.CUSTOMER.items() if k not in ("dob", "city")}

        response = await test_client.post(self.URL, json=body, headers=tenant_headers)

        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert details["reason"] == "missing_customer_fields"
        assert details["missing"] == ["dob", "city"]
        assert pharmacy_http.calls == []
        assert await db_session.get(Member, (TENANT, 501)) is None

    @pytest.mark.asyncio
    async def test_pharmacy_failure_stores_nothing(
        self, test_client, db_session, pharmacy_http, tenant_headers
    ):
        pharmacy_http.default = HttpResponse(500, "boom")

        response = await test_client.post(self.URL, json=self.CUSTOMER, headers=tenant_headers)

        assert response.status_code == 503
        assert await db_session.get(Member, (TENANT, 501)) is None
        assert await _deliveries(db_session) == []

    @pytest.mark.asyncio
    async def test_response_without_customer_id(self, test_client, pharmacy_http, tenant_headers):
        pharmacy_http.default = HttpResponse(201, json.dumps({"success": True, "data": {}}))

        response = await test_client.post(self.URL, json=self.CUSTOMER, headers=tenant_headers)

        assert response.status_code == 503
        assert "customerId" in response.json()["error"]["message"]


class TestCustomerLookup:
    URL = "/api/v1/perch/customers/ada@example.com"

    @pytest.mark.asyncio
    async def test_returns_pharmacy_customer(self, test_client, pharmacy_http, tenant_headers):
        customer = {"success": True, "data": {"customerId": "CUST-9", "email": "ada@example.com"}}
        pharmacy_http.default = HttpResponse(200, json.dumps(customer))

        response = await test_client.get(self.URL, headers=tenant_headers)

        assert response.status_code == 200
        assert response.json() == customer
        [call] = pharmacy_http.calls
        assert call["method"] == "GET"
        assert call["url"] == "http://pharmacy.test/api/customers/ada%40example.com"
        assert call["headers"] == {"x-api-key": "test-pharmacy-key"}

    @pytest.mark.asyncio
    async def test_unknown_customer(self, test_client, pharmacy_http, tenant_headers):
        pharmacy_http.default = HttpResponse(404, '{"success": false}')

        response = await test_client.get(self.URL, headers=tenant_headers)

        assert response.status_code == 404
        assert response.json()["error"]["details"]["reason"] == "customer_not_found"

    @pytest.mark.asyncio
    async def test_invalid_email(self, test_client, pharmacy_http, tenant_headers):
        response = await test_client.get("/api/v1/perch/customers/not-an-email", headers=tenant_headers)

        assert response.status_code == 422
        assert pharmacy_http.calls == []

    @pytest.mark.asyncio
    async def test_requires_bearer(self, test_client, pharmacy_http):
        response = await test_client.get(self.URL)

        assert response.status_code == 401
        assert pharmacy_http.calls == []


class TestTenantNotes:
    URL = "/api/v1/perch/members/notes"

    @pytest.mark.asyncio
    async def test_grouped_by_member_with_replies(
        self, test_client, note_factory, tenant_headers
    ):
        first = await note_factory(member_id=502, order_id=None, scope=NoteScope.PATIENT)
        await note_factory(member_id=501, order_id=None, scope=NoteScope.PATIENT)
        await note_factory(member_id=501, order_id=9001, scope=NoteScope.ORDER)
        await note_factory(member_id=503, order_id=None, scope=NoteScope.PATIENT, tenant_id=OTHER_TENANT)
        await test_client.post(
            f"/api/v1/notes/{first.note_id}/replies",
            json={"body": "Called back", "created_by": {"role": "admin"}},
            headers=tenant_headers,
        )

        response = await test_client.get(self.URL, headers=tenant_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["next_cursor"] is None
        assert [item["memberID"] for item in data["items"]] == [501, 502]
        assert [len(item["notes"]) for item in data["items"]] == [1, 1]
        [reply] = data["items"][1]["notes"][0]["replies"]
        assert reply["body"] == "Called back"

    @pytest.mark.asyncio
    async def test_scope_all_includes_order_notes(self, test_client, note_factory, tenant_headers):
        await note_factory(member_id=501, order_id=None, scope=NoteScope.PATIENT)
        await note_factory(member_id=501, order_id=9001, scope=NoteScope.ORDER)

        response = await test_client.get(self.URL, params={"scope": "all"}, headers=tenant_headers)

        [item] = response.json()["items"]
        assert {n["scope"] for n in item["notes"]} == {"patient", "order"}

    @pytest.mark.asyncio
    async def test_empty_tenant(self, test_client, tenant_headers):
        response = await test_client.get(self.URL, headers=tenant_headers)
        assert response.json() == {"items": [], "next_cursor": None}
