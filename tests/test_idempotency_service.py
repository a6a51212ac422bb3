"""
בדיקות ל-IdempotencyService: Command Ledger

מכסה:
- ריצה ראשונה שומרת תוצאה באותו commit של הכתיבות
- replay עם אותו גוף מחזיר תוצאה זהה בלי להריץ שוב
- אותו מפתח עם גוף אחר → Conflict
- בלי מפתח: אין רישום, ה-handler רץ בכל פעם
- כשלון ב-handler מגלגל אחורה הכל
- מרוץ בין שתי הגשות ראשונות של אותו מפתח
"""
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.exceptions import IdempotencyConflictError
from app.db.models.idempotency_key import IdempotencyKey
from app.db.models.member import Member
from app.domain.services.idempotency_service import (
    IdempotencyService,
    request_hash,
)

TENANT = "tenant-a"
ENDPOINT = "POST /v1/perch/members/501/notes"


def _counting_handler(db, result=None, member_id=501):
    calls = {"count": 0}

    async def handler():
        calls["count"] += 1
        db.add(Member(tenant_id=TENANT, member_id=member_id + calls["count"]))
        await db.flush()
        return result if result is not None else {"note_id": f"n-{calls['count']}", "ok": True}

    return handler, calls


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestRequestHash:
    @pytest.mark.unit
    def test_key_order_does_not_change_hash(self):
        assert request_hash({"a": 1, "b": [1, 2]}) == request_hash({"b": [1, 2], "a": 1})

    @pytest.mark.unit
    def test_different_values_change_hash(self):
        assert request_hash({"body": "x"}) != request_hash({"body": "y"})

    @pytest.mark.unit
    def test_string_is_hashed_raw(self):
        import hashlib
        assert request_hash("raw") == hashlib.sha256(b"raw").hexdigest()


class TestIdempotencyService:
    @pytest.mark.asyncio
    async def test_first_execution_records_result(self, db_session):
        handler, calls = _counting_handler(db_session)
        outcome = await IdempotencyService(db_session).execute(
            TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler
        )

        assert outcome.replayed is False
        assert outcome.result == {"note_id": "n-1", "ok": True}
        assert calls["count"] == 1

        record = (await db_session.execute(select(IdempotencyKey))).scalar_one()
        assert record.tenant_id == TENANT
        assert record.endpoint == ENDPOINT
        assert record.request_hash == request_hash({"body": "hello"})
        assert record.response_body == {"note_id": "n-1", "ok": True}
        assert await _count(db_session, Member) == 1

    @pytest.mark.asyncio
    async def test_replay_returns_identical_result_without_running_handler(self, db_session):
        service = IdempotencyService(db_session)
        handler, calls = _counting_handler(db_session)

        first = await service.execute(TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler)
        second = await service.execute(TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler)

        assert second.replayed is True
        assert second.result == first.result
        assert calls["count"] == 1
        assert await _count(db_session, Member) == 1

    @pytest.mark.asyncio
    async def test_same_key_different_body_conflicts(self, db_session):
        service = IdempotencyService(db_session)
        handler, calls = _counting_handler(db_session)

        await service.execute(TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler)
        with pytest.raises(IdempotencyConflictError) as exc_info:
            await service.execute(TENANT, ENDPOINT, "key-1", {"body": "changed"}, handler)

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["reason"] == "idempotency_key_reused"
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_key_is_scoped_by_tenant_and_endpoint(self, db_session):
        service = IdempotencyService(db_session)
        handler, calls = _counting_handler(db_session)

        await service.execute(TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler)
        other_tenant = await service.execute("tenant-b", ENDPOINT, "key-1", {"body": "other"}, handler)
        other_endpoint = await service.execute(
            TENANT, "POST /v1/perch/members/502/notes", "key-1", {"body": "other"}, handler
        )

        assert other_tenant.replayed is False
        assert other_endpoint.replayed is False
        assert calls["count"] == 3
        assert await _count(db_session, IdempotencyKey) == 3

    @pytest.mark.asyncio
    async def test_without_key_handler_runs_every_time(self, db_session):
        service = IdempotencyService(db_session)
        handler, calls = _counting_handler(db_session)

        first = await service.execute(TENANT, ENDPOINT, None, {"body": "hello"}, handler)
        second = await service.execute(TENANT, ENDPOINT, None, {"body": "hello"}, handler)

        assert first.replayed is False and second.replayed is False
        assert calls["count"] == 2
        assert await _count(db_session, IdempotencyKey) == 0
        assert await _count(db_session, Member) == 2

    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_writes_and_records_nothing(self, db_session):
        async def failing_handler():
            db_session.add(Member(tenant_id=TENANT, member_id=777))
            await db_session.flush()
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await IdempotencyService(db_session).execute(
                TENANT, ENDPOINT, "key-1", {"body": "hello"}, failing_handler
            )

        assert await _count(db_session, Member) == 0
        assert await _count(db_session, IdempotencyKey) == 0

    @pytest.mark.asyncio
    async def test_result_is_stored_in_json_form(self, db_session):
        from datetime import datetime

        async def handler():
            return {"at": datetime(2024, 1, 2, 3, 4, 5), "n": 1}

        outcome = await IdempotencyService(db_session).execute(
            TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler
        )
        replay = await IdempotencyService(db_session).execute(
            TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler
        )

        assert outcome.result == {"at": "2024-01-02 03:04:05", "n": 1}
        assert replay.result == outcome.result


class TestConcurrentFirstSubmission:
    @pytest.mark.asyncio
    async def test_losing_insert_replays_winner_result(self, db_session):
        """הלוקאפ הראשון לא רואה את הרשומה, ה-insert נכשל על unique ומוחזרת תוצאת המנצח"""
        db_session.add(IdempotencyKey(
            tenant_id=TENANT,
            endpoint=ENDPOINT,
            idempotency_key="key-1",
            request_hash=request_hash({"body": "hello"}),
            response_body={"note_id": "winner"},
        ))
        await db_session.commit()

        service = IdempotencyService(db_session)
        real_get_record = service._get_record
        lookups = {"count": 0}

        async def racing_get_record(*args):
            lookups["count"] += 1
            if lookups["count"] == 1:
                return None
            return await real_get_record(*args)

        handler, calls = _counting_handler(db_session)
        with patch.object(service, "_get_record", side_effect=racing_get_record):
            outcome = await service.execute(TENANT, ENDPOINT, "key-1", {"body": "hello"}, handler)

        assert outcome.replayed is True
        assert outcome.result == {"note_id": "winner"}
        assert calls["count"] == 1
        # הכתיבות של המפסיד בוטלו
        assert await _count(db_session, Member) == 0

    @pytest.mark.asyncio
    async def test_losing_insert_with_different_body_conflicts(self, db_session):
        db_session.add(IdempotencyKey(
            tenant_id=TENANT,
            endpoint=ENDPOINT,
            idempotency_key="key-1",
            request_hash=request_hash({"body": "first"}),
            response_body={"note_id": "winner"},
        ))
        await db_session.commit()

        service = IdempotencyService(db_session)
        real_get_record = service._get_record
        lookups = {"count": 0}

        async def racing_get_record(*args):
            lookups["count"] += 1
            if lookups["count"] == 1:
                return None
            return await real_get_record(*args)

        handler, _ = _counting_handler(db_session)
        with patch.object(service, "_get_record", side_effect=racing_get_record):
            with pytest.raises(IdempotencyConflictError):
                await service.execute(TENANT, ENDPOINT, "key-1", {"body": "second"}, handler)
