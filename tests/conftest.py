"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async)
- Fake outbound HTTP client and controllable clock
- Test data factories (subscriptions, members, orders, notes)
"""
# הגדרת סודות לפני ייבוא app, הולידטור דורש JWT_SHARED_SECRET כש-DEBUG=False
import os
os.environ.setdefault("JWT_SHARED_SECRET", "test-jwt-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("INTERNAL_WORKER_KEY", "test-worker-key")
os.environ.setdefault("PHARMACY_API_BASE_URL", "http://pharmacy.test")
os.environ.setdefault("PHARMACY_API_KEY", "test-pharmacy-key")

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import jwt as pyjwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.pharmacy import get_pharmacy_client
from app.core.config import settings
from app.db.database import Base, get_db, utcnow
from app.db.models.member import Member
from app.db.models.note import Note, NoteScope, NoteStatus, NoteType
from app.db.models.order import Order
from app.db.models.webhook_subscription import SubscriberSystem, WebhookSubscription
from app.domain.services.http_client import HttpResponse
from app.domain.services.pharmacy_client import PharmacyClient
from app.domain.services.webhook_dispatcher import DispatcherConfig
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_maker(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake External Services
# ============================================================================

class FakeHttpClient:
    """
    HttpClient שמקליט כל קריאה ומחזיר תשובות מתוכנתות.

    ``routes`` ממפה url לתשובה קבועה. אחרת ``responses`` נצרכות לפי הסדר;
    כשנגמרות, ``default`` חוזר.
    פריט שהוא Exception נזרק במקום להחזיר תשובה.
    """

    def __init__(self, responses=None, default: HttpResponse | None = None, routes=None):
        self.responses = list(responses or [])
        self.routes = dict(routes or {})
        self.default = default or HttpResponse(200, "{}")
        self.calls: list[dict] = []

    async def post(self, url: str, headers: dict[str, str], body: str) -> HttpResponse:
        return self._respond({"method": "POST", "url": url, "headers": dict(headers), "body": body})

    async def get(self, url: str, headers: dict[str, str]) -> HttpResponse:
        return self._respond({"method": "GET", "url": url, "headers": dict(headers), "body": ""})

    def _respond(self, call: dict) -> HttpResponse:
        url = call["url"]
        self.calls.append(call)
        if url in self.routes:
            response = self.routes[url]
        else:
            response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


class FrozenClock:
    """שעון ידני לבדיקות backoff ו-lease"""

    def __init__(self, start: datetime | None = None):
        # מתחיל דקה קדימה כדי ששורות שנוצרו עכשיו כבר יהיו due
        self.now = start or (utcnow() + timedelta(minutes=1))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def fake_http():
    return FakeHttpClient()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def dispatcher_config():
    return DispatcherConfig(
        max_attempts=10,
        lease_seconds=30,
        request_timeout_seconds=5.0,
        pharmacy_only_admin_notes=True,
        pharmacy_api_base_url="http://pharmacy.test",
        pharmacy_api_key="test-pharmacy-key",
    )


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating webhook subscriptions"""
    async def _create_subscription(
        tenant_id: str = TENANT,
        event_types: list[str] | None = None,
        url: str = "https://subscriber.test/hook",
        secret: str = "whsec_test",
        enabled: bool = True,
        subscriber_system: SubscriberSystem = SubscriberSystem.GENERIC,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            subscription_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            url=url,
            secret=secret,
            event_types=event_types if event_types is not None else ["note.created"],
            enabled=enabled,
            subscriber_system=subscriber_system.value,
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _create_subscription


@pytest.fixture
def member_factory(db_session: AsyncSession):
    """Factory for creating members"""
    async def _create_member(
        member_id: int = 501,
        tenant_id: str = TENANT,
        pharmacy_patient_ref: str | None = None,
    ) -> Member:
        member = Member(
            tenant_id=tenant_id,
            member_id=member_id,
            pharmacy_patient_ref=pharmacy_patient_ref,
        )
        db_session.add(member)
        await db_session.commit()
        return member

    return _create_member


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating orders"""
    async def _create_order(
        order_id: int = 9001,
        member_id: int | None = 501,
        pharmacy_order_ref: str | None = "PH-1001",
        status: str | None = "PAYMENT_RECEIVED",
        tenant_id: str = TENANT,
    ) -> Order:
        order = Order(
            tenant_id=tenant_id,
            order_id=order_id,
            member_id=member_id,
            pharmacy_order_ref=pharmacy_order_ref,
            status=status,
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _create_order


@pytest.fixture
def note_factory(db_session: AsyncSession):
    """Factory for creating notes"""
    async def _create_note(
        member_id: int = 501,
        order_id: int | None = 9001,
        note_type: NoteType = NoteType.ADMIN_NOTE,
        body: str = "Please call the patient before dispatch",
        scope: NoteScope = NoteScope.ORDER,
        created_by_role: str = "admin",
        created_by_user_id: str | None = "u-17",
        created_by_display_name: str | None = "Dana Admin",
        external_note_ref: str | None = None,
        tenant_id: str = TENANT,
    ) -> Note:
        note = Note(
            note_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            scope=scope.value,
            member_id=member_id,
            order_id=order_id,
            note_type=note_type.value,
            body=body,
            status=NoteStatus.OPEN.value,
            created_by_role=created_by_role,
            created_by_user_id=created_by_user_id,
            created_by_display_name=created_by_display_name,
            external_note_ref=external_note_ref,
        )
        db_session.add(note)
        await db_session.commit()
        return note

    return _create_note


def bearer_headers(tenant_id: str | None = TENANT, **claims) -> dict[str, str]:
    """Authorization header עם JWT חתום; tenant_id=None מייצר טוקן בלי claim של tenant"""
    payload = {"sub": "perch-test", "exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    if tenant_id is not None:
        payload["tenant_id"] = tenant_id
    token = pyjwt.encode(payload, settings.JWT_SHARED_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tenant_headers():
    return bearer_headers(TENANT)


@pytest.fixture
def pharmacy_http():
    """FakeHttpClient מאחורי PharmacyClient של ה-routes (member link, customer lookup, order create)"""
    http = FakeHttpClient()
    client = PharmacyClient("http://pharmacy.test", "test-pharmacy-key", http_client=http)
    app.dependency_overrides[get_pharmacy_client] = lambda: client
    yield http
    app.dependency_overrides.pop(get_pharmacy_client, None)
