"""
Pytest configuration and fixtures
Shared test setup for all test modules
"""

import json
import re
import pytest
import httpx
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.api.dependencies import get_processor
from app.core.constants import SubscriptionStatus
from app.core.events import notifier
from app.core.timeutils import to_epoch, utcnow
from app.db.base import Base
from app.db.database import get_db, seed_default_plans
from app.db.models.organization import Organization
from app.db.models.super_admin import SuperAdmin
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.services.payment_processor import PaymentProcessorService
from app.services.plan_catalog import plan_catalog

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
async def engine(tmp_path, request):
    """
    File-backed SQLite database per test.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent sessions
    serialize on the write lock the way row locks serialize them on Postgres.
    Tests marked ``foreign_keys`` also get foreign key enforcement.
    """
    enforce_foreign_keys = request.node.get_closest_marker("foreign_keys") is not None
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        if enforce_foreign_keys:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @event.listens_for(test_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session with the default plans seeded"""
    async with session_factory() as session:
        await seed_default_plans(session)
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_shared_state():
    """The plan cache and change listeners are process-wide"""
    plan_catalog.invalidate()
    notifier.clear()
    yield
    plan_catalog.invalidate()
    notifier.clear()


# ==================== Payment processor ====================

class FakeProcessorAPI:
    """In-memory stand-in for the processor's REST API, mounted via httpx.MockTransport"""

    def __init__(self):
        self.requests: List[Tuple[str, str, Dict[str, Any], httpx.Headers]] = []
        self._failures: List[Tuple[str, str, int, str]] = []
        self._counter = 0

    def fail(self, method: str, path_pattern: str, status_code: int = 402, message: str = "Your card was declined.") -> None:
        self._failures.append((method, path_pattern, status_code, message))

    def calls(self, method: str, path_prefix: str) -> List[Dict[str, Any]]:
        return [body for m, path, body, _ in self.requests if m == method and path.startswith(path_prefix)]

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.replace("/v1", "", 1)
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, path, body, request.headers))

        for method, pattern, status_code, message in self._failures:
            if method == request.method and re.match(pattern, path):
                return httpx.Response(status_code, json={"error": {"message": message}})

        if request.method == "POST" and path == "/customers":
            return httpx.Response(200, json={"id": self._next_id("cus")})
        if request.method == "POST" and path == "/checkout/sessions":
            session_id = self._next_id("cs")
            return httpx.Response(200, json={"id": session_id, "url": f"https://checkout.test/{session_id}"})
        if request.method == "POST" and path == "/billing_portal/sessions":
            return httpx.Response(200, json={"url": f"https://portal.test/{self._next_id('bps')}"})
        if request.method == "GET" and path.startswith("/subscriptions/"):
            subscription_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "id": subscription_id,
                "items": {"data": [{"id": "si_1", "price": {"id": "price_current"}}]},
            })
        if path.startswith("/subscriptions/"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], **body})
        if request.method == "POST" and path == "/coupons":
            return httpx.Response(200, json={"id": body.get("id")})
        if request.method == "DELETE" and path.startswith("/coupons/"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "deleted": True})
        if request.method == "POST" and path == "/refunds":
            return httpx.Response(200, json={"id": self._next_id("re"), **body})
        return httpx.Response(404, json={"error": {"message": f"No route for {request.method} {path}"}})


@pytest.fixture
def processor_api() -> FakeProcessorAPI:
    return FakeProcessorAPI()


@pytest.fixture
def processor(processor_api: FakeProcessorAPI) -> PaymentProcessorService:
    return PaymentProcessorService(
        api_key="sk_test",
        base_url="https://processor.test/v1",
        webhook_secret=WEBHOOK_SECRET,
        transport=httpx.MockTransport(processor_api.handler),
    )


# ==================== Data ====================

@pytest.fixture
async def configure_price_ids(db_session: AsyncSession):
    """Attach processor price ids to every paid plan"""
    for plan in await PlanRepository(db_session).list_all(include_hidden=True):
        if plan.monthly_price_cents:
            plan.processor_monthly_price_id = f"price_{plan.name}_monthly"
            plan.processor_annual_price_id = f"price_{plan.name}_annual"
    await db_session.commit()
    plan_catalog.invalidate()


@pytest.fixture
async def organization(db_session: AsyncSession) -> Organization:
    """Create test organization"""
    org = Organization(name="Acme Corp")
    db_session.add(org)
    await db_session.commit()
    return org


@pytest.fixture
def make_organization(db_session: AsyncSession):
    async def _make(name: str = "Globex", processor_customer_id: Optional[str] = None) -> Organization:
        org = Organization(name=name, processor_customer_id=processor_customer_id)
        db_session.add(org)
        await db_session.commit()
        return org
    return _make


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """Create a subscription row on a named plan; extra fields go straight onto the row"""
    async def _make(organization_id: str, plan_name: str = "starter", **fields):
        plan = await PlanRepository(db_session).get_by_name(plan_name)
        now = utcnow()
        defaults: Dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": now - timedelta(days=10),
            "current_period_end": now + timedelta(days=20),
        }
        if plan_name != "free":
            defaults["processor_subscription_id"] = f"sub_{organization_id[:8]}"
            defaults["billing_cycle"] = "monthly"
        defaults.update(fields)
        subscription = await SubscriptionRepository(db_session).create_for_organization(organization_id, plan, **defaults)
        await db_session.commit()
        return subscription
    return _make


@pytest.fixture
def make_super_admin(db_session: AsyncSession):
    async def _make(user_id: str = "admin-1", permissions: Optional[Dict[str, bool]] = None, is_active: bool = True) -> SuperAdmin:
        admin = SuperAdmin(user_id=user_id, permissions=permissions or {}, is_active=is_active)
        db_session.add(admin)
        await db_session.commit()
        return admin
    return _make


def build_processor_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
    created: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Webhook payload in the processor's envelope"""
    return {
        "id": event_id or f"evt_{abs(hash((event_type, json.dumps(obj, sort_keys=True, default=str))))}",
        "type": event_type,
        "created": to_epoch(created or utcnow()),
        "data": {"object": obj},
    }


@pytest.fixture
def processor_event():
    return build_processor_event


# ==================== HTTP ====================

@pytest.fixture
async def client(db_session: AsyncSession, processor: PaymentProcessorService) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create test client with database and processor overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()
