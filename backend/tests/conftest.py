"""
Centralized Test Configuration.
"""

import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.clock import utcnow
from backend.app.core.jwt import create_access_token
from backend.app.core.redis_client import get_redis
import backend.app.core.redis_client as redis_client_module
import backend.app.db.session as session_module
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.models.catalog import Province, Place
from backend.app.models.enums import UserRole
from backend.app.models.guide import Guide
from backend.app.models.user import User
from backend.app.schemas.trip import TripCreate
from backend.app.services.call_sessions import CallSessionService
from backend.app.services.call_timers import CallTimeoutScheduler
from backend.app.services.directory import Directory
from backend.app.services.outbox import OutboxDispatcher
from backend.app.services.payments import PaymentConfirmationHandler
from backend.app.services.realtime import RealtimeEmitter

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.published = []
        self.fail_publish = False
        self._closed = False

    async def ping(self):
        return not self._closed

    async def publish(self, channel, message):
        if self.fail_publish or self._closed:
            raise ConnectionError("Redis unavailable")
        self.published.append((channel, json.loads(message)))
        return 1

    async def flushdb(self):
        self.store = {}
        self.published = []
        self.fail_publish = False

    async def aclose(self):
        self._closed = True
        self.store = {}

    def messages_for(self, trip_id):
        return [message for channel, message in self.published if channel == f"trip:{trip_id}"]


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()

@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.
    Background work (outbox dispatch, call timeouts) resolves the session
    factory and Redis client from their modules, so both are patched there.
    """
    original_client = redis_client_module.redis_client
    original_factory = session_module.AsyncSessionLocal
    redis_client_module.redis_client = redis_client_session
    session_module.AsyncSessionLocal = TestingSessionLocal

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client
    session_module.AsyncSessionLocal = original_factory

@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def redis_mock(redis_client_session):
    return redis_client_session


@pytest.fixture
def timeout_calls():
    """Call ids passed to the timeout callback."""
    return []


@pytest.fixture
def timers(timeout_calls):
    """Call timers on a scheduler that is never started: jobs stay pending."""
    async def on_timeout(call_id):
        timeout_calls.append(call_id)

    scheduler = AsyncIOScheduler(timezone=pytz.utc)
    return CallTimeoutScheduler(on_timeout=on_timeout, scheduler=scheduler)


@pytest.fixture
def dispatcher(redis_client_session):
    return OutboxDispatcher(TestingSessionLocal, RealtimeEmitter(redis_client_session))


@pytest.fixture
def orchestrator(db_session, timers, dispatcher):
    return TripOrchestrator(
        db_session,
        calls=CallSessionService(db_session, timers),
        directory=Directory(db_session),
        dispatcher=dispatcher,
    )


@pytest.fixture
async def seed(db_session):
    """A province with three places, a tourist, two guides and an admin."""
    province = Province(name="Cairo")
    other_province = Province(name="Luxor")
    db_session.add_all([province, other_province])
    await db_session.flush()

    museum = Place(name="Egyptian Museum", province_id=province.id, ticket_price=20.0, lat=30.0478, lng=31.2336)
    bazaar = Place(name="Khan el-Khalili", province_id=province.id, ticket_price=0.0, lat=30.0477, lng=31.2622)
    citadel = Place(name="Cairo Citadel", province_id=province.id, ticket_price=15.0, lat=30.0299, lng=31.2611)
    db_session.add_all([museum, bazaar, citadel])

    tourist = User(username="sara", email="sara@example.com", role=UserRole.TOURIST)
    other_tourist = User(username="li", email="li@example.com", role=UserRole.TOURIST)
    guide_user = User(username="amira", email="amira@example.com", role=UserRole.GUIDE)
    second_guide_user = User(username="omar", email="omar@example.com", role=UserRole.GUIDE)
    admin = User(username="admin", email="admin@example.com", role=UserRole.ADMIN)
    db_session.add_all([tourist, other_tourist, guide_user, second_guide_user, admin])
    await db_session.flush()

    guide = Guide(
        user_id=guide_user.id, province_id=province.id, languages=["english", "arabic"],
        price_per_hour=25.0, rating=4.8, lat=30.045, lng=31.24,
    )
    second_guide = Guide(
        user_id=second_guide_user.id, province_id=other_province.id, extra_province_ids=[province.id],
        languages=["french"], price_per_hour=20.0, rating=4.9, lat=30.03, lng=31.25,
    )
    db_session.add_all([guide, second_guide])
    await db_session.commit()
    # Detach so a rollback inside a test cannot expire the seed rows
    db_session.expunge_all()

    return SimpleNamespace(
        province=province, other_province=other_province,
        museum=museum, bazaar=bazaar, citadel=citadel,
        tourist=tourist, other_tourist=other_tourist,
        guide_user=guide_user, second_guide_user=second_guide_user, admin=admin,
        guide=guide, second_guide=second_guide,
    )


@pytest.fixture
def trip_payload(seed):
    """Factory for a valid TripCreate starting ``days_ahead`` days from now."""
    def _payload(days_ahead=3, **overrides):
        data = {
            "start_at": utcnow() + timedelta(days=days_ahead),
            "province_id": seed.province.id,
            "itinerary": [
                {"place_id": seed.museum.id, "visit_duration_minutes": 90, "ticket_required": True},
                {"place_id": seed.bazaar.id, "visit_duration_minutes": 60},
            ],
            "meeting_point": {"lat": 30.044, "lng": 31.235},
            "meeting_address": "Tahrir Square",
        }
        data.update(overrides)
        return TripCreate(**data)
    return _payload


@pytest.fixture
def new_trip(orchestrator, seed, trip_payload):
    """Factory creating a trip for the seeded tourist."""
    async def _create(**overrides):
        result = await orchestrator.create_trip(seed.tourist.id, trip_payload(**overrides))
        return result["trip"]
    return _create


@pytest.fixture
def negotiated_trip(orchestrator, seed, new_trip):
    """Factory driving a trip to pending_confirmation with a negotiated price."""
    async def _negotiate(price=100.0, **overrides):
        trip = await new_trip(**overrides)
        await orchestrator.select_guide(trip.id, seed.tourist.id, seed.guide.id)
        started = await orchestrator.initiate_call(trip.id, seed.tourist.id)
        return await orchestrator.end_call(started["call"].id, seed.tourist.id, negotiated_price=price)
    return _negotiate


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token({"sub": user.username, "user_id": user.id, "role": user.role.value})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def checkout_event():
    """Factory for a checkout session event body."""
    def _event(trip_id, payment_status="paid", event_id="evt_test_1", session_id="cs_test_1",
               event_type="checkout.session.completed"):
        metadata = {"trip_id": str(trip_id)} if trip_id is not None else {}
        return {
            "id": event_id,
            "type": event_type,
            "data": {"object": {
                "id": session_id,
                "payment_intent": "pi_test_1",
                "payment_status": payment_status,
                "amount_total": 12000,
                "metadata": metadata,
            }},
        }
    return _event


@pytest.fixture
def confirm_payment(db_session, dispatcher, checkout_event):
    """Deliver a paid checkout event for a trip through the webhook handler."""
    async def _confirm(trip_id, **event_overrides):
        handler = PaymentConfirmationHandler(db_session, dispatcher)
        return await handler.handle_event(checkout_event(trip_id, **event_overrides))
    return _confirm
