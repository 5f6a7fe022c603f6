"""Shared pytest fixtures for test suite"""
import json
import sys
from pathlib import Path
from typing import Generator, Union

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from loyalty_processor.core.config import Settings
from loyalty_processor.core.security import SIGNATURE_HEADER, generate_signature
from loyalty_processor.db.resources import Resources
from loyalty_processor.db.session import Database
from loyalty_processor.main import create_app
from loyalty_processor.models import Base
from loyalty_processor.services.loyalty_service import LoyaltyService
from loyalty_processor.tasks.payment_worker import PaymentWorkerPool

TEST_WEBHOOK_SECRET = "test-webhook-secret-0123456789"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(scope="function")
def settings() -> Settings:
    """Test settings: retries are due immediately, no rate limit pressure"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        REDIS_URL="redis://localhost:6379/15",
        WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        JOB_BACKOFF_DELAY_SECONDS=0.0,
        WORKER_RATE_LIMIT_MAX=1000,
        WORKER_IN_PROCESS=False,
        OTEL_EXPORTER_OTLP_ENDPOINT="",
    )


@pytest.fixture(scope="function")
def database() -> Generator[Database, None, None]:
    """Fresh SQLite in-memory schema for each test"""
    Base.metadata.create_all(bind=test_engine)
    try:
        yield Database(engine=test_engine)
    finally:
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(database: Database) -> Generator[Session, None, None]:
    session = database.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def fake_redis():
    """Redis client backed by fakeredis"""
    client = fakeredis.FakeRedis(decode_responses=True)
    client.flushall()
    yield client
    client.flushall()


@pytest.fixture(scope="function")
def resources(settings: Settings, database: Database, fake_redis) -> Resources:
    return Resources.from_clients(settings, database, fake_redis)


@pytest.fixture(scope="function")
def queue(resources: Resources):
    return resources.queue


@pytest.fixture(scope="function")
def loyalty() -> LoyaltyService:
    return LoyaltyService(points_per_unit=1)


@pytest.fixture(scope="function")
def pool(resources: Resources, loyalty: LoyaltyService) -> PaymentWorkerPool:
    """Worker pool wired to the test database and fake Redis"""
    return PaymentWorkerPool(
        queue=resources.queue,
        session_factory=resources.database.session,
        loyalty=loyalty,
        rate_limiter=resources.rate_limiter,
        concurrency=1,
        poll_timeout=0,
        maintenance_interval=60,
        shutdown_grace=2,
    )


@pytest.fixture(scope="function")
def client(resources: Resources) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and fake Redis"""
    app = create_app(resources=resources)
    with TestClient(app) as test_client:
        yield test_client


def make_payment(
    event_id: str = "evt_test_001",
    user_id: str = "user-alice",
    amount: Union[int, float] = 10000,
    **overrides
) -> dict:
    payload = {
        "eventId": event_id,
        "type": "payment.succeeded",
        "userId": user_id,
        "amount": amount,
        "currency": "USD",
        "timestamp": "2024-01-15T10:30:00Z",
    }
    payload.update(overrides)
    return payload


def sign(raw_body: bytes, secret: str = TEST_WEBHOOK_SECRET) -> dict:
    return {SIGNATURE_HEADER: generate_signature(raw_body, secret), "Content-Type": "application/json"}


@pytest.fixture(scope="function")
def post_webhook(client: TestClient):
    """POST a payload to the webhook endpoint with a valid signature"""
    def _post(payload: dict, secret: str = TEST_WEBHOOK_SECRET):
        raw = json.dumps(payload).encode("utf-8")
        return client.post("/webhooks/payment", content=raw, headers=sign(raw, secret))
    return _post
