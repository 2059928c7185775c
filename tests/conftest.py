import json
import os
import sys
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import ModuleType, SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.engine = _test_engine
mock_db_module.get_engine = lambda: _test_engine

sys.modules["app.db"] = mock_db_module

# Set environment variables before app.config is imported
WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_API_KEY = "internal-test-key"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["INTERNAL_API_KEY"] = INTERNAL_API_KEY
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

from app.models.billing import Plan, Product  # noqa: E402
from app.models.entitlement import Entitlement, EntitlementStatus  # noqa: E402
from app.schemas.webhook import parse_event  # noqa: E402
from app.services.billing.webhooks import WebhookProcessor  # noqa: E402
from app.services.entitlement_cache import EntitlementCache  # noqa: E402
from app.services.webhook_signature import WebhookSignatureVerifier  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase

PERIOD_START = 1_760_000_000
PERIOD_END = PERIOD_START + 30 * 24 * 60 * 60


def _clear_tables() -> None:
    with _test_engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    _clear_tables()


@pytest.fixture()
def reset_db():
    return _clear_tables


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


# ============ Cache Fixtures ============


class FakeRedis:
    """Dict-backed stand-in for the redis-py calls the cache makes."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def ping(self):
        return True

    def close(self):
        pass


class BrokenRedis:
    def _fail(self, *args, **kwargs):
        raise RedisConnectionError("redis is down")

    get = setex = delete = ping = _fail


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis):
    return EntitlementCache(fake_redis, ttl_seconds=60)


@pytest.fixture()
def broken_cache():
    return EntitlementCache(BrokenRedis(), ttl_seconds=60)


# ============ Catalog Fixtures ============


@pytest.fixture()
def product(db_session):
    item = Product(name=f"Product {uuid.uuid4().hex[:8]}", is_active=True)
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture()
def other_product(db_session):
    item = Product(name=f"Other {uuid.uuid4().hex[:8]}", is_active=True)
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


def _make_plan(db_session, product_id, **overrides):
    values = dict(
        product_id=product_id,
        name="Basic",
        external_price_id=f"price_{uuid.uuid4().hex[:10]}",
        usage_limit=100,
        soft_limit_percent=Decimal("0.1"),
        feature_flags={"export": True, "api": False},
        price_amount=1999,
        currency="usd",
        is_active=True,
    )
    values.update(overrides)
    plan = Plan(**values)
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def plan(db_session, product):
    return _make_plan(db_session, product.id, external_price_id="price_basic")


@pytest.fixture()
def pro_plan(db_session, product):
    return _make_plan(
        db_session,
        product.id,
        name="Pro",
        external_price_id="price_pro",
        usage_limit=1000,
        feature_flags={"export": True, "api": True},
    )


@pytest.fixture()
def other_plan(db_session, other_product):
    return _make_plan(
        db_session, other_product.id, name="Other", external_price_id="price_other"
    )


@pytest.fixture()
def make_entitlement(db_session):
    def _make(user_id, plan, **overrides):
        values = dict(
            user_id=user_id,
            product_id=plan.product_id,
            plan_id=plan.id,
            status=EntitlementStatus.active,
            usage_count=0,
        )
        values.update(overrides)
        entitlement = Entitlement(**values)
        db_session.add(entitlement)
        db_session.commit()
        db_session.refresh(entitlement)
        return entitlement

    return _make


# ============ Webhook Fixtures ============


def _checkout_event(
    event_id,
    *,
    user_id="user_1",
    customer="cus_1",
    subscription="sub_1",
    email="buyer@example.com",
    tenant_id=None,
):
    metadata = {"user_id": user_id} if user_id else {}
    if tenant_id:
        metadata["tenant_id"] = tenant_id
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": PERIOD_START,
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "customer": customer,
                "subscription": subscription,
                "customer_details": {"email": email},
                "metadata": metadata,
            }
        },
    }


def _subscription_event(
    event_id,
    *,
    sub_id="sub_1",
    customer="cus_1",
    status="active",
    price_id="price_basic",
    user_id="user_1",
    period_start=PERIOD_START,
    period_end=PERIOD_END,
    event_type="customer.subscription.updated",
    cancel_at_period_end=False,
    canceled_at=None,
    ended_at=None,
):
    items = {"data": [{"price": {"id": price_id}}]} if price_id else {"data": []}
    return {
        "id": event_id,
        "type": event_type,
        "created": PERIOD_START,
        "data": {
            "object": {
                "id": sub_id,
                "customer": customer,
                "status": status,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "cancel_at_period_end": cancel_at_period_end,
                "canceled_at": canceled_at,
                "ended_at": ended_at,
                "items": items,
                "metadata": {"user_id": user_id} if user_id else {},
            }
        },
    }


def _invoice_event(
    event_id,
    *,
    invoice_id="in_1",
    customer="cus_1",
    subscription="sub_1",
    period_start=PERIOD_START,
    period_end=PERIOD_START,
    line_period=(PERIOD_START, PERIOD_END),
    amount_paid=1999,
    paid_at=PERIOD_START + 60,
):
    # First invoice of a subscription: the invoice period is empty and the
    # line item carries the service period being paid for.
    invoice = {
        "id": invoice_id,
        "customer": customer,
        "subscription": subscription,
        "payment_intent": f"pi_{invoice_id}",
        "amount_paid": amount_paid,
        "currency": "usd",
        "period_start": period_start,
        "period_end": period_end,
        "status_transitions": {"paid_at": paid_at},
    }
    if line_period is not None:
        start, end = line_period
        invoice["lines"] = {"data": [{"period": {"start": start, "end": end}}]}
    return {
        "id": event_id,
        "type": "invoice.paid",
        "created": PERIOD_START,
        "data": {"object": invoice},
    }


@pytest.fixture()
def events():
    return SimpleNamespace(
        checkout=_checkout_event,
        subscription=_subscription_event,
        invoice=_invoice_event,
    )


@pytest.fixture()
def process(db_session, cache):
    """Run a raw event body through a processor bound to the test session."""

    def _process(body, **kwargs):
        processor = WebhookProcessor(db_session, cache, **kwargs)
        return processor.process(parse_event(body))

    return _process


@pytest.fixture()
def verifier():
    return WebhookSignatureVerifier(WEBHOOK_SECRET, tolerance_seconds=300)


@pytest.fixture()
def signed_post(client, verifier):
    """POST a body to the webhook endpoint with a valid signature."""

    def _post(body, *, header=None, path="/webhooks/stripe"):
        raw = json.dumps(body).encode("utf-8")
        signature = header if header is not None else verifier.sign(raw)
        return client.post(
            path,
            content=raw,
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )

    return _post


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, cache):
    """Create a test client with database and cache dependency overrides."""
    from app.api.deps import get_cache, get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(user_id: str, expires_in: timedelta = timedelta(minutes=15)) -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "typ": "access",
        "exp": int((now + expires_in).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture()
def user_id():
    return f"user_{uuid.uuid4().hex[:8]}"


@pytest.fixture()
def auth_headers(user_id):
    return {"Authorization": f"Bearer {_create_access_token(user_id)}"}


@pytest.fixture()
def expired_auth_headers(user_id):
    token = _create_access_token(user_id, expires_in=timedelta(minutes=-5))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def internal_headers():
    return {"X-Internal-Api-Key": INTERNAL_API_KEY}
