from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from shared.utils import Settings, create_access_token, get_password_hash
from shared.security_config import limiter
from services.api_gateway.main import create_app
from services.auth.models import UserDB, UserSessionDB
from services.payments.models import PaymentDB
from services.payments.service import PaymentService
from services.products.models import ProductDB, product_document
from fakes import FakeGateway, InMemoryTransactionStore

PASSWORD = "Secret1!"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        MONGO_DB="inventory_test",
        SECRET_KEY="test-secret-key",
        ENVIRONMENT="test",
        KHALTI_SECRET_KEY="test-khalti-key",
        FRONTEND_URL="http://localhost:5173",
        SMTP_USER="mailer@trendmart.com",
        SMTP_PASS="smtp-pass",
    )


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def db(mongo_client, settings):
    return mongo_client[settings.MONGO_DB]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store(mongo_client, db) -> InMemoryTransactionStore:
    return InMemoryTransactionStore(mongo_client, db)


@pytest.fixture
def payment_service(store, gateway, settings) -> PaymentService:
    return PaymentService(store, gateway, settings)


@pytest.fixture
def app(settings, db, payment_service):
    limiter.enabled = False
    app = create_app(settings)
    app.mongodb = db
    app.state.payment_service = payment_service
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sent_otps(monkeypatch):
    """Captures outgoing OTP emails instead of talking to SMTP."""
    sent = []

    async def fake_send(settings, to, otp):
        sent.append((to, otp))

    monkeypatch.setattr("services.auth.main.send_otp_email", fake_send)
    monkeypatch.setattr("services.users.main.send_otp_email", fake_send)
    return sent


async def make_user(db, settings, email, name="Test User", is_admin=False, verified=True):
    user_db = UserDB(
        name=name,
        email=email,
        password_hash=get_password_hash(PASSWORD),
        role="admin" if is_admin else "user",
        is_admin=is_admin,
        is_email_verified=verified,
        phone="9800000000",
    )
    result = await db.users.insert_one(user_db.dict(by_alias=True, exclude={"id"}))
    session = await db.user_sessions.insert_one(
        UserSessionDB(user_id=str(result.inserted_id)).dict(by_alias=True, exclude={"id"})
    )
    token = create_access_token(
        {"sub": str(result.inserted_id), "sid": str(session.inserted_id), "role": user_db.role},
        settings,
    )
    user = await db.users.find_one({"_id": result.inserted_id})
    return user, {"Authorization": f"Bearer {token}"}


async def make_product(db, name="Widget", quantity=5, price="12.50", owner_id="seed"):
    product = ProductDB(user_id=owner_id, name=name, quantity=quantity, price=Decimal(price))
    result = await db.products.insert_one(product_document(product))
    return await db.products.find_one({"_id": result.inserted_id})


async def make_payment(db, user_id, pidx="pidx-seeded", status="Initiated", items=None, **overrides):
    payment = PaymentDB(
        user_id=user_id,
        order_id=overrides.pop("order_id", "order-1"),
        order_name=overrides.pop("order_name", "Widget order"),
        amount=overrides.pop("amount", 2500),
        pidx=pidx,
        status=status,
        purchase_items=items or [],
        raw=overrides.pop("raw", {"pidx": pidx}),
    )
    doc = payment.dict(by_alias=True, exclude={"id"})
    doc.update(overrides)
    result = await db.payments.insert_one(doc)
    return await db.payments.find_one({"_id": result.inserted_id})


@pytest_asyncio.fixture
async def customer(db, settings):
    return await make_user(db, settings, "customer@trendmart.com", name="Sita Sharma")


@pytest_asyncio.fixture
async def admin(db, settings):
    return await make_user(db, settings, "admin@trendmart.com", name="Admin", is_admin=True)


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 5, 1, 12, 0, 0)
