import os

# Must be set before restaurant_api.database builds its engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("GATEWAY_SIGNATURE_SECRET", "")
os.environ.setdefault("GATEWAY_PRIVATE_KEY", "")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import restaurant_api.models  # noqa: E402,F401
from restaurant_api.database import Base  # noqa: E402
from restaurant_api.models.catalog import DiningTable, Product, User  # noqa: E402
from restaurant_api.schemas.order import OrderCreate  # noqa: E402
from restaurant_api.services import order_service  # noqa: E402
from restaurant_api.services.gateway import PaymentLink  # noqa: E402


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def catalog(db):
    """Client 1, tables 5 and 6, and three products (the last one unavailable)."""
    db.add_all(
        [
            User(id=1, name="Ana", role="client"),
            DiningTable(id=5, number=5),
            DiningTable(id=6, number=6),
            Product(id=1, name="Bandeja paisa", price=Decimal("10.00"), available=True),
            Product(id=2, name="Limonada", price=Decimal("3.35"), available=True),
            Product(id=3, name="Sancocho", price=Decimal("12.50"), available=False),
        ]
    )
    await db.commit()


@pytest.fixture
def make_order(db, catalog):
    async def _make(**overrides):
        data = {"table_id": 5, "items": [{"product_id": 1, "quantity": 2}]}
        data.update(overrides)
        return await order_service.create_order(db, OrderCreate.model_validate(data))

    return _make


class FakeGateway:
    """Stands in for PaymentGateway; records calls and returns a fixed link."""

    def __init__(self, reference: str = "LINK-test-1") -> None:
        self.reference = reference
        self.calls: list[tuple[int, Decimal, str]] = []

    async def create_payment_link(self, order_id: int, amount: Decimal, currency: str) -> PaymentLink:
        self.calls.append((order_id, amount, currency))
        return PaymentLink(
            reference=self.reference,
            checkout_url=f"https://checkout.test/l/{self.reference}",
            amount=amount,
            currency=currency,
            raw={"data": {"id": self.reference}},
        )


@pytest.fixture
def fake_gateway():
    return FakeGateway()
