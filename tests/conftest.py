"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres needed),
a seeded catalog, and an in-memory payment gateway.
"""
from __future__ import annotations

import os

# Configure test env before any boxoffice import (settings are cached)
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret-32chars-xxxxx"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("REDIS_URL", None)

from dataclasses import replace  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import AsyncGenerator, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from boxoffice.models import (  # noqa: E402
    Base,
    Inventory,
    Order,
    OrderItem,
    OrderStatus,
    Performance,
    TicketType,
    TicketVariant,
    User,
    VariantKind,
)
from boxoffice.services.payments import (  # noqa: E402
    CheckoutSession,
    ProviderCharge,
    ProviderPaymentIntent,
    ProviderSession,
)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
CUSTOMER_EMAIL = "ana@example.com"


@pytest_asyncio.fixture(scope="function")
async def db_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(TEST_DB_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_factory) -> AsyncGenerator[AsyncSession, None]:
    async with db_factory() as session:
        yield session
        await session.rollback()


# ── Catalog ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def customer(db_session) -> User:
    user = User(id="user-ana", name="Ana", email=CUSTOMER_EMAIL, password_hash="x")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def catalog(db_session) -> Dict[str, object]:
    """One upcoming performance with two sectors; VIP has full and half variants."""
    starts = datetime.now(timezone.utc) + timedelta(days=1)
    perf = Performance(id="perf-1", title="Show", venue_name="Arena", starts_at=starts)
    vip = TicketType(id="vip", performance_id="perf-1", name="VIP", price_cents=1500)
    pista = TicketType(id="pista", performance_id="perf-1", name="Pista", price_cents=2000)
    db_session.add_all([perf, vip, pista])
    db_session.add_all(
        [
            TicketVariant(id="vip-full", ticket_type_id="vip", kind=VariantKind.FULL,
                          price_cents=1500, fee_cents=225),
            TicketVariant(id="vip-half", ticket_type_id="vip", kind=VariantKind.HALF,
                          price_cents=750, fee_cents=225, discount_pct=50),
            TicketVariant(id="pista-full", ticket_type_id="pista", kind=VariantKind.FULL,
                          price_cents=2000, fee_cents=300),
            TicketVariant(id="pista-old", ticket_type_id="pista", kind=VariantKind.ELDERLY,
                          price_cents=1000, fee_cents=300, discount_pct=50, active=False),
            Inventory(ticket_type_id="vip", available=10),
            Inventory(ticket_type_id="pista", available=5),
        ]
    )
    await db_session.commit()
    return {"performance": perf, "vip": vip, "pista": pista}


async def make_order(
    session: AsyncSession,
    *,
    order_id: str = "o1",
    status: OrderStatus = OrderStatus.PAID,
    email: str = CUSTOMER_EMAIL,
    provider_session_id: Optional[str] = "cs_paid",
    items: Optional[List[tuple]] = None,
) -> Order:
    """Insert an order directly. *items* are (ticket_type_id, variant_id, qty, price, fee)."""
    items = items or [("vip", "vip-full", 2, 1500, 225)]
    order = Order(
        id=order_id,
        user_email=email,
        status=status,
        total_cents=sum((p + f) * q for _, _, q, p, f in items),
        provider_session_id=provider_session_id,
    )
    order.items = [
        OrderItem(
            id=f"{order_id}-item-{n}",
            position=n,
            ticket_type_id=tt,
            variant_id=variant,
            quantity=qty,
            unit_price_no_fee_cents=price,
            fee_cents=fee,
            unit_price_cents=price + fee,
            sector=tt.upper(),
            kind=VariantKind.FULL,
        )
        for n, (tt, variant, qty, price, fee) in enumerate(items)
    ]
    session.add(order)
    await session.commit()
    return order


# ── Payment gateway double ───────────────────────────────────────────────────

def paid_session(
    session_id: str = "cs_paid",
    *,
    amount_received: Optional[int] = 2500,
    amount_total: Optional[int] = None,
    charge: Optional[ProviderCharge] = ProviderCharge(id="ch_1", disputed=False, refunded=False),
    payment_intent_id: Optional[str] = "pi_1",
) -> ProviderSession:
    intent = None
    if payment_intent_id:
        intent = ProviderPaymentIntent(
            id=payment_intent_id, amount_received=amount_received, latest_charge=charge
        )
    return ProviderSession(
        id=session_id,
        status="complete",
        payment_status="paid",
        url=None,
        amount_total=amount_total,
        payment_intent=intent,
    )


class FakeGateway:
    """In-memory PaymentGateway. Session creation is idempotent per key."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.sessions: Dict[str, ProviderSession] = {}
        self.by_key: Dict[str, CheckoutSession] = {}
        self.create_calls: List[dict] = []
        self.retrieve_calls: List[str] = []
        self.refund_calls: List[dict] = []
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None

    async def create_session(self, order, success_url, cancel_url, idempotency_key):
        self.create_calls.append(
            {
                "order_id": order.id,
                "key": idempotency_key,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "amount": sum(i.unit_price_cents * i.quantity for i in order.items),
            }
        )
        if self.create_error is not None:
            raise self.create_error
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        sid = f"cs_test_{len(self.by_key) + 1}"
        url = f"https://checkout.stripe.test/pay/{sid}"
        self.sessions[sid] = ProviderSession(
            id=sid, status="open", payment_status="unpaid", url=url,
            amount_total=order.total_cents, payment_intent=None,
        )
        self.by_key[idempotency_key] = CheckoutSession(id=sid, url=url)
        return self.by_key[idempotency_key]

    async def retrieve_session(self, session_id, *, expand_charge=False):
        self.retrieve_calls.append(session_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.sessions[session_id]

    async def create_refund(self, payment_intent_id, amount_cents, reason, idempotency_key):
        self.refund_calls.append(
            {
                "payment_intent": payment_intent_id,
                "amount": amount_cents,
                "reason": reason,
                "key": idempotency_key,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error

    def expire(self, session_id: str) -> None:
        self.sessions[session_id] = replace(
            self.sessions[session_id], status="expired", url=None
        )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ── HTTP client ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(db_factory, gateway):
    """
    httpx client bound to the app.  DB and gateway dependencies point at the
    test doubles; set ``client.user`` to act as a signed-in customer.
    """
    from httpx import ASGITransport, AsyncClient

    from boxoffice.database import get_db
    from boxoffice.deps import get_current_user, get_payment_gateway
    from boxoffice.main import app

    async def _db():
        async with db_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        ac.user = None
        app.dependency_overrides[get_db] = _db
        app.dependency_overrides[get_payment_gateway] = lambda: gateway
        app.dependency_overrides[get_current_user] = lambda: ac.user
        yield ac
    app.dependency_overrides.clear()
