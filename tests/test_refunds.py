"""
Refund reconciliation: provider settlement branches, the single finalize
transaction and the partial-failure messages.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from boxoffice.errors import (
    MSG_DISPUTED,
    MSG_DISPUTED_AT_REFUND,
    MSG_EVENT_STARTED,
    MSG_FINALIZE_FAILED,
    MSG_LOGIN_REQUIRED,
    MSG_NOT_PAID,
    MSG_ORDER_NOT_FOUND,
    MSG_REFUND_FAILED,
    MSG_REFUNDED_CONTACT_SUPPORT,
    ProviderAlreadyProcessed,
    ProviderDisputeError,
    ProviderTransientError,
)
from boxoffice.models import Order, OrderStatus, Performance, User
from boxoffice.services import orders, refunds
from boxoffice.services.inventory import get_available
from boxoffice.services.payments import ProviderCharge
from boxoffice.services.refunds import request_refund

from conftest import FakeGateway, make_order, paid_session


async def _status(session, order_id: str) -> OrderStatus:
    order = await session.get(Order, order_id, populate_existing=True)
    return order.status


def _db_failure(*args, **kwargs):
    raise OperationalError("UPDATE inventory", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_refund_issues_provider_refund_and_restocks(db_session, catalog, customer, gateway):
    """Paid order, event tomorrow, provider received 2500 of a 3450 order."""
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(amount_received=2500)

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.as_response() == {"ok": True}
    assert gateway.refund_calls == [
        {
            "payment_intent": "pi_1",
            "amount": 2500,
            "reason": "requested_by_customer",
            "key": "refund_o1",
        }
    ]
    assert await _status(db_session, "o1") == OrderStatus.REFUNDED
    assert await get_available(db_session, "vip") == 12


@pytest.mark.asyncio
async def test_refund_amount_capped_by_order_total(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(amount_received=99999)

    await request_refund(db_session, gateway, customer, "o1")

    assert gateway.refund_calls[0]["amount"] == 3450


@pytest.mark.asyncio
async def test_refund_amount_falls_back_to_session_total(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(amount_received=None, amount_total=3000)

    await request_refund(db_session, gateway, customer, "o1")

    assert gateway.refund_calls[0]["amount"] == 3000


@pytest.mark.asyncio
async def test_refund_amount_caps_received_before_subtracting_prior_refunds(db_session, catalog, customer, gateway):
    """Provider took 4000 for a 3450 order and already returned 1000."""
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(
        amount_received=4000,
        charge=ProviderCharge(id="ch_1", disputed=False, refunded=False, amount_refunded=1000),
    )

    await request_refund(db_session, gateway, customer, "o1")

    assert gateway.refund_calls[0]["amount"] == 2450


@pytest.mark.asyncio
async def test_refund_amount_excludes_prior_partial_refund(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(
        amount_received=3450,
        charge=ProviderCharge(id="ch_1", disputed=False, refunded=False, amount_refunded=450),
    )

    await request_refund(db_session, gateway, customer, "o1")

    assert gateway.refund_calls[0]["amount"] == 3000


@pytest.mark.asyncio
async def test_event_already_started_blocks_without_provider_call(db_session, catalog, customer, gateway):
    perf = await db_session.get(Performance, "perf-1")
    perf.starts_at = datetime.now(timezone.utc) - timedelta(days=1)
    await db_session.commit()
    await make_order(db_session)

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.as_response() == {"error": MSG_EVENT_STARTED}
    assert gateway.retrieve_calls == []
    assert gateway.refund_calls == []
    assert await _status(db_session, "o1") == OrderStatus.PAID


@pytest.mark.asyncio
async def test_no_provider_session_refunds_locally(db_session, catalog, customer):
    await make_order(db_session, provider_session_id=None)
    unavailable = FakeGateway(available=False)

    result = await request_refund(db_session, unavailable, customer, "o1")

    assert result.ok is True
    assert unavailable.retrieve_calls == []
    assert await _status(db_session, "o1") == OrderStatus.REFUNDED
    assert await get_available(db_session, "vip") == 12


@pytest.mark.asyncio
async def test_unavailable_provider_skips_refund_even_with_session(db_session, catalog, customer):
    await make_order(db_session)
    unavailable = FakeGateway(available=False)

    result = await request_refund(db_session, unavailable, customer, "o1")

    assert result.ok is True
    assert unavailable.refund_calls == []


@pytest.mark.asyncio
async def test_disputed_charge_blocks_everything(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(
        charge=ProviderCharge(id="ch_1", disputed=True, refunded=False)
    )

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.as_response() == {"error": MSG_DISPUTED}
    assert gateway.refund_calls == []
    assert await _status(db_session, "o1") == OrderStatus.PAID
    assert await get_available(db_session, "vip") == 10


@pytest.mark.asyncio
async def test_dispute_reported_by_refund_call_blocks_writes(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()
    gateway.refund_error = ProviderDisputeError("disputed", code="charge_disputed")

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.error == MSG_DISPUTED_AT_REFUND
    assert await _status(db_session, "o1") == OrderStatus.PAID
    assert await get_available(db_session, "vip") == 10


@pytest.mark.asyncio
async def test_charge_already_refunded_finalizes_without_new_refund(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(
        charge=ProviderCharge(id="ch_1", disputed=False, refunded=True)
    )

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.ok is True
    assert gateway.refund_calls == []
    assert await _status(db_session, "o1") == OrderStatus.REFUNDED
    assert await get_available(db_session, "vip") == 12


@pytest.mark.asyncio
async def test_refund_already_exists_is_tolerated(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()
    gateway.refund_error = ProviderAlreadyProcessed("exists", code="refund_already_exists")

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.ok is True
    assert await _status(db_session, "o1") == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_transient_provider_failure_performs_no_writes(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()
    gateway.refund_error = ProviderTransientError("boom", code="api_connection_error")

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.error == MSG_REFUND_FAILED
    assert await _status(db_session, "o1") == OrderStatus.PAID
    assert await get_available(db_session, "vip") == 10


@pytest.mark.asyncio
async def test_session_retrieval_failure_performs_no_writes(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.retrieve_error = ProviderTransientError("timeout")

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.error == MSG_REFUND_FAILED
    assert await _status(db_session, "o1") == OrderStatus.PAID


@pytest.mark.asyncio
async def test_bare_charge_reference_still_refunds(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(charge=None)

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.ok is True
    assert len(gateway.refund_calls) == 1


@pytest.mark.asyncio
async def test_missing_payment_intent_finalizes_without_refund(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session(payment_intent_id=None)

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.ok is True
    assert gateway.refund_calls == []
    assert await get_available(db_session, "vip") == 12


@pytest.mark.asyncio
async def test_finalize_failure_after_provider_refund_asks_for_support(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()
    gateway.refund_error = ProviderAlreadyProcessed("exists", code="refund_already_exists")

    with patch("boxoffice.services.inventory.restock", side_effect=_db_failure):
        result = await request_refund(db_session, gateway, customer, "o1")

    assert result.as_response() == {"error": MSG_REFUNDED_CONTACT_SUPPORT}
    assert await _status(db_session, "o1") == OrderStatus.PAID
    assert await get_available(db_session, "vip") == 10


@pytest.mark.asyncio
async def test_finalize_failure_after_fresh_refund_asks_for_support(db_session, catalog, customer, gateway):
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()

    with patch("boxoffice.services.inventory.restock", side_effect=_db_failure):
        result = await request_refund(db_session, gateway, customer, "o1")

    assert len(gateway.refund_calls) == 1
    assert result.error == MSG_REFUNDED_CONTACT_SUPPORT


@pytest.mark.asyncio
async def test_finalize_failure_without_provider_is_generic(db_session, catalog, customer):
    await make_order(db_session, provider_session_id=None)

    with patch("boxoffice.services.inventory.restock", side_effect=_db_failure):
        result = await request_refund(db_session, FakeGateway(available=False), customer, "o1")

    assert result.error == MSG_FINALIZE_FAILED
    assert await _status(db_session, "o1") == OrderStatus.PAID


@pytest.mark.asyncio
async def test_retried_refund_restocks_exactly_once(db_session, catalog, customer, gateway):
    await make_order(
        db_session,
        items=[("vip", "vip-full", 2, 1500, 225), ("vip", "vip-half", 1, 750, 225),
               ("pista", "pista-full", 3, 2000, 300)],
    )
    gateway.sessions["cs_paid"] = paid_session()

    first = await request_refund(db_session, gateway, customer, "o1")
    second = await request_refund(db_session, gateway, customer, "o1")

    assert first.ok is True
    assert second.error == MSG_NOT_PAID
    assert len(gateway.refund_calls) == 1
    assert await get_available(db_session, "vip") == 13
    assert await get_available(db_session, "pista") == 8


@pytest.mark.asyncio
async def test_finalize_after_refund_webhook_still_restocks_once(db_session, catalog, customer, gateway):
    """The provider's charge.refunded notice may land before the local write."""
    await make_order(db_session)
    gateway.sessions["cs_paid"] = paid_session()
    order = await orders.get_order(db_session, "o1")
    await orders.transition(db_session, "o1", OrderStatus.REFUNDED)
    await db_session.commit()

    await refunds._finalize(db_session, order)
    await refunds._finalize(db_session, order)

    assert await get_available(db_session, "vip") == 12


@pytest.mark.asyncio
async def test_other_customers_order_is_not_found(db_session, catalog, gateway):
    await make_order(db_session, email="someone@else.com")
    intruder = User(id="u2", name="Bia", email="bia@example.com", password_hash="x")

    result = await request_refund(db_session, gateway, intruder, "o1")

    assert result.error == MSG_ORDER_NOT_FOUND
    assert gateway.retrieve_calls == []


@pytest.mark.asyncio
async def test_owner_email_matched_case_insensitively(db_session, catalog, gateway):
    await make_order(db_session, provider_session_id=None)
    owner = User(id="u3", name="Ana", email="ANA@Example.com", password_hash="x")

    result = await request_refund(db_session, gateway, owner, "o1")

    assert result.ok is True


@pytest.mark.asyncio
async def test_anonymous_refund_is_rejected(db_session, catalog, gateway):
    await make_order(db_session)

    result = await request_refund(db_session, gateway, None, "o1")

    assert result.error == MSG_LOGIN_REQUIRED


@pytest.mark.asyncio
async def test_success_invalidates_cached_views(db_session, catalog, customer, gateway):
    await make_order(db_session, provider_session_id=None)

    with patch(
        "boxoffice.services.order_cache.invalidate_order_views", new_callable=AsyncMock
    ) as invalidate:
        await request_refund(db_session, gateway, customer, "o1")

    invalidate.assert_awaited_once_with("o1", "ana@example.com")


@pytest.mark.asyncio
async def test_refund_ledger_rows_written_per_item(db_session, catalog, customer, gateway):
    from boxoffice.models import InventoryEvent

    await make_order(
        db_session,
        provider_session_id=None,
        items=[("vip", "vip-full", 2, 1500, 225), ("pista", "pista-full", 1, 2000, 300)],
    )

    await request_refund(db_session, gateway, customer, "o1")

    rows = (
        await db_session.execute(
            select(InventoryEvent).where(InventoryEvent.order_id == "o1")
        )
    ).scalars().all()
    assert sorted((r.ticket_type_id, r.delta, r.event_type) for r in rows) == [
        ("pista", 1, "refund"),
        ("vip", 2, "refund"),
    ]


def test_pre_check_and_refund_call_disputes_use_distinct_messages():
    assert MSG_DISPUTED != MSG_DISPUTED_AT_REFUND
    assert "no cartão" in MSG_DISPUTED
    assert "não é possível reembolsar" in MSG_DISPUTED_AT_REFUND


@pytest.mark.asyncio
async def test_order_without_held_stock_refunds_without_restock(db_session, catalog, customer, gateway):
    await make_order(db_session)
    order = await orders.get_order(db_session, "o1")
    order.stock_held = False
    await db_session.commit()
    gateway.sessions["cs_paid"] = paid_session()

    result = await request_refund(db_session, gateway, customer, "o1")

    assert result.ok is True
    assert await _status(db_session, "o1") == OrderStatus.REFUNDED
    assert await get_available(db_session, "vip") == 10
