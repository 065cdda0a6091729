"""
Refund reconciliation.

``refund_order_rules`` is the pure eligibility check.  ``request_refund``
settles the money with the payment provider first, then marks the order
REFUNDED and restocks every line in one transaction.  Expected failures come
back as ``RefundResult(error=...)`` so the caller can render them directly.

A disputed charge aborts before any local write.  When money has already left
at the provider (refunded earlier, or by this very call) and the local
transaction then fails, the customer gets the support-escalation message
instead of the generic one: that state needs manual reconciliation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.errors import (
    MSG_DISPUTED,
    MSG_DISPUTED_AT_REFUND,
    MSG_EVENT_STARTED,
    MSG_FINALIZE_FAILED,
    MSG_INVALID_ORDER,
    MSG_LOGIN_REQUIRED,
    MSG_NOT_PAID,
    MSG_ORDER_NOT_FOUND,
    MSG_REFUND_FAILED,
    MSG_REFUNDED_CONTACT_SUPPORT,
    PaymentProviderError,
    ProviderAlreadyProcessed,
    ProviderDisputeError,
)
from boxoffice.models import Order, OrderStatus, User
from boxoffice.schemas import RefundResult
from boxoffice.services import inventory, order_cache, orders
from boxoffice.services.payments import REFUND_REASON, PaymentGateway

logger = logging.getLogger(__name__)


# ── Eligibility ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RestockLine:
    ticket_type_id: str
    quantity: int


@dataclass(frozen=True)
class RefundDecision:
    ok: bool
    restock: List[RestockLine] = field(default_factory=list)
    reason: Optional[str] = None


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def refund_order_rules(
    status: OrderStatus,
    items: Iterable[Tuple[str, int]],
    performance_starts_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> RefundDecision:
    """
    Decide whether an order may be refunded.

    *items* are ``(ticket_type_id, quantity)`` pairs.  A missing performance
    start time does not block the refund.
    """
    now = _aware(now or datetime.now(timezone.utc))

    if status != OrderStatus.PAID:
        return RefundDecision(ok=False, reason=MSG_NOT_PAID)
    if performance_starts_at is not None and _aware(performance_starts_at) <= now:
        return RefundDecision(ok=False, reason=MSG_EVENT_STARTED)
    return RefundDecision(
        ok=True,
        restock=[RestockLine(ticket_type_id=t, quantity=q) for t, q in items],
    )


def performance_starts_at(order: Order) -> Optional[datetime]:
    """Earliest known start among the order's performances, if any."""
    starts = [
        item.ticket_type.performance.starts_at
        for item in order.items
        if item.ticket_type is not None and item.ticket_type.performance is not None
    ]
    return min((_aware(s) for s in starts), default=None)


def decide(order: Order, now: Optional[datetime] = None) -> RefundDecision:
    return refund_order_rules(
        order.status,
        [(item.ticket_type_id, item.quantity) for item in order.items],
        performance_starts_at(order),
        now,
    )


# ── Provider settlement ──────────────────────────────────────────────────────

def refund_idempotency_key(order_id: str) -> str:
    return f"refund_{order_id}"


async def _settle_with_provider(gateway: PaymentGateway, order: Order) -> bool:
    """
    Make sure the money is returned at the provider.

    Returns True when money has moved at the provider (now or earlier).
    Raises ProviderDisputeError or another PaymentProviderError to abort.
    """
    if not gateway.available or not order.provider_session_id:
        logger.warning(
            "Refund order=%s without provider call (provider_available=%s session=%s)",
            order.id, gateway.available, order.provider_session_id,
        )
        return False

    live = await gateway.retrieve_session(order.provider_session_id, expand_charge=True)
    intent = live.payment_intent
    if intent is None:
        logger.warning(
            "Refund order=%s: session %s has no payment intent; nothing to return",
            order.id, live.id,
        )
        return False

    charge = intent.latest_charge
    if charge is not None and charge.disputed:
        raise ProviderDisputeError(MSG_DISPUTED, code="charge_disputed")
    if charge is not None and charge.refunded:
        logger.info("Refund order=%s: charge %s already refunded at provider", order.id, charge.id)
        return True

    received = intent.amount_received
    if received is None:
        received = live.amount_total
    if received is None:
        received = order.total_cents
    already_returned = charge.amount_refunded if charge is not None else 0
    amount = min(order.total_cents, received) - already_returned
    if amount <= 0:
        logger.info(
            "Refund order=%s: nothing left to return at provider (received=%d returned=%d)",
            order.id, received, already_returned,
        )
        return True

    try:
        await gateway.create_refund(
            intent.id, amount, REFUND_REASON, refund_idempotency_key(order.id)
        )
    except ProviderDisputeError as exc:
        raise ProviderDisputeError(MSG_DISPUTED_AT_REFUND, code=exc.code) from exc
    except ProviderAlreadyProcessed:
        logger.info("Refund order=%s: provider reports refund already processed", order.id)
    return True


# ── Local finalization ───────────────────────────────────────────────────────

async def _finalize(session: AsyncSession, order: Order) -> None:
    """Mark REFUNDED and restock every line – all or nothing."""
    now = datetime.now(timezone.utc)
    claimed = await orders.mark_refunded_and_claim_restock(session, order.id, now)
    if claimed:
        for item in order.items:
            await inventory.restock(
                session,
                item.ticket_type_id,
                item.quantity,
                order_id=order.id,
                order_item_id=item.id,
            )
    else:
        await orders.transition(
            session, order.id, OrderStatus.REFUNDED, only_from=(OrderStatus.PAID,)
        )
        logger.info("Refund order=%s: no held stock to restock", order.id)
    await session.commit()


async def request_refund(
    session: AsyncSession,
    gateway: PaymentGateway,
    user: Optional[User],
    order_id: str,
    now: Optional[datetime] = None,
) -> RefundResult:
    if user is None:
        return RefundResult.failure(MSG_LOGIN_REQUIRED)
    if not order_id:
        return RefundResult.failure(MSG_INVALID_ORDER)

    order = await orders.get_order_for_user(session, order_id, user.email)
    if order is None:
        return RefundResult.failure(MSG_ORDER_NOT_FOUND)

    decision = decide(order, now)
    if not decision.ok:
        return RefundResult.failure(decision.reason)

    try:
        money_moved = await _settle_with_provider(gateway, order)
    except ProviderDisputeError as exc:
        logger.warning("Refund order=%s blocked: charge is disputed", order.id)
        return RefundResult.failure(exc.message)
    except PaymentProviderError as exc:
        logger.error("Refund order=%s provider failure code=%s", order.id, exc.code)
        return RefundResult.failure(MSG_REFUND_FAILED)

    try:
        await _finalize(session, order)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(
            "Refund order=%s finalize failed (money_moved=%s)", order_id, money_moved
        )
        if money_moved:
            return RefundResult.failure(MSG_REFUNDED_CONTACT_SUPPORT)
        return RefundResult.failure(MSG_FINALIZE_FAILED)

    logger.info("Refund order=%s completed", order.id)
    await order_cache.invalidate_order_views(order.id, order.user_email)
    return RefundResult.success()
