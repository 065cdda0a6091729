"""
Order store: creation, owner-scoped lookups and guarded status transitions.

Status changes go through ``transition`` – a single
``UPDATE … WHERE id = ? AND status IN (…)`` – so duplicate or out-of-order
deliveries can only ever apply a transition once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from boxoffice.models import Order, OrderItem, OrderStatus, TicketType, VariantKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedLine:
    """A cart line re-priced against the current variant record."""
    ticket_type_id: str
    variant_id: str
    quantity: int
    unit_price_no_fee_cents: int
    fee_cents: int
    sector: str
    kind: VariantKind

    @property
    def unit_price_cents(self) -> int:
        return self.unit_price_no_fee_cents + self.fee_cents


def order_total(lines: Iterable[PricedLine]) -> int:
    return sum(line.unit_price_cents * line.quantity for line in lines)


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def create_order(
    session: AsyncSession, user_email: str, lines: Sequence[PricedLine]
) -> Order:
    """Add an Order in CREATED with one OrderItem per line (flushed, not committed)."""
    order = Order(
        user_email=normalize_email(user_email),
        status=OrderStatus.CREATED,
        total_cents=order_total(lines),
    )
    order.items = [
        OrderItem(
            position=position,
            ticket_type_id=line.ticket_type_id,
            variant_id=line.variant_id,
            quantity=line.quantity,
            unit_price_no_fee_cents=line.unit_price_no_fee_cents,
            fee_cents=line.fee_cents,
            unit_price_cents=line.unit_price_cents,
            sector=line.sector,
            kind=line.kind,
        )
        for position, line in enumerate(lines)
    ]
    session.add(order)
    await session.flush()
    return order


def _with_items():
    return selectinload(Order.items).selectinload(OrderItem.ticket_type).selectinload(
        TicketType.performance
    )


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .options(_with_items())
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_order_for_user(
    session: AsyncSession, order_id: str, user_email: str
) -> Optional[Order]:
    """Owner-scoped lookup; someone else's order is indistinguishable from none."""
    stmt = (
        select(Order)
        .where(Order.id == order_id, Order.user_email == normalize_email(user_email))
        .options(_with_items())
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_orders_for_user(session: AsyncSession, user_email: str) -> List[Order]:
    stmt = (
        select(Order)
        .where(Order.user_email == normalize_email(user_email))
        .order_by(Order.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def attach_provider_session(
    session: AsyncSession, order_id: str, provider_session_id: str
) -> None:
    await session.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(provider_session_id=provider_session_id)
        .execution_options(synchronize_session=False)
    )


async def transition(
    session: AsyncSession,
    order_id: str,
    to: OrderStatus,
    *,
    only_from: Optional[Iterable[OrderStatus]] = None,
    not_from: Optional[Iterable[OrderStatus]] = None,
) -> bool:
    """
    Guarded status update.  Returns True when a row actually changed.

    ``only_from`` / ``not_from`` qualify the current status; with neither the
    update is unconditional.
    """
    stmt = update(Order).where(Order.id == order_id)
    if only_from is not None:
        stmt = stmt.where(Order.status.in_(list(only_from)))
    if not_from is not None:
        stmt = stmt.where(Order.status.not_in(list(not_from)))
    result = await session.execute(
        stmt.values(status=to).execution_options(synchronize_session=False)
    )
    changed = result.rowcount > 0
    logger.info(
        "Order transition order=%s -> %s applied=%s", order_id, to.value, changed
    )
    return changed


async def transition_by_provider_session(
    session: AsyncSession,
    provider_session_id: str,
    to: OrderStatus,
    *,
    only_from: Iterable[OrderStatus],
) -> Optional[str]:
    """Same as ``transition`` but addressed by provider session id.

    Returns the id of the order that changed, or None.
    """
    order_id = (
        await session.execute(
            select(Order.id).where(Order.provider_session_id == provider_session_id)
        )
    ).scalar_one_or_none()
    if order_id is None:
        logger.info("No order for provider session %s", provider_session_id)
        return None
    changed = await transition(session, order_id, to, only_from=only_from)
    return order_id if changed else None


async def mark_refunded_and_claim_restock(
    session: AsyncSession, order_id: str, now: datetime
) -> bool:
    """
    Set REFUNDED and claim the order's one-time restock.

    Succeeds at most once per order: the update is qualified on
    ``inventory_restored_at IS NULL``.  A REFUNDED status written earlier by
    the provider's refund notification still allows the claim.  Orders whose
    hold was already released have nothing to restock and are not claimed.
    """
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status.in_([OrderStatus.PAID, OrderStatus.REFUNDED]),
            Order.inventory_restored_at.is_(None),
            Order.stock_held.is_(True),
        )
        .values(status=OrderStatus.REFUNDED, inventory_restored_at=now, stock_held=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
