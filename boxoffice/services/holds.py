"""
Stock holds for unpaid orders.

Checkout takes an order's units off the counters and marks the order
``stock_held``.  A failed or abandoned payment gives them back; a payment that
later succeeds on a released order takes them again.  Each direction flips
``stock_held`` with a guarded UPDATE first, so a hold is released or restored
at most once however often the triggering event is delivered.
Callers own the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import Order, OrderItem, OrderStatus
from boxoffice.services import inventory, orders

logger = logging.getLogger(__name__)

UNPAID_STATUSES = (OrderStatus.CREATED, OrderStatus.FAILED)


async def _items(session: AsyncSession, order_id: str) -> List[OrderItem]:
    stmt = (
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.position)
    )
    return list((await session.execute(stmt)).scalars().all())


async def _flip(session: AsyncSession, order_id: str, held: bool, *conditions) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.stock_held.is_(not held), *conditions)
        .values(stock_held=held)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_hold(session: AsyncSession, order_id: str) -> bool:
    """Put an unpaid order's units back on the counters. True when released now."""
    if not await _flip(session, order_id, False, Order.status.in_(UNPAID_STATUSES)):
        return False
    for item in await _items(session, order_id):
        await inventory.restock(
            session,
            item.ticket_type_id,
            item.quantity,
            order_id=order_id,
            order_item_id=item.id,
            event_type="release",
        )
    logger.info("Stock hold released order=%s", order_id)
    return True


async def restore_hold(session: AsyncSession, order_id: str) -> Optional[OrderItem]:
    """
    Take a released order's units again.

    Returns None when the order holds its stock afterwards (or already did),
    otherwise the line whose sector no longer has enough units; the order is
    then left released.
    """
    if not await _flip(session, order_id, True):
        return None
    short = await inventory.reserve_items(session, order_id, await _items(session, order_id))
    if short is not None:
        await _flip(session, order_id, False)
        logger.warning(
            "Stock hold could not be restored order=%s ticket_type=%s qty=%d",
            order_id, short.ticket_type_id, short.quantity,
        )
    return short


async def restore_after_payment(session: AsyncSession, order_id: str) -> None:
    """Re-take stock for an order that was just marked PAID, if it had been released."""
    short = await restore_hold(session, order_id)
    if short is not None:
        # The money is already captured; an operator has to settle this one.
        logger.error(
            "Order %s paid after its hold was released and sector %s is short of %d units",
            order_id, short.sector, short.quantity,
        )


async def release_stale_orders(
    session: AsyncSession, older_than: timedelta, now: Optional[datetime] = None
) -> List[str]:
    """
    Fail CREATED orders older than *older_than* and release their stock.

    Commits, and returns the ids of the orders released.
    """
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    candidates = (
        await session.execute(
            select(Order.id).where(
                Order.status == OrderStatus.CREATED,
                Order.stock_held.is_(True),
                Order.created_at < cutoff,
            )
        )
    ).scalars().all()

    released: List[str] = []
    for order_id in candidates:
        if await orders.transition(
            session, order_id, OrderStatus.FAILED, only_from=(OrderStatus.CREATED,)
        ) and await release_hold(session, order_id):
            released.append(order_id)
    await session.commit()
    logger.info("Released %d stale orders (cutoff=%s)", len(released), cutoff.isoformat())
    return released
