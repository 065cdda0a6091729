"""
Inventory ledger: per-ticket-type availability counters.

Every mutation is a single conditional UPDATE so concurrent requests never
read-modify-write the counter.  ``available`` can never go below zero:
reservations are guarded in SQL and the table carries a check constraint.
Callers own the transaction; nothing here commits.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import Inventory, InventoryEvent, OrderItem

logger = logging.getLogger(__name__)


async def get_available(session: AsyncSession, ticket_type_id: str) -> int:
    """Return current availability for a ticket type (0 if no counter exists)."""
    row = await session.get(Inventory, ticket_type_id, populate_existing=True)
    return row.available if row else 0


async def _record_event(
    session: AsyncSession,
    order_id: Optional[str],
    order_item_id: Optional[str],
    ticket_type_id: str,
    delta: int,
    event_type: str,
) -> None:
    if not order_id or not order_item_id:
        return
    session.add(
        InventoryEvent(
            order_id=order_id,
            order_item_id=order_item_id,
            ticket_type_id=ticket_type_id,
            delta=delta,
            event_type=event_type,
        )
    )
    await session.flush()


async def reserve(
    session: AsyncSession,
    ticket_type_id: str,
    quantity: int,
    *,
    order_id: Optional[str] = None,
    order_item_id: Optional[str] = None,
    event_type: str = "sale",
) -> bool:
    """
    Atomically take *quantity* units off the counter.

    Returns False (and changes nothing) when the counter is missing or holds
    fewer than *quantity* units.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await session.execute(
        update(Inventory)
        .where(
            Inventory.ticket_type_id == ticket_type_id,
            Inventory.available >= quantity,
        )
        .values(available=Inventory.available - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Reservation refused: ticket_type=%s qty=%d (insufficient stock)",
            ticket_type_id, quantity,
        )
        return False

    await _record_event(session, order_id, order_item_id, ticket_type_id, -quantity, event_type)
    logger.info("Reserved: ticket_type=%s qty=%d order=%s", ticket_type_id, quantity, order_id)
    return True


async def restock(
    session: AsyncSession,
    ticket_type_id: str,
    quantity: int,
    *,
    order_id: Optional[str] = None,
    order_item_id: Optional[str] = None,
    event_type: str = "refund",
) -> None:
    """
    Upsert-increment: add *quantity* units, creating the counter with
    ``available = quantity`` when none exists yet.

    Must run exactly once per refunded order item; the refund reconciler
    guarantees that by guarding the enclosing transaction on the order row.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await session.execute(
        update(Inventory)
        .where(Inventory.ticket_type_id == ticket_type_id)
        .values(available=Inventory.available + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(Inventory(ticket_type_id=ticket_type_id, available=quantity))
        await session.flush()

    await _record_event(session, order_id, order_item_id, ticket_type_id, quantity, event_type)
    logger.info(
        "Restocked: ticket_type=%s qty=%+d order=%s", ticket_type_id, quantity, order_id
    )


async def reserve_items(
    session: AsyncSession, order_id: str, items: Sequence[OrderItem]
) -> Optional[OrderItem]:
    """
    Reserve every line of an order, or none of them.

    Returns None on success.  Otherwise returns the first line that could not
    be covered, after putting back the units taken for the lines before it.
    """
    taken = []
    for item in items:
        if not await reserve(session, item.ticket_type_id, item.quantity):
            for done in taken:
                await restock(session, done.ticket_type_id, done.quantity)
            return item
        taken.append(item)

    for item in taken:
        await _record_event(
            session, order_id, item.id, item.ticket_type_id, -item.quantity, "sale"
        )
    return None
