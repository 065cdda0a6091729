"""
Checkout orchestration: cart re-pricing, order creation, hosted payment
session hand-off and resumption of unfinished checkouts.

Idempotency keys are derived from the order id so a retried checkout can
never open two provider sessions for the same order.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from boxoffice.errors import (
    MSG_CHECKOUT_FAILED,
    MSG_EMPTY_CART,
    MSG_INVALID_ORDER,
    MSG_INVALID_VARIANTS,
    MSG_LOGIN_REQUIRED,
    MSG_PAYMENTS_UNAVAILABLE,
    MSG_SESSION_WITHOUT_URL,
    MSG_SOLD_OUT,
    MSG_VARIANT_MISMATCH,
    AuthError,
    CartValidationError,
    OrderNotFoundError,
    PaymentProviderError,
    ProviderTransientError,
    ProviderUnavailableError,
)
from boxoffice.models import Order, OrderStatus, TicketVariant, User
from boxoffice.schemas import CartLine
from boxoffice.services import holds, inventory, order_cache, orders
from boxoffice.services.orders import PricedLine
from boxoffice.services.payments import PaymentGateway, ProviderSession

logger = logging.getLogger(__name__)

# A completed checkout may move an order out of these states only.
PAYABLE_STATUSES = (OrderStatus.CREATED, OrderStatus.FAILED)


def idempotency_key(order_id: str, *, resume: bool = False) -> str:
    return f"order_{order_id}_resume" if resume else f"order_{order_id}"


def success_url(origin: str, order_id: str) -> str:
    return f"{origin}/checkout/{order_id}/success?session_id={{CHECKOUT_SESSION_ID}}"


def cancel_url(origin: str, order_id: str) -> str:
    return f"{origin}/checkout/{order_id}?canceled=1"


def local_success_url(origin: str, order_id: str, session_id: Optional[str] = None) -> str:
    url = f"{origin}/checkout/{order_id}/success"
    return f"{url}?session_id={session_id}" if session_id else url


# ── Pricing ──────────────────────────────────────────────────────────────────

async def price_cart(session: AsyncSession, lines: Sequence[CartLine]) -> List[PricedLine]:
    """
    Re-price every line against the current variant record.

    Client-submitted prices never reach this function.  Unknown, inactive or
    foreign variants are rejected.
    """
    if not lines:
        raise CartValidationError(MSG_EMPTY_CART)

    variant_ids = {line.variant_id for line in lines}
    rows = (
        await session.execute(
            select(TicketVariant)
            .where(TicketVariant.id.in_(variant_ids), TicketVariant.active.is_(True))
            .options(selectinload(TicketVariant.ticket_type))
        )
    ).scalars().all()
    by_id = {v.id: v for v in rows}
    if len(by_id) != len(variant_ids):
        raise CartValidationError(MSG_INVALID_VARIANTS)

    priced: List[PricedLine] = []
    for line in lines:
        variant = by_id[line.variant_id]
        if variant.ticket_type_id != line.ticket_type_id:
            raise CartValidationError(MSG_VARIANT_MISMATCH)
        priced.append(
            PricedLine(
                ticket_type_id=variant.ticket_type_id,
                variant_id=variant.id,
                quantity=line.quantity,
                unit_price_no_fee_cents=variant.price_cents,
                fee_cents=variant.fee_cents,
                sector=variant.ticket_type.name,
                kind=variant.kind,
            )
        )
    return priced


# ── Provider hand-off ────────────────────────────────────────────────────────

async def _open_session(
    session: AsyncSession,
    gateway: PaymentGateway,
    order: Order,
    origin: str,
    *,
    resume: bool,
) -> str:
    key = idempotency_key(order.id, resume=resume)
    try:
        checkout = await gateway.create_session(
            order,
            success_url(origin, order.id),
            cancel_url(origin, order.id),
            key,
        )
    except ProviderUnavailableError as exc:
        raise ProviderUnavailableError(MSG_PAYMENTS_UNAVAILABLE) from exc
    except PaymentProviderError as exc:
        logger.error(
            "Checkout session creation failed order=%s key=%s code=%s",
            order.id, key, exc.code,
        )
        raise ProviderTransientError(MSG_CHECKOUT_FAILED, code=exc.code) from exc

    await orders.attach_provider_session(session, order.id, checkout.id)
    await session.commit()

    if not checkout.url:
        raise ProviderTransientError(MSG_SESSION_WITHOUT_URL)
    return checkout.url


async def start_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    user: Optional[User],
    lines: Sequence[CartLine],
    origin: str,
) -> str:
    """Create an order from *lines* and return the provider's hosted checkout URL."""
    if user is None:
        raise AuthError(MSG_LOGIN_REQUIRED)
    if not lines:
        raise CartValidationError(MSG_EMPTY_CART)
    if not gateway.available:
        raise ProviderUnavailableError(MSG_PAYMENTS_UNAVAILABLE)

    priced = await price_cart(session, lines)

    order = await orders.create_order(session, user.email, priced)
    short = await inventory.reserve_items(session, order.id, order.items)
    if short is not None:
        sector = short.sector
        await session.rollback()
        raise CartValidationError(MSG_SOLD_OUT.format(sector=sector))
    await session.commit()

    logger.info(
        "Order created order=%s user=%s total_cents=%d lines=%d",
        order.id, order.user_email, order.total_cents, len(order.items),
    )
    await order_cache.invalidate_order_views(order.id, order.user_email)

    return await _open_session(session, gateway, order, origin, resume=False)


async def _retrieve_or_none(gateway: PaymentGateway, session_id: str) -> Optional[ProviderSession]:
    try:
        return await gateway.retrieve_session(session_id)
    except PaymentProviderError as exc:
        logger.warning(
            "Could not retrieve provider session %s (code=%s); starting over",
            session_id, exc.code,
        )
        return None


async def _hold_again(session: AsyncSession, order: Order) -> None:
    # A failed or stale order gave its units back; take them again before
    # the customer can pay.
    short = await holds.restore_hold(session, order.id)
    if short is not None:
        sector = short.sector
        await session.rollback()
        raise CartValidationError(MSG_SOLD_OUT.format(sector=sector))
    await session.commit()


async def mark_paid(session: AsyncSession, order: Order) -> bool:
    changed = await orders.transition(
        session, order.id, OrderStatus.PAID, only_from=PAYABLE_STATUSES
    )
    if changed:
        await holds.restore_after_payment(session, order.id)
    await session.commit()
    if changed:
        await order_cache.invalidate_order_views(order.id, order.user_email)
    return changed


async def resume_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    user: Optional[User],
    order_id: str,
    origin: str,
) -> str:
    """Return where to send the customer to finish paying *order_id*."""
    if user is None:
        raise AuthError(MSG_LOGIN_REQUIRED)
    if not order_id:
        raise CartValidationError(MSG_INVALID_ORDER)

    order = await orders.get_order_for_user(session, order_id, user.email)
    if order is None:
        raise OrderNotFoundError(MSG_INVALID_ORDER)

    if order.status == OrderStatus.PAID:
        return local_success_url(origin, order.id)
    if order.status == OrderStatus.REFUNDED:
        raise CartValidationError(MSG_INVALID_ORDER)

    if order.provider_session_id and gateway.available:
        live = await _retrieve_or_none(gateway, order.provider_session_id)
        if live is not None and live.is_paid:
            await mark_paid(session, order)
            return local_success_url(origin, order.id, live.id)
        if live is not None and live.is_open:
            await _hold_again(session, order)
            return live.url

    if not gateway.available:
        raise ProviderUnavailableError(MSG_PAYMENTS_UNAVAILABLE)
    if not order.items:
        raise CartValidationError(MSG_EMPTY_CART)

    await _hold_again(session, order)

    return await _open_session(session, gateway, order, origin, resume=True)


async def confirm_checkout_return(
    session: AsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    provider_session_id: Optional[str],
) -> Optional[Order]:
    """
    Handle the provider's success redirect: if the referenced session is paid,
    apply the guarded PAID transition without waiting for the webhook.
    """
    order = await orders.get_order(session, order_id)
    if order is None:
        return None

    if (
        provider_session_id
        and gateway.available
        and order.provider_session_id == provider_session_id
        and order.status in PAYABLE_STATUSES
    ):
        live = await _retrieve_or_none(gateway, provider_session_id)
        if live is not None and live.is_paid:
            await mark_paid(session, order)
            order = await orders.get_order(session, order_id)
    return order
