"""
Customer order endpoints.

GET  /orders
GET  /orders/{order_id}
POST /orders/refund            (form: orderId)
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.database import get_db
from boxoffice.deps import get_current_user, get_payment_gateway
from boxoffice.errors import MSG_LOGIN_REQUIRED, MSG_ORDER_NOT_FOUND
from boxoffice.models import Order, OrderStatus, User
from boxoffice.schemas import OrderDetail, OrderItemView, OrderSummary
from boxoffice.services import order_cache, orders, refunds
from boxoffice.services.payments import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _require(user: Optional[User]) -> User:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=MSG_LOGIN_REQUIRED)
    return user


def _detail(order: Order) -> OrderDetail:
    first_perf = next(
        (
            item.ticket_type.performance
            for item in order.items
            if item.ticket_type is not None and item.ticket_type.performance is not None
        ),
        None,
    )
    return OrderDetail(
        id=order.id,
        status=order.status.value,
        total_cents=order.total_cents,
        created_at=order.created_at,
        items=[
            OrderItemView(
                ticket_type_id=item.ticket_type_id,
                sector=item.sector,
                kind=item.kind.value,
                quantity=item.quantity,
                unit_price_no_fee_cents=item.unit_price_no_fee_cents,
                fee_cents=item.fee_cents,
                unit_price_cents=item.unit_price_cents,
            )
            for item in order.items
        ],
        subtotal_cents=sum(i.unit_price_no_fee_cents * i.quantity for i in order.items),
        fees_cents=sum(i.fee_cents * i.quantity for i in order.items),
        performance_title=first_perf.title if first_perf else None,
        performance_starts_at=refunds.performance_starts_at(order),
    )


def _refundable(detail: OrderDetail) -> OrderDetail:
    # Depends on the clock, so it is never served from the cache.
    decision = refunds.refund_order_rules(
        OrderStatus(detail.status), [], detail.performance_starts_at
    )
    return detail.model_copy(update={"refundable": decision.ok})


@router.get("", response_model=List[OrderSummary])
async def list_orders(
    db: AsyncSession = Depends(get_db),
    user: Optional[User] = Depends(get_current_user),
) -> List[OrderSummary]:
    user = _require(user)
    key = order_cache.orders_key(user.email)
    cached = await order_cache.get(key)
    if cached is not None:
        return [OrderSummary.model_validate(row) for row in cached]

    rows = [
        OrderSummary(
            id=o.id, status=o.status.value, total_cents=o.total_cents, created_at=o.created_at
        )
        for o in await orders.list_orders_for_user(db, user.email)
    ]
    await order_cache.set(key, [r.model_dump(mode="json") for r in rows])
    return rows


@router.get("/{order_id}", response_model=OrderDetail)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    user: Optional[User] = Depends(get_current_user),
) -> OrderDetail:
    user = _require(user)
    key = order_cache.order_key(order_id)
    cached = await order_cache.get(key)
    if cached is not None and cached.get("owner") == user.email:
        return _refundable(OrderDetail.model_validate(cached["detail"]))

    order = await orders.get_order_for_user(db, order_id, user.email)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=MSG_ORDER_NOT_FOUND)
    detail = _detail(order)
    await order_cache.set(
        key, {"owner": user.email, "detail": detail.model_dump(mode="json", exclude={"refundable"})}
    )
    return _refundable(detail)


@router.post("/refund")
async def request_refund(
    order_id: str = Form("", alias="orderId"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Optional[User] = Depends(get_current_user),
) -> dict:
    """Returns ``{"ok": true}`` or ``{"error": "..."}`` – never an error status."""
    result = await refunds.request_refund(db, gateway, user, order_id.strip())
    return result.as_response()
