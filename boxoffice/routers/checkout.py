"""
Checkout actions.

POST /checkout/start                   (form: items=<JSON cart>)
POST /checkout/{order_id}/resume
GET  /checkout/{order_id}/success      (?session_id=…)
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.config import get_settings
from boxoffice.database import get_db
from boxoffice.deps import get_current_user, get_payment_gateway
from boxoffice.errors import MSG_INVALID_CART, CartValidationError
from boxoffice.models import OrderStatus, User
from boxoffice.schemas import CartAdapter, CheckoutStatus
from boxoffice.services import checkout
from boxoffice.services.payments import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _origin(request: Request) -> str:
    return (request.headers.get("origin") or get_settings().app_base_url).rstrip("/")


@router.post("/start")
async def start_checkout(
    request: Request,
    items: str = Form(""),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Optional[User] = Depends(get_current_user),
) -> RedirectResponse:
    lines = []
    if items:
        try:
            lines = CartAdapter.validate_python(json.loads(items))
        except (ValueError, ValidationError):
            raise CartValidationError(MSG_INVALID_CART)

    url = await checkout.start_checkout(db, gateway, user, lines, _origin(request))
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


@router.post("/{order_id}/resume")
async def resume_checkout(
    order_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Optional[User] = Depends(get_current_user),
) -> RedirectResponse:
    url = await checkout.resume_checkout(db, gateway, user, order_id, _origin(request))
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/{order_id}/success", response_model=CheckoutStatus)
async def checkout_success(
    order_id: str,
    session_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutStatus:
    order = await checkout.confirm_checkout_return(db, gateway, order_id, session_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id!r} not found")
    return CheckoutStatus(
        order_id=order.id,
        status=order.status.value,
        paid=order.status == OrderStatus.PAID,
    )
