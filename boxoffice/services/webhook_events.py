"""
Payment provider webhook events: decoding into a closed set of known kinds
and applying each as a guarded order transition.

Every transition here is idempotent, so a redelivered or reordered event is
harmless: a duplicate ``checkout.session.completed`` finds the order already
PAID, and a late ``payment_intent.payment_failed`` cannot touch a PAID order.
A failed payment gives the order's held stock back in the same transaction.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import Order, OrderStatus
from boxoffice.services import holds, order_cache, orders

logger = logging.getLogger(__name__)

ORDER_ID_METADATA_KEY = "order_id"


class _EventObject(BaseModel):
    id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @property
    def order_id(self) -> Optional[str]:
        value = (self.metadata or {}).get(ORDER_ID_METADATA_KEY)
        return str(value) if value else None


class _EventData(BaseModel):
    object: _EventObject

    model_config = ConfigDict(extra="ignore")


class _BaseEvent(BaseModel):
    id: Optional[str] = None
    data: _EventData

    model_config = ConfigDict(extra="ignore")

    @property
    def order_id(self) -> Optional[str]:
        return self.data.object.order_id


class CheckoutCompleted(_BaseEvent):
    type: Literal["checkout.session.completed"]


class PaymentFailed(_BaseEvent):
    type: Literal["payment_intent.payment_failed"]


class ChargeRefunded(_BaseEvent):
    type: Literal["charge.refunded"]


class UnknownEvent(BaseModel):
    id: Optional[str] = None
    type: str

    model_config = ConfigDict(extra="ignore")


ProviderEvent = Union[CheckoutCompleted, PaymentFailed, ChargeRefunded, UnknownEvent]

_KNOWN: Dict[str, type] = {
    "checkout.session.completed": CheckoutCompleted,
    "payment_intent.payment_failed": PaymentFailed,
    "charge.refunded": ChargeRefunded,
}


def decode_event(payload: Any) -> ProviderEvent:
    """
    Decode a parsed JSON payload.

    Raises ``ValueError`` (pydantic's ValidationError is one) for anything that
    is not an event envelope; unrecognised kinds decode to ``UnknownEvent``.
    """
    if not isinstance(payload, dict):
        raise ValueError("event payload must be a JSON object")
    if not isinstance(payload.get("type"), str):
        raise ValueError("event type must be a string")
    model = _KNOWN.get(payload.get("type"), UnknownEvent)
    return model.model_validate(payload)


async def _invalidate(session: AsyncSession, order_id: str) -> None:
    email = (
        await session.execute(select(Order.user_email).where(Order.id == order_id))
    ).scalar_one_or_none()
    await order_cache.invalidate_order_views(order_id, email)


async def apply_event(session: AsyncSession, event: ProviderEvent) -> Optional[str]:
    """
    Apply *event* to the order store and commit.

    Returns the id of the order that changed, or None when nothing changed
    (unknown kind, no resolvable order, or the guard did not match).
    """
    changed_order: Optional[str] = None

    if isinstance(event, CheckoutCompleted):
        payable = (OrderStatus.CREATED, OrderStatus.FAILED)
        if event.order_id:
            if await orders.transition(
                session, event.order_id, OrderStatus.PAID, only_from=payable
            ):
                changed_order = event.order_id
        elif event.data.object.id:
            changed_order = await orders.transition_by_provider_session(
                session, event.data.object.id, OrderStatus.PAID, only_from=payable
            )
        if changed_order:
            await holds.restore_after_payment(session, changed_order)

    elif isinstance(event, PaymentFailed):
        if event.order_id and await orders.transition(
            session, event.order_id, OrderStatus.FAILED, not_from=(OrderStatus.PAID,)
        ):
            changed_order = event.order_id
            await holds.release_hold(session, changed_order)

    elif isinstance(event, ChargeRefunded):
        # The money has already moved; the provider is authoritative.
        if event.order_id and await orders.transition(
            session, event.order_id, OrderStatus.REFUNDED
        ):
            changed_order = event.order_id

    else:
        logger.debug("Ignoring webhook event type=%s id=%s", event.type, event.id)
        return None

    if event.order_id is None and changed_order is None:
        logger.info("Webhook %s (%s) carries no resolvable order id", event.type, event.id)

    await session.commit()
    if changed_order:
        await _invalidate(session, changed_order)
    return changed_order
