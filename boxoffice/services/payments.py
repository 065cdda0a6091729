"""
Payment session gateway: a thin, replaceable wrapper around Stripe Checkout.

Callers depend on the ``PaymentGateway`` interface only.  ``StripeGateway``
talks to the provider; ``UnavailableGateway`` stands in when no secret key is
configured so refunds can degrade to DB-only bookkeeping.

Provider objects never leave this module: they are converted into the small
dataclasses below, and SDK errors are translated into the taxonomy in
``boxoffice.errors`` by error code.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import stripe
from starlette.concurrency import run_in_threadpool

from boxoffice.config import get_settings
from boxoffice.errors import (
    PaymentProviderError,
    ProviderUnavailableError,
    classify_provider_code,
)
from boxoffice.models import Order

logger = logging.getLogger(__name__)

REFUND_REASON = "requested_by_customer"


# ── Provider-neutral views ───────────────────────────────────────────────────

@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class ProviderCharge:
    id: str
    disputed: bool
    refunded: bool
    amount_refunded: int = 0


@dataclass(frozen=True)
class ProviderPaymentIntent:
    id: str
    amount_received: Optional[int]
    # None when the provider only returned a bare charge id (or no charge yet)
    latest_charge: Optional[ProviderCharge]


@dataclass(frozen=True)
class ProviderSession:
    id: str
    status: Optional[str]            # 'open' | 'complete' | 'expired'
    payment_status: Optional[str]    # 'paid' | 'unpaid' | 'no_payment_required'
    url: Optional[str]
    amount_total: Optional[int]
    payment_intent: Optional[ProviderPaymentIntent]

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def is_open(self) -> bool:
        return self.status == "open" and bool(self.url)


class PaymentGateway(Protocol):
    @property
    def available(self) -> bool: ...

    async def create_session(
        self,
        order: Order,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSession: ...

    async def retrieve_session(
        self, session_id: str, *, expand_charge: bool = False
    ) -> ProviderSession: ...

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        reason: str,
        idempotency_key: str,
    ) -> None: ...


# ── No-credentials implementation ────────────────────────────────────────────

class UnavailableGateway:
    """Used when STRIPE_SECRET_KEY is absent. Every call raises."""

    available = False

    async def create_session(self, order, success_url, cancel_url, idempotency_key):
        raise ProviderUnavailableError("Payment provider is not configured")

    async def retrieve_session(self, session_id, *, expand_charge=False):
        raise ProviderUnavailableError("Payment provider is not configured")

    async def create_refund(self, payment_intent_id, amount_cents, reason, idempotency_key):
        raise ProviderUnavailableError("Payment provider is not configured")


# ── Stripe implementation ────────────────────────────────────────────────────

def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _to_charge(raw: Any) -> Optional[ProviderCharge]:
    # An unexpanded charge is just its id: no dispute/refund information.
    if raw is None or isinstance(raw, str):
        return None
    return ProviderCharge(
        id=_field(raw, "id"),
        disputed=bool(_field(raw, "disputed")),
        refunded=bool(_field(raw, "refunded")),
        amount_refunded=_field(raw, "amount_refunded") or 0,
    )


def _to_payment_intent(raw: Any) -> Optional[ProviderPaymentIntent]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return ProviderPaymentIntent(id=raw, amount_received=None, latest_charge=None)
    amount_received = _field(raw, "amount_received")
    return ProviderPaymentIntent(
        id=_field(raw, "id"),
        amount_received=amount_received if isinstance(amount_received, int) else None,
        latest_charge=_to_charge(_field(raw, "latest_charge")),
    )


def to_provider_session(raw: Any) -> ProviderSession:
    return ProviderSession(
        id=_field(raw, "id"),
        status=_field(raw, "status"),
        payment_status=_field(raw, "payment_status"),
        url=_field(raw, "url"),
        amount_total=_field(raw, "amount_total"),
        payment_intent=_to_payment_intent(_field(raw, "payment_intent")),
    )


def translate_stripe_error(exc: stripe.StripeError, operation: str) -> PaymentProviderError:
    code = getattr(exc, "code", None)
    if code is None and isinstance(getattr(exc, "json_body", None), dict):
        code = (exc.json_body.get("error") or {}).get("code")
    error_cls = classify_provider_code(code)
    logger.warning(
        "Stripe %s failed: code=%s type=%s message=%s",
        operation, code, type(exc).__name__, getattr(exc, "user_message", None) or str(exc),
    )
    return error_cls(f"Stripe {operation} failed", code=code)


class StripeGateway:
    """Stripe Checkout via the official SDK; API key passed per call."""

    available = True

    def __init__(self, api_key: str, currency: str = "brl") -> None:
        self._api_key = api_key
        self._currency = currency

    async def create_session(
        self,
        order: Order,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSession:
        line_items = [
            {
                "quantity": item.quantity,
                "price_data": {
                    "currency": self._currency,
                    "unit_amount": item.unit_price_cents,
                    "product_data": {"name": f"{item.sector} - {item.kind.value}"},
                },
            }
            for item in order.items
        ]
        metadata = {"order_id": order.id}
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                mode="payment",
                customer_email=order.user_email,
                line_items=line_items,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc, "checkout.session.create") from exc

        logger.info(
            "Checkout session created order=%s session=%s key=%s",
            order.id, session.id, idempotency_key,
        )
        return CheckoutSession(id=session.id, url=_field(session, "url"))

    async def retrieve_session(
        self, session_id: str, *, expand_charge: bool = False
    ) -> ProviderSession:
        params: dict = {"api_key": self._api_key}
        if expand_charge:
            params["expand"] = ["payment_intent.latest_charge"]
        try:
            raw = await run_in_threadpool(
                stripe.checkout.Session.retrieve, session_id, **params
            )
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc, "checkout.session.retrieve") from exc
        return to_provider_session(raw)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        reason: str,
        idempotency_key: str,
    ) -> None:
        try:
            await run_in_threadpool(
                stripe.Refund.create,
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                payment_intent=payment_intent_id,
                amount=amount_cents,
                reason=reason,
            )
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc, "refund.create") from exc
        logger.info(
            "Refund issued payment_intent=%s amount=%d", payment_intent_id, amount_cents
        )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency: Stripe when configured, otherwise the null gateway."""
    settings = get_settings()
    if settings.stripe_secret_key:
        return StripeGateway(settings.stripe_secret_key, settings.checkout_currency)
    return UnavailableGateway()
