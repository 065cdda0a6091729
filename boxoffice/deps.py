"""
FastAPI dependency utilities: webhook signature verification, current user,
payment gateway.
"""
from __future__ import annotations

import logging
from typing import Optional

import stripe
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.config import get_settings
from boxoffice.database import get_db
from boxoffice.models import User
from boxoffice.services.accounts import clear_user_session, get_session_user_id
from boxoffice.services.payments import get_payment_gateway

logger = logging.getLogger(__name__)

__all__ = ["verify_stripe_webhook", "get_current_user", "get_payment_gateway"]


async def verify_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> bytes:
    """
    Verify the Stripe-Signature header against the raw body.
    Returns the raw request body so routers don't need to re-read it.

    Every rejection is a 400: the provider must not keep retrying a delivery
    that can never verify.
    """
    secret = get_settings().stripe_webhook_secret
    if not stripe_signature or not secret:
        logger.warning(
            "Webhook rejected: signature present=%s secret configured=%s",
            bool(stripe_signature), bool(secret),
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe signature or webhook secret",
        )

    body = await request.body()
    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid UTF-8",
        )

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            stripe_signature,
            secret,
            get_settings().stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook Error: {exc}",
        )

    return body


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """Session user, or None. Handlers decide how to report the absence."""
    user_id = get_session_user_id(request)
    if not user_id:
        return None

    user = await db.get(User, user_id)
    if user is None:
        clear_user_session(request)
    return user
