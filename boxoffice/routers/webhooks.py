"""
Payment provider webhook receiver.

POST /webhooks/stripe
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.database import get_db
from boxoffice.deps import verify_stripe_webhook
from boxoffice.services.webhook_events import apply_event, decode_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    body: bytes = Depends(verify_stripe_webhook),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Apply a verified payment event to the order it references.

    Always 200 once handled, even when no order matched, so the provider stops
    redelivering.  Failures while applying return 500 so it retries; that is
    safe because every transition is guarded.
    """
    try:
        event = decode_event(json.loads(body))
    except ValueError as exc:
        logger.warning("Malformed webhook payload: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed event payload",
        )

    try:
        changed = await apply_event(db, event)
    except Exception:
        logger.exception("Webhook handler failed for event type=%s id=%s", event.type, event.id)
        await db.rollback()
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook handler failed"},
        )

    logger.info("Webhook handled type=%s id=%s order_changed=%s", event.type, event.id, changed)
    return JSONResponse(content={"received": True})
