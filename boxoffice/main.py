"""
Box office order & refund service – FastAPI entry point.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from boxoffice.config import get_settings
from boxoffice.errors import (
    AuthError,
    BoxOfficeError,
    CartValidationError,
    OrderNotFoundError,
    PaymentProviderError,
    ProviderUnavailableError,
)
from boxoffice.routers import account, admin, checkout, orders, webhooks

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="Box Office",
    version="1.0.0",
    description="Ticket checkout, payment webhooks and refund reconciliation.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret_key,
    session_cookie="session",
    https_only=False,   # set to True behind TLS in production
    same_site="lax",
    max_age=86400 * settings.session_max_age_days,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

_STATUS_BY_ERROR = (
    (CartValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PaymentProviderError, status.HTTP_502_BAD_GATEWAY),
)


@app.exception_handler(BoxOfficeError)
async def _boxoffice_error(request: Request, exc: BoxOfficeError) -> JSONResponse:
    code = next(
        (c for cls, c in _STATUS_BY_ERROR if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"error": exc.message})

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(webhooks.router)
app.include_router(checkout.router)
app.include_router(orders.router)
app.include_router(account.router)
app.include_router(admin.router)


@app.on_event("startup")
async def _startup() -> None:
    if not settings.has_stripe:
        logger.warning("STRIPE_SECRET_KEY not set – refunds will be recorded locally only")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set – all webhook deliveries will be rejected")
    logger.info("Box office service ready.")
