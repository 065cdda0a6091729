"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ── Checkout ─────────────────────────────────────────────────────────────────

class CartLine(BaseModel):
    """One cart line as submitted by the browser. Any price fields are ignored."""
    ticket_type_id: str = Field(..., alias="ticketTypeId", min_length=1)
    variant_id: str = Field(..., alias="variantId", min_length=1)
    quantity: int = Field(..., alias="qty", gt=0)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


CartAdapter = TypeAdapter(List[CartLine])


class CheckoutStatus(BaseModel):
    order_id: str
    status: str
    paid: bool


# ── Refunds ──────────────────────────────────────────────────────────────────

class RefundResult(BaseModel):
    """Either ``{"ok": true}`` or ``{"error": "..."}``."""
    ok: Optional[bool] = None
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "RefundResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, message: str) -> "RefundResult":
        return cls(error=message)

    def as_response(self) -> dict:
        return self.model_dump(exclude_none=True)


# ── Order views ──────────────────────────────────────────────────────────────

class OrderSummary(BaseModel):
    id: str
    status: str
    total_cents: int
    created_at: datetime


class OrderItemView(BaseModel):
    ticket_type_id: str
    sector: str
    kind: str
    quantity: int
    unit_price_no_fee_cents: int
    fee_cents: int
    unit_price_cents: int


class OrderDetail(OrderSummary):
    items: List[OrderItemView]
    subtotal_cents: int
    fees_cents: int
    performance_title: Optional[str] = None
    performance_starts_at: Optional[datetime] = None
    refundable: bool = False


# ── Admin / operational ──────────────────────────────────────────────────────

class InventoryRow(BaseModel):
    ticket_type_id: str
    available: int
    updated_at: str

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
    payments: str = "ok"
