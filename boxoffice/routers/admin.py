"""
Operational endpoints.

GET  /admin/health
GET  /admin/inventory
GET  /admin/inventory/{ticket_type_id}
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.database import get_db
from boxoffice.deps import get_payment_gateway
from boxoffice.models import Inventory
from boxoffice.schemas import HealthResponse, InventoryRow
from boxoffice.services.payments import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _row(r: Inventory) -> InventoryRow:
    return InventoryRow(
        ticket_type_id=r.ticket_type_id,
        available=r.available,
        updated_at=r.updated_at.isoformat(),
    )


@router.get("/health", response_model=HealthResponse)
async def health(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(
        status="ok",
        db=db_status,
        payments="ok" if gateway.available else "unavailable",
    )


@router.get("/inventory", response_model=List[InventoryRow])
async def list_inventory(db: AsyncSession = Depends(get_db)) -> List[InventoryRow]:
    rows = (
        await db.execute(select(Inventory).order_by(Inventory.ticket_type_id))
    ).scalars().all()
    return [_row(r) for r in rows]


@router.get("/inventory/{ticket_type_id}", response_model=InventoryRow)
async def get_inventory(ticket_type_id: str, db: AsyncSession = Depends(get_db)) -> InventoryRow:
    row = await db.get(Inventory, ticket_type_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Ticket type {ticket_type_id!r} not found")
    return _row(row)
