"""
Catalog seeding: performances, ticket types, their four price variants and
initial inventory counters.  Used by the CLI (``--seed``).

Seed document shape::

    {"performances": [
        {"title": "...", "venue": "...", "starts_at": "2026-11-02T21:00:00-03:00",
         "ticket_types": [{"name": "Pista", "price_cents": 25000, "quantity": 500}]}
    ]}
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import Inventory, Performance, TicketType, TicketVariant, VariantKind

logger = logging.getLogger(__name__)

FEE_PERCENT = 15
DISCOUNT_PERCENT = 50
# Half price applies to students, seniors and accessibility tickets alike.
_DISCOUNTED_KINDS = (VariantKind.HALF, VariantKind.ELDERLY, VariantKind.PCD)


class TicketTypeSeed(BaseModel):
    name: str
    price_cents: int = Field(..., ge=0)
    quantity: int = Field(..., ge=0)


class PerformanceSeed(BaseModel):
    title: str
    venue: str = ""
    starts_at: datetime
    ends_at: Optional[datetime] = None
    ticket_types: List[TicketTypeSeed] = []


class CatalogSeed(BaseModel):
    performances: List[PerformanceSeed] = []


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def fee_for(price_cents: int) -> int:
    return _round_half_up(price_cents * FEE_PERCENT, 100)


def discounted_price(price_cents: int) -> int:
    return _round_half_up(price_cents * (100 - DISCOUNT_PERCENT), 100)


def build_variants(ticket_type: TicketType) -> List[TicketVariant]:
    fee = fee_for(ticket_type.price_cents)
    variants = [
        TicketVariant(
            ticket_type_id=ticket_type.id,
            kind=VariantKind.FULL,
            price_cents=ticket_type.price_cents,
            fee_cents=fee,
            discount_pct=0,
        )
    ]
    for kind in _DISCOUNTED_KINDS:
        variants.append(
            TicketVariant(
                ticket_type_id=ticket_type.id,
                kind=kind,
                price_cents=discounted_price(ticket_type.price_cents),
                fee_cents=fee,
                discount_pct=DISCOUNT_PERCENT,
            )
        )
    return variants


async def _upsert_performance(session: AsyncSession, seed: PerformanceSeed) -> Performance:
    perf = (
        await session.execute(
            select(Performance).where(
                Performance.title == seed.title, Performance.starts_at == seed.starts_at
            )
        )
    ).scalar_one_or_none()
    if perf is None:
        perf = Performance(title=seed.title, starts_at=seed.starts_at)
        session.add(perf)
    perf.venue_name = seed.venue
    perf.ends_at = seed.ends_at
    await session.flush()
    return perf


async def seed_catalog(session: AsyncSession, document: Dict[str, Any]) -> Dict[str, int]:
    """
    Upsert the catalog described by *document* and commit.

    Re-seeding an existing ticket type refreshes its price and resets its
    inventory to the seeded quantity; variants are only created once.
    """
    catalog = CatalogSeed.model_validate(document)
    counts = {"performances": 0, "ticket_types": 0, "variants": 0}

    for perf_seed in catalog.performances:
        perf = await _upsert_performance(session, perf_seed)
        counts["performances"] += 1

        for tt_seed in perf_seed.ticket_types:
            tt = (
                await session.execute(
                    select(TicketType).where(
                        TicketType.performance_id == perf.id,
                        TicketType.name == tt_seed.name,
                    )
                )
            ).scalar_one_or_none()
            is_new = tt is None
            if is_new:
                tt = TicketType(performance_id=perf.id, name=tt_seed.name)
                session.add(tt)
            tt.price_cents = tt_seed.price_cents
            tt.initial_quantity = tt_seed.quantity
            await session.flush()
            counts["ticket_types"] += 1

            counter = await session.get(Inventory, tt.id)
            if counter is None:
                session.add(Inventory(ticket_type_id=tt.id, available=tt_seed.quantity))
            else:
                counter.available = tt_seed.quantity

            if is_new:
                variants = build_variants(tt)
                session.add_all(variants)
                counts["variants"] += len(variants)

    await session.commit()
    logger.info(
        "Catalog seeded: %d performances, %d ticket types, %d new variants",
        counts["performances"], counts["ticket_types"], counts["variants"],
    )
    return counts
