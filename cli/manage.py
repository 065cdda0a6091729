#!/usr/bin/env python3
"""
CLI: operator tasks for the box office database.

Usage:
    # Create tables
    python -m cli.manage --init-db

    # Load / refresh the catalog (performances, ticket types, variants, inventory)
    python -m cli.manage --seed catalog.json

    # Show inventory levels
    python -m cli.manage --stock

    # Show a customer's orders
    python -m cli.manage --orders someone@example.com

    # Fail unpaid orders older than 30 minutes and give their stock back
    python -m cli.manage --release-stale 30
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import timedelta

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from boxoffice.database import engine, get_db_ctx
from boxoffice.models import Base, Inventory, TicketType
from boxoffice.services.catalog import seed_catalog
from boxoffice.services.holds import release_stale_orders
from boxoffice.services.orders import list_orders_for_user


async def cmd_init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Tables created.")


async def cmd_seed(path: str) -> None:
    try:
        with open(path, encoding="utf-8") as fh:
            document = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"ERROR: cannot read seed file {path!r}: {exc}", file=sys.stderr)
        sys.exit(1)

    async with get_db_ctx() as session:
        counts = await seed_catalog(session, document)

    print(f"\n→ Seeded from {path}")
    print(f"  Performances:  {counts['performances']}")
    print(f"  Ticket types:  {counts['ticket_types']}")
    print(f"  New variants:  {counts['variants']}")


async def cmd_stock() -> None:
    async with get_db_ctx() as session:
        rows = (
            await session.execute(
                select(Inventory, TicketType.name)
                .join(TicketType, TicketType.id == Inventory.ticket_type_id)
                .order_by(TicketType.name)
            )
        ).all()

    if not rows:
        print("No inventory records found.")
        return

    print(f"\n{'TICKET TYPE':<38} {'NAME':<24} {'AVAILABLE':>10} UPDATED")
    print("-" * 100)
    for inv, name in rows:
        print(f"{inv.ticket_type_id:<38} {name:<24} {inv.available:>10} {inv.updated_at}")


async def cmd_orders(email: str) -> None:
    async with get_db_ctx() as session:
        rows = await list_orders_for_user(session, email)

    if not rows:
        print(f"No orders found for {email}.")
        return

    print(f"\n{'ORDER':<38} {'STATUS':<10} {'TOTAL':>12} CREATED")
    print("-" * 90)
    for o in rows:
        print(f"{o.id:<38} {o.status.value:<10} {o.total_cents / 100:>12.2f} {o.created_at}")


async def cmd_release_stale(minutes: int) -> None:
    async with get_db_ctx() as session:
        released = await release_stale_orders(session, timedelta(minutes=minutes))

    print(f"\n→ Released {len(released)} order(s) older than {minutes} min")
    for order_id in released:
        print(f"  {order_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Box office CLI")
    parser.add_argument("--init-db", action="store_true", help="Create database tables")
    parser.add_argument("--seed", metavar="FILE", help="Load catalog JSON")
    parser.add_argument("--stock", action="store_true", help="Print inventory levels")
    parser.add_argument("--orders", metavar="EMAIL", help="Print a customer's orders")
    parser.add_argument(
        "--release-stale", metavar="MINUTES", type=int,
        help="Fail unpaid orders older than MINUTES and release their stock",
    )
    args = parser.parse_args()

    if args.init_db:
        asyncio.run(cmd_init_db())
    elif args.seed:
        asyncio.run(cmd_seed(args.seed))
    elif args.stock:
        asyncio.run(cmd_stock())
    elif args.orders:
        asyncio.run(cmd_orders(args.orders))
    elif args.release_stale is not None:
        asyncio.run(cmd_release_stale(args.release_stale))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
