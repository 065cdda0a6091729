"""
SQLAlchemy ORM models: catalog (performances, ticket types, variants),
inventory counters, orders and their line items, customer accounts.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class VariantKind(str, enum.Enum):
    FULL = "FULL"
    HALF = "HALF"
    ELDERLY = "ELDERLY"
    PCD = "PCD"   # accessibility discount


# ── Accounts ─────────────────────────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Catalog ──────────────────────────────────────────────────────────────────

class Performance(Base):
    __tablename__ = "performances"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    venue_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ticket_types: Mapped[List["TicketType"]] = relationship(back_populates="performance")


class TicketType(Base):
    __tablename__ = "ticket_types"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    performance_id: Mapped[str | None] = mapped_column(
        Text, ForeignKey("performances.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    performance: Mapped[Optional[Performance]] = relationship(back_populates="ticket_types")
    variants: Mapped[List["TicketVariant"]] = relationship(back_populates="ticket_type")

    __table_args__ = (
        UniqueConstraint("performance_id", "name", name="uq_ticket_type_name"),
    )


class TicketVariant(Base):
    __tablename__ = "ticket_variants"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    ticket_type_id: Mapped[str] = mapped_column(
        Text, ForeignKey("ticket_types.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[VariantKind] = mapped_column(
        Enum(VariantKind, native_enum=False, length=16), nullable=False
    )
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    ticket_type: Mapped[TicketType] = relationship(back_populates="variants")


# ── Inventory ────────────────────────────────────────────────────────────────

class Inventory(Base):
    __tablename__ = "inventory"

    ticket_type_id: Mapped[str] = mapped_column(
        Text, ForeignKey("ticket_types.id", ondelete="CASCADE"), primary_key=True
    )
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_inventory_available_non_negative"),
    )


class InventoryEvent(Base):
    """Audit trail of every counter movement caused by an order line."""
    __tablename__ = "inventory_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(Text, nullable=False)
    order_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    ticket_type_id: Mapped[str] = mapped_column(Text, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)   # sale | release | refund
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        Index("ix_inventory_events_order_item", "order_item_id", "event_type"),
    )


# ── Orders ───────────────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    user_email: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, length=16),
        nullable=False,
        default=OrderStatus.CREATED,
    )
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_session_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, unique=True
    )
    # True while the order's units are off the inventory counters.
    stock_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Set by the refund transaction that restocked this order's items.
    inventory_restored_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.position"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ticket_type_id: Mapped[str] = mapped_column(
        Text, ForeignKey("ticket_types.id"), nullable=False
    )
    variant_id: Mapped[str] = mapped_column(
        Text, ForeignKey("ticket_variants.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_no_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    sector: Mapped[str] = mapped_column(Text, nullable=False, default="")
    kind: Mapped[VariantKind] = mapped_column(
        Enum(VariantKind, native_enum=False, length=16), nullable=False
    )

    order: Mapped[Order] = relationship(back_populates="items")
    ticket_type: Mapped[TicketType] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
    )
