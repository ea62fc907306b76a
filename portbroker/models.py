"""SQLAlchemy models for boxes, ports, rental orders and their notes.

The schema keeps two invariants at the database level so they hold even
under concurrent writers:

- ``ck_boxes_occupied_range`` keeps the denormalized counter in range.
- ``ux_orders_live_port`` is a partial unique index allowing at most one
  non-terminal order per port.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, mapped_column

from .domain import BoxStatus, OrderStatus, PortStatus, TERMINAL_ORDER_STATUSES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_ORDER_STATUSES, key=lambda s: s.value))
LIVE_ORDER_WHERE = text(f"status NOT IN ({_TERMINAL_SQL})")


class Base(DeclarativeBase):
    pass


class BoxModel(Base):
    """A fiber distribution box (CTO) with a fixed number of ports.

    Attributes:
        capacity: Number of port slots; ports 1..capacity exist.
        occupied_count: Ports currently reserved or occupied. Only changed
            together with a port status change in the same transaction.
        owner_id: Operator that owns the box and answers rental requests.
    """

    __tablename__ = "boxes"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name = mapped_column(String(120), nullable=False)
    capacity = mapped_column(Integer, nullable=False)
    occupied_count = mapped_column(Integer, nullable=False, default=0)
    latitude = mapped_column(Float, nullable=False)
    longitude = mapped_column(Float, nullable=False)
    status = mapped_column(String(16), nullable=False, default=BoxStatus.ACTIVE.value)
    owner_id = mapped_column(String(64), nullable=False, index=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_boxes_capacity"),
        CheckConstraint(
            "occupied_count >= 0 AND occupied_count <= capacity",
            name="ck_boxes_occupied_range",
        ),
    )


class PortModel(Base):
    """A single allocatable port on a box.

    ``version`` is bumped on every status change and used as the
    compare-and-swap key for concurrent transitions.
    """

    __tablename__ = "ports"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    box_id = mapped_column(Uuid, ForeignKey("boxes.id"), nullable=False, index=True)
    number = mapped_column(Integer, nullable=False)
    status = mapped_column(String(16), nullable=False, default=PortStatus.AVAILABLE.value)
    price_cents = mapped_column(Integer, nullable=False, default=0)
    tenant_id = mapped_column(String(64), nullable=True)
    service_plan = mapped_column(JSON, nullable=True)
    version = mapped_column(Integer, nullable=False, default=1)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("box_id", "number", name="ux_ports_box_number"),
        CheckConstraint("price_cents >= 0", name="ck_ports_price"),
        CheckConstraint("number >= 1", name="ck_ports_number"),
    )


class OrderModel(Base):
    """A rental order for one port, between a requester and the box owner."""

    __tablename__ = "rental_orders"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    port_id = mapped_column(Uuid, ForeignKey("ports.id"), nullable=False, index=True)
    box_id = mapped_column(Uuid, ForeignKey("boxes.id"), nullable=False, index=True)
    requester_id = mapped_column(String(64), nullable=False, index=True)
    owner_id = mapped_column(String(64), nullable=False, index=True)
    status = mapped_column(
        String(32), nullable=False, default=OrderStatus.PENDING_APPROVAL.value
    )
    price_cents = mapped_column(Integer, nullable=False, default=0)
    installation_fee_cents = mapped_column(Integer, nullable=False, default=0)
    signed_by_requester = mapped_column(Boolean, nullable=False, default=False)
    signed_by_owner = mapped_column(Boolean, nullable=False, default=False)
    scheduled_at = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at = mapped_column(DateTime(timezone=True), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_orders_price"),
        CheckConstraint("installation_fee_cents >= 0", name="ck_orders_fee"),
        Index(
            "ux_orders_live_port",
            "port_id",
            unique=True,
            sqlite_where=LIVE_ORDER_WHERE,
            postgresql_where=LIVE_ORDER_WHERE,
        ),
    )


class NoteModel(Base):
    """Append-only note attached to an order."""

    __tablename__ = "order_notes"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id = mapped_column(Uuid, ForeignKey("rental_orders.id"), nullable=False, index=True)
    author_id = mapped_column(String(64), nullable=False)
    content = mapped_column(Text, nullable=False)
    is_system = mapped_column(Boolean, nullable=False, default=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class IdempotencyKey(Base):
    """Persisted idempotency records to deduplicate order creation.

    Attributes:
        key: Unique idempotency key provided by the client.
        request_hash: Canonical SHA-256 hex digest of the first request.
        order_id: Order created by the first request with this key.
    """

    __tablename__ = "idempotency_keys"

    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    order_id = mapped_column(Uuid, ForeignKey("rental_orders.id"), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
