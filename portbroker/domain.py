"""Domain types, transition tables and ports for the port broker.

This module contains the status enumerations with their transition tables,
frozen dataclasses used as read snapshots of boxes, ports, orders and notes,
and protocol definitions (ports) for the external collaborators: identity
and notifications. Nothing here touches the database.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

SYSTEM_AUTHOR = "system"


# ---- Enums ----
class BoxStatus(str, Enum):
    """Operational status of a distribution box."""

    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class PortStatus(str, Enum):
    """Occupancy status of a single port."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class OrderStatus(str, Enum):
    """Enumeration of the rental order statuses.

    ``PENDING_APPROVAL`` is the initial status; ``COMPLETED``, ``REJECTED``
    and ``CANCELLED`` are terminal.
    """

    PENDING_APPROVAL = "pending_approval"
    CONTRACT_GENERATED = "contract_generated"
    CONTRACT_SIGNED = "contract_signed"
    INSTALLATION_SCHEDULED = "installation_scheduled"
    INSTALLATION_IN_PROGRESS = "installation_in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


class Direction(str, Enum):
    """Which side of an order the listing is seen from."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"
    ALL = "all"


class Role(str, Enum):
    REQUESTER = "requester"
    OWNER = "owner"
    ADMIN = "admin"


# ---- Transition tables ----
# Ports in these statuses count towards Box.occupied_count.
COUNTED_PORT_STATUSES = frozenset({PortStatus.RESERVED, PortStatus.OCCUPIED})

PORT_TRANSITIONS: dict[PortStatus, frozenset[PortStatus]] = {
    PortStatus.AVAILABLE: frozenset({PortStatus.RESERVED, PortStatus.MAINTENANCE}),
    PortStatus.RESERVED: frozenset({PortStatus.OCCUPIED, PortStatus.AVAILABLE}),
    PortStatus.OCCUPIED: frozenset({PortStatus.AVAILABLE}),
    PortStatus.MAINTENANCE: frozenset({PortStatus.AVAILABLE}),
}

TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.REJECTED, OrderStatus.CANCELLED}
)

# Orders in these statuses hold the reservation on their port.
RESERVING_ORDER_STATUSES = frozenset(
    {
        OrderStatus.CONTRACT_SIGNED,
        OrderStatus.INSTALLATION_SCHEDULED,
        OrderStatus.INSTALLATION_IN_PROGRESS,
    }
)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_APPROVAL: frozenset(
        {OrderStatus.CONTRACT_GENERATED, OrderStatus.REJECTED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONTRACT_GENERATED: frozenset(
        {OrderStatus.CONTRACT_SIGNED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONTRACT_SIGNED: frozenset(
        {OrderStatus.INSTALLATION_SCHEDULED, OrderStatus.CANCELLED}
    ),
    OrderStatus.INSTALLATION_SCHEDULED: frozenset(
        {OrderStatus.INSTALLATION_IN_PROGRESS, OrderStatus.CANCELLED}
    ),
    OrderStatus.INSTALLATION_IN_PROGRESS: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def port_transition_allowed(current: PortStatus, new: PortStatus) -> bool:
    return new in PORT_TRANSITIONS[current]


def order_transition_allowed(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[current]


def counter_delta(old: PortStatus, new: PortStatus) -> int:
    """Return the change to ``occupied_count`` caused by ``old -> new``."""
    return int(new in COUNTED_PORT_STATUSES) - int(old in COUNTED_PORT_STATUSES)


# ---- Entities / snapshots ----
@dataclass(frozen=True)
class Actor:
    """The operator on whose behalf a call is made.

    Attributes:
        operator_id: Identifier supplied by the identity collaborator.
        is_admin: Platform administrators may act for box owners.
    """

    operator_id: str
    is_admin: bool = False


@dataclass(frozen=True)
class Box:
    """Read snapshot of a distribution box (CTO)."""

    id: uuid.UUID
    name: str
    capacity: int
    occupied_count: int
    latitude: float
    longitude: float
    status: BoxStatus
    owner_id: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Port:
    """Read snapshot of a port.

    Attributes:
        price_cents: Monthly price in integer cents.
        tenant_id: Operator occupying the port; only set while occupied.
        service_plan: Free-form plan metadata, if any.
    """

    id: uuid.UUID
    box_id: uuid.UUID
    number: int
    status: PortStatus
    price_cents: int
    tenant_id: Optional[str]
    service_plan: Optional[dict]
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Note:
    id: int
    order_id: uuid.UUID
    author_id: str
    content: str
    is_system: bool
    created_at: datetime


@dataclass(frozen=True)
class Order:
    """Read snapshot of a rental order, notes oldest first."""

    id: uuid.UUID
    port_id: uuid.UUID
    box_id: uuid.UUID
    requester_id: str
    owner_id: str
    status: OrderStatus
    price_cents: int
    installation_fee_cents: int
    signed_by_requester: bool
    signed_by_owner: bool
    scheduled_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    notes: tuple[Note, ...] = field(default=())


@dataclass(frozen=True)
class Occupancy:
    """Aggregate view of a box's ports."""

    box_id: uuid.UUID
    capacity: int
    occupied_count: int
    by_status: dict[str, int]


# ---- Ports (DIP) ----
class IdentityPort(Protocol):
    """Port describing the identity collaborator.

    Implementers return the actor attached to the current call, or None
    when the call carries no identity.
    """

    def current_actor(self) -> Optional[Actor]:
        raise NotImplementedError()


class NotificationPort(Protocol):
    """Port describing the notification sink.

    Called after a transition has been committed; implementations must not
    raise for delivery problems.
    """

    def order_changed(self, order: Order, old_status: Optional[OrderStatus]) -> None:
        """Publish an order status change.

        Args:
            order: Snapshot of the order after the change.
            old_status: Status before the change, or None for a new order.
        """
        raise NotImplementedError()
