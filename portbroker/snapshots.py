"""Map ORM rows to the frozen domain snapshots returned to callers.

Snapshots are built inside the transaction that read the rows, so callers
never observe a half-applied change.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from .domain import Box, BoxStatus, Note, Order, OrderStatus, Port, PortStatus
from .models import BoxModel, NoteModel, OrderModel, PortModel


def aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_box(row: BoxModel) -> Box:
    return Box(
        id=row.id,
        name=row.name,
        capacity=row.capacity,
        occupied_count=row.occupied_count,
        latitude=row.latitude,
        longitude=row.longitude,
        status=BoxStatus(row.status),
        owner_id=row.owner_id,
        created_at=aware(row.created_at),
        updated_at=aware(row.updated_at),
    )


def to_port(row: PortModel) -> Port:
    return Port(
        id=row.id,
        box_id=row.box_id,
        number=row.number,
        status=PortStatus(row.status),
        price_cents=row.price_cents,
        tenant_id=row.tenant_id,
        service_plan=row.service_plan,
        version=row.version,
        created_at=aware(row.created_at),
        updated_at=aware(row.updated_at),
    )


def to_note(row: NoteModel) -> Note:
    return Note(
        id=row.id,
        order_id=row.order_id,
        author_id=row.author_id,
        content=row.content,
        is_system=row.is_system,
        created_at=aware(row.created_at),
    )


def to_order(row: OrderModel, notes: Iterable[Note] = ()) -> Order:
    return Order(
        id=row.id,
        port_id=row.port_id,
        box_id=row.box_id,
        requester_id=row.requester_id,
        owner_id=row.owner_id,
        status=OrderStatus(row.status),
        price_cents=row.price_cents,
        installation_fee_cents=row.installation_fee_cents,
        signed_by_requester=row.signed_by_requester,
        signed_by_owner=row.signed_by_owner,
        scheduled_at=aware(row.scheduled_at),
        completed_at=aware(row.completed_at),
        created_at=aware(row.created_at),
        updated_at=aware(row.updated_at),
        notes=tuple(notes),
    )
