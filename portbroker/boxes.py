"""Distribution box catalogue: create, list, edit and retire boxes.

A box is created together with all of its ports in one transaction.
Capacity can only grow afterwards; the new ports are appended after the
existing ones. A box is only deleted when none of its ports is in use and
no order, open or historical, ever referenced them.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.orm import Session

from .capabilities import require_box_manager
from .domain import Actor, Box, BoxStatus, Occupancy, PortStatus
from .errors import BoxNotFound, InvalidCapacity, PortUnavailable, Unauthorized
from .models import BoxModel, OrderModel, PortModel, utcnow
from .registry import PortRegistry
from .snapshots import to_box

logger = logging.getLogger("portbroker.boxes")


def _validate_capacity(capacity) -> int:
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise InvalidCapacity("capacity must be a positive integer")
    return capacity


class BoxCatalogue:
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self._session = session
        self._clock = clock
        self.registry = PortRegistry(session, clock)

    def _row(self, box_id: uuid.UUID, lock: bool = False) -> BoxModel:
        stmt = select(BoxModel).where(BoxModel.id == box_id)
        if lock:
            stmt = stmt.with_for_update()
        row = self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars().first()
        if row is None:
            raise BoxNotFound(f"box {box_id} not found")
        return row

    def create_box(
        self,
        actor: Actor,
        name: str,
        capacity: int,
        latitude: float,
        longitude: float,
        owner_id: Optional[str] = None,
        status: BoxStatus = BoxStatus.ACTIVE,
    ) -> Box:
        """Create a box and provision its ports.

        Args:
            actor: Caller; must be the owner or an administrator.
            name: Display name.
            capacity: Number of ports to provision (>= 1).
            latitude: Geographic latitude.
            longitude: Geographic longitude.
            owner_id: Owning operator; defaults to the actor.
            status: Initial operational status.

        Returns:
            Box: The new box with ``occupied_count`` 0.

        Raises:
            InvalidCapacity: If ``capacity`` is not a positive integer.
            Unauthorized: If a non-admin creates a box for someone else.
        """
        owner_id = owner_id or actor.operator_id
        if owner_id != actor.operator_id and not actor.is_admin:
            raise Unauthorized("cannot create a box for another operator")
        capacity = _validate_capacity(capacity)

        now = self._clock()
        row = BoxModel(
            id=uuid.uuid4(),
            name=name,
            capacity=capacity,
            occupied_count=0,
            latitude=latitude,
            longitude=longitude,
            status=BoxStatus(status).value,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        self._session.flush()
        self.registry.create_ports_for_box(row.id, capacity)
        logger.info(
            "box created",
            extra={"box_id": str(row.id), "capacity": capacity, "owner_id": owner_id},
        )
        return to_box(row)

    def get_box(self, box_id: uuid.UUID) -> Box:
        return to_box(self._row(box_id))

    def list_boxes(
        self,
        search: Optional[str] = None,
        status: Optional[BoxStatus] = None,
        owner_id: Optional[str] = None,
    ) -> list[Box]:
        stmt = select(BoxModel)
        if search:
            stmt = stmt.where(BoxModel.name.ilike(f"%{search}%"))
        if status is not None:
            stmt = stmt.where(BoxModel.status == BoxStatus(status).value)
        if owner_id:
            stmt = stmt.where(BoxModel.owner_id == owner_id)
        rows = self._session.execute(stmt.order_by(BoxModel.name, BoxModel.id)).scalars().all()
        return [to_box(r) for r in rows]

    def update_box(
        self,
        actor: Actor,
        box_id: uuid.UUID,
        name: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        status: Optional[BoxStatus] = None,
        capacity: Optional[int] = None,
    ) -> Box:
        """Edit box metadata or grow its capacity.

        Raises:
            InvalidCapacity: If ``capacity`` is lower than the current one.
        """
        row = self._row(box_id, lock=True)
        require_box_manager(row, actor, "edit")
        now = self._clock()
        if name is not None:
            row.name = name
        if latitude is not None:
            row.latitude = latitude
        if longitude is not None:
            row.longitude = longitude
        if status is not None:
            row.status = BoxStatus(status).value
        if capacity is not None:
            capacity = _validate_capacity(capacity)
            if capacity < row.capacity:
                raise InvalidCapacity("capacity can only grow")
            if capacity > row.capacity:
                self.registry.add_ports(row.id, capacity - row.capacity)
                row.capacity = capacity
        row.updated_at = now
        self._session.flush()
        return to_box(row)

    def delete_box(self, actor: Actor, box_id: uuid.UUID) -> None:
        """Delete a box and its ports.

        Raises:
            PortUnavailable: If any port is not available or any order
                references the box.
        """
        row = self._row(box_id, lock=True)
        require_box_manager(row, actor, "delete")
        busy = self._session.execute(
            select(
                exists().where(
                    PortModel.box_id == box_id,
                    PortModel.status != PortStatus.AVAILABLE.value,
                )
            )
        ).scalar_one()
        if busy:
            raise PortUnavailable(f"box {box_id} has ports in use")
        referenced = self._session.execute(
            select(exists().where(OrderModel.box_id == box_id))
        ).scalar_one()
        if referenced:
            raise PortUnavailable(f"box {box_id} has rental orders")

        self._session.execute(delete(PortModel).where(PortModel.box_id == box_id))
        self._session.delete(row)
        self._session.flush()
        logger.info("box deleted", extra={"box_id": str(box_id)})

    def occupancy(self, box_id: uuid.UUID) -> Occupancy:
        """Per-status port counts next to the stored occupied counter."""
        row = self._row(box_id)
        counts = dict(
            self._session.execute(
                select(PortModel.status, func.count())
                .where(PortModel.box_id == box_id)
                .group_by(PortModel.status)
            ).all()
        )
        by_status = {s.value: int(counts.get(s.value, 0)) for s in PortStatus}
        return Occupancy(
            box_id=row.id,
            capacity=row.capacity,
            occupied_count=row.occupied_count,
            by_status=by_status,
        )
