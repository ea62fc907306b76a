"""Port registry and the box occupied-counter keeper.

``PortRegistry`` is the only code that writes ``ports.status``. Every
status change is a compare-and-swap on ``(status, version)`` followed by
the matching counter delta on the owning box, both inside the caller's
transaction, so ``boxes.occupied_count`` always equals the number of the
box's ports that are reserved or occupied.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .domain import (
    COUNTED_PORT_STATUSES,
    Port,
    PortStatus,
    counter_delta,
    port_transition_allowed,
)
from .errors import (
    BoxNotFound,
    InvalidCapacity,
    InvalidPrice,
    InvalidTransition,
    PortConflict,
    PortNotFound,
)
from .models import BoxModel, PortModel, utcnow
from .snapshots import to_port

logger = logging.getLogger("portbroker.registry")


class BoxCounter:
    """Keeps ``BoxModel.occupied_count`` consistent with port statuses."""

    def __init__(self, session: Session):
        self._session = session

    def apply(self, box_id: uuid.UUID, delta: int, now: datetime) -> None:
        """Add ``delta`` to the box counter as a single SQL expression.

        The increment is computed by the database, not read-modified-written
        in Python, so concurrent deltas on the same box cannot be lost.
        """
        if delta == 0:
            return
        self._session.execute(
            update(BoxModel)
            .where(BoxModel.id == box_id)
            .values(occupied_count=BoxModel.occupied_count + delta, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def recount(self, box_id: uuid.UUID) -> int:
        """Count the box's ports that are reserved or occupied."""
        return self._session.execute(
            select(func.count())
            .select_from(PortModel)
            .where(
                PortModel.box_id == box_id,
                PortModel.status.in_([s.value for s in COUNTED_PORT_STATUSES]),
            )
        ).scalar_one()

    def stored(self, box_id: uuid.UUID) -> int:
        value = self._session.execute(
            select(BoxModel.occupied_count).where(BoxModel.id == box_id)
        ).scalar_one_or_none()
        if value is None:
            raise BoxNotFound(f"box {box_id} not found")
        return value

    def verify(self, box_id: uuid.UUID) -> bool:
        """Return True when the stored counter matches the port statuses."""
        return self.stored(box_id) == self.recount(box_id)

    def repair(self, box_id: uuid.UUID, now: datetime) -> int:
        """Overwrite the stored counter with the recounted value.

        Returns:
            int: The corrected counter value.
        """
        actual = self.recount(box_id)
        stored = self.stored(box_id)
        if stored != actual:
            logger.warning(
                "box counter drift repaired",
                extra={"box_id": str(box_id), "stored": stored, "actual": actual},
            )
            self._session.execute(
                update(BoxModel)
                .where(BoxModel.id == box_id)
                .values(occupied_count=actual, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return actual


class PortRegistry:
    """Canonical store of port state for every box.

    Args:
        session: Session bound to the caller's open transaction.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self._session = session
        self._clock = clock
        self.counter = BoxCounter(session)

    @property
    def session(self) -> Session:
        return self._session

    # ---- reads ----
    def _row(self, port_id: uuid.UUID, lock: bool = False) -> PortModel:
        stmt = select(PortModel).where(PortModel.id == port_id)
        if lock:
            stmt = stmt.with_for_update()
        row = self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars().first()
        if row is None:
            raise PortNotFound(f"port {port_id} not found")
        return row

    def get_port(self, port_id: uuid.UUID) -> Port:
        return to_port(self._row(port_id))

    def lock_port(self, port_id: uuid.UUID) -> Port:
        """Read a port holding a row lock until the transaction ends."""
        return to_port(self._row(port_id, lock=True))

    def get_ports_by_box(self, box_id: uuid.UUID) -> list[Port]:
        """Return the box's ports ordered by port number.

        Raises:
            BoxNotFound: If the box does not exist.
        """
        if self._session.get(BoxModel, box_id) is None:
            raise BoxNotFound(f"box {box_id} not found")
        rows = self._session.execute(
            select(PortModel).where(PortModel.box_id == box_id).order_by(PortModel.number)
        ).scalars().all()
        return [to_port(r) for r in rows]

    # ---- provisioning ----
    def create_ports_for_box(self, box_id: uuid.UUID, capacity: int) -> list[Port]:
        """Create ports 1..capacity, all available at price 0.

        Raises:
            InvalidCapacity: If ``capacity`` is below 1.
            PortConflict: If the box already has ports.
        """
        if capacity < 1:
            raise InvalidCapacity("capacity must be at least 1")
        existing = self._session.execute(
            select(func.count()).select_from(PortModel).where(PortModel.box_id == box_id)
        ).scalar_one()
        if existing:
            raise PortConflict(f"box {box_id} already has {existing} ports")
        return self._append_ports(box_id, first_number=1, count=capacity)

    def add_ports(self, box_id: uuid.UUID, count: int) -> list[Port]:
        """Append ``count`` new available ports after the highest number."""
        if count < 1:
            raise InvalidCapacity("port count must be at least 1")
        highest = self._session.execute(
            select(func.max(PortModel.number)).where(PortModel.box_id == box_id)
        ).scalar_one()
        return self._append_ports(box_id, first_number=(highest or 0) + 1, count=count)

    def _append_ports(self, box_id: uuid.UUID, first_number: int, count: int) -> list[Port]:
        now = self._clock()
        rows = [
            PortModel(
                id=uuid.uuid4(),
                box_id=box_id,
                number=n,
                status=PortStatus.AVAILABLE.value,
                price_cents=0,
                version=1,
                created_at=now,
                updated_at=now,
            )
            for n in range(first_number, first_number + count)
        ]
        self._session.add_all(rows)
        self._session.flush()
        return [to_port(r) for r in rows]

    # ---- mutations ----
    def set_price(self, port_id: uuid.UUID, price_cents: int) -> Port:
        """Set the monthly price of a port.

        Raises:
            InvalidPrice: If ``price_cents`` is negative.
            PortNotFound: If the port does not exist.
        """
        if price_cents is None or price_cents < 0:
            raise InvalidPrice("price must be non-negative")
        row = self._row(port_id, lock=True)
        row.price_cents = price_cents
        row.updated_at = self._clock()
        self._session.flush()
        return to_port(row)

    def set_service_plan(self, port_id: uuid.UUID, plan: Optional[dict]) -> Port:
        row = self._row(port_id, lock=True)
        row.service_plan = plan
        row.updated_at = self._clock()
        self._session.flush()
        return to_port(row)

    def set_status(
        self,
        port_id: uuid.UUID,
        new_status: PortStatus,
        tenant_id: Optional[str] = None,
        expected: Optional[PortStatus] = None,
    ) -> Port:
        """Move a port to ``new_status`` and apply the box counter delta.

        The write is a compare-and-swap keyed on the status and version just
        read, so two transactions racing for the same port cannot both win.

        Args:
            port_id: Port to change.
            new_status: Target status; must be allowed from the current one.
            tenant_id: Tenant to record; required when moving to occupied
                and cleared for every other status.
            expected: Status the caller believes the port is in.

        Returns:
            Port: Snapshot after the change.

        Raises:
            PortConflict: If the port is not in ``expected`` or the
                compare-and-swap found the row already changed.
            InvalidTransition: If the edge is not in the port table, or
                occupied is requested without a tenant.
        """
        row = self._row(port_id, lock=True)
        current = PortStatus(row.status)
        if expected is not None and current != expected:
            raise PortConflict(f"port {port_id} is {current.value}, expected {expected.value}")
        if not port_transition_allowed(current, new_status):
            raise InvalidTransition(f"port {current.value} -> {new_status.value} not allowed")
        if new_status == PortStatus.OCCUPIED and not tenant_id:
            raise InvalidTransition("occupied port requires a tenant")

        now = self._clock()
        result = self._session.execute(
            update(PortModel)
            .where(
                PortModel.id == port_id,
                PortModel.status == current.value,
                PortModel.version == row.version,
            )
            .values(
                status=new_status.value,
                tenant_id=tenant_id if new_status == PortStatus.OCCUPIED else None,
                version=row.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PortConflict(f"port {port_id} changed concurrently")

        self.counter.apply(row.box_id, counter_delta(current, new_status), now)
        logger.info(
            "port status changed",
            extra={
                "port_id": str(port_id),
                "old_status": current.value,
                "new_status": new_status.value,
            },
        )
        return to_port(self._row(port_id))
