"""Rental order state machine.

``OrderLifecycle`` coordinates a requester and a box owner through
approval, contract signature, installation and completion. Every method
runs inside the caller's transaction: it locks the order row, checks the
actor's capability and the transition table from ``domain``, applies the
port side effect through the reservation service and appends exactly one
system note per status change.

Port reservation happens when the second signature lands (entering
``contract_signed``); approval only re-checks that the port is still
available. Cancelling an order that holds the reservation releases it.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import AuditTrail
from .capabilities import ANY_ROLE, OWNER_SIDE, PARTIES, require
from .domain import (
    RESERVING_ORDER_STATUSES,
    SYSTEM_AUTHOR,
    Actor,
    BoxStatus,
    Direction,
    Note,
    Order,
    OrderStatus,
    PortStatus,
    Role,
    order_transition_allowed,
)
from .errors import (
    InvalidPrice,
    InvalidSchedule,
    InvalidTransition,
    OrderNotFound,
    PortConflict,
    PortUnavailable,
    Unauthorized,
)
from .models import BoxModel, OrderModel, utcnow
from .registry import PortRegistry
from .reservations import ReservationService
from .snapshots import aware, to_order

logger = logging.getLogger("portbroker.lifecycle")


class OrderLifecycle:
    """Domain service driving rental orders through their lifecycle.

    Attributes:
        transitions: ``(order_id, old_status)`` for every status change made
            through this instance; ``old_status`` is None for creation. The
            service facade publishes them once the transaction commits.
    """

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self._session = session
        self._clock = clock
        self.registry = PortRegistry(session, clock)
        self.reservations = ReservationService(self.registry)
        self.audit = AuditTrail(session, clock)
        self.transitions: list[tuple[uuid.UUID, Optional[OrderStatus]]] = []

    # ---- helpers ----
    def _load(self, order_id: uuid.UUID, lock: bool = True) -> OrderModel:
        stmt = select(OrderModel).where(OrderModel.id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        row = self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars().first()
        if row is None:
            raise OrderNotFound(f"order {order_id} not found")
        return row

    def _snapshot(self, row: OrderModel) -> Order:
        self._session.flush()
        return to_order(row, self.audit.list_notes(row.id))

    @staticmethod
    def _check(row: OrderModel, target: OrderStatus) -> OrderStatus:
        current = OrderStatus(row.status)
        if not order_transition_allowed(current, target):
            raise InvalidTransition(f"order {row.id}: {current.value} -> {target.value} not allowed")
        return current

    def _operator_note(self, row: OrderModel, actor: Actor, note: Optional[str]) -> None:
        # blank remarks are dropped rather than failing the transition
        if note and note.strip():
            self.audit.add_note(row.id, actor.operator_id, note, is_system=False)

    def _transition(
        self, row: OrderModel, actor: Actor, target: OrderStatus, note: Optional[str] = None
    ) -> None:
        current = self._check(row, target)
        self._operator_note(row, actor, note)
        row.status = target.value
        row.updated_at = self._clock()
        self._session.flush()
        self.audit.record_transition(row.id, actor, current, target)
        self.transitions.append((row.id, current))
        logger.info(
            "order transition",
            extra={
                "order_id": str(row.id),
                "old_status": current.value,
                "new_status": target.value,
                "actor": actor.operator_id,
            },
        )

    # ---- creation & reads ----
    def create_order(
        self,
        port_id: uuid.UUID,
        actor: Actor,
        price_cents: Optional[int] = None,
        installation_fee_cents: int = 0,
        note: Optional[str] = None,
    ) -> Order:
        """Open a rental request for an available port.

        The port's status is left untouched; it is reserved only once both
        parties have signed the contract.

        Args:
            port_id: Port being requested.
            actor: Requesting operator.
            price_cents: Monthly price; defaults to the port's listed price.
            installation_fee_cents: One-time installation fee.
            note: Optional operator remark stored alongside the request.

        Returns:
            Order: The new order in ``pending_approval``.

        Raises:
            PortNotFound: If the port does not exist.
            InvalidPrice: If an amount is negative.
            Unauthorized: If the requester owns the box.
            PortUnavailable: If the port or its box is not available, or
                another live order already targets the port.
            PortConflict: If a concurrent request for the port won the race.
        """
        port = self.registry.lock_port(port_id)
        box = self._session.get(BoxModel, port.box_id)
        if box.owner_id == actor.operator_id:
            raise Unauthorized("box owner cannot rent its own port")
        if price_cents is None:
            price_cents = port.price_cents
        if price_cents < 0 or installation_fee_cents < 0:
            raise InvalidPrice("price and installation fee must be non-negative")
        if box.status != BoxStatus.ACTIVE.value:
            raise PortUnavailable(f"box {box.id} is {box.status}")
        if port.status != PortStatus.AVAILABLE:
            raise PortUnavailable(f"port {port_id} is {port.status.value}")
        if self.reservations.has_live_order(port_id):
            raise PortUnavailable(f"port {port_id} already has an open order")

        now = self._clock()
        row = OrderModel(
            id=uuid.uuid4(),
            port_id=port_id,
            box_id=box.id,
            requester_id=actor.operator_id,
            owner_id=box.owner_id,
            status=OrderStatus.PENDING_APPROVAL.value,
            price_cents=price_cents,
            installation_fee_cents=installation_fee_cents,
            signed_by_requester=False,
            signed_by_owner=False,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as e:
            # ux_orders_live_port: a concurrent request got there first
            raise PortConflict(f"port {port_id} was requested concurrently") from e

        self._operator_note(row, actor, note)
        self.audit.record_transition(row.id, actor, None, OrderStatus.PENDING_APPROVAL)
        self.transitions.append((row.id, None))
        logger.info(
            "order created",
            extra={"order_id": str(row.id), "port_id": str(port_id), "actor": actor.operator_id},
        )
        return self._snapshot(row)

    def get_order(self, order_id: uuid.UUID, actor: Actor) -> Order:
        row = self._load(order_id, lock=False)
        require(row, actor, ANY_ROLE, "view")
        return self._snapshot(row)

    def list_orders(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
        direction: Direction = Direction.ALL,
        port_id: Optional[uuid.UUID] = None,
        box_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ) -> list[Order]:
        """List orders visible to ``actor``, most recently updated first.

        ``incoming`` are orders on the actor's boxes, ``outgoing`` the
        actor's own requests, ``all`` both. Administrators listing ``all``
        see every order. ``search`` matches, case-insensitively, a substring
        of the box name, the requester or the owner.
        """
        stmt = select(OrderModel)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.join(BoxModel, BoxModel.id == OrderModel.box_id).where(
                or_(
                    BoxModel.name.ilike(pattern),
                    OrderModel.requester_id.ilike(pattern),
                    OrderModel.owner_id.ilike(pattern),
                )
            )
        if direction == Direction.INCOMING:
            stmt = stmt.where(OrderModel.owner_id == actor.operator_id)
        elif direction == Direction.OUTGOING:
            stmt = stmt.where(OrderModel.requester_id == actor.operator_id)
        elif not actor.is_admin:
            stmt = stmt.where(
                or_(
                    OrderModel.owner_id == actor.operator_id,
                    OrderModel.requester_id == actor.operator_id,
                )
            )
        if status is not None:
            stmt = stmt.where(OrderModel.status == OrderStatus(status).value)
        if port_id is not None:
            stmt = stmt.where(OrderModel.port_id == port_id)
        if box_id is not None:
            stmt = stmt.where(OrderModel.box_id == box_id)
        stmt = stmt.order_by(
            OrderModel.updated_at.desc(), OrderModel.created_at.desc(), OrderModel.id
        )
        rows = self._session.execute(stmt).scalars().all()
        notes = self.audit.notes_for(r.id for r in rows)
        return [to_order(r, notes.get(r.id, ())) for r in rows]

    # ---- transitions ----
    def decide(
        self, order_id: uuid.UUID, actor: Actor, approve: bool, note: Optional[str] = None
    ) -> Order:
        """Approve or reject a pending order (owner side only).

        Raises:
            PortConflict: On approval, if the port is no longer available.
        """
        row = self._load(order_id)
        require(row, actor, OWNER_SIDE, "decide")
        target = OrderStatus.CONTRACT_GENERATED if approve else OrderStatus.REJECTED
        self._check(row, target)
        if approve:
            port = self.registry.lock_port(row.port_id)
            if port.status != PortStatus.AVAILABLE:
                raise PortConflict(f"port {row.port_id} is {port.status.value}")
        self._transition(row, actor, target, note)
        return self._snapshot(row)

    def sign(self, order_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Order:
        """Record the actor's contract signature.

        Each party can only set its own flag. A repeated signature changes
        nothing and its note is dropped. The signature completing the pair
        reserves the port and moves the order to ``contract_signed``.

        Raises:
            InvalidTransition: If the order is not ``contract_generated``.
            PortConflict: If the port can no longer be reserved.
        """
        row = self._load(order_id)
        role = require(row, actor, PARTIES, "sign")
        if OrderStatus(row.status) != OrderStatus.CONTRACT_GENERATED:
            raise InvalidTransition(f"order {row.id} is {row.status}, no contract to sign")

        flag = "signed_by_requester" if role == Role.REQUESTER else "signed_by_owner"
        if getattr(row, flag):
            return self._snapshot(row)
        setattr(row, flag, True)
        row.updated_at = self._clock()

        if row.signed_by_requester and row.signed_by_owner:
            try:
                self.reservations.reserve(row.port_id)
            except PortUnavailable as e:
                raise PortConflict(f"port {row.port_id} can no longer be reserved") from e
            self._transition(row, actor, OrderStatus.CONTRACT_SIGNED, note)
        else:
            self._session.flush()
            self._operator_note(row, actor, note)
            self.audit.add_note(
                row.id,
                SYSTEM_AUTHOR,
                f"contract signed by {role.value} {actor.operator_id}",
                is_system=True,
            )
        return self._snapshot(row)

    def schedule(
        self, order_id: uuid.UUID, actor: Actor, when: datetime, note: Optional[str] = None
    ) -> Order:
        """Set the installation date of a signed order.

        Raises:
            InvalidSchedule: If ``when`` lies in the past.
        """
        row = self._load(order_id)
        require(row, actor, OWNER_SIDE, "schedule")
        self._check(row, OrderStatus.INSTALLATION_SCHEDULED)
        when = aware(when)
        if when < self._clock():
            raise InvalidSchedule("installation date is in the past")
        row.scheduled_at = when
        self._transition(row, actor, OrderStatus.INSTALLATION_SCHEDULED, note)
        return self._snapshot(row)

    def advance(self, order_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Order:
        """Move installation one step: scheduled -> in progress -> completed.

        Completion occupies the port with the requester as tenant.
        """
        row = self._load(order_id)
        require(row, actor, OWNER_SIDE, "advance")
        current = OrderStatus(row.status)
        if current == OrderStatus.INSTALLATION_SCHEDULED:
            self._transition(row, actor, OrderStatus.INSTALLATION_IN_PROGRESS, note)
        elif current == OrderStatus.INSTALLATION_IN_PROGRESS:
            self.reservations.occupy(row.port_id, row.requester_id)
            row.completed_at = self._clock()
            self._transition(row, actor, OrderStatus.COMPLETED, note)
        else:
            raise InvalidTransition(f"order {row.id} is {current.value}, no installation to advance")
        return self._snapshot(row)

    def cancel(self, order_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Order:
        """Cancel a non-terminal order, releasing its port reservation."""
        row = self._load(order_id)
        require(row, actor, ANY_ROLE, "cancel")
        current = self._check(row, OrderStatus.CANCELLED)
        if current in RESERVING_ORDER_STATUSES:
            self.reservations.release(row.port_id)
        self._transition(row, actor, OrderStatus.CANCELLED, note)
        return self._snapshot(row)

    def add_note(self, order_id: uuid.UUID, actor: Actor, content: str) -> Note:
        """Attach an operator note; allowed in every status, terminal included.

        The order counts as updated, so it moves to the head of ``list_orders``.
        """
        row = self._load(order_id)
        require(row, actor, ANY_ROLE, "comment on")
        row.updated_at = self._clock()
        self._session.flush()
        return self.audit.add_note(row.id, actor.operator_id, content, is_system=False)

    def list_notes(self, order_id: uuid.UUID, actor: Actor) -> list[Note]:
        row = self._load(order_id, lock=False)
        require(row, actor, ANY_ROLE, "view")
        return self.audit.list_notes(row.id)
