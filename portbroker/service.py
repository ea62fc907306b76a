"""Service facade exposing the broker's operation set.

``PortBrokerService`` is what the HTTP layer (or any other caller) talks
to. Each public method:

1. rejects calls without an actor (``Unauthenticated``),
2. runs its whole read-validate-write cycle in one transaction through
   ``run_in_transaction`` (retried only on transient storage failures);
   pure reads use a read-only snapshot that never waits on writers,
3. publishes order changes to the notification port after commit.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from . import idempotency
from .adapters import LoggingNotifier
from .boxes import BoxCatalogue
from .capabilities import require_actor, require_box_manager
from .db import run_in_transaction
from .domain import (
    Actor,
    Box,
    BoxStatus,
    Direction,
    NotificationPort,
    Note,
    Occupancy,
    Order,
    OrderStatus,
    Port,
)
from .lifecycle import OrderLifecycle
from .models import BoxModel, utcnow
from .registry import PortRegistry
from .reservations import ReservationService

logger = logging.getLogger("portbroker.service")


class PortBrokerService:
    """Entry point for every broker operation.

    Args:
        session_factory: Factory for sessions bound to the broker database.
        notifier: Sink for order changes; logs them by default.
        clock: Callable returning the current aware datetime.
        max_retries: Override for the transient-failure retry budget.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Optional[NotificationPort] = None,
        clock: Callable[[], datetime] = utcnow,
        max_retries: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._max_retries = max_retries

    # ---- plumbing ----
    def _run(self, work: Callable[[Session], object], read_only: bool = False):
        return run_in_transaction(
            self._session_factory, work, max_retries=self._max_retries, read_only=read_only
        )

    def _order_op(
        self,
        actor: Optional[Actor],
        op: Callable[[OrderLifecycle, Actor], object],
        read_only: bool = False,
    ):
        actor = require_actor(actor)

        def work(session: Session):
            lifecycle = OrderLifecycle(session, self._clock)
            return op(lifecycle, actor), list(lifecycle.transitions)

        result, transitions = self._run(work, read_only=read_only)
        if isinstance(result, Order):
            self._publish(result, transitions)
        return result

    def _publish(self, order: Order, transitions) -> None:
        for order_id, old_status in transitions:
            if order_id != order.id:
                continue
            try:
                self.notifier.order_changed(order, old_status)
            except Exception:
                # the transition is committed; delivery problems are only logged
                logger.exception("order notification failed", extra={"order_id": str(order.id)})

    def _port_op(self, actor: Optional[Actor], port_id: uuid.UUID, action: str, op) -> Port:
        actor = require_actor(actor)

        def work(session: Session):
            registry = PortRegistry(session, self._clock)
            port = registry.get_port(port_id)
            require_box_manager(session.get(BoxModel, port.box_id), actor, action)
            return op(ReservationService(registry))

        return self._run(work)

    # ---- boxes ----
    def create_box(
        self,
        actor: Optional[Actor],
        name: str,
        capacity: int,
        latitude: float,
        longitude: float,
        owner_id: Optional[str] = None,
        status: BoxStatus = BoxStatus.ACTIVE,
    ) -> Box:
        actor = require_actor(actor)
        return self._run(
            lambda s: BoxCatalogue(s, self._clock).create_box(
                actor, name, capacity, latitude, longitude, owner_id=owner_id, status=status
            )
        )

    def list_boxes(
        self,
        actor: Optional[Actor],
        search: Optional[str] = None,
        status: Optional[BoxStatus] = None,
        owner_id: Optional[str] = None,
    ) -> list[Box]:
        require_actor(actor)
        return self._run(
            lambda s: BoxCatalogue(s, self._clock).list_boxes(search, status, owner_id),
            read_only=True,
        )

    def get_box(self, actor: Optional[Actor], box_id: uuid.UUID) -> Box:
        require_actor(actor)
        return self._run(lambda s: BoxCatalogue(s, self._clock).get_box(box_id), read_only=True)

    def update_box(self, actor: Optional[Actor], box_id: uuid.UUID, **changes) -> Box:
        actor = require_actor(actor)
        return self._run(lambda s: BoxCatalogue(s, self._clock).update_box(actor, box_id, **changes))

    def delete_box(self, actor: Optional[Actor], box_id: uuid.UUID) -> None:
        actor = require_actor(actor)
        self._run(lambda s: BoxCatalogue(s, self._clock).delete_box(actor, box_id))

    def occupancy(self, actor: Optional[Actor], box_id: uuid.UUID) -> Occupancy:
        require_actor(actor)
        return self._run(lambda s: BoxCatalogue(s, self._clock).occupancy(box_id), read_only=True)

    def verify_counter(self, actor: Optional[Actor], box_id: uuid.UUID, repair: bool = False) -> bool:
        """Check the box's stored counter against its ports.

        With ``repair`` an owner or administrator overwrites a drifted
        counter with the recounted value.

        Returns:
            bool: True when the counter was consistent.
        """
        actor = require_actor(actor)

        def work(session: Session) -> bool:
            registry = PortRegistry(session, self._clock)
            consistent = registry.counter.verify(box_id)
            if not consistent and repair:
                require_box_manager(session.get(BoxModel, box_id), actor, "repair")
                registry.counter.repair(box_id, self._clock())
            return consistent

        return self._run(work)

    # ---- ports ----
    def list_ports(self, actor: Optional[Actor], box_id: uuid.UUID) -> list[Port]:
        require_actor(actor)
        return self._run(
            lambda s: PortRegistry(s, self._clock).get_ports_by_box(box_id), read_only=True
        )

    def get_port(self, actor: Optional[Actor], port_id: uuid.UUID) -> Port:
        require_actor(actor)
        return self._run(lambda s: PortRegistry(s, self._clock).get_port(port_id), read_only=True)

    def set_port_price(self, actor: Optional[Actor], port_id: uuid.UUID, price_cents: int) -> Port:
        return self._port_op(actor, port_id, "price", lambda r: r.set_price(port_id, price_cents))

    def set_port_service_plan(
        self, actor: Optional[Actor], port_id: uuid.UUID, plan: Optional[dict]
    ) -> Port:
        """Attach free-form plan metadata (speed, technology...) to a port; None clears it."""
        return self._port_op(
            actor, port_id, "describe", lambda r: r.registry.set_service_plan(port_id, plan)
        )

    def set_port_maintenance(self, actor: Optional[Actor], port_id: uuid.UUID, enabled: bool) -> Port:
        if enabled:
            return self._port_op(actor, port_id, "maintain", lambda r: r.enter_maintenance(port_id))
        return self._port_op(actor, port_id, "maintain", lambda r: r.exit_maintenance(port_id))

    # ---- orders ----
    def create_order(
        self,
        actor: Optional[Actor],
        port_id: uuid.UUID,
        price_cents: Optional[int] = None,
        installation_fee_cents: int = 0,
        idempotency_key: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Order:
        if idempotency_key:
            order, _ = self.create_order_idempotent(
                actor, port_id, idempotency_key, price_cents, installation_fee_cents, note
            )
            return order
        return self._order_op(
            actor,
            lambda lc, a: lc.create_order(port_id, a, price_cents, installation_fee_cents, note),
        )

    def create_order_idempotent(
        self,
        actor: Optional[Actor],
        port_id: uuid.UUID,
        idempotency_key: str,
        price_cents: Optional[int] = None,
        installation_fee_cents: int = 0,
        note: Optional[str] = None,
    ) -> tuple[Order, bool]:
        """Create an order at most once per idempotency key.

        Returns:
            tuple[Order, bool]: The order and whether it was replayed from an
            earlier request with the same key.

        Raises:
            IdempotencyConflict: If the key was used with another payload.
        """
        actor = require_actor(actor)
        payload = {
            "operator_id": actor.operator_id,
            "port_id": str(port_id),
            "price_cents": price_cents,
            "installation_fee_cents": installation_fee_cents,
            "note": note,
        }

        def op(lc: OrderLifecycle, a: Actor):
            session = lc.registry.session
            existing = idempotency.claim(session, idempotency_key, payload)
            if existing is not None:
                return lc.get_order(existing, a), True
            order = lc.create_order(port_id, a, price_cents, installation_fee_cents, note)
            idempotency.bind(session, idempotency_key, order.id)
            return order, False

        (order, replayed) = self._order_op(actor, op)
        if not replayed:
            self._publish(order, [(order.id, None)])
        return order, replayed

    def get_order(self, actor: Optional[Actor], order_id: uuid.UUID) -> Order:
        return self._order_op(actor, lambda lc, a: lc.get_order(order_id, a), read_only=True)

    def list_orders(
        self,
        actor: Optional[Actor],
        status: Optional[OrderStatus] = None,
        direction: Direction = Direction.ALL,
        port_id: Optional[uuid.UUID] = None,
        box_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ) -> list[Order]:
        return self._order_op(
            actor,
            lambda lc, a: lc.list_orders(
                a, status=status, direction=direction, port_id=port_id, box_id=box_id, search=search
            ),
            read_only=True,
        )

    def decide_order(
        self, actor: Optional[Actor], order_id: uuid.UUID, approve: bool, note: Optional[str] = None
    ) -> Order:
        return self._order_op(actor, lambda lc, a: lc.decide(order_id, a, approve, note))

    def sign_contract(
        self, actor: Optional[Actor], order_id: uuid.UUID, note: Optional[str] = None
    ) -> Order:
        return self._order_op(actor, lambda lc, a: lc.sign(order_id, a, note))

    def schedule_installation(
        self,
        actor: Optional[Actor],
        order_id: uuid.UUID,
        when: datetime,
        note: Optional[str] = None,
    ) -> Order:
        return self._order_op(actor, lambda lc, a: lc.schedule(order_id, a, when, note))

    def advance_installation(
        self, actor: Optional[Actor], order_id: uuid.UUID, note: Optional[str] = None
    ) -> Order:
        return self._order_op(actor, lambda lc, a: lc.advance(order_id, a, note))

    def cancel_order(
        self, actor: Optional[Actor], order_id: uuid.UUID, note: Optional[str] = None
    ) -> Order:
        return self._order_op(actor, lambda lc, a: lc.cancel(order_id, a, note))

    def add_note(self, actor: Optional[Actor], order_id: uuid.UUID, content: str) -> Note:
        return self._order_op(actor, lambda lc, a: lc.add_note(order_id, a, content))

    def list_notes(self, actor: Optional[Actor], order_id: uuid.UUID) -> list[Note]:
        return self._order_op(actor, lambda lc, a: lc.list_notes(order_id, a), read_only=True)
