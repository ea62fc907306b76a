"""Atomic single-port operations used by box owners and the order engine.

The reservation service encodes the port state machine's business rules
(which event is legal from which status, what counts as a no-op) on top of
the registry's compare-and-swap writes.
"""

import logging
import uuid

from sqlalchemy import exists, select

from .domain import Port, PortStatus, TERMINAL_ORDER_STATUSES
from .errors import InvalidTransition, PortUnavailable
from .models import OrderModel
from .registry import PortRegistry

logger = logging.getLogger("portbroker.reservations")


class ReservationService:
    """Reserve, occupy, release and maintain individual ports.

    Args:
        registry: Registry bound to the caller's transaction.
    """

    def __init__(self, registry: PortRegistry):
        self.registry = registry

    def has_live_order(self, port_id: uuid.UUID) -> bool:
        """Tell whether a non-terminal order targets the port."""
        return self.registry.session.execute(
            select(
                exists().where(
                    OrderModel.port_id == port_id,
                    OrderModel.status.notin_([s.value for s in TERMINAL_ORDER_STATUSES]),
                )
            )
        ).scalar_one()

    def reserve(self, port_id: uuid.UUID) -> Port:
        """Move an available port to reserved (box counter +1).

        Raises:
            PortUnavailable: If the port is not available.
        """
        port = self.registry.lock_port(port_id)
        if port.status != PortStatus.AVAILABLE:
            raise PortUnavailable(f"port {port_id} is {port.status.value}")
        return self.registry.set_status(port_id, PortStatus.RESERVED, expected=PortStatus.AVAILABLE)

    def occupy(self, port_id: uuid.UUID, tenant_id: str) -> Port:
        """Mark a reserved port as occupied by ``tenant_id``.

        Raises:
            InvalidTransition: If the port is not reserved.
        """
        port = self.registry.lock_port(port_id)
        if port.status != PortStatus.RESERVED:
            raise InvalidTransition(f"port {port_id} is {port.status.value}, not reserved")
        return self.registry.set_status(
            port_id, PortStatus.OCCUPIED, tenant_id=tenant_id, expected=PortStatus.RESERVED
        )

    def release(self, port_id: uuid.UUID) -> Port:
        """Return a reserved or occupied port to available (box counter -1).

        Releasing an already available port is a successful no-op, so a
        retried release can never decrement the counter twice.

        Raises:
            InvalidTransition: If the port is under maintenance.
        """
        port = self.registry.lock_port(port_id)
        if port.status == PortStatus.AVAILABLE:
            logger.info("release of available port ignored", extra={"port_id": str(port_id)})
            return port
        if port.status == PortStatus.MAINTENANCE:
            raise InvalidTransition(f"port {port_id} is under maintenance")
        return self.registry.set_status(port_id, PortStatus.AVAILABLE, expected=port.status)

    def set_price(self, port_id: uuid.UUID, price_cents: int) -> Port:
        return self.registry.set_price(port_id, price_cents)

    def enter_maintenance(self, port_id: uuid.UUID) -> Port:
        """Take an available port out of service.

        Raises:
            PortUnavailable: If the port is not available or a live order
                targets it.
        """
        port = self.registry.lock_port(port_id)
        if port.status == PortStatus.MAINTENANCE:
            return port
        if port.status != PortStatus.AVAILABLE or self.has_live_order(port_id):
            raise PortUnavailable(f"port {port_id} is in use")
        return self.registry.set_status(
            port_id, PortStatus.MAINTENANCE, expected=PortStatus.AVAILABLE
        )

    def exit_maintenance(self, port_id: uuid.UUID) -> Port:
        """Return a port under maintenance to available.

        Raises:
            InvalidTransition: If the port is not under maintenance.
        """
        port = self.registry.lock_port(port_id)
        if port.status == PortStatus.AVAILABLE:
            return port
        if port.status != PortStatus.MAINTENANCE:
            raise InvalidTransition(f"port {port_id} is {port.status.value}")
        return self.registry.set_status(
            port_id, PortStatus.AVAILABLE, expected=PortStatus.MAINTENANCE
        )
