"""In-process adapters for the identity and notification ports.

``HeaderIdentity`` reads the operator from request headers set by the
upstream authentication layer. ``LoggingNotifier`` is the default sink for
order changes; ``RecordingNotifier`` and ``StaticIdentity`` are
deterministic stand-ins for tests and local development.
"""

import logging
from typing import Mapping, Optional

from .domain import Actor, IdentityPort, NotificationPort, Order, OrderStatus

logger = logging.getLogger("portbroker.notifications")

OPERATOR_HEADER = "X-Operator-Id"
ROLE_HEADER = "X-Operator-Role"


class HeaderIdentity(IdentityPort):
    """Identity resolved from ``X-Operator-Id`` / ``X-Operator-Role`` headers.

    The role header only distinguishes administrators (``admin``); the
    requester/owner role is derived per order.
    """

    def __init__(self, headers: Mapping[str, str]):
        self._headers = headers

    def current_actor(self) -> Optional[Actor]:
        operator_id = (self._headers.get(OPERATOR_HEADER) or "").strip()
        if not operator_id:
            return None
        role = (self._headers.get(ROLE_HEADER) or "").strip().lower()
        return Actor(operator_id=operator_id, is_admin=role == "admin")


class StaticIdentity(IdentityPort):
    """Always returns the same actor (or None)."""

    def __init__(self, actor: Optional[Actor]):
        self._actor = actor

    def current_actor(self) -> Optional[Actor]:
        return self._actor


class LoggingNotifier(NotificationPort):
    """Publishes order changes as structured log records."""

    def order_changed(self, order: Order, old_status: Optional[OrderStatus]) -> None:
        logger.info(
            "order changed",
            extra={
                "order_id": str(order.id),
                "old_status": old_status.value if old_status else None,
                "new_status": order.status.value,
                "requester_id": order.requester_id,
                "owner_id": order.owner_id,
            },
        )


class RecordingNotifier(NotificationPort):
    """Keeps every published change in memory, oldest first."""

    def __init__(self):
        self.events: list[tuple[Order, Optional[OrderStatus]]] = []

    def order_changed(self, order: Order, old_status: Optional[OrderStatus]) -> None:
        self.events.append((order, old_status))
