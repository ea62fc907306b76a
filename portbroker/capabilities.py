"""Role resolution and capability checks.

An actor's role is resolved once per operation against the order (or box)
it touches, from the closed set requester / owner / admin.
"""

from typing import Optional

from .domain import Actor, Role
from .errors import Unauthenticated, Unauthorized
from .models import BoxModel, OrderModel

PARTIES = (Role.REQUESTER, Role.OWNER)
OWNER_SIDE = (Role.OWNER, Role.ADMIN)
ANY_ROLE = (Role.REQUESTER, Role.OWNER, Role.ADMIN)


def require_actor(actor: Optional[Actor]) -> Actor:
    """Return ``actor`` or fail when the call carries no identity."""
    if actor is None or not actor.operator_id:
        raise Unauthenticated("no operator identity")
    return actor


def role_of(order: OrderModel, actor: Actor) -> Optional[Role]:
    """Resolve the actor's role on an order.

    A party's own role wins over the admin flag, so an administrator who
    is also the requester signs as the requester.
    """
    if actor.operator_id == order.requester_id:
        return Role.REQUESTER
    if actor.operator_id == order.owner_id:
        return Role.OWNER
    if actor.is_admin:
        return Role.ADMIN
    return None


def require(order: OrderModel, actor: Actor, allowed: tuple[Role, ...], action: str) -> Role:
    """Return the actor's role if it is in ``allowed``.

    Raises:
        Unauthorized: If the actor has no role or a role not allowed for
            ``action``.
    """
    role = role_of(order, actor)
    if role is None or role not in allowed:
        raise Unauthorized(f"{actor.operator_id} may not {action} order {order.id}")
    return role


def require_box_manager(box: BoxModel, actor: Actor, action: str) -> Role:
    """Only the box owner or an administrator may manage a box and its ports."""
    if actor.operator_id == box.owner_id:
        return Role.OWNER
    if actor.is_admin:
        return Role.ADMIN
    raise Unauthorized(f"{actor.operator_id} may not {action} box {box.id}")
