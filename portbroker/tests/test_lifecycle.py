"""Tests for the rental order lifecycle.

The happy path drives one order from request to completed installation;
the remaining tests check that every illegal edge, unauthorized actor
and cancellation leaves ports, counters and the note trail consistent.
"""

from datetime import timedelta

import pytest

from portbroker.domain import (
    RESERVING_ORDER_STATUSES,
    SYSTEM_AUTHOR,
    Direction,
    OrderStatus,
    PortStatus,
)
from portbroker.errors import (
    InvalidNote,
    InvalidPrice,
    InvalidSchedule,
    InvalidTransition,
    OrderNotFound,
    PortConflict,
    PortUnavailable,
    Unauthenticated,
    Unauthorized,
)


def _signed(service, owner, requester, port):
    order = service.create_order(requester, port.id, 5000, 10000)
    service.decide_order(owner, order.id, approve=True)
    service.sign_contract(requester, order.id)
    return service.sign_contract(owner, order.id)


def _scheduled(service, owner, requester, port, clock):
    order = _signed(service, owner, requester, port)
    return service.schedule_installation(owner, order.id, clock() + timedelta(days=3))


def test_full_lifecycle(service, owner, requester, box, port, clock):
    order = service.create_order(requester, port.id, 5000, 10000)
    assert order.status == OrderStatus.PENDING_APPROVAL
    assert order.owner_id == owner.operator_id
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE

    order = service.decide_order(owner, order.id, approve=True)
    assert order.status == OrderStatus.CONTRACT_GENERATED
    # approval does not reserve yet
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE
    assert service.get_box(owner, box.id).occupied_count == 0

    order = service.sign_contract(requester, order.id)
    assert order.status == OrderStatus.CONTRACT_GENERATED
    assert order.signed_by_requester and not order.signed_by_owner

    order = service.sign_contract(owner, order.id)
    assert order.status == OrderStatus.CONTRACT_SIGNED
    assert service.get_port(owner, port.id).status == PortStatus.RESERVED
    assert service.get_box(owner, box.id).occupied_count == 1

    when = clock() + timedelta(days=2)
    order = service.schedule_installation(owner, order.id, when)
    assert order.status == OrderStatus.INSTALLATION_SCHEDULED
    assert order.scheduled_at == when

    order = service.advance_installation(owner, order.id)
    assert order.status == OrderStatus.INSTALLATION_IN_PROGRESS
    order = service.advance_installation(owner, order.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at == clock()

    final_port = service.get_port(owner, port.id)
    assert final_port.status == PortStatus.OCCUPIED
    assert final_port.tenant_id == requester.operator_id
    assert service.get_box(owner, box.id).occupied_count == 1


def test_price_defaults_to_port_price(service, requester, port):
    order = service.create_order(requester, port.id)
    assert order.price_cents == 5000
    assert order.installation_fee_cents == 0


def test_negative_amounts_rejected(service, requester, port):
    with pytest.raises(InvalidPrice):
        service.create_order(requester, port.id, -1)
    with pytest.raises(InvalidPrice):
        service.create_order(requester, port.id, 100, -5)


def test_owner_cannot_rent_own_port(service, owner, port):
    with pytest.raises(Unauthorized):
        service.create_order(owner, port.id)


def test_missing_actor_is_unauthenticated(service, port):
    with pytest.raises(Unauthenticated) as e:
        service.create_order(None, port.id)
    assert str(e.value) == "UNAUTHENTICATED"
    assert isinstance(e.value, Unauthorized)


def test_second_order_on_port_is_unavailable(service, requester, outsider, port):
    service.create_order(requester, port.id)
    with pytest.raises(PortUnavailable):
        service.create_order(outsider, port.id)


def test_port_is_requestable_again_after_rejection(service, owner, requester, outsider, port):
    first = service.create_order(requester, port.id)
    rejected = service.decide_order(owner, first.id, approve=False)
    assert rejected.status == OrderStatus.REJECTED
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE

    second = service.create_order(outsider, port.id)
    assert second.status == OrderStatus.PENDING_APPROVAL


def test_port_in_maintenance_cannot_be_requested(service, owner, requester, port):
    service.set_port_maintenance(owner, port.id, True)
    with pytest.raises(PortUnavailable):
        service.create_order(requester, port.id)


def test_inactive_box_ports_cannot_be_requested(service, owner, requester, box, port):
    service.update_box(owner, box.id, status="inactive")
    with pytest.raises(PortUnavailable):
        service.create_order(requester, port.id)


@pytest.mark.parametrize("step", ["sign", "schedule", "advance"])
def test_pending_order_rejects_later_steps(service, owner, requester, port, clock, step):
    order = service.create_order(requester, port.id)
    with pytest.raises(InvalidTransition) as e:
        if step == "sign":
            service.sign_contract(requester, order.id)
        elif step == "schedule":
            service.schedule_installation(owner, order.id, clock() + timedelta(days=1))
        else:
            service.advance_installation(owner, order.id)
    assert str(e.value) == "INVALID_TRANSITION"
    assert service.get_order(owner, order.id).status == OrderStatus.PENDING_APPROVAL


def test_terminal_orders_reject_everything(service, owner, requester, port, clock):
    order = service.create_order(requester, port.id)
    service.cancel_order(requester, order.id)
    with pytest.raises(InvalidTransition):
        service.decide_order(owner, order.id, approve=True)
    with pytest.raises(InvalidTransition):
        service.cancel_order(owner, order.id)
    with pytest.raises(InvalidTransition):
        service.advance_installation(owner, order.id)


def test_decide_twice_is_invalid(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=True)
    with pytest.raises(InvalidTransition):
        service.decide_order(owner, order.id, approve=False)


def test_only_owner_side_decides(service, owner, requester, outsider, admin, port):
    order = service.create_order(requester, port.id)
    with pytest.raises(Unauthorized) as e:
        service.decide_order(requester, order.id, approve=True)
    assert str(e.value) == "UNAUTHORIZED"
    with pytest.raises(Unauthorized):
        service.decide_order(outsider, order.id, approve=True)

    approved = service.decide_order(admin, order.id, approve=True)
    assert approved.status == OrderStatus.CONTRACT_GENERATED


def test_admin_cannot_sign_for_a_party(service, owner, requester, admin, port):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=True)
    with pytest.raises(Unauthorized):
        service.sign_contract(admin, order.id)


def test_outsider_cannot_see_order(service, requester, outsider, admin, port):
    order = service.create_order(requester, port.id)
    with pytest.raises(Unauthorized):
        service.get_order(outsider, order.id)
    assert service.get_order(admin, order.id).id == order.id


def test_repeated_signature_is_noop(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=True)
    first = service.sign_contract(requester, order.id)
    again = service.sign_contract(requester, order.id)
    assert again.status == OrderStatus.CONTRACT_GENERATED
    assert len(again.notes) == len(first.notes)


def test_schedule_in_past_rejected(service, owner, requester, port, clock):
    order = _signed(service, owner, requester, port)
    with pytest.raises(InvalidSchedule):
        service.schedule_installation(owner, order.id, clock() - timedelta(minutes=1))


def test_cancel_scheduled_releases_port(service, owner, requester, box, port, clock):
    order = _scheduled(service, owner, requester, port, clock)
    assert service.get_box(owner, box.id).occupied_count == 1

    cancelled = service.cancel_order(requester, order.id)
    assert cancelled.status == OrderStatus.CANCELLED
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE
    assert service.get_box(owner, box.id).occupied_count == 0


def test_cancel_pending_leaves_counter(service, owner, requester, box, port):
    order = service.create_order(requester, port.id)
    service.cancel_order(owner, order.id)
    assert service.get_box(owner, box.id).occupied_count == 0
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE


def test_approval_after_port_taken_is_conflict(session_factory, service, owner, requester, port):
    from portbroker.db import run_in_transaction
    from portbroker.registry import PortRegistry

    order = service.create_order(requester, port.id)
    run_in_transaction(
        session_factory, lambda s: PortRegistry(s).set_status(port.id, PortStatus.RESERVED)
    )
    with pytest.raises(PortConflict):
        service.decide_order(owner, order.id, approve=True)
    assert service.get_order(owner, order.id).status == OrderStatus.PENDING_APPROVAL


def test_one_system_note_per_transition(service, owner, requester, port, clock):
    order = _scheduled(service, owner, requester, port, clock)
    system = [n for n in order.notes if n.is_system]
    # created, approved, requester signature, signed, scheduled
    assert len(system) == 5
    assert all(n.author_id == SYSTEM_AUTHOR for n in system)
    assert system[0].content.startswith("order created as pending_approval")
    assert system[-1].content == (
        f"contract_signed -> installation_scheduled by {owner.operator_id}"
    )

    before = len(service.get_order(owner, order.id).notes)
    service.advance_installation(owner, order.id)
    assert len(service.get_order(owner, order.id).notes) == before + 1


def test_notes_come_back_in_creation_order(service, owner, requester, port, clock):
    order = service.create_order(requester, port.id)
    clock.advance(minutes=1)
    service.add_note(requester, order.id, "first")
    service.add_note(owner, order.id, "second")
    clock.advance(minutes=1)
    service.decide_order(owner, order.id, approve=True)
    service.add_note(requester, order.id, "  third  ")

    notes = service.get_order(owner, order.id).notes
    assert [n.id for n in notes] == sorted(n.id for n in notes)
    human = [n.content for n in notes if not n.is_system]
    assert human == ["first", "second", "third"]
    assert service.list_notes(requester, order.id) == list(notes)


def test_notes_allowed_on_terminal_orders(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=False)
    note = service.add_note(requester, order.id, "why?")
    assert note.author_id == requester.operator_id
    assert note.is_system is False


def test_blank_note_rejected(service, requester, port):
    order = service.create_order(requester, port.id)
    with pytest.raises(InvalidNote):
        service.add_note(requester, order.id, "   ")


def test_unknown_order(service, owner):
    import uuid

    with pytest.raises(OrderNotFound):
        service.get_order(owner, uuid.uuid4())


def test_list_orders_by_direction(service, owner, requester, outsider, admin, box, clock):
    ports = service.list_ports(owner, box.id)
    a = service.create_order(requester, ports[0].id)
    clock.advance(seconds=1)
    b = service.create_order(outsider, ports[1].id)

    assert [o.id for o in service.list_orders(owner, direction=Direction.INCOMING)] == [b.id, a.id]
    assert [o.id for o in service.list_orders(requester, direction=Direction.OUTGOING)] == [a.id]
    assert service.list_orders(requester, direction=Direction.INCOMING) == []
    assert [o.id for o in service.list_orders(outsider)] == [b.id]
    assert {o.id for o in service.list_orders(admin)} == {a.id, b.id}
    assert [o.id for o in service.list_orders(owner, port_id=ports[0].id)] == [a.id]

    service.decide_order(owner, a.id, approve=False)
    rejected = service.list_orders(owner, status=OrderStatus.REJECTED)
    assert [o.id for o in rejected] == [a.id]
    assert rejected[0].notes


def test_notifications_published_per_transition(service, owner, requester, port, notifier):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=True)
    service.sign_contract(requester, order.id)

    changes = [(o.status, old) for o, old in notifier.events]
    assert changes == [
        (OrderStatus.PENDING_APPROVAL, None),
        (OrderStatus.CONTRACT_GENERATED, OrderStatus.PENDING_APPROVAL),
    ]


def test_failing_notifier_does_not_undo_transition(service, owner, requester, port, monkeypatch):
    def boom(order, old):
        raise RuntimeError("sink down")

    monkeypatch.setattr(service.notifier, "order_changed", boom)
    order = service.create_order(requester, port.id)
    assert service.get_order(owner, order.id).status == OrderStatus.PENDING_APPROVAL


def _reach(service, owner, requester, port, clock, state):
    if state == OrderStatus.PENDING_APPROVAL:
        return service.create_order(requester, port.id)
    if state == OrderStatus.REJECTED:
        order = service.create_order(requester, port.id)
        return service.decide_order(owner, order.id, approve=False)
    if state == OrderStatus.CANCELLED:
        order = service.create_order(requester, port.id)
        return service.cancel_order(requester, order.id)
    if state == OrderStatus.CONTRACT_GENERATED:
        order = service.create_order(requester, port.id)
        return service.decide_order(owner, order.id, approve=True)
    if state == OrderStatus.CONTRACT_SIGNED:
        return _signed(service, owner, requester, port)
    order = _scheduled(service, owner, requester, port, clock)
    if state == OrderStatus.INSTALLATION_SCHEDULED:
        return order
    order = service.advance_installation(owner, order.id)
    if state == OrderStatus.INSTALLATION_IN_PROGRESS:
        return order
    return service.advance_installation(owner, order.id)


def _apply(service, owner, requester, clock, order, op):
    if op == "approve":
        return service.decide_order(owner, order.id, approve=True)
    if op == "reject":
        return service.decide_order(owner, order.id, approve=False)
    if op == "sign":
        return service.sign_contract(requester, order.id)
    if op == "schedule":
        return service.schedule_installation(owner, order.id, clock() + timedelta(days=1))
    if op == "advance":
        return service.advance_installation(owner, order.id)
    return service.cancel_order(requester, order.id)


_ALL_OPS = ("approve", "reject", "sign", "schedule", "advance", "cancel")
_VALID_OPS = {
    OrderStatus.PENDING_APPROVAL: {"approve", "reject", "cancel"},
    OrderStatus.CONTRACT_GENERATED: {"sign", "cancel"},
    OrderStatus.CONTRACT_SIGNED: {"schedule", "cancel"},
    OrderStatus.INSTALLATION_SCHEDULED: {"advance", "cancel"},
    OrderStatus.INSTALLATION_IN_PROGRESS: {"advance", "cancel"},
    OrderStatus.COMPLETED: set(),
    OrderStatus.REJECTED: set(),
    OrderStatus.CANCELLED: set(),
}
_INVALID_EDGES = [
    (state, op) for state, valid in _VALID_OPS.items() for op in _ALL_OPS if op not in valid
]


@pytest.mark.parametrize(
    "state,op", _INVALID_EDGES, ids=[f"{s.value}-{op}" for s, op in _INVALID_EDGES]
)
def test_invalid_edges_are_refused(service, owner, requester, box, port, clock, state, op):
    order = _reach(service, owner, requester, port, clock, state)
    assert order.status == state
    before = service.get_order(owner, order.id)
    port_before = service.get_port(owner, port.id)

    with pytest.raises(InvalidTransition) as e:
        _apply(service, owner, requester, clock, order, op)
    assert str(e.value) == "INVALID_TRANSITION"

    after = service.get_order(owner, order.id)
    assert after.status == state
    assert len(after.notes) == len(before.notes)
    assert service.get_port(owner, port.id).status == port_before.status
    assert service.verify_counter(owner, box.id)


@pytest.mark.parametrize(
    "state",
    [
        OrderStatus.PENDING_APPROVAL,
        OrderStatus.CONTRACT_GENERATED,
        OrderStatus.CONTRACT_SIGNED,
        OrderStatus.INSTALLATION_SCHEDULED,
        OrderStatus.INSTALLATION_IN_PROGRESS,
    ],
    ids=lambda s: s.value,
)
def test_cancel_from_each_live_state(service, owner, requester, box, port, clock, state):
    order = _reach(service, owner, requester, port, clock, state)
    held = 1 if state in RESERVING_ORDER_STATUSES else 0
    assert service.get_box(owner, box.id).occupied_count == held

    cancelled = service.cancel_order(requester, order.id)
    assert cancelled.status == OrderStatus.CANCELLED
    assert service.get_port(owner, port.id).status == PortStatus.AVAILABLE
    assert service.get_box(owner, box.id).occupied_count == 0
    assert service.verify_counter(owner, box.id)
    # the port can be requested again
    assert service.create_order(requester, port.id).status == OrderStatus.PENDING_APPROVAL


def test_completed_order_cannot_be_cancelled(service, owner, requester, box, port, clock):
    order = _reach(service, owner, requester, port, clock, OrderStatus.COMPLETED)
    with pytest.raises(InvalidTransition):
        service.cancel_order(owner, order.id)
    assert service.get_port(owner, port.id).status == PortStatus.OCCUPIED
    assert service.get_box(owner, box.id).occupied_count == 1
    assert service.verify_counter(owner, box.id)


def test_transition_notes_are_stored_as_operator_notes(service, owner, requester, port, clock):
    order = service.create_order(requester, port.id, note="please call before visiting")
    service.decide_order(owner, order.id, approve=True, note="approved, ladder needed")
    service.sign_contract(requester, order.id, note="signed on paper too")
    service.sign_contract(owner, order.id, note="countersigned")
    service.schedule_installation(
        owner, order.id, clock() + timedelta(days=2), note="morning slot"
    )
    service.advance_installation(owner, order.id, note="crew on site")
    done = service.advance_installation(owner, order.id, note="fiber lit")

    operator = [(n.author_id, n.content) for n in done.notes if not n.is_system]
    assert operator == [
        (requester.operator_id, "please call before visiting"),
        (owner.operator_id, "approved, ladder needed"),
        (requester.operator_id, "signed on paper too"),
        (owner.operator_id, "countersigned"),
        (owner.operator_id, "morning slot"),
        (owner.operator_id, "crew on site"),
        (owner.operator_id, "fiber lit"),
    ]
    # one system note per status change plus the first signature
    assert len([n for n in done.notes if n.is_system]) == 7


def test_cancel_note_is_kept(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    cancelled = service.cancel_order(requester, order.id, note="found another box")
    assert cancelled.notes[-2].content == "found another box"
    assert cancelled.notes[-2].is_system is False
    assert cancelled.notes[-1].is_system is True


def test_refused_transition_keeps_no_note(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    with pytest.raises(InvalidTransition):
        service.advance_installation(owner, order.id, note="should not stick")
    notes = service.get_order(owner, order.id).notes
    assert all(n.content != "should not stick" for n in notes)


def test_repeated_signature_drops_its_note(service, owner, requester, port):
    order = service.create_order(requester, port.id)
    service.decide_order(owner, order.id, approve=True)
    first = service.sign_contract(requester, order.id)
    again = service.sign_contract(requester, order.id, note="signing again")
    assert again.notes == first.notes


def test_blank_transition_note_is_ignored(service, owner, requester, port):
    order = service.create_order(requester, port.id, note="   ")
    assert [n for n in order.notes if not n.is_system] == []


def test_add_note_moves_order_to_top(service, owner, requester, outsider, box, clock):
    ports = service.list_ports(owner, box.id)
    a = service.create_order(requester, ports[0].id)
    clock.advance(seconds=1)
    b = service.create_order(outsider, ports[1].id)
    assert [o.id for o in service.list_orders(owner)] == [b.id, a.id]

    clock.advance(minutes=5)
    service.add_note(owner, a.id, "checking the splitter")
    assert service.get_order(owner, a.id).updated_at == clock()
    assert [o.id for o in service.list_orders(owner)] == [a.id, b.id]


def test_list_orders_search(service, owner, requester, outsider, box, clock):
    other_box = service.create_box(owner, "Armario Centro", 2, -23.5, -46.6)
    a = service.create_order(requester, service.list_ports(owner, box.id)[0].id)
    clock.advance(seconds=1)
    b = service.create_order(outsider, service.list_ports(owner, other_box.id)[0].id)

    assert [o.id for o in service.list_orders(owner, search="rua a")] == [a.id]
    assert [o.id for o in service.list_orders(owner, search="CENTRO")] == [b.id]
    assert [o.id for o in service.list_orders(owner, search="outsider")] == [b.id]
    assert [o.id for o in service.list_orders(owner, search="op-owner")] == [b.id, a.id]
    assert service.list_orders(owner, search="nowhere") == []
    # search never widens what the actor may see
    assert service.list_orders(requester, search="Centro") == []
