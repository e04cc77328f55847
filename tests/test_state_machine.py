import threading

import pytest

from conftest import ALICE, BOB, STAFF, STAFF_2
from ordering.errors import Conflict, InvalidOrder, InvalidTransition, Unauthorized
from ordering.models import OrderStatus, PaymentMethod, PaymentStatus
from ordering.state_machine import Event

S = OrderStatus

# (event, payment method) -> statuses the event may fire from
VALID = {
    (Event.UPLOAD_PROOF, "cod"): {S.WAITING_PAYMENT},
    (Event.UPLOAD_PROOF, "qris"): {S.WAITING_PAYMENT},
    (Event.ACCEPT, "cod"): {S.PENDING, S.WAITING_PAYMENT, S.WAITING_ADMIN_CONFIRMATION},
    (Event.ACCEPT, "qris"): {S.PENDING, S.WAITING_PAYMENT, S.WAITING_ADMIN_CONFIRMATION},
    (Event.REJECT, "cod"): {S.PENDING, S.WAITING_PAYMENT, S.WAITING_ADMIN_CONFIRMATION},
    (Event.REJECT, "qris"): {S.PENDING, S.WAITING_PAYMENT, S.WAITING_ADMIN_CONFIRMATION},
    (Event.COMPLETE, "cod"): {S.PROCESSING},
    (Event.COMPLETE, "qris"): {S.PROCESSING},
    (Event.CANCEL, "cod"): {S.PENDING, S.WAITING_ADMIN_CONFIRMATION},
    (Event.CANCEL, "qris"): {S.PENDING, S.WAITING_PAYMENT},
}

TARGET = {
    Event.UPLOAD_PROOF: S.WAITING_ADMIN_CONFIRMATION,
    Event.ACCEPT: S.PROCESSING,
    Event.REJECT: S.REJECTED,
    Event.COMPLETE: S.COMPLETED,
    Event.CANCEL: S.CANCELLED,
}

STAFF_EVENTS = {Event.ACCEPT, Event.REJECT, Event.COMPLETE}


def _fire(machine, event, order_id):
    principal = STAFF if event in STAFF_EVENTS else ALICE
    reason = "Proof is unreadable" if event == Event.REJECT else None
    return machine.fire(event, principal, order_id, reason=reason)


def _cases(valid):
    for (event, method), statuses in VALID.items():
        for status in OrderStatus:
            if (status in statuses) == valid:
                yield pytest.param(event, method, status, id=f"{event.value}-{method}-{status.value}")


def test_initial_status_follows_payment_method(place_order):
    assert place_order("qris").order_status == S.WAITING_PAYMENT
    assert place_order("cod").order_status == S.WAITING_ADMIN_CONFIRMATION


def test_create_order_snapshots_prices(place_order):
    order = place_order(items=[
        {"catalog_item_id": "latte", "quantity": 2},
        {"catalog_item_id": "espresso", "quantity": 1},
        {"catalog_item_id": "latte", "quantity": 1},
    ])

    assert order.total_price == 3 * 25000 + 18000
    assert order.postage == 10000
    assert order.grand_total == 3 * 25000 + 18000 + 10000
    assert {(i.catalog_item_id, i.quantity, i.price) for i in order.items} == {
        ("latte", 3, 25000),
        ("espresso", 1, 18000),
    }


def test_create_order_rejects_unavailable_items(place_order, store):
    with pytest.raises(InvalidOrder):
        place_order(items=[{"catalog_item_id": "seasonal", "quantity": 1}])
    with pytest.raises(InvalidOrder):
        place_order(items=[{"catalog_item_id": "does-not-exist", "quantity": 1}])
    assert store.list_orders() == []


@pytest.mark.parametrize("event,method,status", list(_cases(valid=False)))
def test_event_outside_table_is_invalid_and_leaves_order_untouched(
    machine, store, place_order, force_status, event, method, status
):
    order = place_order(method)
    force_status(order.id, status)

    with pytest.raises(InvalidTransition):
        _fire(machine, event, order.id)

    after = store.get_order(order.id)
    assert after.order_status == status
    assert after.version == order.version


@pytest.mark.parametrize("event,method,status", list(_cases(valid=True)))
def test_event_inside_table_moves_to_target(machine, store, place_order, force_status, event, method, status):
    order = place_order(method)
    force_status(order.id, status)

    updated = _fire(machine, event, order.id)

    assert updated.order_status == TARGET[event]
    assert updated.version == order.version + 1
    assert store.get_order(order.id).order_status == TARGET[event]


def test_customer_events_require_ownership(machine, store, place_order):
    order = place_order("cod", customer=ALICE)

    with pytest.raises(Unauthorized):
        machine.cancel(BOB, order.id)
    assert store.get_order(order.id).order_status == S.WAITING_ADMIN_CONFIRMATION


def test_staff_events_require_staff_role(machine, store, place_order):
    order = place_order("cod")

    for action in (machine.accept, machine.complete):
        with pytest.raises(Unauthorized):
            action(ALICE, order.id)
    with pytest.raises(Unauthorized):
        machine.reject(ALICE, order.id, "no")
    assert store.get_order(order.id).order_status == S.WAITING_ADMIN_CONFIRMATION


def test_staff_cannot_cancel_on_behalf_of_customer(machine, place_order):
    order = place_order("cod")
    with pytest.raises(Unauthorized):
        machine.cancel(STAFF, order.id)


def test_reject_requires_reason_and_records_it(machine, store, place_order):
    order = place_order("cod")

    with pytest.raises(InvalidOrder):
        machine.reject(STAFF, order.id, "   ")
    assert store.get_order(order.id).order_status == S.WAITING_ADMIN_CONFIRMATION

    rejected = machine.reject(STAFF, order.id, "Out of milk today")
    assert rejected.order_status == S.REJECTED
    assert rejected.rejection_reason == "Out of milk today"


def test_stale_read_gets_conflict(machine, store, place_order, mocker):
    """A caller acting on an outdated snapshot must not overwrite the winner."""
    order = place_order("cod")
    stale = store.get_order(order.id)
    machine.reject(STAFF, order.id, "Closed early")

    mocker.patch.object(store, "get_order", side_effect=[stale, store.get_order(order.id)])

    with pytest.raises(Conflict):
        machine.cancel(ALICE, order.id)
    mocker.stopall()
    assert store.get_order(order.id).order_status == S.REJECTED


def test_concurrent_reject_and_cancel_exactly_one_wins(machine, store, place_order, mocker):
    order = place_order("cod")
    barrier = threading.Barrier(2)
    first_read = threading.local()
    real_get_order = store.get_order

    def get_order_then_wait(order_id):
        record = real_get_order(order_id)
        # both actors read the same status before either writes
        if not getattr(first_read, "done", False):
            first_read.done = True
            barrier.wait(timeout=5)
        return record

    mocker.patch.object(store, "get_order", side_effect=get_order_then_wait)
    outcomes = {}

    def run(name, action):
        try:
            outcomes[name] = action()
        except Exception as exc:
            outcomes[name] = exc

    threads = [
        threading.Thread(target=run, args=("reject", lambda: machine.reject(STAFF, order.id, "Sold out"))),
        threading.Thread(target=run, args=("cancel", lambda: machine.cancel(ALICE, order.id))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=15)

    winners = {k: v for k, v in outcomes.items() if not isinstance(v, Exception)}
    losers = {k: v for k, v in outcomes.items() if isinstance(v, Exception)}
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(next(iter(losers.values())), Conflict)

    final = real_get_order(order.id)
    assert final.order_status == next(iter(winners.values())).order_status
    assert final.version == order.version + 1


def test_qris_cancel_blocked_once_payment_recorded(machine, store, place_order):
    order = place_order("qris")
    # proof recorded while the status did not move
    store.insert_payment(order.id, f"{order.id}/1_receipt.jpg")

    with pytest.raises(InvalidTransition):
        machine.cancel(ALICE, order.id)
    assert store.get_order(order.id).order_status == S.WAITING_PAYMENT


def test_qris_cancel_blocked_by_payment_inserted_after_guard_check(machine, store, place_order, mocker):
    order = place_order("qris")
    mocker.patch.object(store, "has_payment", side_effect=[False, True])
    store.insert_payment(order.id, f"{order.id}/1_receipt.jpg")

    with pytest.raises(InvalidTransition):
        machine.cancel(ALICE, order.id)
    assert store.get_order(order.id).order_status == S.WAITING_PAYMENT


def test_proof_locks_cancellation_but_cod_in_same_status_can_cancel(machine, place_order):
    qris = place_order("qris")
    cod = place_order("cod")
    machine.upload_proof(ALICE, qris.id)

    with pytest.raises(InvalidTransition):
        machine.cancel(ALICE, qris.id)
    assert machine.cancel(ALICE, cod.id).order_status == S.CANCELLED


def test_accept_confirms_pending_payment(machine, store, place_order):
    order = place_order("qris")
    store.insert_payment(order.id, f"{order.id}/1_receipt.jpg")
    machine.upload_proof(ALICE, order.id)

    machine.accept(STAFF_2, order.id)

    payment = store.latest_payment(order.id)
    assert payment.status == PaymentStatus.CONFIRMED
    assert payment.confirmed_at is not None


def test_reject_marks_pending_payment_rejected(machine, store, place_order):
    order = place_order("qris")
    store.insert_payment(order.id, f"{order.id}/1_receipt.jpg")
    machine.upload_proof(ALICE, order.id)

    machine.reject(STAFF, order.id, "Amount does not match")

    payment = store.latest_payment(order.id)
    assert payment.status == PaymentStatus.REJECTED
    assert payment.confirmed_at is None


def test_transitions_are_published(app, machine, place_order, mocker):
    publish = mocker.spy(app.state.notifier, "publish")
    order = place_order("cod")
    machine.accept(STAFF, order.id)

    kinds = [(c.args[0].kind, c.args[0].fields["order_status"]) for c in publish.call_args_list]
    assert kinds == [("INSERT", "waiting_admin_confirmation"), ("UPDATE", "processing")]


def test_failed_transition_publishes_nothing(app, machine, place_order, mocker):
    order = place_order("cod")
    publish = mocker.spy(app.state.notifier, "publish")

    with pytest.raises(InvalidTransition):
        machine.complete(STAFF, order.id)
    publish.assert_not_called()


def test_read_access(machine, place_order):
    order = place_order("cod", customer=ALICE)

    assert machine.get_order(ALICE, order.id).id == order.id
    assert machine.get_order(STAFF, order.id).id == order.id
    with pytest.raises(Unauthorized):
        machine.get_order(BOB, order.id)
    assert machine.list_orders(BOB) == []
    with pytest.raises(Unauthorized):
        machine.list_all_orders(ALICE)
    assert [o.id for o in machine.list_all_orders(STAFF)] == [order.id]


def test_payment_method_enum_values():
    assert {m.value for m in PaymentMethod} == {"cod", "qris"}
    assert {s.value for s in OrderStatus} == {
        "pending", "waiting_payment", "waiting_admin_confirmation",
        "processing", "completed", "cancelled", "rejected",
    }
