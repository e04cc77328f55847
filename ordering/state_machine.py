"""Order lifecycle: the transition table and the guards around it.

Every status change goes through :meth:`OrderStateMachine.fire`, which checks
the actor, the current state and any extra guard, then issues a conditional
write. When that write matches nothing, another actor won the race and the
caller gets :class:`~ordering.errors.Conflict`.
"""

import enum
import logging
from dataclasses import dataclass
from typing import FrozenSet, List, Mapping, Optional

from ordering.auth import Principal
from ordering.errors import Conflict, InvalidOrder, InvalidTransition, OrderNotFound, Unauthorized
from ordering.models import OrderStatus, PaymentMethod, PaymentStatus
from ordering.realtime import INSERT, UPDATE, OrderEvent
from ordering.schemas import CreateOrderRequest, OrderDetail, OrderRecord

logger = logging.getLogger(__name__)


class Actor(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"


class Event(str, enum.Enum):
    UPLOAD_PROOF = "upload_proof"
    ACCEPT = "accept"
    REJECT = "reject"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    event: Event
    actor: Actor
    sources: Mapping[PaymentMethod, FrozenSet[OrderStatus]]
    target: OrderStatus
    requires_reason: bool = False
    no_payment_for: FrozenSet[PaymentMethod] = frozenset()
    settles_payments: Optional[PaymentStatus] = None

    def allows(self, method: PaymentMethod, status: OrderStatus) -> bool:
        return status in self.sources.get(method, frozenset())


def _same_for_all(*statuses: OrderStatus) -> Mapping[PaymentMethod, FrozenSet[OrderStatus]]:
    return {method: frozenset(statuses) for method in PaymentMethod}


_REVIEWABLE = (OrderStatus.PENDING, OrderStatus.WAITING_PAYMENT, OrderStatus.WAITING_ADMIN_CONFIRMATION)

TRANSITIONS: Mapping[Event, Transition] = {
    Event.UPLOAD_PROOF: Transition(
        event=Event.UPLOAD_PROOF,
        actor=Actor.CUSTOMER,
        sources=_same_for_all(OrderStatus.WAITING_PAYMENT),
        target=OrderStatus.WAITING_ADMIN_CONFIRMATION,
    ),
    Event.ACCEPT: Transition(
        event=Event.ACCEPT,
        actor=Actor.STAFF,
        sources=_same_for_all(*_REVIEWABLE),
        target=OrderStatus.PROCESSING,
        settles_payments=PaymentStatus.CONFIRMED,
    ),
    Event.REJECT: Transition(
        event=Event.REJECT,
        actor=Actor.STAFF,
        sources=_same_for_all(*_REVIEWABLE),
        target=OrderStatus.REJECTED,
        requires_reason=True,
        settles_payments=PaymentStatus.REJECTED,
    ),
    Event.COMPLETE: Transition(
        event=Event.COMPLETE,
        actor=Actor.STAFF,
        sources=_same_for_all(OrderStatus.PROCESSING),
        target=OrderStatus.COMPLETED,
    ),
    Event.CANCEL: Transition(
        event=Event.CANCEL,
        actor=Actor.CUSTOMER,
        sources={
            PaymentMethod.COD: frozenset({OrderStatus.PENDING, OrderStatus.WAITING_ADMIN_CONFIRMATION}),
            PaymentMethod.QRIS: frozenset({OrderStatus.PENDING, OrderStatus.WAITING_PAYMENT}),
        },
        target=OrderStatus.CANCELLED,
        no_payment_for=frozenset({PaymentMethod.QRIS}),
    ),
}


def initial_status(method: PaymentMethod) -> OrderStatus:
    # cash-on-delivery has no proof step
    if method == PaymentMethod.QRIS:
        return OrderStatus.WAITING_PAYMENT
    return OrderStatus.WAITING_ADMIN_CONFIRMATION


class OrderStateMachine:
    def __init__(self, store, store_hours, notifier):
        self._store = store
        self._store_hours = store_hours
        self._notifier = notifier

    # ----- Creation -----

    def create_order(self, principal: Principal, request: CreateOrderRequest) -> OrderDetail:
        self._store_hours.require_open()

        if not request.items:
            raise InvalidOrder("No items in cart")
        quantities = {}
        for item in request.items:
            quantities[item.catalog_item_id] = quantities.get(item.catalog_item_id, 0) + item.quantity

        order = self._store.insert_order(
            customer_id=principal.user_id,
            items=list(quantities.items()),
            payment_method=request.payment_method,
            delivery_address=request.delivery_address.strip(),
            postage=request.postage,
            initial_status=initial_status(request.payment_method),
        )
        logger.info("Order %s created by %s (%s, %s)", order.id, principal.user_id,
                    order.payment_method.value, order.order_status.value)
        self._notifier.publish(OrderEvent.from_record(INSERT, order))
        return order

    # ----- Reads -----

    def get_order(self, principal: Principal, order_id: str) -> OrderDetail:
        order = self._store.get_order_detail(order_id)
        if order is None:
            raise OrderNotFound()
        if not principal.is_staff and order.customer_id != principal.user_id:
            raise Unauthorized()
        return order

    def list_orders(self, principal: Principal) -> List[OrderDetail]:
        return self._store.list_orders(customer_id=principal.user_id)

    def list_all_orders(self, principal: Principal) -> List[OrderDetail]:
        if not principal.is_staff:
            raise Unauthorized()
        return self._store.list_orders()

    # ----- Events -----

    def upload_proof(self, principal: Principal, order_id: str) -> OrderRecord:
        return self.fire(Event.UPLOAD_PROOF, principal, order_id)

    def accept(self, principal: Principal, order_id: str) -> OrderRecord:
        return self.fire(Event.ACCEPT, principal, order_id)

    def reject(self, principal: Principal, order_id: str, reason: str) -> OrderRecord:
        return self.fire(Event.REJECT, principal, order_id, reason=reason)

    def complete(self, principal: Principal, order_id: str) -> OrderRecord:
        return self.fire(Event.COMPLETE, principal, order_id)

    def cancel(self, principal: Principal, order_id: str) -> OrderRecord:
        return self.fire(Event.CANCEL, principal, order_id)

    def check_allowed(self, event: Event, principal: Principal, order_id: str) -> OrderRecord:
        """Run actor and state checks without writing; returns the order as read."""
        transition = TRANSITIONS[event]
        if transition.actor == Actor.STAFF and not principal.is_staff:
            raise Unauthorized()

        order = self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound()
        if transition.actor == Actor.CUSTOMER and order.customer_id != principal.user_id:
            raise Unauthorized()

        if not transition.allows(order.payment_method, order.order_status):
            raise InvalidTransition(
                f"Cannot {event.value.replace('_', ' ')} an order that is {order.order_status.value}."
            )
        return order

    def fire(self, event: Event, principal: Principal, order_id: str, reason: Optional[str] = None) -> OrderRecord:
        transition = TRANSITIONS[event]
        order = self.check_allowed(event, principal, order_id)

        if transition.requires_reason:
            reason = (reason or "").strip()
            if not reason:
                raise InvalidOrder("A reason is required to reject an order.")
        else:
            reason = None

        guard_payment = order.payment_method in transition.no_payment_for
        if guard_payment and self._store.has_payment(order_id):
            raise InvalidTransition("Payment proof was already submitted for this order.")

        updated = self._store.transition(
            order_id,
            expected=order.order_status,
            target=transition.target,
            rejection_reason=reason,
            require_no_payment=guard_payment,
            settle_payments=transition.settles_payments,
        )
        if updated is None:
            raise self._explain_miss(order, guard_payment)

        logger.info("Order %s: %s -> %s (%s by %s)", order_id, order.order_status.value,
                    updated.order_status.value, event.value, principal.user_id)
        self._notifier.publish(OrderEvent.from_record(UPDATE, updated))
        return updated

    def _explain_miss(self, order: OrderRecord, guard_payment: bool) -> Exception:
        current = self._store.get_order(order.id)
        if current is not None and current.order_status == order.order_status and guard_payment \
                and self._store.has_payment(order.id):
            return InvalidTransition("Payment proof was already submitted for this order.")
        logger.info("Order %s: conditional write lost (expected %s, now %s)", order.id,
                    order.order_status.value, current.order_status.value if current else "missing")
        return Conflict()
