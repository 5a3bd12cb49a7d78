"""Racing confirmations against the ORM order store.

A second confirmation is made to land between the first one's read and its
PENDING -> PAID write, which is exactly the window the conditional update
has to cover.
"""
from datetime import datetime, timezone

import pytest

from apps.carts.store import CartStore
from apps.orders.adapters import InMemoryInventory, PaymentsStub
from apps.orders.domain import InboundConfirmation, OrderService, OrderState, PaymentConfirmation
from apps.orders.repository import OrderRepository


class InterleavingRepository(OrderRepository):
    """Runs ``before_mark_paid`` once, just before the PAID write."""

    def __init__(self, before_mark_paid):
        self.before_mark_paid = before_mark_paid

    def mark_paid(self, order_id, confirmation):
        hook, self.before_mark_paid = self.before_mark_paid, None
        if hook:
            hook()
        return super().mark_paid(order_id, confirmation)


def counting(service, calls):
    original = service.apply_side_effects

    def wrapper(order_id):
        calls.append(order_id)
        return original(order_id)

    service.apply_side_effects = wrapper
    return service


@pytest.mark.django_db
def test_racing_confirmations_apply_side_effects_once(user, make_order):
    uid = str(user.pk)
    carts = CartStore()
    carts.put(uid, "P1", 2)
    inventory = InMemoryInventory({"P1": 10})
    o = make_order(user)
    OrderRepository().attach_intent(o.id, "pi_race")
    confirmation = InboundConfirmation("pi_race", "ch_1", "succeeded")

    calls = []
    rival = counting(OrderService(OrderRepository(), inventory, carts, PaymentsStub()), calls)
    rival_result = {}

    def rival_confirms():
        rival_result["order"] = rival.confirm_payment(o.id, confirmation)

    first = counting(OrderService(InterleavingRepository(rival_confirms), inventory, carts, PaymentsStub()), calls)
    out = first.confirm_payment(o.id, confirmation)

    assert calls == [o.id]
    assert rival_result["order"].state is OrderState.FULFILLED
    assert out.state is OrderState.FULFILLED
    assert out.payment_confirmation.external_id == "ch_1"
    assert inventory.level("P1") == 8
    assert inventory.calls == [f"{o.id}:P1"]
    assert carts.lines(uid) == {}


@pytest.mark.django_db
def test_only_one_of_two_stores_wins_the_paid_write(user, make_order):
    o = make_order(user)
    conf = PaymentConfirmation(external_id="ch_1", status="succeeded", confirmed_at=datetime.now(timezone.utc))
    results = [OrderRepository().mark_paid(o.id, conf), OrderRepository().mark_paid(o.id, conf)]
    assert sorted(results) == [False, True]
    assert OrderRepository().get(o.id).state is OrderState.PAID
