"""Repository layer for persisting orders.

``OrderRepository`` implements ``OrderRepositoryPort`` on the Django ORM so
the domain layer is not coupled to ORM types: every method takes and returns
domain ``Order`` objects or primitives.

State transitions are single ``UPDATE ... WHERE id = %s AND state = %s``
statements. The affected row count tells the caller whether it won the
transition, which is what lets concurrent confirmations of the same order
race safely without holding a lock.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from .domain import Discrepancy, Order, OrderAmounts, OrderItem, OrderState, PaymentConfirmation, ShippingAddress
from .models import OrderLineModel, OrderModel


def to_domain(obj: OrderModel) -> Order:
    """Map an ``OrderModel`` (with its lines) to a domain ``Order``."""
    lines = list(obj.lines.all())
    confirmation = None
    if obj.payment_external_id:
        confirmation = PaymentConfirmation(
            external_id=obj.payment_external_id,
            status=obj.payment_status or "",
            confirmed_at=obj.payment_confirmed_at,
            payer_email=obj.payer_email,
        )
    return Order(
        id=str(obj.id),
        user_id=obj.user_id,
        items=tuple(OrderItem(ln.sku, ln.quantity, ln.unit_price_cents) for ln in lines),
        amounts=OrderAmounts(
            items_total_cents=obj.items_total_cents,
            tax_cents=obj.tax_cents,
            shipping_cents=obj.shipping_cents,
            grand_total_cents=obj.grand_total_cents,
        ),
        currency=obj.currency,
        state=OrderState(obj.state),
        payment_intent_ref=obj.payment_intent_ref,
        payment_confirmation=confirmation,
        applied_skus=frozenset(ln.sku for ln in lines if ln.applied),
        cart_cleared=obj.cart_cleared,
        discrepancies=tuple(Discrepancy(**d) for d in obj.discrepancies or []),
        shipping_address=ShippingAddress(**obj.shipping_address) if obj.shipping_address else None,
        payment_method=obj.payment_method,
        failure_reason=obj.failure_reason,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class OrderRepository:
    """Order store backed by the ``orders`` and ``order_lines`` tables."""

    def _qs(self):
        return OrderModel.objects.prefetch_related("lines")

    def _conditional(self, order_id: str, expected: OrderState, **changes) -> bool:
        updated = OrderModel.objects.filter(id=order_id, state=expected.value).update(
            updated_at=timezone.now(), **changes
        )
        return updated == 1

    def _touch(self, order_id: str, **changes) -> None:
        OrderModel.objects.filter(id=order_id).update(updated_at=timezone.now(), **changes)

    @transaction.atomic
    def add(self, order: Order) -> Order:
        """Persist a new order and its line items in one transaction."""
        obj = OrderModel.objects.create(
            id=order.id,
            user_id=order.user_id,
            state=order.state.value,
            currency=order.currency,
            items_total_cents=order.amounts.items_total_cents,
            tax_cents=order.amounts.tax_cents,
            shipping_cents=order.amounts.shipping_cents,
            grand_total_cents=order.amounts.grand_total_cents,
            shipping_address=asdict(order.shipping_address) if order.shipping_address else None,
            payment_method=order.payment_method,
        )
        OrderLineModel.objects.bulk_create(
            [
                OrderLineModel(
                    order=obj,
                    position=pos,
                    sku=it.sku,
                    quantity=it.quantity,
                    unit_price_cents=it.unit_price_cents,
                )
                for pos, it in enumerate(order.items)
            ]
        )
        return self.get(str(obj.id))

    def get(self, order_id: str) -> Optional[Order]:
        obj = self._qs().filter(id=order_id).first()
        return to_domain(obj) if obj else None

    def get_by_intent_ref(self, intent_ref: str) -> Optional[Order]:
        obj = self._qs().filter(payment_intent_ref=intent_ref).first()
        return to_domain(obj) if obj else None

    def list_for_user(self, user_id: str) -> List[Order]:
        return [to_domain(o) for o in self._qs().filter(user_id=user_id).order_by("-created_at")]

    def list_in_states(self, states: Iterable[OrderState], updated_before: datetime) -> List[Order]:
        qs = self._qs().filter(state__in=[s.value for s in states], updated_at__lte=updated_before)
        return [to_domain(o) for o in qs.order_by("updated_at")]

    def attach_intent(self, order_id: str, intent_ref: str) -> bool:
        updated = OrderModel.objects.filter(
            id=order_id, state=OrderState.PENDING.value, payment_intent_ref__isnull=True
        ).update(payment_intent_ref=intent_ref, updated_at=timezone.now())
        return updated == 1

    def mark_paid(self, order_id: str, confirmation: PaymentConfirmation) -> bool:
        return self._conditional(
            order_id,
            OrderState.PENDING,
            state=OrderState.PAID.value,
            payment_external_id=confirmation.external_id,
            payment_status=confirmation.status,
            payment_confirmed_at=confirmation.confirmed_at,
            payer_email=confirmation.payer_email,
        )

    def mark_failed(self, order_id: str, reason: str) -> bool:
        return self._conditional(order_id, OrderState.PENDING, state=OrderState.FAILED.value, failure_reason=reason)

    def transition(self, order_id: str, from_state: OrderState, to_state: OrderState) -> bool:
        return self._conditional(order_id, from_state, state=to_state.value)

    def mark_item_applied(self, order_id: str, sku: str) -> None:
        OrderLineModel.objects.filter(order_id=order_id, sku=sku).update(applied=True)
        self._touch(order_id)

    @transaction.atomic
    def add_discrepancy(self, order_id: str, discrepancy: Discrepancy) -> None:
        """Record the shortfall and settle its line in the same transaction."""
        obj = OrderModel.objects.select_for_update().get(id=order_id)
        OrderLineModel.objects.filter(order_id=order_id, sku=discrepancy.sku).update(applied=True)
        current = list(obj.discrepancies or [])
        if not any(d.get("sku") == discrepancy.sku for d in current):
            current.append(
                {"sku": discrepancy.sku, "requested": discrepancy.requested, "available": discrepancy.available}
            )
        self._touch(order_id, discrepancies=current)

    def mark_cart_cleared(self, order_id: str) -> None:
        self._touch(order_id, cart_cleared=True)
