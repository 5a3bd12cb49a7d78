"""In-process adapters for the orders domain ports.

These implement every port without a database or network calls. They are
used by unit tests and local development (``USE_HTTP_ADAPTERS = False``).
Each keeps its state behind a lock so the same conditional-write and
dedupe semantics as the real stores hold under concurrent callers.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .domain import (
    CartPort,
    Discrepancy,
    InventoryPort,
    Order,
    OrderRepositoryPort,
    OrderState,
    PaymentConfirmation,
    PaymentIntent,
    PaymentsPort,
)
from .errors import InsufficientStock, ValidationError


class InMemoryOrderRepository(OrderRepositoryPort):
    """Dictionary-backed order store. Returned orders are copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}

    def _update(self, order_id: str, **changes) -> None:
        self._orders[order_id] = replace(
            self._orders[order_id], updated_at=datetime.now(timezone.utc), **changes
        )

    def add(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = replace(order)
            return replace(order)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    def get_by_intent_ref(self, intent_ref: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders.values():
                if order.payment_intent_ref == intent_ref:
                    return replace(order)
            return None

    def list_for_user(self, user_id: str) -> List[Order]:
        with self._lock:
            found = [replace(o) for o in self._orders.values() if o.user_id == user_id]
        return sorted(found, key=lambda o: o.created_at, reverse=True)

    def list_in_states(self, states: Iterable[OrderState], updated_before: datetime) -> List[Order]:
        wanted = set(states)
        with self._lock:
            return [
                replace(o) for o in self._orders.values() if o.state in wanted and o.updated_at <= updated_before
            ]

    def attach_intent(self, order_id: str, intent_ref: str) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.state is not OrderState.PENDING or order.payment_intent_ref:
                return False
            self._update(order_id, payment_intent_ref=intent_ref)
            return True

    def mark_paid(self, order_id: str, confirmation: PaymentConfirmation) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.state is not OrderState.PENDING:
                return False
            self._update(order_id, state=OrderState.PAID, payment_confirmation=confirmation)
            return True

    def mark_failed(self, order_id: str, reason: str) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.state is not OrderState.PENDING:
                return False
            self._update(order_id, state=OrderState.FAILED, failure_reason=reason)
            return True

    def transition(self, order_id: str, from_state: OrderState, to_state: OrderState) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.state is not from_state:
                return False
            self._update(order_id, state=to_state)
            return True

    def mark_item_applied(self, order_id: str, sku: str) -> None:
        with self._lock:
            order = self._orders[order_id]
            self._update(order_id, applied_skus=order.applied_skus | {sku})

    def add_discrepancy(self, order_id: str, discrepancy: Discrepancy) -> None:
        with self._lock:
            order = self._orders[order_id]
            applied = order.applied_skus | {discrepancy.sku}
            if any(d.sku == discrepancy.sku for d in order.discrepancies):
                self._update(order_id, applied_skus=applied)
                return
            self._update(order_id, applied_skus=applied, discrepancies=order.discrepancies + (discrepancy,))

    def mark_cart_cleared(self, order_id: str) -> None:
        with self._lock:
            self._update(order_id, cart_cleared=True)


class InMemoryInventory(InventoryPort):
    """Stock ledger with per-key idempotent decrements.

    Args:
        stock: Initial quantities per SKU.
        default_stock: Quantity assumed for SKUs seen for the first time.
    """

    def __init__(self, stock: Optional[Dict[str, int]] = None, default_stock: int = 0):
        self._lock = threading.Lock()
        self._stock: Dict[str, int] = dict(stock or {})
        self._default = default_stock
        self._applied: set[str] = set()
        self.calls: List[str] = []

    def level(self, sku: str) -> int:
        with self._lock:
            return self._stock.get(sku, self._default)

    def decrement(self, sku: str, quantity: int, dedupe_key: str) -> None:
        with self._lock:
            self.calls.append(dedupe_key)
            if dedupe_key in self._applied:
                return
            current = self._stock.get(sku, self._default)
            if current < quantity:
                raise InsufficientStock(sku, quantity, current)
            self._stock[sku] = current - quantity
            self._applied.add(dedupe_key)


class InMemoryCartStore(CartPort):
    """Per-user carts with a dedupe-guarded clear."""

    def __init__(self, carts: Optional[Dict[str, Dict[str, int]]] = None):
        self._lock = threading.Lock()
        self._carts: Dict[str, Dict[str, int]] = {k: dict(v) for k, v in (carts or {}).items()}
        self._receipts: set[str] = set()
        self.clears = 0

    def contents(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._carts.get(user_id, {}))

    def clear(self, user_id: str, dedupe_key: str) -> None:
        with self._lock:
            if dedupe_key in self._receipts:
                return
            self._receipts.add(dedupe_key)
            self._carts[user_id] = {}
            self.clears += 1


class PaymentsStub(PaymentsPort):
    """Stub implementation of ``PaymentsPort``.

    Approves intents with a positive amount. Retries with the same
    idempotency key return the intent created the first time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: Dict[str, PaymentIntent] = {}

    def create_intent(
        self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        if amount_cents <= 0:
            raise ValidationError("INVALID_AMOUNT", "Intent amount must be positive")
        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            ref = f"pi_{uuid.uuid4().hex}"
            intent = PaymentIntent(intent_ref=ref, client_secret=f"{ref}_secret_{uuid.uuid4().hex[:16]}")
            if idempotency_key:
                self._by_key[idempotency_key] = intent
            return intent
