"""Domain models, ports and the order workflow service.

This module contains the dataclasses describing an order and its payment
confirmation, protocol definitions (ports) for the collaborators the
workflow depends on (order store, inventory ledger, cart store and payment
gateway), and ``OrderService``, which owns the order state machine::

    PENDING -> PAID -> FULFILLING -> FULFILLED
    PENDING -> FAILED

The service never holds a lock across stores. Consistency comes from
conditional writes in the order store (a transition only succeeds when the
order is still in the expected state) and from dedupe keys passed to the
inventory ledger and cart store, so every step can be retried safely.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from .errors import Forbidden, InsufficientStock, InvalidState, NotFound, UpstreamFailure, ValidationError

logger = logging.getLogger("orders")


# ---- Enums ----
class OrderState(str, Enum):
    """Lifecycle states of an order. ``FULFILLED`` and ``FAILED`` are terminal."""

    PENDING = "PENDING"
    PAID = "PAID"
    FULFILLING = "FULFILLING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"


# States in which a payment confirmation has been recorded.
CONFIRMED_STATES = frozenset({OrderState.PAID, OrderState.FULFILLING, OrderState.FULFILLED})

SUCCESS_STATUSES = frozenset({"succeeded", "completed"})
FAILURE_STATUSES = frozenset({"failed", "canceled", "requires_payment_method"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A line item snapshot taken when the order is created.

    Attributes:
        sku: Product identifier.
        quantity: Units ordered.
        unit_price_cents: Price per unit at checkout time, in cents.
    """

    sku: str
    quantity: int
    unit_price_cents: int = 0

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass(frozen=True)
class OrderAmounts:
    """Totals computed by the caller and stored verbatim."""

    items_total_cents: int
    tax_cents: int
    shipping_cents: int
    grand_total_cents: int

    def is_consistent(self, items: Iterable[OrderItem]) -> bool:
        """True when the parts add up to the grand total and the items total."""
        if self.items_total_cents + self.tax_cents + self.shipping_cents != self.grand_total_cents:
            return False
        return sum(it.line_total_cents for it in items) == self.items_total_cents


@dataclass(frozen=True)
class PaymentConfirmation:
    """The confirmation recorded on an order when it becomes PAID."""

    external_id: str
    status: str
    confirmed_at: datetime
    payer_email: Optional[str] = None


@dataclass(frozen=True)
class InboundConfirmation:
    """A payment outcome reported by the client or by a processor webhook.

    Both delivery paths carry the same fields; two confirmations with equal
    ``intent_ref`` and ``external_id`` describe the same event.
    """

    intent_ref: str
    external_id: str
    status: str
    timestamp: Optional[datetime] = None
    payer_email: Optional[str] = None

    @property
    def normalized_status(self) -> str:
        return self.status.strip().lower()

    @property
    def is_success(self) -> bool:
        return self.normalized_status in SUCCESS_STATUSES

    @property
    def is_failure(self) -> bool:
        return self.normalized_status in FAILURE_STATUSES

    @property
    def event_key(self) -> tuple[str, str]:
        return (self.intent_ref, self.external_id)


@dataclass(frozen=True)
class PaymentIntent:
    """Handle returned by the payment gateway for one authorization attempt."""

    intent_ref: str
    client_secret: str


@dataclass(frozen=True)
class Discrepancy:
    """Stock shortfall found while fulfilling an order that was already paid."""

    sku: str
    requested: int
    available: Optional[int] = None


@dataclass(frozen=True)
class ShippingAddress:
    """Where the order ships, as captured at checkout."""

    address: str
    city: str
    postal_code: str
    country: str


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    user_id: str
    is_admin: bool = False


@dataclass
class Order:
    """An order and its fulfillment bookkeeping.

    Attributes:
        id: Order identifier (UUID string). Also used as the idempotency token.
        user_id: Owning principal.
        items: Line item snapshots in submission order.
        amounts: Caller computed totals.
        currency: ISO currency code.
        state: Current ``OrderState``.
        payment_intent_ref: Gateway reference; set once.
        payment_confirmation: Recorded on the first valid success confirmation.
        applied_skus: SKUs whose stock decrement has been applied or settled
            as a discrepancy.
        cart_cleared: Whether the owner's cart has been cleared.
        discrepancies: Stock shortfalls recorded during fulfillment.
        shipping_address: Delivery address captured at checkout, if given.
        payment_method: Payment method chosen at checkout, if given.
        failure_reason: Gateway status that failed the order, if any.
    """

    id: str
    user_id: str
    items: tuple[OrderItem, ...]
    amounts: OrderAmounts
    currency: str = "USD"
    state: OrderState = OrderState.PENDING
    payment_intent_ref: Optional[str] = None
    payment_confirmation: Optional[PaymentConfirmation] = None
    applied_skus: frozenset[str] = frozenset()
    cart_cleared: bool = False
    discrepancies: tuple[Discrepancy, ...] = ()
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def idempotency_token(self) -> str:
        return self.id

    @property
    def has_discrepancy(self) -> bool:
        return bool(self.discrepancies)

    @property
    def pending_items(self) -> List[OrderItem]:
        return [it for it in self.items if it.sku not in self.applied_skus]

    def dedupe_key(self, sku: str) -> str:
        return f"{self.id}:{sku}"

    @property
    def cart_dedupe_key(self) -> str:
        return f"{self.id}:cart"


# ---- Ports (DIP) ----
class OrderRepositoryPort(Protocol):
    """Port describing the order store.

    Every transition method is a conditional write: it returns True only when
    the stored order was in the expected state and has been updated, and
    False when another writer got there first.
    """

    def add(self, order: Order) -> Order: ...

    def get(self, order_id: str) -> Optional[Order]: ...

    def get_by_intent_ref(self, intent_ref: str) -> Optional[Order]: ...

    def list_for_user(self, user_id: str) -> List[Order]: ...

    def list_in_states(self, states: Iterable[OrderState], updated_before: datetime) -> List[Order]: ...

    def attach_intent(self, order_id: str, intent_ref: str) -> bool: ...

    def mark_paid(self, order_id: str, confirmation: PaymentConfirmation) -> bool: ...

    def mark_failed(self, order_id: str, reason: str) -> bool: ...

    def transition(self, order_id: str, from_state: OrderState, to_state: OrderState) -> bool: ...

    def mark_item_applied(self, order_id: str, sku: str) -> None: ...

    def add_discrepancy(self, order_id: str, discrepancy: Discrepancy) -> None:
        """Record a stock shortfall and mark its line applied, in one write."""
        ...

    def mark_cart_cleared(self, order_id: str) -> None: ...


class InventoryPort(Protocol):
    """Port describing the inventory ledger."""

    def decrement(self, sku: str, quantity: int, dedupe_key: str) -> None:
        """Subtract ``quantity`` units of ``sku`` at most once per ``dedupe_key``.

        Replaying a key that was already applied is a successful no-op.

        Raises:
            InsufficientStock: If the decrement would make stock negative.
            UpstreamFailure: If the ledger cannot be reached.
        """
        ...


class CartPort(Protocol):
    """Port describing the cart store."""

    def clear(self, user_id: str, dedupe_key: str) -> None:
        """Empty the user's cart at most once per ``dedupe_key``."""
        ...


class PaymentsPort(Protocol):
    """Port describing the payment gateway."""

    def create_intent(
        self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        """Create a payment intent for the given amount.

        Args:
            amount_cents: Amount to authorize, in cents.
            currency: ISO currency code.
            metadata: Opaque data echoed back by the processor.
            idempotency_key: Retries with the same key return the same intent.

        Raises:
            UpstreamFailure: If the gateway is unreachable, times out or errors.
        """
        ...


# ---- Domain service ----
class OrderService:
    """Coordinates order creation, payment and fulfillment.

    The service is stateless; all state lives behind the ports, so any number
    of instances may run concurrently against the same stores.
    """

    def __init__(
        self,
        orders: OrderRepositoryPort,
        inventory: InventoryPort,
        carts: CartPort,
        payments: PaymentsPort,
        currency: str = "USD",
        verify_totals: bool = False,
    ):
        """Initialize the service with its collaborators.

        Args:
            orders: Order store.
            inventory: Inventory ledger used to decrement stock.
            carts: Cart store cleared once an order is paid.
            payments: Gateway used to create payment intents.
            currency: Currency used when the caller does not supply one.
            verify_totals: Reject orders whose amounts do not add up.
        """
        self.orders = orders
        self.inventory = inventory
        self.carts = carts
        self.payments = payments
        self.currency = currency
        self.verify_totals = verify_totals

    # -- queries --

    def _load(self, order_id: str) -> Order:
        order = self.orders.get(str(order_id))
        if order is None:
            raise NotFound("ORDER_NOT_FOUND", f"Order {order_id} not found")
        return order

    def get_order(self, order_id: str, principal: Principal) -> Order:
        """Return an order visible to ``principal``.

        Raises:
            NotFound: If the order does not exist.
            Forbidden: If the caller neither owns the order nor is an admin.
        """
        order = self._load(order_id)
        if not principal.is_admin and order.user_id != str(principal.user_id):
            raise Forbidden("NOT_ORDER_OWNER", "Not authorized to view this order")
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        return self.orders.list_for_user(str(user_id))

    # -- commands --

    def create_order(
        self,
        user_id: str,
        items: Iterable[OrderItem],
        amounts: OrderAmounts,
        currency: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
        payment_method: Optional[str] = None,
    ) -> Order:
        """Persist a new PENDING order. Inventory and cart are not touched.

        Raises:
            ValidationError: With one of the codes ``EMPTY_ORDER``,
                ``INVALID_QUANTITY``, ``INVALID_PRICE``, ``DUPLICATE_ITEM``,
                ``INVALID_AMOUNTS`` or ``TOTALS_MISMATCH``.
        """
        items = tuple(items)
        if not items:
            raise ValidationError("EMPTY_ORDER", "No order items")

        seen = set()
        for it in items:
            if it.quantity <= 0:
                raise ValidationError("INVALID_QUANTITY", f"Quantity for {it.sku} must be positive")
            if it.unit_price_cents < 0:
                raise ValidationError("INVALID_PRICE", f"Price for {it.sku} must not be negative")
            if it.sku in seen:
                raise ValidationError("DUPLICATE_ITEM", f"{it.sku} appears more than once")
            seen.add(it.sku)

        if min(amounts.items_total_cents, amounts.tax_cents, amounts.shipping_cents, amounts.grand_total_cents) < 0:
            raise ValidationError("INVALID_AMOUNTS", "Amounts must not be negative")
        if self.verify_totals and not amounts.is_consistent(items):
            raise ValidationError("TOTALS_MISMATCH", "Order amounts do not add up")

        order = Order(
            id=str(uuid.uuid4()),
            user_id=str(user_id),
            items=items,
            amounts=amounts,
            currency=currency or self.currency,
            shipping_address=shipping_address,
            payment_method=payment_method,
        )
        saved = self.orders.add(order)
        logger.info(
            "order created",
            extra={"order_id": saved.id, "user_id": saved.user_id, "grand_total_cents": amounts.grand_total_cents},
        )
        return saved

    def issue_payment_intent(self, order_id: str) -> PaymentIntent:
        """Obtain a payment intent from the gateway and attach it to the order.

        The order id is sent as the gateway idempotency key, so a retry after
        a timeout cannot create a second authorization.

        Raises:
            NotFound: If the order does not exist.
            InvalidState: If the order is not PENDING or already has an intent.
            UpstreamFailure: If the gateway fails; the order is left unchanged.
        """
        order = self._load(order_id)
        if order.state is not OrderState.PENDING:
            raise InvalidState("ORDER_NOT_PENDING", f"Order is {order.state.value}")
        if order.payment_intent_ref:
            raise InvalidState("INTENT_ALREADY_ISSUED", "Order already has a payment intent")

        intent = self.payments.create_intent(
            order.amounts.grand_total_cents,
            order.currency,
            {"order_id": order.id},
            idempotency_key=order.idempotency_token,
        )
        if not self.orders.attach_intent(order.id, intent.intent_ref):
            raise InvalidState("INTENT_ALREADY_ISSUED", "Order already has a payment intent")

        logger.info("payment intent issued", extra={"order_id": order.id, "intent_ref": intent.intent_ref})
        return intent

    def confirm_payment(self, order_id: str, confirmation: InboundConfirmation) -> Order:
        """Record a payment outcome for an order. Safe to call any number of times.

        Only the caller whose PENDING -> PAID write succeeds applies the
        side effects; every other caller gets the stored order back.

        Returns:
            The order after processing. A successful confirmation normally
            returns it FULFILLED; if a downstream store is unavailable the
            order is returned PAID or FULFILLING and the recovery sweep
            finishes it.

        Raises:
            NotFound: If the order does not exist.
            InvalidState: If the order FAILED, has no intent, or the
                confirmation references a different intent.
            ValidationError: If the confirmation status is not recognised.
        """
        order = self._load(order_id)

        if order.state in CONFIRMED_STATES:
            recorded = order.payment_confirmation
            if recorded is not None and recorded.external_id != confirmation.external_id:
                logger.warning(
                    "conflicting confirmation ignored",
                    extra={"order_id": order.id, "external_id": confirmation.external_id},
                )
            else:
                logger.info("duplicate confirmation", extra={"order_id": order.id, "state": order.state.value})
            return order

        if order.state is OrderState.FAILED:
            raise InvalidState("ORDER_FAILED", "Payment for this order already failed")
        if not (confirmation.is_success or confirmation.is_failure):
            raise ValidationError("UNSUPPORTED_PAYMENT_STATUS", f"Unknown payment status {confirmation.status!r}")
        if not order.payment_intent_ref:
            raise InvalidState("NO_PAYMENT_INTENT", "Order has no payment intent")
        if confirmation.intent_ref != order.payment_intent_ref:
            raise InvalidState("INTENT_MISMATCH", "Confirmation does not match the order's payment intent")

        if confirmation.is_failure:
            if not self.orders.mark_failed(order.id, confirmation.normalized_status):
                return self._after_lost_race(order.id)
            logger.warning("payment failed", extra={"order_id": order.id, "status": confirmation.normalized_status})
            return self._load(order.id)

        record = PaymentConfirmation(
            external_id=confirmation.external_id,
            status=confirmation.normalized_status,
            confirmed_at=confirmation.timestamp or _now(),
            payer_email=confirmation.payer_email,
        )
        if not self.orders.mark_paid(order.id, record):
            return self._after_lost_race(order.id)
        logger.info("order paid", extra={"order_id": order.id, "external_id": record.external_id})

        try:
            return self.apply_side_effects(order.id)
        except UpstreamFailure:
            logger.warning("fulfillment deferred to recovery", extra={"order_id": order.id}, exc_info=True)
            return self._load(order.id)

    def confirm_payment_event(self, confirmation: InboundConfirmation) -> Order:
        """Process a confirmation that identifies the order only by its intent."""
        order = self.orders.get_by_intent_ref(confirmation.intent_ref)
        if order is None:
            raise NotFound("UNKNOWN_INTENT", f"No order for intent {confirmation.intent_ref}")
        return self.confirm_payment(order.id, confirmation)

    def _after_lost_race(self, order_id: str) -> Order:
        order = self._load(order_id)
        if order.state in CONFIRMED_STATES:
            return order
        raise InvalidState("ORDER_FAILED", "Payment for this order already failed")

    def apply_side_effects(self, order_id: str) -> Order:
        """Decrement stock for each line item and clear the owner's cart.

        Resumable: line items already applied and a cart already cleared are
        skipped, and each downstream call carries a dedupe key derived from
        the order id, so re-running after an interruption only completes the
        remaining work. A stock shortfall is recorded as a discrepancy and
        does not undo the payment.

        Raises:
            NotFound: If the order does not exist.
            InvalidState: If the order has not been paid.
            UpstreamFailure: If the ledger or cart store is unavailable; the
                order stays FULFILLING.
        """
        order = self._load(order_id)
        if order.state is OrderState.PAID:
            if self.orders.transition(order.id, OrderState.PAID, OrderState.FULFILLING):
                logger.info("fulfillment started", extra={"order_id": order.id})
            order = self._load(order.id)

        if order.state is OrderState.FULFILLED:
            return order
        if order.state is not OrderState.FULFILLING:
            raise InvalidState("ORDER_NOT_PAID", f"Order is {order.state.value}")

        for item in order.pending_items:
            try:
                self.inventory.decrement(item.sku, item.quantity, order.dedupe_key(item.sku))
            except InsufficientStock as exc:
                self.orders.add_discrepancy(order.id, Discrepancy(item.sku, item.quantity, exc.available))
                logger.error(
                    "fulfillment discrepancy",
                    extra={"order_id": order.id, "sku": item.sku, "requested": item.quantity, "available": exc.available},
                )
                continue
            self.orders.mark_item_applied(order.id, item.sku)

        if not order.cart_cleared:
            self.carts.clear(order.user_id, order.cart_dedupe_key)
            self.orders.mark_cart_cleared(order.id)

        if self.orders.transition(order.id, OrderState.FULFILLING, OrderState.FULFILLED):
            logger.info("order fulfilled", extra={"order_id": order.id})
        return self._load(order.id)

    def resume_stuck(self, stale_after_seconds: float = 60.0) -> List[str]:
        """Finish fulfillment for paid orders that were interrupted.

        Args:
            stale_after_seconds: Only orders untouched for at least this long
                are resumed, leaving in-flight confirmations alone.

        Returns:
            Ids of orders that reached FULFILLED during this sweep.
        """
        cutoff = _now() - timedelta(seconds=stale_after_seconds)
        stuck = self.orders.list_in_states((OrderState.PAID, OrderState.FULFILLING), updated_before=cutoff)
        done = []
        for order in stuck:
            try:
                out = self.apply_side_effects(order.id)
            except UpstreamFailure:
                logger.warning("recovery deferred", extra={"order_id": order.id}, exc_info=True)
                continue
            if out.state is OrderState.FULFILLED:
                done.append(out.id)
        logger.info("recovery sweep finished", extra={"candidates": len(stuck), "fulfilled": len(done)})
        return done
