"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API
and the read schema used to render orders back to clients.
"""

import re
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .domain import InboundConfirmation, Order, OrderAmounts, OrderItem, ShippingAddress


SKU_RE = re.compile(r"^[A-Z0-9_-]{1,64}$")
CURRENCIES = {"EUR", "USD", "GBP"}


def normalize_sku(v: str) -> str:
    """Uppercase a product id and check it against ``SKU_RE``.

    Ids are opaque: 1-64 letters, digits, '_' or '-'. Uppercasing is applied on
    every path (orders, cart, ledger calls) so ``p1`` and ``P1`` are one product.

    Raises:
        ValueError: When the SKU does not match the expected pattern.
    """
    v2 = v.upper()
    if not SKU_RE.match(v2):
        raise ValueError("Invalid SKU format")
    return v2


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        sku: Product id, normalized to uppercase (see ``normalize_sku``).
        quantity: Units requested. Positivity is enforced by the workflow so
            the error carries the ``INVALID_QUANTITY`` code.
        unit_price_cents: Price per unit captured at checkout.
    """

    sku: str = Field(min_length=1, max_length=64)
    quantity: int
    unit_price_cents: int = Field(ge=0)

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        return normalize_sku(v)

    def to_domain(self) -> OrderItem:
        return OrderItem(sku=self.sku, quantity=self.quantity, unit_price_cents=self.unit_price_cents)


class AmountsIn(BaseModel):
    """Totals computed by the client, in integer cents."""

    items_total_cents: int = Field(ge=0)
    tax_cents: int = Field(ge=0)
    shipping_cents: int = Field(ge=0)
    grand_total_cents: int = Field(gt=0)

    def to_domain(self) -> OrderAmounts:
        return OrderAmounts(**self.model_dump())


class ShippingAddressIn(BaseModel):
    address: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=64)

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        items: List of `OrderItemIn` items. An empty list is rejected by the
            workflow with ``EMPTY_ORDER``.
        amounts: Caller computed totals.
        currency: Optional 3-letter ISO currency code, normalized to
            uppercase and validated against a small supported set.
        shipping_address: Optional delivery address.
        payment_method: Optional payment method label (e.g. ``card``).
    """

    items: list[OrderItemIn]
    amounts: AmountsIn
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    shipping_address: Optional[ShippingAddressIn] = None
    payment_method: Optional[str] = Field(default=None, min_length=1, max_length=32)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v2 = v.upper()
        if v2 not in CURRENCIES:
            raise ValueError("Unsupported currency")
        return v2


class PaymentConfirmationIn(BaseModel):
    """Payment outcome as posted by the client or delivered by webhook."""

    intent_ref: str = Field(min_length=1, max_length=128)
    external_id: str = Field(min_length=1, max_length=128)
    status: str = Field(min_length=1, max_length=32)
    timestamp: Optional[datetime] = None
    payer_email: Optional[str] = Field(default=None, max_length=254)

    def to_domain(self) -> InboundConfirmation:
        return InboundConfirmation(
            intent_ref=self.intent_ref,
            external_id=self.external_id,
            status=self.status,
            timestamp=self.timestamp,
            payer_email=self.payer_email,
        )


class OrderLineOut(BaseModel):
    sku: str
    quantity: int
    unit_price_cents: int


class ShippingAddressOut(BaseModel):
    address: str
    city: str
    postal_code: str
    country: str


class PaymentConfirmationOut(BaseModel):
    external_id: str
    status: str
    confirmed_at: datetime
    payer_email: Optional[str] = None


class DiscrepancyOut(BaseModel):
    sku: str
    requested: int
    available: Optional[int] = None


class OrderReadDTO(BaseModel):
    """Read model returned by every endpoint that renders an order."""

    id: str
    user_id: str
    state: str
    currency: str
    items: list[OrderLineOut]
    items_total_cents: int
    tax_cents: int
    shipping_cents: int
    grand_total_cents: int
    payment_intent_ref: Optional[str] = None
    payment_confirmation: Optional[PaymentConfirmationOut] = None
    has_discrepancy: bool = False
    discrepancies: list[DiscrepancyOut] = []
    shipping_address: Optional[ShippingAddressOut] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderReadDTO":
        pc = order.payment_confirmation
        return cls(
            id=order.id,
            user_id=order.user_id,
            state=order.state.value,
            currency=order.currency,
            items=[OrderLineOut(sku=i.sku, quantity=i.quantity, unit_price_cents=i.unit_price_cents) for i in order.items],
            items_total_cents=order.amounts.items_total_cents,
            tax_cents=order.amounts.tax_cents,
            shipping_cents=order.amounts.shipping_cents,
            grand_total_cents=order.amounts.grand_total_cents,
            payment_intent_ref=order.payment_intent_ref,
            payment_confirmation=(
                PaymentConfirmationOut(
                    external_id=pc.external_id,
                    status=pc.status,
                    confirmed_at=pc.confirmed_at,
                    payer_email=pc.payer_email,
                )
                if pc
                else None
            ),
            has_discrepancy=order.has_discrepancy,
            discrepancies=[DiscrepancyOut(sku=d.sku, requested=d.requested, available=d.available) for d in order.discrepancies],
            shipping_address=ShippingAddressOut(**asdict(order.shipping_address)) if order.shipping_address else None,
            payment_method=order.payment_method,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
        )
