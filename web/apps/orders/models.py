import uuid
from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed in the API; doubles as the idempotency token
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=64, db_index=True)

    class State(models.TextChoices):
        PENDING = "PENDING"
        PAID = "PAID"
        FULFILLING = "FULFILLING"
        FULFILLED = "FULFILLED"
        FAILED = "FAILED"

    state = models.CharField(max_length=16, choices=State.choices, default=State.PENDING, db_index=True)
    currency = models.CharField(max_length=3, default="USD")

    items_total_cents = models.PositiveIntegerField(default=0)
    tax_cents = models.PositiveIntegerField(default=0)
    shipping_cents = models.PositiveIntegerField(default=0)
    grand_total_cents = models.PositiveIntegerField(default=0)

    # Checkout details, stored as submitted
    shipping_address = models.JSONField(null=True, blank=True)
    payment_method = models.CharField(max_length=32, null=True, blank=True)

    payment_intent_ref = models.CharField(max_length=128, unique=True, null=True, blank=True)

    # Payment confirmation, written once together with the PAID transition
    payment_external_id = models.CharField(max_length=128, null=True, blank=True)
    payment_status = models.CharField(max_length=32, null=True, blank=True)
    payment_confirmed_at = models.DateTimeField(null=True, blank=True)
    payer_email = models.CharField(max_length=254, null=True, blank=True)

    failure_reason = models.CharField(max_length=64, null=True, blank=True)
    cart_cleared = models.BooleanField(default=False)
    discrepancies = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    # Set explicitly on every conditional update (queryset.update skips auto_now)
    updated_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    position = models.PositiveSmallIntegerField()
    sku = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()
    # Stock decrement applied (or settled as a discrepancy)
    applied = models.BooleanField(default=False)

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["order", "sku"], name="ux_order_line_sku"),
        ]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
