from django.db import models


class CartLine(models.Model):
    user_id = models.CharField(max_length=64, db_index=True)
    sku = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "cart_lines"
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(fields=["user_id", "sku"], name="ux_cart_line_user_sku"),
        ]


class CartClearReceipt(models.Model):
    # One row per clear performed on behalf of an order ("<order_id>:cart")
    dedupe_key = models.CharField(max_length=200, primary_key=True)
    user_id = models.CharField(max_length=64)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "cart_clear_receipts"
