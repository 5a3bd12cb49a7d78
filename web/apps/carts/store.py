"""Cart store backed by the Django ORM.

Ordinary edits are plain last-writer-wins row operations. ``clear`` is the
one operation the order workflow relies on: it runs in a single transaction
that first records the dedupe key, so a replayed clear for the same order
is a no-op even if the user has started a new cart since.
"""

import logging

from django.db import IntegrityError, transaction

from .models import CartClearReceipt, CartLine

logger = logging.getLogger("carts")


class CartStore:
    """Implements the workflow's ``CartPort`` plus the user-facing cart edits."""

    def lines(self, user_id: str) -> dict[str, int]:
        return {ln.sku: ln.quantity for ln in CartLine.objects.filter(user_id=user_id)}

    def put(self, user_id: str, sku: str, quantity: int) -> None:
        """Add ``sku`` to the cart, or overwrite its quantity if present."""
        CartLine.objects.update_or_create(user_id=user_id, sku=sku, defaults={"quantity": quantity})

    def update(self, user_id: str, sku: str, quantity: int) -> bool:
        """Change the quantity of an existing line. False if ``sku`` is not in the cart."""
        return CartLine.objects.filter(user_id=user_id, sku=sku).update(quantity=quantity) == 1

    def remove(self, user_id: str, sku: str) -> None:
        CartLine.objects.filter(user_id=user_id, sku=sku).delete()

    def empty(self, user_id: str) -> None:
        CartLine.objects.filter(user_id=user_id).delete()

    @transaction.atomic
    def clear(self, user_id: str, dedupe_key: str) -> None:
        """Empty the cart once per ``dedupe_key``."""
        try:
            with transaction.atomic():
                CartClearReceipt.objects.create(dedupe_key=dedupe_key, user_id=user_id)
        except IntegrityError:
            logger.info("cart clear replayed", extra={"user_id": user_id, "dedupe_key": dedupe_key})
            return
        deleted, _ = CartLine.objects.filter(user_id=user_id).delete()
        logger.info("cart cleared", extra={"user_id": user_id, "dedupe_key": dedupe_key, "lines": deleted})
