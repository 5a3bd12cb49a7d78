"""Wiring of ``OrderService`` with concrete ports.

Orders and carts always live in this project's database. Inventory and
payments are remote services: with ``settings.USE_HTTP_ADAPTERS`` enabled the
service talks to them over HTTP, otherwise it uses process-wide in-memory
stand-ins, which is what tests and local development run against.
"""

from django.conf import settings

from apps.carts.store import CartStore

from .adapters import InMemoryInventory, PaymentsStub
from .domain import OrderService
from .http_adapters import HttpInventoryClient, HttpPaymentsClient
from .repository import OrderRepository

_inventory_stub = None
_payments_stub = None


def _stubs():
    global _inventory_stub, _payments_stub
    if _inventory_stub is None:
        _inventory_stub = InMemoryInventory(default_stock=getattr(settings, "ORDERS_STUB_DEFAULT_STOCK", 100))
        _payments_stub = PaymentsStub()
    return _inventory_stub, _payments_stub


def get_order_service() -> OrderService:
    """Return an ``OrderService`` wired for the current settings."""
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        inventory, payments = HttpInventoryClient(), HttpPaymentsClient()
    else:
        inventory, payments = _stubs()

    return OrderService(
        orders=OrderRepository(),
        inventory=inventory,
        carts=CartStore(),
        payments=payments,
        currency=getattr(settings, "ORDERS_CURRENCY", "USD"),
        verify_totals=getattr(settings, "ORDERS_VERIFY_TOTALS", False),
    )
