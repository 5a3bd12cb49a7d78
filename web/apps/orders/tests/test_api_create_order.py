"""API tests for the create-order endpoint.

These exercise ``POST /api/orders/`` for the main scenarios: successful
creation, business validation errors and malformed payloads. Inventory and
payments use the in-process stand-ins from ``apps.orders.adapters``.
"""
import pytest

from apps.orders import providers
from apps.orders.models import OrderLineModel, OrderModel

CREATE_URL = "/api/orders/"

PAYLOAD = {
    "items": [{"sku": "p1", "quantity": 2, "unit_price_cents": 500}],
    "amounts": {"items_total_cents": 1000, "tax_cents": 80, "shipping_cents": 200, "grand_total_cents": 1280},
    "currency": "usd",
}


@pytest.mark.django_db
def test_create_order_returns_pending(auth_client, user):
    """Returns 201 with the new order id; nothing downstream is touched."""
    r = auth_client.post(CREATE_URL, data=PAYLOAD, content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["state"] == "PENDING"

    row = OrderModel.objects.get(pk=body["id"])
    assert row.user_id == str(user.pk)
    assert row.grand_total_cents == 1280
    assert row.currency == "USD"
    assert row.payment_intent_ref is None
    line = OrderLineModel.objects.get(order=row)
    assert (line.sku, line.quantity, line.unit_price_cents) == ("P1", 2, 500)

    inventory, _ = providers._stubs()
    assert inventory.calls == []


@pytest.mark.django_db
def test_create_order_defaults_currency(auth_client, settings):
    settings.ORDERS_CURRENCY = "EUR"
    payload = {k: v for k, v in PAYLOAD.items() if k != "currency"}
    r = auth_client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 201
    assert OrderModel.objects.get(pk=r.json()["id"]).currency == "EUR"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "items, detail",
    [
        ([], "EMPTY_ORDER"),
        ([{"sku": "P1", "quantity": 0, "unit_price_cents": 500}], "INVALID_QUANTITY"),
        (
            [
                {"sku": "P1", "quantity": 1, "unit_price_cents": 500},
                {"sku": "p1", "quantity": 1, "unit_price_cents": 500},
            ],
            "DUPLICATE_ITEM",
        ),
    ],
)
def test_create_order_business_validation(auth_client, items, detail):
    """Workflow validation errors are 400 with a stable ``detail`` code."""
    r = auth_client.post(CREATE_URL, data={**PAYLOAD, "items": items}, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["kind"] == "VALIDATION_ERROR"
    assert r.json()["detail"] == detail
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_create_order_totals_mismatch_when_verified(auth_client, settings):
    settings.ORDERS_VERIFY_TOTALS = True
    amounts = {**PAYLOAD["amounts"], "grand_total_cents": 999}
    r = auth_client.post(CREATE_URL, data={**PAYLOAD, "amounts": amounts}, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "TOTALS_MISMATCH"


@pytest.mark.django_db
def test_create_order_validation_error(auth_client):
    """Returns 400 when the payload fails DTO validation."""
    payload = {
        "items": [{"sku": "bad sku!", "quantity": 1, "unit_price_cents": 100}],
        "amounts": PAYLOAD["amounts"],
        "currency": "EU",
    }
    r = auth_client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"


@pytest.mark.django_db
def test_create_order_requires_authentication(client):
    r = client.post(CREATE_URL, data=PAYLOAD, content_type="application/json")
    assert r.status_code in (401, 403)
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize("sku, stored", [("p1", "P1"), ("a", "A"), ("sku_42-x", "SKU_42-X")])
def test_create_order_accepts_opaque_product_ids(auth_client, sku, stored):
    items = [{"sku": sku, "quantity": 2, "unit_price_cents": 500}]
    r = auth_client.post(CREATE_URL, data={**PAYLOAD, "items": items}, content_type="application/json")
    assert r.status_code == 201
    assert OrderLineModel.objects.get(order_id=r.json()["id"]).sku == stored


@pytest.mark.django_db
def test_create_order_rejects_overlong_product_id(auth_client):
    items = [{"sku": "X" * 65, "quantity": 1, "unit_price_cents": 500}]
    r = auth_client.post(CREATE_URL, data={**PAYLOAD, "items": items}, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"


@pytest.mark.django_db
def test_checkout_details_are_returned_on_read(auth_client):
    shipping = {"address": "1 Main St", "city": "Springfield", "postal_code": "12345", "country": "US"}
    payload = {**PAYLOAD, "shipping_address": shipping, "payment_method": "card"}
    r = auth_client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 201
    oid = r.json()["id"]

    detail = auth_client.get(f"{CREATE_URL}{oid}/").json()
    assert detail["shipping_address"] == shipping
    assert detail["payment_method"] == "card"

    listed = auth_client.get(CREATE_URL).json()["results"][0]
    assert listed["shipping_address"] == shipping


@pytest.mark.django_db
def test_incomplete_shipping_address_is_rejected(auth_client):
    payload = {**PAYLOAD, "shipping_address": {"address": "1 Main St"}}
    r = auth_client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"


@pytest.mark.django_db
def test_checkout_details_are_optional(auth_client):
    oid = auth_client.post(CREATE_URL, data=PAYLOAD, content_type="application/json").json()["id"]
    detail = auth_client.get(f"{CREATE_URL}{oid}/").json()
    assert detail["shipping_address"] is None
    assert detail["payment_method"] is None
