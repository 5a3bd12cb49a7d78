"""End-to-end payment flow through the HTTP API.

Create an order, obtain its payment intent, confirm payment from the client
or the processor webhook and check the order, stock and cart afterwards.
"""
import hashlib
import hmac
import json

import pytest

from apps.carts.store import CartStore
from apps.orders import providers

INTENT_URL = "/api/orders/{oid}/payment-intent/"
PAY_URL = "/api/orders/{oid}/pay/"
DETAIL_URL = "/api/orders/{oid}/"
WEBHOOK_URL = "/api/payments/webhook/"


def issue_intent(client, oid):
    r = client.post(INTENT_URL.format(oid=oid), content_type="application/json")
    assert r.status_code == 201, r.content
    return r.json()


def confirmation(intent_ref, status="succeeded", external_id="ch_1"):
    return {"intent_ref": intent_ref, "external_id": external_id, "status": status, "payer_email": "a@example.com"}


@pytest.fixture
def cart(user):
    store = CartStore()
    store.put(str(user.pk), "P1", 2)
    return store


@pytest.mark.django_db
def test_intent_then_pay_fulfills_order(auth_client, user, cart, make_order):
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    assert intent["intent_ref"].startswith("pi_")
    assert intent["client_secret"]

    r = auth_client.post(PAY_URL.format(oid=o.id), data=confirmation(intent["intent_ref"]), content_type="application/json")
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "FULFILLED"
    assert body["payment_confirmation"]["external_id"] == "ch_1"
    assert body["payment_confirmation"]["payer_email"] == "a@example.com"
    assert body["has_discrepancy"] is False

    inventory, _ = providers._stubs()
    assert inventory.level("P1") == inventory.level("UNSEEN") - 2
    assert cart.lines(str(user.pk)) == {}


@pytest.mark.django_db
def test_second_intent_is_conflict(auth_client, user, make_order):
    o = make_order(user)
    issue_intent(auth_client, o.id)
    r = auth_client.post(INTENT_URL.format(oid=o.id), content_type="application/json")
    assert r.status_code == 409
    assert r.json()["detail"] == "INTENT_ALREADY_ISSUED"


@pytest.mark.django_db
def test_duplicate_pay_is_a_noop(auth_client, user, cart, make_order):
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    url = PAY_URL.format(oid=o.id)
    r1 = auth_client.post(url, data=confirmation(intent["intent_ref"]), content_type="application/json")

    # the user starts a new cart; a replayed confirmation must not clear it
    cart.put(str(user.pk), "P9X", 1)
    r2 = auth_client.post(url, data=confirmation(intent["intent_ref"]), content_type="application/json")

    assert r1.status_code == r2.status_code == 200
    assert r2.json() == r1.json()
    inventory, _ = providers._stubs()
    assert inventory.calls == [f"{o.id}:P1"]
    assert cart.lines(str(user.pk)) == {"P9X": 1}


@pytest.mark.django_db
def test_insufficient_stock_records_discrepancy(auth_client, user, cart, make_order, settings):
    settings.ORDERS_STUB_DEFAULT_STOCK = 1
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    r = auth_client.post(PAY_URL.format(oid=o.id), data=confirmation(intent["intent_ref"]), content_type="application/json")
    body = r.json()
    assert body["state"] == "FULFILLED"
    assert body["has_discrepancy"] is True
    assert body["discrepancies"] == [{"sku": "P1", "requested": 2, "available": 1}]
    assert cart.lines(str(user.pk)) == {}


@pytest.mark.django_db
def test_failed_payment_marks_order_failed(auth_client, user, cart, make_order):
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    url = PAY_URL.format(oid=o.id)
    r = auth_client.post(url, data=confirmation(intent["intent_ref"], status="canceled"), content_type="application/json")
    assert r.status_code == 200
    assert r.json()["state"] == "FAILED"
    assert r.json()["payment_confirmation"] is None

    r2 = auth_client.post(url, data=confirmation(intent["intent_ref"]), content_type="application/json")
    assert r2.status_code == 409
    assert r2.json()["detail"] == "ORDER_FAILED"
    assert cart.lines(str(user.pk)) == {"P1": 2}


@pytest.mark.django_db
def test_pay_with_wrong_intent_is_conflict(auth_client, user, make_order):
    o = make_order(user)
    issue_intent(auth_client, o.id)
    r = auth_client.post(PAY_URL.format(oid=o.id), data=confirmation("pi_other"), content_type="application/json")
    assert r.status_code == 409
    assert r.json()["detail"] == "INTENT_MISMATCH"


@pytest.mark.django_db
def test_pay_unknown_status_is_rejected(auth_client, user, make_order):
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    r = auth_client.post(
        PAY_URL.format(oid=o.id), data=confirmation(intent["intent_ref"], status="processing"), content_type="application/json"
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "UNSUPPORTED_PAYMENT_STATUS"


@pytest.mark.django_db
def test_pay_for_foreign_order_is_forbidden(client, user, other_user, make_order):
    o = make_order(user)
    client.force_login(user)
    intent = issue_intent(client, o.id)
    client.force_login(other_user)
    r = client.post(PAY_URL.format(oid=o.id), data=confirmation(intent["intent_ref"]), content_type="application/json")
    assert r.status_code == 403
    assert client.post(INTENT_URL.format(oid=o.id), content_type="application/json").status_code == 403


@pytest.mark.django_db
def test_webhook_confirms_order(client, auth_client, user, cart, make_order):
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    r = client.post(WEBHOOK_URL, data=confirmation(intent["intent_ref"]), content_type="application/json")
    assert r.status_code == 200
    assert r.json()["id"] == o.id
    assert r.json()["state"] == "FULFILLED"

    # the client callback arriving after the webhook changes nothing
    r2 = auth_client.post(PAY_URL.format(oid=o.id), data=confirmation(intent["intent_ref"]), content_type="application/json")
    assert r2.json()["state"] == "FULFILLED"
    assert providers._stubs()[0].calls == [f"{o.id}:P1"]


@pytest.mark.django_db
def test_webhook_unknown_intent_is_404(client):
    r = client.post(WEBHOOK_URL, data=confirmation("pi_nope"), content_type="application/json")
    assert r.status_code == 404
    assert r.json()["detail"] == "UNKNOWN_INTENT"


@pytest.mark.django_db
def test_webhook_signature_is_enforced(client, auth_client, user, make_order, settings):
    settings.PAYMENTS_WEBHOOK_SECRET = "whsec"
    o = make_order(user)
    intent = issue_intent(auth_client, o.id)
    raw = json.dumps(confirmation(intent["intent_ref"])).encode()

    r = client.post(WEBHOOK_URL, data=raw, content_type="application/json", HTTP_X_PAYMENT_SIGNATURE="sha256=bad")
    assert r.status_code == 403
    assert r.json()["detail"] == "BAD_SIGNATURE"

    sig = "sha256=" + hmac.new(b"whsec", raw, hashlib.sha256).hexdigest()
    r = client.post(WEBHOOK_URL, data=raw, content_type="application/json", HTTP_X_PAYMENT_SIGNATURE=sig)
    assert r.status_code == 200
    assert r.json()["state"] == "FULFILLED"


@pytest.mark.django_db
def test_webhook_malformed_body_is_400(client):
    r = client.post(WEBHOOK_URL, data=b"{not json", content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"
