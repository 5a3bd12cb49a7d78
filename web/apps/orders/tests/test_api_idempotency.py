import pytest

from apps.orders.models import IdempotencyKey, OrderModel

CREATE_URL = "/api/orders/"

PAYLOAD = {
    "items": [{"sku": "SKU1", "quantity": 2, "unit_price_cents": 750}],
    "amounts": {"items_total_cents": 1500, "tax_cents": 0, "shipping_cents": 0, "grand_total_cents": 1500},
    "currency": "EUR",
}


def post(client, payload, key):
    return client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)


@pytest.mark.django_db
def test_idempotent_same_payload_returns_same_order_on_retry(auth_client):
    r1 = post(auth_client, PAYLOAD, "idem-same-1")
    assert r1.status_code == 201
    assert "Idempotent-Replay" not in r1.headers

    r2 = post(auth_client, PAYLOAD, "idem-same-1")
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert OrderModel.objects.count() == 1
    assert str(IdempotencyKey.objects.get().order_id) == r1.json()["id"]


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(auth_client):
    p2 = {**PAYLOAD, "items": [{"sku": "SKU1", "quantity": 3, "unit_price_cents": 500}]}

    assert post(auth_client, PAYLOAD, "idem-conflict-1").status_code == 201
    r2 = post(auth_client, p2, "idem-conflict-1")
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_idempotent_replay_preserves_error_status(auth_client):
    bad = {**PAYLOAD, "items": []}
    r1 = post(auth_client, bad, "idem-empty")
    assert r1.status_code == 400
    assert r1.json()["detail"] == "EMPTY_ORDER"

    r2 = post(auth_client, bad, "idem-empty")
    assert r2.status_code == 400
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_idempotency_keys_are_scoped_per_user(client, user, other_user):
    client.force_login(user)
    r1 = post(client, PAYLOAD, "shared-key")
    client.force_login(other_user)
    r2 = post(client, PAYLOAD, "shared-key")

    assert r1.status_code == r2.status_code == 201
    assert r1.json()["id"] != r2.json()["id"]
    assert "Idempotent-Replay" not in r2.headers


@pytest.mark.django_db
def test_claimed_but_unfinished_key_is_in_progress(auth_client, user):
    from apps.orders import idempotency

    idempotency.claim(str(user.pk), "idem-busy", PAYLOAD)
    r = post(auth_client, PAYLOAD, "idem-busy")
    assert r.status_code == 409
    assert r.json()["detail"] == "REQUEST_IN_PROGRESS"


@pytest.mark.django_db
def test_unexpected_failure_frees_the_key_for_retry(auth_client, monkeypatch):
    from apps.orders.repository import OrderRepository

    def broken_add(self, order):
        raise RuntimeError("database unavailable")

    with monkeypatch.context() as m:
        m.setattr(OrderRepository, "add", broken_add)
        with pytest.raises(RuntimeError):
            post(auth_client, PAYLOAD, "idem-crash")
    assert not IdempotencyKey.objects.filter(key__endswith=":idem-crash").exists()

    r = post(auth_client, PAYLOAD, "idem-crash")
    assert r.status_code == 201
    assert "Idempotent-Replay" not in r.headers
    assert OrderModel.objects.count() == 1
