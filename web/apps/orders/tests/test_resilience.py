# web/apps/orders/tests/test_resilience.py
import httpx
import pytest

from apps.orders.errors import InsufficientStock, UpstreamFailure
from apps.orders.http_adapters import (
    CircuitBreaker,
    HttpInventoryClient,
    HttpPaymentsClient,
    inventory_breaker,
    payments_breaker,
)


class R:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body


@pytest.fixture(autouse=True)
def fresh_breakers(monkeypatch):
    inventory_breaker.reset()
    payments_breaker.reset()
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    yield
    inventory_breaker.reset()
    payments_breaker.reset()


def test_inventory_retries_on_5xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 2
    calls = {"n": 0, "retry": []}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        calls["retry"].append(headers["X-Retry-Count"])
        return R(500) if calls["n"] == 1 else R(200, {"applied": True})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    HttpInventoryClient(base_url="http://x").decrement("SKU1", 1, "o1:SKU1")
    assert calls["n"] == 2
    assert calls["retry"] == ["0", "1"]


def test_inventory_no_retry_on_422(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(422, {"detail": {"detail": "INSUFFICIENT_STOCK", "available": 0}})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(InsufficientStock):
        HttpInventoryClient(base_url="http://x").decrement("SKU1", 1, "o1:SKU1")
    assert calls["n"] == 1


def test_payments_no_retry_on_other_4xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(402)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(UpstreamFailure) as e:
        HttpPaymentsClient(base_url="http://x").create_intent(1000, "EUR", {})
    assert e.value.code == "UPSTREAM_REJECTED"
    assert calls["n"] == 1
    assert payments_breaker.state == "CLOSED"


def test_circuit_opens_after_repeated_failures(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(503)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    client = HttpInventoryClient(base_url="http://x")
    for _ in range(inventory_breaker.fail_threshold):
        with pytest.raises(UpstreamFailure):
            client.decrement("SKU1", 1, "o1:SKU1")
    assert inventory_breaker.state == "OPEN"

    with pytest.raises(UpstreamFailure) as e:
        client.decrement("SKU1", 1, "o1:SKU1")
    assert e.value.code == "CIRCUIT_OPEN"
    assert calls["n"] == inventory_breaker.fail_threshold


def test_half_open_admits_one_trial_call():
    cb = CircuitBreaker("test", fail_threshold=1, reset_timeout=0.0)
    cb.record_failure()
    assert cb.state == "HALF_OPEN"
    assert cb.acquire() == "HALF_OPEN"
    with pytest.raises(UpstreamFailure) as e:
        cb.acquire()
    assert e.value.code == "CIRCUIT_HALF_OPEN_BUSY"
    cb.record_success()
    assert cb.state == "CLOSED"
