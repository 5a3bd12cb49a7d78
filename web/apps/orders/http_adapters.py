"""httpx clients for the inventory ledger and payment gateway ports.

Both clients share one call loop that adds:

- Request correlation: ``X-Request-ID`` from the ContextVar populated by the
  gateway middleware.
- A circuit breaker per downstream service, so an unhealthy dependency is
  not hammered; after ``reset_timeout`` a single HALF_OPEN trial call is let
  through.
- Bounded retries with exponential backoff on transport errors and 5xx.
- Business statuses (4xx the caller understands) returned without retrying
  and without counting as circuit failures.

Anything that still fails after retries, or is short-circuited by an open
breaker, surfaces as ``UpstreamFailure`` so the domain never sees httpx
types.
"""

import logging
import os
import sys
import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import InventoryPort, PaymentIntent, PaymentsPort
from .errors import InsufficientStock, UpstreamFailure, ValidationError

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")
logger = logging.getLogger("orders.http")


def _is_test_mode() -> bool:
    return "pytest" in sys.modules or os.environ.get("PYTEST_CURRENT_TEST") is not None


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Thread-safe CLOSED / OPEN / HALF_OPEN breaker.

    ``fail_threshold`` consecutive failures open the circuit. Once
    ``reset_timeout`` seconds have passed it turns HALF_OPEN and admits one
    trial call: success closes it, failure opens it again.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probing = False
            return self._state

    def acquire(self) -> str:
        """Admit a call or raise ``UpstreamFailure`` when the circuit refuses it."""
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise UpstreamFailure("CIRCUIT_OPEN", f"{self.name} circuit is open")
            if st == "HALF_OPEN":
                if self._probing:
                    raise UpstreamFailure("CIRCUIT_HALF_OPEN_BUSY", f"{self.name} circuit is probing")
                self._probing = True
            return st

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probing = False

    def record_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})
            self._probing = False

    def release(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probing = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._opened_at = 0.0
            self._probing = False


inventory_breaker = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
payments_breaker = CircuitBreaker(
    "payments",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Call loop ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy() -> tuple[int, float, float]:
    """Return ``(max_attempts, backoff_base_seconds, max_sleep_seconds)``."""
    attempts = max(1, int(getattr(settings, "HTTP_RETRY_MAX", 3)))
    backoff = float(getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15))
    cap = float(getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5))
    if _is_test_mode():
        backoff = 0.0
    return attempts, backoff, cap


def _post(
    breaker: CircuitBreaker,
    url: str,
    payload: dict,
    timeout: float,
    business_statuses: tuple[int, ...],
    extra_headers: Optional[dict] = None,
) -> httpx.Response:
    """POST ``payload`` with retries under ``breaker``.

    Returns:
        The response when its status is 2xx or one of ``business_statuses``.

    Raises:
        UpstreamFailure: Circuit refused the call, retries were exhausted on
            transport errors / 5xx, or another status came back.
    """
    attempts, backoff, cap = _retry_policy()
    state = breaker.acquire()
    headers = _request_headers({**(extra_headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})
    try:
        with httpx.Client(timeout=timeout) as client:
            for attempt in range(1, attempts + 1):
                resp = None
                try:
                    resp = client.post(url, json=payload, headers=headers)
                except httpx.RequestError as exc:
                    logger.warning(
                        "upstream transport error",
                        extra={"circuit": breaker.name, "attempt": attempt, "error": repr(exc)},
                    )
                    if attempt >= attempts:
                        breaker.record_failure()
                        raise UpstreamFailure("UPSTREAM_UNAVAILABLE", f"{breaker.name} unreachable") from exc
                else:
                    if resp.status_code < 300 or resp.status_code in business_statuses:
                        breaker.record_success()
                        return resp
                    if resp.status_code < 500:
                        breaker.record_success()
                        raise UpstreamFailure(
                            "UPSTREAM_REJECTED", f"{breaker.name} answered {resp.status_code}"
                        )
                    if attempt >= attempts:
                        breaker.record_failure()
                        raise UpstreamFailure(
                            "UPSTREAM_UNAVAILABLE", f"{breaker.name} answered {resp.status_code}"
                        )

                headers["X-Retry-Count"] = str(attempt)
                sleep_s = min(backoff * (2 ** (attempt - 1)), cap)
                if sleep_s > 0:
                    time.sleep(sleep_s)
    finally:
        breaker.release()
    raise UpstreamFailure("UPSTREAM_UNAVAILABLE", f"{breaker.name} unreachable")


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """Client for the inventory ledger service (``POST /decrement``)."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.INVENTORY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def decrement(self, sku: str, quantity: int, dedupe_key: str) -> None:
        """Decrement stock once per ``dedupe_key``.

        Maps 200 to success (first application or replay) and the ledger's
        ``INSUFFICIENT_STOCK`` 422 to ``InsufficientStock``; that 422 is a
        business answer, not a circuit failure. Any other 422 (request
        validation) is ``UpstreamFailure`` so the line stays pending.
        """
        payload = {"sku": sku, "quantity": quantity, "dedupe_key": dedupe_key}
        resp = _post(inventory_breaker, f"{self.base_url}/decrement", payload, self.timeout, (422,))
        if resp.status_code == 422:
            body = resp.json().get("detail")
            if isinstance(body, dict) and body.get("detail") == "INSUFFICIENT_STOCK":
                raise InsufficientStock(sku, quantity, body.get("available"))
            logger.error("inventory rejected decrement", extra={"sku": sku, "dedupe_key": dedupe_key, "detail": body})
            raise UpstreamFailure("UPSTREAM_REJECTED", "inventory rejected the decrement request")


# ---------------- Payments Adapter ---------------- #

class HttpPaymentsClient(PaymentsPort):
    """Client for the payment processor (``POST /intents``).

    The idempotency key is sent as the ``Idempotency-Key`` header, so a
    retried request after a timeout returns the intent created first.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def create_intent(
        self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        payload = {"amount_cents": amount_cents, "currency": currency, "metadata": metadata}
        extra = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = _post(payments_breaker, f"{self.base_url}/intents", payload, self.timeout, (409, 422), extra)
        if resp.status_code == 409:
            raise UpstreamFailure("IDEMPOTENCY_CONFLICT", "Payment processor rejected the idempotency key")
        if resp.status_code == 422:
            raise ValidationError("INVALID_AMOUNT", "Payment processor rejected the intent")
        data = resp.json()
        return PaymentIntent(intent_ref=data["intent_ref"], client_secret=data["client_secret"])
