"""Mock payment processor built with FastAPI.

Stands in for an external processor: it issues payment intents, lets a
client (or a test) complete them, and reports the outcome to the orders
service through a signed webhook. Validation is done with Pydantic models;
persistence lives in ``repo.PaymentsRepo``.

Webhook delivery is configured with ``PAYMENTS_WEBHOOK_URL`` and, for the
``X-Payment-Signature: sha256=<hex>`` header, ``PAYMENTS_WEBHOOK_SECRET``.
Delivery failures are logged and do not fail the completion call; the
client-side confirmation path reaches the same state.
"""

import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from datetime import datetime
from typing import Annotated, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import IdempotencyConflict, PaymentsRepo, engine, init_db

app = FastAPI(title="Payments Service")

Currency = constr(pattern=r"^[A-Z]{3}$")

WEBHOOK_URL = os.getenv("PAYMENTS_WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("PAYMENTS_WEBHOOK_SECRET", "")
WEBHOOK_TIMEOUT = float(os.getenv("PAYMENTS_WEBHOOK_TIMEOUT", "5"))

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class IntentRequest(BaseModel):
    """Request body for ``POST /intents``.

    Attributes:
        amount_cents: Positive amount in minor currency units.
        currency: Three-letter ISO currency code.
        metadata: Opaque data echoed back on the intent (the order id).
    """

    amount_cents: int = Field(gt=0)
    currency: Currency
    metadata: dict = Field(default_factory=dict)


class IntentResponse(BaseModel):
    intent_ref: str
    client_secret: str
    amount_cents: int
    currency: str
    status: str
    metadata: dict


class CompleteRequest(BaseModel):
    """Simulated customer action on an intent."""

    succeed: bool = True
    payer_email: Optional[str] = None


class ConfirmationEvent(BaseModel):
    """Outcome reported to the orders service."""

    intent_ref: str
    external_id: str
    status: str
    timestamp: datetime
    payer_email: Optional[str] = None


def _intent_response(intent) -> IntentResponse:
    return IntentResponse(
        intent_ref=intent.ref,
        client_secret=intent.client_secret,
        amount_cents=intent.amount_cents,
        currency=intent.currency,
        status=intent.status,
        metadata=intent.intent_metadata or {},
    )


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _post_webhook(body: bytes, headers: dict) -> httpx.Response:
    with httpx.Client(timeout=WEBHOOK_TIMEOUT) as client:
        return client.post(WEBHOOK_URL, content=body, headers=headers)


def deliver_webhook(event: ConfirmationEvent, request_id: str) -> bool:
    """POST ``event`` to the configured webhook URL. Returns True on 2xx."""
    if not WEBHOOK_URL:
        return False
    body = json.dumps(event.model_dump(mode="json"), separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Request-ID": request_id}
    if WEBHOOK_SECRET:
        headers["X-Payment-Signature"] = sign(WEBHOOK_SECRET, body)
    try:
        resp = _post_webhook(body, headers)
    except httpx.RequestError as exc:
        logger.warning("webhook delivery failed", extra={"request_id": request_id, "error": repr(exc)})
        return False
    if resp.status_code >= 300:
        logger.warning(
            "webhook rejected",
            extra={"request_id": request_id, "status": resp.status_code, "intent_ref": event.intent_ref},
        )
        return False
    return True


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/intents", response_model=IntentResponse)
def create_intent(
    req: IntentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a payment intent, idempotently when a key is supplied.

    Retries with the same ``Idempotency-Key`` and payload return the intent
    created first; the same key with a different payload is a 409.
    """
    try:
        intent, created = PaymentsRepo().create_intent(req.amount_cents, req.currency, req.metadata, idempotency_key)
    except IdempotencyConflict:
        raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
    logger.info("intent created" if created else "intent replayed", extra={"intent_ref": intent.ref})
    return _intent_response(intent)


@app.get("/intents/{ref}", response_model=IntentResponse)
def get_intent(ref: str):
    intent = PaymentsRepo().get(ref)
    if intent is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return _intent_response(intent)


@app.post("/intents/{ref}/complete", response_model=ConfirmationEvent)
def complete_intent(ref: str, req: CompleteRequest, request: Request):
    """Settle an intent as the customer would and notify the orders service.

    Completing an intent twice returns the first outcome and re-sends the
    same event, which the receiver treats as a duplicate.
    """
    intent = PaymentsRepo().complete(ref, req.succeed, req.payer_email)
    if intent is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    event = ConfirmationEvent(
        intent_ref=intent.ref,
        external_id=intent.external_id,
        status=intent.status,
        timestamp=intent.completed_at,
        payer_email=intent.payer_email,
    )
    deliver_webhook(event, getattr(request.state, "request_id", "-"))
    return event


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
