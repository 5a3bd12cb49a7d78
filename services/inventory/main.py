"""Inventory ledger service built with FastAPI.

Endpoints expose stock lookups and the idempotent conditional decrement the
order workflow calls once per paid line item. Validation is done with
Pydantic models; persistence and the decrement itself live in
``repo.InventoryRepo``.
"""

import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import InsufficientStock, InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

Sku = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("inventory")
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


class DecrementRequest(BaseModel):
    """Request body for ``POST /decrement``.

    Attributes:
        sku: Product SKU.
        quantity: Units to subtract, positive.
        dedupe_key: Caller chosen key; the decrement is applied once per key.
    """

    sku: Sku
    quantity: int = Field(gt=0)
    dedupe_key: str = Field(min_length=1, max_length=200)


class DecrementResponse(BaseModel):
    applied: bool
    replayed: bool
    remaining: int


class StockResponse(BaseModel):
    sku: str
    quantity: int


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/stock/{sku}", response_model=StockResponse)
def get_stock(sku: str):
    return StockResponse(sku=sku, quantity=InventoryRepo().get(sku))


@app.post("/decrement", response_model=DecrementResponse)
def decrement(req: DecrementRequest, request: Request):
    """Decrement stock for one SKU, at most once per dedupe key.

    Returns:
        DecrementResponse: ``replayed`` is True when the key had already
        been applied; stock is unchanged in that case.

    Raises:
        HTTPException: 422 with ``{"detail": "INSUFFICIENT_STOCK",
            "available": n}`` when the decrement would make stock negative.
    """
    rid = getattr(request.state, "request_id", "-")
    try:
        result = InventoryRepo().decrement(req.sku, req.quantity, req.dedupe_key)
    except InsufficientStock as exc:
        logger.warning(
            "insufficient stock",
            extra={"request_id": rid, "sku": req.sku, "requested": req.quantity, "available": exc.available},
        )
        raise HTTPException(
            status_code=422,
            detail={"detail": "INSUFFICIENT_STOCK", "available": exc.available},
        )
    logger.info(
        "stock decremented",
        extra={"request_id": rid, "sku": req.sku, "dedupe_key": req.dedupe_key, "replayed": result.replayed},
    )
    return DecrementResponse(applied=True, replayed=result.replayed, remaining=result.remaining)


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
