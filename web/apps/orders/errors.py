"""Error taxonomy for the order workflow.

Every error is a ``ValueError`` whose string form is a short, stable code
(``EMPTY_ORDER``, ``INTENT_MISMATCH`` ...). Views translate these into a JSON
body of the form ``{"kind": ..., "detail": <code>, "message": ...}`` using
the ``status_code`` carried by each class.
"""


class OrderError(ValueError):
    """Base class for errors raised by the order workflow.

    Attributes:
        kind: Broad error category shared by every instance of the class.
        code: Short machine-readable code for this particular failure.
        message: Human readable explanation.
        status_code: HTTP status the API layer maps this error to.
    """

    kind = "ORDER_ERROR"
    status_code = 400

    def __init__(self, code: str | None = None, message: str | None = None):
        self.code = code or self.kind
        self.message = message or self.code
        super().__init__(self.code)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.code, "message": self.message}


class ValidationError(OrderError):
    kind = "VALIDATION_ERROR"
    status_code = 400


class NotFound(OrderError):
    kind = "NOT_FOUND"
    status_code = 404


class Forbidden(OrderError):
    kind = "FORBIDDEN"
    status_code = 403


class InvalidState(OrderError):
    """The operation is not legal in the order's current lifecycle state."""

    kind = "INVALID_STATE"
    status_code = 409


class InsufficientStock(OrderError):
    """A decrement would drive stock below zero.

    Attributes:
        sku: Product the decrement was requested for.
        requested: Units requested.
        available: Units on hand when the decrement was rejected, if known.
    """

    kind = "INSUFFICIENT_STOCK"
    status_code = 422

    def __init__(self, sku: str, requested: int, available: int | None = None):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            "INSUFFICIENT_STOCK",
            f"Requested {requested} of {sku}, available {available if available is not None else 'unknown'}",
        )


class UpstreamFailure(OrderError):
    """A downstream service (payments, inventory) is unreachable or errored."""

    kind = "UPSTREAM_UNAVAILABLE"
    status_code = 503


class IdempotencyConflict(OrderError):
    """An ``Idempotency-Key`` was reused with a different request payload."""

    kind = "IDEMPOTENCY_CONFLICT"
    status_code = 409
