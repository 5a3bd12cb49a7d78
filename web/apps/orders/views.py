"""HTTP views for the orders app.

Views are kept small: they validate requests (via Pydantic), map them to
domain objects, delegate to ``OrderService`` and render the result. Domain
errors (``OrderError`` subclasses) become ``{"kind", "detail", "message"}``
bodies with the status code the error class carries.

The service comes from ``providers.get_order_service()``, which wires HTTP
clients or in-process stand-ins for inventory and payments depending on
``settings.USE_HTTP_ADAPTERS``.

Idempotency: ``POST /api/orders/`` honours an ``Idempotency-Key`` header.
The first request is processed and its response stored; retries with the
same payload replay it (``Idempotent-Replay: true``), a different payload
under the same key is a 409.

Payment confirmations arrive either from the client (``/pay/``) or from the
processor's webhook. Both go through the same idempotent transition, so a
webhook racing the client callback is harmless.
"""

import hashlib
import hmac
import logging

from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import idempotency, providers
from .domain import Order, Principal
from .errors import OrderError
from .schemas import CreateOrderDTO, OrderReadDTO, PaymentConfirmationIn

logger = logging.getLogger("orders.api")

SIGNATURE_HEADER = "X-Payment-Signature"


def _principal(request) -> Principal:
    return Principal(user_id=str(request.user.pk), is_admin=bool(request.user.is_staff))


def _error(exc: OrderError) -> Response:
    return Response(exc.to_dict(), status=exc.status_code)


def _invalid_payload(exc: Exception) -> Response:
    return Response(
        {"kind": "VALIDATION_ERROR", "detail": "INVALID_PAYLOAD", "message": str(exc)},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _render(order: Order) -> dict:
    return OrderReadDTO.from_order(order).model_dump(mode="json")


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List the caller's orders and create new ones."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        """Paginated orders of the caller, newest first.

        An admin may pass ``user_id`` to list another user's orders; a
        non-admin doing so gets 403.
        """
        principal = _principal(request)
        user_id = request.GET.get("user_id") or principal.user_id
        if user_id != principal.user_id and not principal.is_admin:
            return Response(
                {"kind": "FORBIDDEN", "detail": "NOT_ORDER_OWNER", "message": "Not authorized to list these orders"},
                status=status.HTTP_403_FORBIDDEN,
            )

        try:
            page = int(request.GET.get("page", 1))
            page_size = min(max(int(request.GET.get("page_size", 20)), 1), 100)
        except ValueError as e:
            return _invalid_payload(e)

        orders = providers.get_order_service().list_orders(user_id)
        p = Paginator(orders, page_size)
        page_obj = p.get_page(page)
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [_render(o) for o in page_obj.object_list],
            },
            status=200,
        )

    def post(self, request):
        """Create a PENDING order from the submitted items and amounts.

        Returns:
            Response: One of the following responses.
            - 201 with {id, state} when the order is created.
            - replayed status and body for a retried ``Idempotency-Key``.
            - 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused with a
              different payload.
            - 400 for payload or business validation errors.
        """
        principal = _principal(request)
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid_payload(e)

        rec = None
        if idem_key:
            try:
                replay, rec = idempotency.claim(principal.user_id, idem_key, request.data)
            except OrderError as e:
                return _error(e)
            if replay:
                if not rec.response_status:
                    return Response(
                        {"kind": "IDEMPOTENCY_CONFLICT", "detail": "REQUEST_IN_PROGRESS",
                         "message": "A request with this key is still being processed"},
                        status=status.HTTP_409_CONFLICT,
                    )
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        service = providers.get_order_service()
        try:
            order = service.create_order(
                principal.user_id,
                [i.to_domain() for i in dto.items],
                dto.amounts.to_domain(),
                dto.currency,
                shipping_address=dto.shipping_address.to_domain() if dto.shipping_address else None,
                payment_method=dto.payment_method,
            )
        except OrderError as e:
            if rec:
                idempotency.complete(rec, e.status_code, e.to_dict())
            return _error(e)
        except Exception:
            # unexpected failure: free the key so a retry is processed again
            if rec:
                idempotency.release(rec)
            logger.exception("order creation failed", extra={"user_id": principal.user_id})
            raise

        body = {"id": order.id, "state": order.state.value}
        if rec:
            idempotency.complete(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get_order(str(oid), _principal(request))
        except OrderError as e:
            return _error(e)
        return Response(_render(order), status=200)


class PaymentIntentView(APIView):
    """Obtain the payment intent the client needs to pay for an order."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_payment"

    def post(self, request, oid):
        service = providers.get_order_service()
        try:
            service.get_order(str(oid), _principal(request))
            intent = service.issue_payment_intent(str(oid))
        except OrderError as e:
            return _error(e)
        return Response(
            {"intent_ref": intent.intent_ref, "client_secret": intent.client_secret},
            status=status.HTTP_201_CREATED,
        )


class ConfirmPaymentView(APIView):
    """Client-side payment confirmation. Repeating it returns the same order."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_payment"

    def post(self, request, oid):
        try:
            dto = PaymentConfirmationIn.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid_payload(e)

        service = providers.get_order_service()
        try:
            service.get_order(str(oid), _principal(request))
            order = service.confirm_payment(str(oid), dto.to_domain())
        except OrderError as e:
            return _error(e)
        return Response(_render(order), status=200)


def verify_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Check an ``X-Payment-Signature: sha256=<hex>`` header against ``body``."""
    if not header:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    scheme, _, digest = header.partition("=")
    return scheme == "sha256" and hmac.compare_digest(digest, expected)


class PaymentWebhookView(APIView):
    """Confirmation events delivered by the payment processor.

    Unauthenticated; when ``PAYMENTS_WEBHOOK_SECRET`` is configured the body
    must carry a valid HMAC-SHA256 signature.
    """

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_webhook"

    def post(self, request):
        raw = request.body
        secret = getattr(settings, "PAYMENTS_WEBHOOK_SECRET", "")
        if secret and not verify_signature(secret, raw, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("webhook signature rejected")
            return Response(
                {"kind": "FORBIDDEN", "detail": "BAD_SIGNATURE", "message": "Invalid webhook signature"},
                status=status.HTTP_403_FORBIDDEN,
            )

        try:
            dto = PaymentConfirmationIn.model_validate_json(raw)
        except PydanticValidationError as e:
            return _invalid_payload(e)

        try:
            order = providers.get_order_service().confirm_payment_event(dto.to_domain())
        except OrderError as e:
            logger.warning("webhook rejected", extra={"intent_ref": dto.intent_ref, "detail": e.code})
            return _error(e)
        return Response(_render(order), status=200)
