"""Request-scoped middleware for the orders API.

``RequestIdMiddleware`` gives every request a correlation id (the incoming
``X-Request-Id`` header or a fresh UUIDv4), exposes it on ``request`` and in
``REQUEST_ID_CTX`` so log filters and outgoing HTTP clients can pick it up,
echoes it back in the ``X-Request-ID`` response header and writes one access
log line per request.

``ApiSizeLimitMiddleware`` rejects ``/api/`` bodies larger than
``API_MAX_BYTES`` before any view parses them.
"""

import contextvars
import logging
import time
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

access_logger = logging.getLogger("gateway.access")


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._started_at = time.monotonic()
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started_at", None)
        access_logger.info(
            "request handled",
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2) if started else None,
            },
        )
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > settings.API_MAX_BYTES:
            return JsonResponse(
                {"kind": "VALIDATION_ERROR", "detail": "PAYLOAD_TOO_LARGE", "message": "Request body too large"},
                status=413,
            )
        return None
