"""Replay protection for client requests carrying an ``Idempotency-Key``.

Keys are scoped to the calling user, so two users can never collide on or
replay each other's key. The first request with a key claims a record; once
it completes, its status and body are stored so a retry returns exactly the
same response without creating a second order.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def request_hash(payload: dict) -> str:
    """Hex SHA-256 of ``payload`` serialized with sorted keys."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(user_id: str, key: str) -> str:
    return f"{user_id}:{key}"


@transaction.atomic
def claim(user_id: str, key: str, payload: dict) -> tuple[bool, IdempotencyKey]:
    """Claim ``key`` for this request, or find the request that claimed it.

    Returns:
        ``(replay, record)``. ``replay`` is False when this call created the
        record and the caller must process the request and then call
        ``complete``; True when a previous request owns the key.

    Raises:
        IdempotencyConflict: The key was first used with another payload.
    """
    h = request_hash(payload)
    full_key = scoped_key(user_id, key)
    try:
        # Savepoint so a duplicate key only rolls back the insert
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=full_key, request_hash=h)
        return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=full_key)
    if rec.request_hash != h:
        raise IdempotencyConflict("IDEMPOTENCY_CONFLICT", "Idempotency-Key reused with a different payload")
    return True, rec


def complete(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the response for a claimed key so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def release(rec: IdempotencyKey) -> None:
    """Drop an unfinished claim so the client can retry with the same key."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
