"""Idempotency utilities for safely handling duplicate requests.

Stores and retrieves idempotency keys for ``POST /orders`` so a client
retrying with the same ``Idempotency-Key`` gets the original response instead
of a second order. Keys are scoped per user. Reusing a key with a different
payload is a conflict.
"""

import hashlib
import json
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import IdempotencyKeyModel


def canonical_hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.

    Args:
        payload: A JSON-serializable dictionary.

    Returns:
        str: Hex-encoded SHA-256 digest of the normalized payload.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(user_id: str, key: str) -> str:
    return f"{user_id}:{key}"


def get_or_create_idempotent(s: Session, key: str, user_id: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``; the caller finalizes it with the response.
        - Same key and same payload: lock and return ``(True, rec)``.
        - Same key, different payload: raise ``ValueError("IDEMPOTENCY_CONFLICT")``.

    The create path runs under a savepoint so an IntegrityError from a
    concurrent first request only rolls back that block.

    Args:
        s: Session inside an open transaction.
        key: Client-provided idempotency key.
        user_id: Owner the key is scoped to.
        payload: Request payload used to compute the request hash.

    Returns:
        tuple[bool, IdempotencyKeyModel]: ``(existing, rec)``.

    Raises:
        ValueError: If the key exists with a different payload hash.
    """
    h = canonical_hash(payload)
    full_key = scoped_key(user_id, key)
    try:
        with s.begin_nested():
            rec = IdempotencyKeyModel(key=full_key, user_id=user_id, request_hash=h, response_status=0, response_body={})
            s.add(rec)
        return False, rec
    except IntegrityError:
        rec = s.execute(
            select(IdempotencyKeyModel).where(IdempotencyKeyModel.key == full_key).with_for_update()
        ).scalar_one()
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(s: Session, key: str, status_code: int, body: dict, order_id: Optional[str] = None) -> None:
    """Persist the final response for an idempotent request.

    Args:
        s: Session inside an open transaction.
        key: Scoped key returned by ``scoped_key``.
        status_code: HTTP status code to store.
        body: JSON-serializable response body.
        order_id: Created order, when the request succeeded.
    """
    rec = s.get(IdempotencyKeyModel, key)
    if rec is None:
        return
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id


def release(s: Session, key: str) -> None:
    """Forget an in-flight key whose request failed without side effects."""
    s.execute(delete(IdempotencyKeyModel).where(IdempotencyKeyModel.key == key))
