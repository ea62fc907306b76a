"""Idempotency utilities for safely handling duplicate order requests.

A client may send an ``Idempotency-Key`` with an order request. The key is
claimed before the order is written and bound to the created order in the
same transaction, so a retried request either replays the stored order
or, if the payload changed, is refused.
"""

import hashlib
import json
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import IdempotencyConflict, TransientStorageError
from .models import IdempotencyKey


def canonical_hash(payload: dict) -> str:
    """Fingerprint an order request so a reused key can be compared.

    Two requests carrying the same fields hash equal whatever their key
    order; UUIDs and other non-JSON values are compared by their string form.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def claim(session: Session, key: str, payload: dict) -> Optional[uuid.UUID]:
    """Get-or-create the idempotency record for ``key``.

    Behavior:
        - New key: insert a record without an order and return None; the
          caller creates the order and calls ``bind``.
        - Known key, same payload: return the stored order id for replay.
        - Known key, different payload: raise ``IdempotencyConflict``.

    A concurrent first use of the same key collides on the primary key;
    the transaction is then retried and takes the replay path.

    Raises:
        IdempotencyConflict: If the key was used with a different payload.
        TransientStorageError: On a concurrent insert of the same key.
    """
    h = canonical_hash(payload)
    rec = session.get(IdempotencyKey, key)
    if rec is not None:
        if rec.request_hash != h:
            raise IdempotencyConflict(f"idempotency key {key!r} reused with a different payload")
        return rec.order_id

    session.add(IdempotencyKey(key=key, request_hash=h, order_id=None))
    try:
        session.flush()
    except IntegrityError as e:
        raise TransientStorageError(f"idempotency key {key!r} claimed concurrently") from e
    return None


def bind(session: Session, key: str, order_id: uuid.UUID) -> None:
    """Associate a claimed key with the order it produced."""
    rec = session.get(IdempotencyKey, key)
    rec.order_id = order_id
    session.flush()
