"""
identity.py — Order Identity Generator

Produces opaque order ids and human-facing order numbers.

Order number format:
    ORD-{counter:06d}-{8 uppercase alphanumerics}

The counter prefix is zero-padded to a fixed width, so sorting order numbers
as strings sorts them by counter. The random suffix lets support staff verify
a number read out by a customer. Counter values come from a single durable
document incremented inside a datastore transaction.
"""

import logging
import secrets
import string
import uuid
from datetime import datetime, timezone

from .datastore import Datastore, DocumentKey, TransactionalOperation
from .errors import ValidationError

log = logging.getLogger(__name__)

ORDER_COUNTER_KEY = DocumentKey("counters", "orderCounter")
MAX_ORDER_COUNTER = 999_999
SUFFIX_LENGTH = 8
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_id() -> str:
    return f"order_{uuid.uuid4().hex}"


def generate_order_number(counter: int) -> str:
    """
    Derives the order number for a counter value.

    Args:
        counter (int): Positive integer, at most 999,999.

    Returns:
        str: e.g. "ORD-000042-7QK2M9XA".

    Raises:
        ValidationError: If the counter is not an integer, not positive, or overflows.
    """
    # bool is an int subclass; True must not pass as counter 1
    if isinstance(counter, bool) or not isinstance(counter, int):
        raise ValidationError(f"Order counter must be an integer, got {counter!r}", constraint="integer")
    if counter <= 0:
        raise ValidationError(f"Order counter must be positive, got {counter}", constraint="positive")
    if counter > MAX_ORDER_COUNTER:
        raise ValidationError(
            f"Order counter {counter} exceeds maximum {MAX_ORDER_COUNTER}", constraint="overflow"
        )

    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"ORD-{counter:06d}-{suffix}"


def _increment_counter(snapshot):
    current = snapshot[ORDER_COUNTER_KEY] or {}
    value = int(current.get("value", 0)) + 1
    document = dict(current, value=value, updatedAt=datetime.now(timezone.utc).isoformat())
    return {ORDER_COUNTER_KEY: document}, value


class OrderCounter:
    """Durable, monotonically increasing order counter."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def next_value(self) -> int:
        """
        Atomically increments the counter and returns the new value.
        The first call on an empty datastore returns 1.
        """
        operation = TransactionalOperation(
            keys=(ORDER_COUNTER_KEY,),
            apply=_increment_counter,
            name="order counter increment",
        )
        value = await self.datastore.run_transaction(operation)
        log.debug(f"Allocated order counter {value}.")
        return value
