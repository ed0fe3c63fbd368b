"""
inventory.py — Inventory Adjuster

Decrements product stock for all items of an order in ONE transaction.
Every product is validated (exists, enough stock) before any stock changes,
so either all products are decremented or none is.
"""

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, Tuple

from .datastore import Datastore, DocumentKey, TransactionalOperation
from .errors import InsufficientStockError, NotFoundError, ValidationError

log = logging.getLogger(__name__)

PRODUCTS = "products"


def product_key(product_id: str) -> DocumentKey:
    return DocumentKey(PRODUCTS, product_id)


def _aggregate(items: Iterable[Tuple[str, int]]) -> "OrderedDict[str, int]":
    # Two sizes of one product arrive as two lines; stock is checked per product.
    requested: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in items:
        if quantity <= 0:
            raise ValidationError(
                f"Quantity for product {product_id} must be > 0, got {quantity}", constraint="quantity"
            )
        requested[product_id] = requested.get(product_id, 0) + quantity
    return requested


def _decrement_operation(requested: Dict[str, int]) -> TransactionalOperation[Dict[str, int]]:
    keys = tuple(product_key(pid) for pid in requested)

    def apply(snapshot):
        for product_id, quantity in requested.items():
            doc = snapshot[product_key(product_id)]
            if doc is None:
                raise NotFoundError(f"Product {product_id} not found", entity="product", entity_id=product_id)
            available = int(doc.get("stock") or 0)
            if available < quantity:
                raise InsufficientStockError(product_id, available=available, requested=quantity)

        now = datetime.now(timezone.utc).isoformat()
        writes = {}
        remaining = {}
        for product_id, quantity in requested.items():
            doc = snapshot[product_key(product_id)]
            remaining[product_id] = int(doc.get("stock") or 0) - quantity
            writes[product_key(product_id)] = dict(doc, stock=remaining[product_id], updatedAt=now)
        return writes, remaining

    return TransactionalOperation(keys=keys, apply=apply, name="stock decrement")


class InventoryAdjuster:
    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def decrement_stock(self, items: Iterable[Tuple[str, int]]) -> Dict[str, int]:
        """
        Decrements stock for every (product_id, quantity) pair, all-or-nothing.

        Args:
            items: Pairs of product id and quantity. Repeated product ids are summed.

        Returns:
            dict: Remaining stock per product after the decrement.

        Raises:
            NotFoundError: If a product does not exist (nothing is decremented).
            InsufficientStockError: If a product has too little stock (nothing is decremented).
            ValidationError: If a quantity is not positive.
        """
        requested = _aggregate(items)
        if not requested:
            return {}

        started = time.monotonic()
        try:
            remaining = await self.datastore.run_transaction(_decrement_operation(requested))
        except (NotFoundError, InsufficientStockError) as e:
            log.error(f"Stock decrement rejected for {len(requested)} product(s): {e}")
            raise

        duration_ms = (time.monotonic() - started) * 1000
        for product_id, quantity in requested.items():
            log.info(
                f"Product {product_id} stock decremented by {quantity} "
                f"(remaining: {remaining[product_id]})."
            )
        log.info(f"Decremented stock for {len(requested)} product(s) in {duration_ms:.1f}ms.")
        return remaining
