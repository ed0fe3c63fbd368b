"""
cart.py — Cart Store and Checkout Side-Channel

Two kinds of documents:
    carts/{userId}                    The user's shopping cart, cleared after an order.
    checkoutSessions/{checkoutId}     Cart snapshot written when checkout started;
                                      carries per-item size data the provider does not.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .datastore import Datastore, DocumentKey
from .models import ONE_SIZE

log = logging.getLogger(__name__)


def cart_key(user_id: str) -> DocumentKey:
    return DocumentKey("carts", user_id)


def checkout_key(checkout_id: str) -> DocumentKey:
    return DocumentKey("checkoutSessions", checkout_id)


@dataclass
class CheckoutLine:
    product_id: str
    size: Optional[str]
    quantity: Optional[int]


class SizeResolver:
    """
    Matches provider line items to side-channel cart lines to recover sizes.

    Each cart line is used at most once; a line with the same product and
    quantity wins over one with only the same product.
    """

    def __init__(self, lines: List[CheckoutLine]):
        self._unused = list(lines)

    def resolve(self, product_id: str, quantity: int) -> str:
        candidates = [line for line in self._unused if line.product_id == product_id]
        if not candidates:
            return ONE_SIZE
        exact = [line for line in candidates if line.quantity == quantity]
        line = (exact or candidates)[0]
        self._unused.remove(line)
        return line.size or ONE_SIZE


class CartStore:
    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def delete_cart(self, user_id: str):
        await self.datastore.delete(cart_key(user_id))
        log.info(f"Cart of user {user_id} cleared after order completion.")

    async def cart_exists(self, user_id: str) -> bool:
        return await self.datastore.get(cart_key(user_id)) is not None

    async def get_checkout_lines(self, checkout_id: str) -> List[CheckoutLine]:
        """
        Reads the cart snapshot stored for a checkout. Returns [] when it is missing.
        """
        document = await self.datastore.get(checkout_key(checkout_id))
        if document is None:
            log.warning(f"No checkout side-channel record {checkout_id}; sizes default to '{ONE_SIZE}'.")
            return []
        lines = []
        for raw in document.get("items") or []:
            if not isinstance(raw, dict) or not raw.get("productId"):
                continue
            lines.append(CheckoutLine(
                product_id=raw["productId"],
                size=raw.get("size") or None,
                quantity=raw.get("quantity"),
            ))
        return lines

    async def delete_checkout_lines(self, checkout_id: str):
        await self.datastore.delete(checkout_key(checkout_id))
        log.info(f"Checkout side-channel record {checkout_id} deleted.")
