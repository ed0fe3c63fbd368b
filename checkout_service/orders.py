"""
orders.py — Order Store

Persists and retrieves order documents.

Layout:
    orders/{orderId}              The order document.
    orderSessions/{sessionId}     {"orderId": ...}; claims the provider session.
    userOrders/{userId}           {"orderIds": [...]}; per-user listing index.

`create_order` writes all three in one transaction and refuses to run when the
session index already exists. That makes the session id a uniqueness constraint:
two racing deliveries for the same session can never both persist an order.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from .datastore import Datastore, DocumentKey, TransactionalOperation
from .errors import DuplicateOrderError, NotFoundError, ValidationError
from .models import Order, OrderStatus

log = logging.getLogger(__name__)


def order_key(order_id: str) -> DocumentKey:
    return DocumentKey("orders", order_id)


def session_index_key(session_id: str) -> DocumentKey:
    return DocumentKey("orderSessions", session_id)


def user_index_key(user_id: str) -> DocumentKey:
    return DocumentKey("userOrders", user_id)


class OrderStore:
    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def create_order(self, order: Order) -> Order:
        """
        Persists a new order.

        Raises:
            DuplicateOrderError: If an order already exists for the session.
            ValidationError: If the order id is already taken.
        """
        keys = (
            order_key(order.id),
            session_index_key(order.externalSessionId),
            user_index_key(order.userId),
        )
        document = order.to_document()

        def apply(snapshot):
            claimed = snapshot[keys[1]]
            if claimed is not None:
                raise DuplicateOrderError(order.externalSessionId, claimed["orderId"])
            if snapshot[keys[0]] is not None:
                raise ValidationError(f"Order id {order.id} already exists", constraint="unique_id")
            user_index = snapshot[keys[2]] or {"orderIds": []}
            writes = {
                keys[0]: document,
                keys[1]: {"orderId": order.id, "createdAt": order.createdAt},
                keys[2]: {"orderIds": user_index["orderIds"] + [order.id]},
            }
            return writes, None

        await self.datastore.run_transaction(
            TransactionalOperation(keys=keys, apply=apply, name="order create")
        )
        log.info(f"[Order: {order.orderNumber}] Order {order.id} persisted.")
        return order

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        document = await self.datastore.get(order_key(order_id))
        return Order.from_document(document) if document is not None else None

    async def get_order_by_session_id(self, session_id: str) -> Optional[Order]:
        """
        Idempotency lookup: the order created for a provider session, if any.
        """
        claimed = await self.datastore.get(session_index_key(session_id))
        if claimed is None:
            return None
        order = await self.get_order_by_id(claimed["orderId"])
        if order is None:
            log.warning(
                f"[Session: {session_id}] Session index points to missing order {claimed['orderId']}."
            )
        return order

    async def get_orders_by_user(self, user_id: str) -> List[Order]:
        """Returns the user's orders, newest first."""
        index = await self.datastore.get(user_index_key(user_id)) or {"orderIds": []}
        orders = []
        for order_id in index["orderIds"]:
            order = await self.get_order_by_id(order_id)
            if order is not None:
                orders.append(order)
        return sorted(orders, key=lambda o: o.createdAt, reverse=True)

    async def update_status(self, order_id: str, status: OrderStatus) -> Order:
        """
        Sets a new status and bumps `updatedAt`.

        Raises:
            NotFoundError: If the order does not exist.
        """
        key = order_key(order_id)
        status = OrderStatus(status)

        def apply(snapshot):
            document = snapshot[key]
            if document is None:
                raise NotFoundError(f"Order {order_id} not found", entity="order", entity_id=order_id)
            updated = dict(document, status=status.value, updatedAt=datetime.now(timezone.utc).isoformat())
            return {key: updated}, updated

        document = await self.datastore.run_transaction(
            TransactionalOperation(keys=(key,), apply=apply, name="order status update")
        )
        log.info(f"Order {order_id} status updated to {status.value}.")
        return Order.from_document(document)
