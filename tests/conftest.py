"""Shared fixtures and fakes for the checkout service test suite."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import hmac
import time
from typing import Any

import pytest

from checkout_service.cart import CartStore, cart_key, checkout_key
from checkout_service.datastore import MemoryDatastore
from checkout_service.errors import NotFoundError
from checkout_service.identity import OrderCounter
from checkout_service.inventory import InventoryAdjuster, product_key
from checkout_service.models import CheckoutSession, EmailMessage, EmailResult, ExpandedSession, Order
from checkout_service.notifications import NotificationDispatcher
from checkout_service.orders import OrderStore
from checkout_service.workflow import (
    CheckoutCompletionWorkflow,
    CheckoutDeps,
    CheckoutEventRouter,
    CheckoutExpirationHandler,
)


WEBHOOK_SECRET = "whsec_test"


def sign(body: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Builds a provider signature header: t=<ts>,v1=hex(hmac_sha256(secret, "<ts>.<body>"))."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# --- Provider payload builders ---


def line_item(
    item_id: str = "li_1",
    product_id: str | None = "prod-1",
    unit_amount: int = 5000,
    quantity: int = 3,
    tax_rate: str | None = "1.08",
    discount_rate: str | None = "10",
    currency: str = "usd",
    name: str = "Wool Coat",
) -> dict[str, Any]:
    product_metadata = {"brand": "Acme"}
    if product_id is not None:
        product_metadata["productId"] = product_id
    if discount_rate is not None:
        product_metadata["discountRate"] = discount_rate
    price_metadata = {"taxRate": tax_rate} if tax_rate is not None else {}
    return {
        "id": item_id,
        "quantity": quantity,
        "description": name,
        "price": {
            "id": f"price_{item_id}",
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": price_metadata,
            "product": {
                "id": f"stripe_{item_id}",
                "name": name,
                "images": [f"https://img.example.com/{item_id}.jpg"],
                "metadata": product_metadata,
            },
        },
    }


def customer_details(**overrides: Any) -> dict[str, Any]:
    details = {
        "email": "jane@example.com",
        "name": "Jane Doe",
        "phone": "+15550100",
        "address": {
            "line1": "1 Main St",
            "line2": None,
            "city": "Springfield",
            "postal_code": "12345",
            "country": "US",
        },
    }
    details.update(overrides)
    return details


def expanded_session(
    session_id: str = "cs_test_1",
    items: list[dict] | None = None,
    amount_total: int | None = 14580,
    details: dict | None = None,
) -> ExpandedSession:
    return ExpandedSession.model_validate({
        "id": session_id,
        "amount_total": amount_total,
        "currency": "usd",
        "payment_intent": f"pi_{session_id}",
        "payment_status": "paid",
        "metadata": {"userId": "user-1"},
        "customer_details": details if details is not None else customer_details(),
        "line_items": {"object": "list", "data": items if items is not None else [line_item()]},
    })


def checkout_session(session_id: str = "cs_test_1", **overrides: Any) -> CheckoutSession:
    payload = {
        "id": session_id,
        "amount_total": 14580,
        "currency": "usd",
        "customer_email": "jane@example.com",
        "payment_intent": f"pi_{session_id}",
        "payment_status": "paid",
        "metadata": {"userId": "user-1"},
    }
    payload.update(overrides)
    return CheckoutSession.model_validate(payload)


def make_order(
    order_id: str = "order_1",
    session_id: str = "cs_1",
    user_id: str = "user-1",
    created_at: str = "2026-10-17T10:00:00+00:00",
) -> Order:
    return Order.model_validate({
        "id": order_id,
        "userId": user_id,
        "orderNumber": "ORD-000001-ABCDEFGH",
        "externalSessionId": session_id,
        "externalPaymentId": "pi_1",
        "status": "processing",
        "items": [{
            "productId": "prod-1",
            "title": "Wool Coat",
            "brand": "Acme",
            "price": {"amount": "50.00", "currency": "USD"},
            "discount": {"rate": "10"},
            "size": "M",
            "quantity": 3,
            "taxRate": "1.08",
            "subtotal": "135.00",
            "tax": "10.80",
            "total": "145.80",
        }],
        "totals": {"subtotal": "135.00", "tax": "10.80", "total": "145.80", "currency": "USD"},
        "customerInfo": {"email": "jane@example.com"},
        "createdAt": created_at,
        "updatedAt": created_at,
    })


# --- Fakes ---


class FakeProvider:
    """In-memory payment provider. Unknown sessions raise NotFoundError."""

    def __init__(self, sessions: dict[str, ExpandedSession] | None = None):
        self.sessions = dict(sessions or {})
        self.calls: list[str] = []
        self.error: Exception | None = None

    def add(self, session: ExpandedSession) -> None:
        self.sessions[session.id] = session

    async def retrieve_expanded_session(self, session_id: str) -> ExpandedSession:
        self.calls.append(session_id)
        # yield like a real network call so concurrent deliveries interleave
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if session_id not in self.sessions:
            raise NotFoundError(f"No such session {session_id}", entity="session", entity_id=session_id)
        return copy.deepcopy(self.sessions[session_id])


class RecordingTransport:
    """Email transport that records messages instead of sending them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> EmailResult:
        self.sent.append(message)
        if self.fail:
            return EmailResult(success=False, error="smtp down")
        return EmailResult(success=True, messageId=f"msg_{len(self.sent)}")

    def subjects(self) -> list[str]:
        return [m.subject for m in self.sent]


# --- Fixtures ---


@pytest.fixture()
def datastore() -> MemoryDatastore:
    """Datastore seeded with two products, a cart and a checkout side-channel record."""
    return MemoryDatastore({
        product_key("prod-1"): {"name": "Wool Coat", "stock": 10},
        product_key("prod-2"): {"name": "Scarf", "stock": 5},
        cart_key("user-1"): {"items": [{"productId": "prod-1", "quantity": 3}]},
        checkout_key("cs_test_1"): {"items": [{"productId": "prod-1", "size": "M", "quantity": 3}]},
    })


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider({"cs_test_1": expanded_session()})


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def notifications(transport: RecordingTransport) -> NotificationDispatcher:
    return NotificationDispatcher(transport, sender="shop@example.com")


@pytest.fixture()
def deps(datastore, provider, notifications) -> CheckoutDeps:
    return CheckoutDeps(
        provider=provider,
        orders=OrderStore(datastore),
        inventory=InventoryAdjuster(datastore),
        carts=CartStore(datastore),
        counter=OrderCounter(datastore),
        notifications=notifications,
    )


@pytest.fixture()
def workflow(deps) -> CheckoutCompletionWorkflow:
    return CheckoutCompletionWorkflow(deps)


@pytest.fixture()
def router(workflow, notifications) -> CheckoutEventRouter:
    return CheckoutEventRouter(workflow, CheckoutExpirationHandler(notifications), notifications)
