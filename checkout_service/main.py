"""
main.py — FastAPI Entry Point for the Checkout Webhook Service

This module provides the HTTP interface through which the payment provider
delivers checkout events.

Responsibilities:
    • Verify the webhook signature and parse the event
    • Route the event to checkout completion or expiration handling
    • Map processing results to acknowledgment semantics
    • Report every delivery on the processing-outcome channel
    • Provide system health information

Acknowledgment contract:
    400 → missing/invalid signature or unparsable event (never processed)
    500 → processing failed before the order was persisted; the provider redelivers
    200 → event handled; post-persistence failures are reported as processed=false
          in the audit log and on the outcome channel, not to the provider
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request

from .cart import CartStore
from .clients import OutcomePublisher, ResendEmailClient, StripeClient
from .datastore import RedisDatastore
from .errors import CheckoutError, ValidationError
from .identity import OrderCounter
from .inventory import InventoryAdjuster
from .logging_config import get_logger, setup_logging
from .notifications import NotificationDispatcher
from .orders import OrderStore
from .workflow import (
    CheckoutCompletionWorkflow,
    CheckoutDeps,
    CheckoutEventRouter,
    CheckoutExpirationHandler,
    EventOutcome,
)

STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Checkout Webhook Service")


@dataclass
class Services:
    """Everything a webhook delivery needs. Built once at startup."""
    router: CheckoutEventRouter
    publisher: OutcomePublisher
    webhook_secret: str
    resources: List = field(default_factory=list)


def build_services(
        datastore=None,
        provider: StripeClient = None,
        email_transport=None,
        publisher: OutcomePublisher = None,
        webhook_secret: str = None
) -> Services:
    """
    Wires the production collaborators. Any of them can be replaced, which is
    how tests and local runs substitute in-memory or mock backends.
    """
    datastore = datastore or RedisDatastore()
    provider = provider or StripeClient()
    email_transport = email_transport or ResendEmailClient()
    notifications = NotificationDispatcher(email_transport)

    deps = CheckoutDeps(
        provider=provider,
        orders=OrderStore(datastore),
        inventory=InventoryAdjuster(datastore),
        carts=CartStore(datastore),
        counter=OrderCounter(datastore),
        notifications=notifications,
    )
    router = CheckoutEventRouter(
        completion=CheckoutCompletionWorkflow(deps),
        expiration=CheckoutExpirationHandler(notifications),
        notifications=notifications,
    )
    return Services(
        router=router,
        publisher=publisher or OutcomePublisher(),
        webhook_secret=STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret,
        resources=[datastore, provider, email_transport],
    )


@app.on_event("startup")
def on_startup():
    log.info("Checkout webhook service starting...")
    app.state.services = build_services()


@app.on_event("shutdown")
async def on_shutdown():
    services = getattr(app.state, "services", None)
    if services is None:
        return
    services.publisher.close()
    for resource in services.resources:
        closer = getattr(resource, "aclose", None) or getattr(resource, "close", None)
        if closer is not None:
            await closer()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _report(services: Services, outcome: EventOutcome):
    log.info(
        f"WEBHOOK_AUDIT event={outcome.event_id} type={outcome.event_type} "
        f"session={outcome.session_id} order={outcome.order_id} "
        f"handled={outcome.handled} processed={str(outcome.processed).lower()}"
    )
    if services.publisher.enabled:
        # pika is blocking; keep it off the event loop
        await asyncio.to_thread(services.publisher.publish, outcome.as_message())


# API Endpoint: Payment provider → Checkout Service
@app.post("/v1/webhooks/stripe")
async def receive_webhook(request: Request, services: Services = Depends(get_services)):
    """
    Receives a checkout event from the payment provider.

    Returns:
        dict: {"received": true} once the event is handled.

    Raises:
        HTTPException(400): Signature or event parsing failed.
        HTTPException(500): Processing failed before the order was persisted.
    """
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = StripeClient.verify_and_parse_event(raw_body, signature, services.webhook_secret)
    except ValidationError as e:
        log.warning(f"Webhook rejected: {e}")
        raise HTTPException(status_code=400, detail="Webhook signature verification failed.")

    log.info(f"[Event: {event.id}] Received {event.type}.")
    try:
        outcome = await services.router.route(event)
    except CheckoutError as e:
        await _report(services, EventOutcome(
            event_id=event.id, event_type=event.type, handled=True, processed=False,
            failures={type(e).__name__: str(e)},
        ))
        raise HTTPException(status_code=500, detail="Event processing failed.")
    except Exception as e:
        log.critical(f"[Event: {event.id}] Unexpected error while processing: {e}", exc_info=True)
        await _report(services, EventOutcome(
            event_id=event.id, event_type=event.type, handled=True, processed=False,
            failures={type(e).__name__: str(e)},
        ))
        raise HTTPException(status_code=500, detail="Event processing failed.")

    await _report(services, outcome)
    return {"received": True}


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for container orchestrators.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}
