"""
This module provides communication clients for external systems used by the checkout service:
- Payment provider (Stripe REST API): session retrieval and webhook event verification
- Email transport (Resend REST API)
- Processing-outcome channel (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
Transport errors are translated into the service's own error types here.
"""

import json
import logging
import os
import threading
import time
from typing import Optional

import httpx
import pika
import stripe

from .errors import ExternalServiceError, NotFoundError, ValidationError
from .models import EmailMessage, EmailResult, ExpandedSession, WebhookEvent

STRIPE_API_BASE = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com")
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")

OUTCOME_QUEUE = "checkout.processing.outcomes"
WEBHOOK_TOLERANCE_SECONDS = 300
SESSION_EXPAND = "line_items.data.price.product"

log = logging.getLogger(__name__)


# --- Payment Provider Client (REST) ---
class StripeClient:
    """
    Client for the payment provider's REST API.
    Retrieves checkout sessions and verifies inbound webhook events.
    """
    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            api_key (str): Secret API key; defaults to STRIPE_SECRET_KEY.
            client (httpx.AsyncClient): Preconfigured client (tests, mock provider).
        """
        timeout_config = httpx.Timeout(5.0, read=10.0)
        self.client = client or httpx.AsyncClient(
            base_url=STRIPE_API_BASE,
            timeout=timeout_config,
            headers={"Authorization": f"Bearer {api_key or STRIPE_SECRET_KEY}"},
        )

    async def aclose(self):
        await self.client.aclose()

    async def retrieve_expanded_session(self, session_id: str) -> ExpandedSession:
        """
        Fetches a checkout session with line items, prices and products expanded.

        Args:
            session_id (str): Provider checkout session id.

        Returns:
            ExpandedSession: Typed session including line items.

        Raises:
            NotFoundError: If the provider does not know the session.
            ExternalServiceError: On timeouts, connection errors or other HTTP errors.
            ValidationError: If the response cannot be parsed.
        """
        try:
            response = await self.client.get(
                f"/v1/checkout/sessions/{session_id}",
                params={"expand[]": SESSION_EXPAND},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFoundError(
                    f"Checkout session {session_id} not found at provider",
                    entity="session", entity_id=session_id,
                ) from e
            log.error(f"[Session: {session_id}] HTTP error from payment provider: {e}")
            raise ExternalServiceError(
                f"Payment provider returned HTTP {e.response.status_code}", service="stripe"
            ) from e
        except httpx.TransportError as e:
            log.error(f"[Session: {session_id}] Payment provider unreachable ({type(e).__name__}).")
            raise ExternalServiceError(f"Payment provider unreachable: {e}", service="stripe") from e

        try:
            return ExpandedSession.model_validate(response.json())
        except ValueError as e:
            raise ValidationError(
                f"Malformed checkout session {session_id}: {e}", constraint="session"
            ) from e

    @staticmethod
    def verify_and_parse_event(raw_body: bytes, signature_header: Optional[str], secret: str) -> WebhookEvent:
        """
        Verifies the webhook signature and parses the event body.

        Signature checking is delegated to the `stripe` library (HMAC-SHA256 with
        a 5 minute timestamp tolerance).

        Raises:
            ValidationError: Missing secret, missing/invalid signature, or unparsable body.
        """
        if not secret:
            raise ValidationError("Webhook secret not configured; rejecting event", constraint="secret")
        if not signature_header:
            raise ValidationError("Missing webhook signature header", constraint="signature")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except UnicodeDecodeError as e:
            raise ValidationError("Webhook body is not valid UTF-8", constraint="body") from e
        except stripe.SignatureVerificationError as e:
            raise ValidationError(f"Webhook signature verification failed: {e}", constraint="signature") from e

        try:
            return WebhookEvent.model_validate_json(payload)
        except ValueError as e:
            raise ValidationError(f"Malformed webhook event: {e}", constraint="event") from e


# --- Email Client (REST) ---
class ResendEmailClient:
    """
    Email transport over the Resend REST API.
    `send` never raises; every failure is reported in the EmailResult.
    """
    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.api_key = RESEND_API_KEY if api_key is None else api_key
        if not self.api_key:
            log.warning("RESEND_API_KEY not configured - email notifications are disabled.")
        self.client = client or httpx.AsyncClient(base_url=RESEND_API_URL, timeout=httpx.Timeout(5.0))

    async def aclose(self):
        await self.client.aclose()

    async def send(self, message: EmailMessage) -> EmailResult:
        if not self.api_key:
            log.warning(f"Email service not configured - skipping '{message.subject}' to {message.to}.")
            return EmailResult(success=False, error="Email service not configured")

        payload = {
            "from": message.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        try:
            response = await self.client.post(
                "/emails", json=payload, headers={"Authorization": f"Bearer {self.api_key}"}
            )
            response.raise_for_status()
            message_id = response.json().get("id")
        except httpx.HTTPStatusError as e:
            log.error(f"Failed to send '{message.subject}' to {message.to}: HTTP {e.response.status_code}")
            return EmailResult(success=False, error=f"HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Failed to send '{message.subject}' to {message.to}: {e}")
            return EmailResult(success=False, error=str(e) or type(e).__name__)

        log.info(f"Email '{message.subject}' sent to {message.to} (messageId: {message_id}).")
        return EmailResult(success=True, messageId=message_id)


# --- Outcome Publisher (MQ) ---
class OutcomePublisher:
    """
    Publishes one message per processed webhook delivery to RabbitMQ, so
    deliveries acknowledged with processed=false can be picked up by monitoring.
    Disabled when RABBITMQ_HOST is empty. Publishing failures are logged, never raised.
    """
    def __init__(self, host: Optional[str] = None):
        self.host = RABBITMQ_HOST if host is None else host
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; publish runs on worker threads
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def _connect(self):
        """
        Establishes a RabbitMQ connection and declares the outcome queue.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
        self.connection = pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, credentials=credentials, heartbeat=60)
        )
        self.channel = self.connection.channel()
        self.channel.queue_declare(queue=OUTCOME_QUEUE, durable=True)
        log.info("Outcome publisher connected to RabbitMQ.")

    def publish(self, outcome: dict) -> bool:
        """
        Sends a processing outcome message.
        Args:
            outcome (dict): JSON-serializable outcome record.
        Returns:
            bool: True if the message was handed to the broker.
        """
        if not self.enabled:
            return False
        message = dict(outcome, timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
        with self._lock:
            try:
                if not self.connection or self.connection.is_closed:
                    self._connect()

                self.channel.basic_publish(
                    exchange='',
                    routing_key=OUTCOME_QUEUE,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(delivery_mode=2)  # persistent
                )
                return True
            except pika.exceptions.AMQPError as e:
                log.error(f"Failed to publish processing outcome for event {outcome.get('eventId')}: {e}")
                self._disconnect()
                return False

    def close(self):
        with self._lock:
            self._disconnect()

    def _disconnect(self):
        try:
            if self.connection and self.connection.is_open:
                self.connection.close()
        except pika.exceptions.AMQPError as e:
            log.warning(f"Error while closing RabbitMQ connection: {e}")
        self.connection = None
        self.channel = None
