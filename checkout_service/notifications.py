"""
notifications.py — Notification Dispatcher

Builds and sends the transactional emails of the checkout flow:
    • Order confirmation (after an order is persisted)
    • Order processing issue (payment received but the order could not be created)
    • Abandoned cart (checkout session expired)

Every send returns an EmailResult. Nothing in this module raises to its caller:
a notification failure must never fail the checkout pipeline.
"""

import logging
import os
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Callable, Optional, Protocol

from .models import Address, EmailMessage, EmailResult, Order

EMAIL_FROM = os.environ.get("EMAIL_FROM", "onboarding@resend.dev")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "TRY": "₺"}

log = logging.getLogger(__name__)


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage) -> EmailResult: ...


# --- Formatting helpers ---

def format_currency(amount, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    return f"{symbol}{Decimal(str(amount)):.2f}"


def format_date(iso_date: str) -> str:
    """'2026-10-17T08:30:00+00:00' -> 'October 17, 2026'"""
    date = datetime.fromisoformat(iso_date.replace("Z", "+00:00"))
    return f"{date:%B} {date.day}, {date.year}"


def format_address(address: Address) -> str:
    parts = [address.line1, address.line2, f"{address.city}, {address.postalCode}", address.country]
    return "<br/>".join(escape(part) for part in parts if part)


# --- Templates ---

def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>"
        f"<html lang=\"en\"><head><meta charset=\"UTF-8\"><title>{escape(title)}</title></head>"
        "<body style=\"margin:0;padding:32px 16px;font-family:Georgia,serif;background-color:#fafafa;\">"
        "<div style=\"max-width:600px;margin:0 auto;background-color:#ffffff;border:1px solid #eaeaea;padding:32px;\">"
        f"<h1 style=\"text-align:center;letter-spacing:2px;\">TEXTILECOM</h1>{body}"
        "</div></body></html>"
    )


def render_order_confirmation(order: Order) -> str:
    currency = order.totals.currency
    rows = "".join(
        "<tr>"
        f"<td>{escape(item.title)}<br/><small>{escape(item.brand)} · Size: {escape(item.size or '-')}"
        f" · Qty: {item.quantity}</small></td>"
        f"<td style=\"text-align:right;\">{format_currency(item.total, currency)}</td>"
        "</tr>"
        for item in order.items
    )
    address = order.customerInfo.address
    shipping = (
        f"<h3>SHIPPING ADDRESS</h3><p>{format_address(address)}</p>" if address is not None else ""
    )
    body = (
        "<h2>Thank you for your order!</h2>"
        f"<p>Order number: <strong>{escape(order.orderNumber)}</strong><br/>"
        f"Order date: {format_date(order.createdAt)}</p>"
        f"<table style=\"width:100%;border-collapse:collapse;\">{rows}</table>"
        "<hr/>"
        f"<p>Subtotal: {format_currency(order.totals.subtotal, currency)}<br/>"
        f"Tax: {format_currency(order.totals.tax, currency)}<br/>"
        f"<strong>Total: {format_currency(order.totals.total, currency)}</strong></p>"
        f"{shipping}"
    )
    return _layout("Order Confirmation", body)


def render_order_processing_failed(session_id: Optional[str]) -> str:
    reference = f"<p>Reference: {escape(session_id)}</p>" if session_id else ""
    body = (
        "<h2>Order Processing Issue</h2>"
        "<p>We received your payment successfully, but encountered an issue while processing your order.</p>"
        "<p><strong>Your payment was successful and will not be charged again.</strong><br/>"
        "Our team has been automatically notified and is working to complete your order manually.</p>"
        f"{reference}"
    )
    return _layout("Order Processing Issue", body)


def render_abandoned_cart(amount_total: Optional[int], currency: Optional[str]) -> str:
    total = ""
    if amount_total and currency:
        # amount_total is in minor units
        amount = Decimal(amount_total) / 100
        total = f"<p>Your cart total: <strong>{format_currency(amount, currency)}</strong></p>"
    body = (
        "<h2>You left items in your cart</h2>"
        "<p>Don't miss out! Complete your purchase before your items are gone.</p>"
        f"{total}"
        f"<p><a href=\"{escape(FRONTEND_URL)}/cart\">Complete your purchase</a></p>"
    )
    return _layout("Complete Your Purchase", body)


# --- Dispatcher ---

class NotificationDispatcher:
    """
    Sends the checkout emails through an EmailTransport.

    Args:
        transport: Anything with `async send(EmailMessage) -> EmailResult`.
        sender (str): From address; defaults to EMAIL_FROM.
    """
    def __init__(self, transport: EmailTransport, sender: Optional[str] = None):
        self.transport = transport
        self.sender = sender or EMAIL_FROM

    async def _send(self, to: str, subject: str, render: Callable[[], str]) -> EmailResult:
        try:
            message = EmailMessage(sender=self.sender, to=to, subject=subject, html=render())
            return await self.transport.send(message)
        except Exception as e:
            # Templates and transports are expected not to raise.
            log.error(f"Failed to send '{subject}' to {to}: {e}", exc_info=True)
            return EmailResult(success=False, error=str(e) or type(e).__name__)

    async def send_order_confirmation(self, order: Order) -> EmailResult:
        return await self._send(
            to=order.customerInfo.email,
            subject=f"Order Confirmation - {order.orderNumber}",
            render=lambda: render_order_confirmation(order),
        )

    async def send_order_processing_failed(self, customer_email: str, session_id: Optional[str] = None) -> EmailResult:
        return await self._send(
            to=customer_email,
            subject="Order Processing Issue",
            render=lambda: render_order_processing_failed(session_id),
        )

    async def send_abandoned_cart(
            self,
            customer_email: str,
            amount_total: Optional[int] = None,
            currency: Optional[str] = None
    ) -> EmailResult:
        return await self._send(
            to=customer_email,
            subject="You left items in your cart",
            render=lambda: render_abandoned_cart(amount_total, currency),
        )
