"""
workflow.py — Core Orchestration Logic for Checkout Processing

This module turns payment provider checkout events into orders.
It coordinates all collaborators (provider API, order store, inventory,
cart store, notifications) in a fixed sequence.

Workflow Overview (checkout.session.completed):
1. Idempotency check: an order for the session already exists → no-op
2. Expand the session at the provider (line items, prices, products)
3. Build order items from typed product/price metadata (+ sizes from the cart side-channel)
4. Compute totals
5. Reconcile against the amount the provider actually collected
6. Assemble customer info
7. Allocate order counter, order number and order id
8. Persist the order (status: processing)
9. Decrement stock
10. Clear the user's cart (and the checkout side-channel record)
11. Send the order confirmation

Failure handling:
    - Steps 1-8 raise. Nothing durable has happened yet, so the event must
      not be acknowledged and the provider will redeliver it.
    - Steps 9-11 run after the order is durable. Each is isolated: its failure
      is logged, recorded in the outcome and the remaining steps still run.
      The order is never rolled back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple

from returns.result import Failure, Result, Success

from .cart import CartStore, SizeResolver
from .errors import (
    CheckoutError,
    DuplicateOrderError,
    ExternalServiceError,
    ReconciliationWarning,
    ValidationError,
)
from .identity import OrderCounter, generate_order_id, generate_order_number
from .inventory import InventoryAdjuster
from .models import (
    Address,
    CheckoutSession,
    CustomerInfo,
    Discount,
    EmailResult,
    ExpandedSession,
    Order,
    OrderItem,
    OrderStatus,
    OrderTotals,
    Price,
    ProductMetadata,
    ProviderProduct,
    WebhookEvent,
)
from .notifications import NotificationDispatcher
from .orders import OrderStore
from .pricing import compute_item_totals, compute_order_totals, round_money

log = logging.getLogger(__name__)

RECONCILIATION_TOLERANCE = Decimal("0.01")

EVENT_SESSION_COMPLETED = "checkout.session.completed"
EVENT_SESSION_EXPIRED = "checkout.session.expired"


class PaymentProvider(Protocol):
    async def retrieve_expanded_session(self, session_id: str) -> ExpandedSession: ...


class CheckoutState(str, Enum):
    START = "Start"
    IDEMPOTENCY_CHECKED = "IdempotencyChecked"
    SESSION_EXPANDED = "SessionExpanded"
    ITEMS_BUILT = "ItemsBuilt"
    TOTALS_COMPUTED = "TotalsComputed"
    RECONCILED = "Reconciled"
    ORDER_PERSISTED = "OrderPersisted"
    STOCK_DECREMENTED = "StockDecremented"
    CART_CLEARED = "CartCleared"
    NOTIFICATION_ATTEMPTED = "NotificationAttempted"
    DONE = "Done"


@dataclass
class CheckoutOutcome:
    """
    Result of one checkout completion.

    Attributes:
        created (bool): False when the session already had an order (redelivery).
        steps (dict): Result of every post-persistence step, by step name.
        notification (EmailResult): Confirmation email result. A failed email is
            not a processing failure.
    """
    session_id: str
    state: CheckoutState = CheckoutState.START
    order: Optional[Order] = None
    created: bool = False
    steps: Dict[str, Result[Any, Exception]] = field(default_factory=dict)
    notification: Optional[EmailResult] = None

    @property
    def failures(self) -> Dict[str, str]:
        return {
            name: str(result.failure()) or type(result.failure()).__name__
            for name, result in self.steps.items()
            if isinstance(result, Failure)
        }

    @property
    def processed(self) -> bool:
        return not self.failures


@dataclass
class CheckoutDeps:
    provider: PaymentProvider
    orders: OrderStore
    inventory: InventoryAdjuster
    carts: CartStore
    counter: OrderCounter
    notifications: NotificationDispatcher


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def customer_email_of(session: CheckoutSession) -> Optional[str]:
    details = session.customer_details
    return _non_empty(session.customer_email) or (_non_empty(details.email) if details else None)


def build_customer_info(session: CheckoutSession, expanded: ExpandedSession) -> CustomerInfo:
    """
    Assembles CustomerInfo from the webhook session and the expanded session.

    Optional fields are set only when non-empty. The address is kept only when
    line1, city, postal code and country are all present; a partial address is
    dropped entirely.

    Raises:
        ValidationError: If no customer email is available.
    """
    details = expanded.customer_details or session.customer_details
    email = customer_email_of(session) or customer_email_of(expanded)
    if not email:
        raise ValidationError(f"Checkout session {session.id} has no customer email", constraint="email")

    info: Dict[str, Any] = {"email": email}
    if details is not None:
        if _non_empty(details.name):
            info["name"] = _non_empty(details.name)
        if _non_empty(details.phone):
            info["phone"] = _non_empty(details.phone)
        address = details.address
        if address is not None:
            required = {
                "line1": _non_empty(address.line1),
                "city": _non_empty(address.city),
                "postalCode": _non_empty(address.postal_code),
                "country": _non_empty(address.country),
            }
            if all(required.values()):
                if _non_empty(address.line2):
                    required["line2"] = _non_empty(address.line2)
                info["address"] = Address(**required)
            else:
                missing = [name for name, value in required.items() if not value]
                log.warning(f"[Session: {session.id}] Dropping incomplete address (missing: {', '.join(missing)}).")
    return CustomerInfo(**info)


def reconcile_totals(totals: OrderTotals, amount_paid_minor: Optional[int], log_prefix: str) -> Tuple[OrderTotals, bool]:
    """
    Trusts the collected amount over the computed total.

    Args:
        totals: Computed order totals.
        amount_paid_minor: Amount the provider collected, in minor units (None if unknown).

    Returns:
        (totals, overridden): Totals with `total` replaced by the collected amount
        when the two differ by more than one cent.
    """
    if amount_paid_minor is None:
        log.warning(f"{log_prefix} Provider reported no collected amount; keeping computed total {totals.total}.")
        return totals, False

    paid = round_money(Decimal(amount_paid_minor) / 100)
    difference = paid - totals.total
    if abs(difference) <= RECONCILIATION_TOLERANCE:
        return totals, False

    warning = ReconciliationWarning(
        f"computed total {totals.total} {totals.currency} differs from collected {paid} "
        f"(difference: {difference}); using collected amount"
    )
    log.warning(f"{log_prefix} {type(warning).__name__}: {warning}")
    return totals.model_copy(update={"total": paid}), True


class CheckoutCompletionWorkflow:
    """
    Runs the checkout completion pipeline for one completed session.
    All collaborators are injected through CheckoutDeps.
    """

    def __init__(self, deps: CheckoutDeps):
        self.deps = deps

    async def handle(self, session: CheckoutSession) -> CheckoutOutcome:
        """
        Executes the complete checkout completion workflow.

        Args:
            session (CheckoutSession): The session from the webhook event.

        Returns:
            CheckoutOutcome: `created=False` for a redelivered session; post-persistence
            step failures are reported in `outcome.failures`.

        Raises:
            CheckoutError: Any failure before the order is persisted.
        """
        outcome = CheckoutOutcome(session_id=session.id)
        log_prefix = f"[Session: {session.id}]"
        log.info(f"{log_prefix} Starting checkout completion.")

        # --- 1. Idempotency check ---
        existing = await self.deps.orders.get_order_by_session_id(session.id)
        if existing is not None:
            log.info(f"{log_prefix} Order {existing.id} already exists for this session. Nothing to do.")
            outcome.order = existing
            outcome.state = CheckoutState.DONE
            return outcome
        self._advance(outcome, CheckoutState.IDEMPOTENCY_CHECKED)

        user_id = _non_empty(session.metadata.get("userId"))
        if not user_id:
            raise ValidationError(f"Checkout session {session.id} has no userId in metadata", constraint="userId")

        # --- 2. Expand session ---
        log.info(f"{log_prefix} Step 2: Retrieving line items from payment provider...")
        expanded = await self.deps.provider.retrieve_expanded_session(session.id)
        if not expanded.line_items:
            raise ValidationError(f"No line items found in checkout session {session.id}", constraint="line_items")
        self._advance(outcome, CheckoutState.SESSION_EXPANDED)

        # --- 3. Build order items ---
        checkout_id = _non_empty(session.metadata.get("checkoutSessionId")) or session.id
        items = await self._build_items(expanded, checkout_id, log_prefix)
        self._advance(outcome, CheckoutState.ITEMS_BUILT)

        # --- 4. Totals ---
        currency = items[0].price.currency
        if any(item.price.currency != currency for item in items):
            log.warning(f"{log_prefix} Mixed currencies in one session; order totals use {currency}.")
        totals = compute_order_totals(items, currency)
        self._advance(outcome, CheckoutState.TOTALS_COMPUTED)

        # --- 5. Reconcile ---
        amount_paid = expanded.amount_total if expanded.amount_total is not None else session.amount_total
        totals, _ = reconcile_totals(totals, amount_paid, log_prefix)
        self._advance(outcome, CheckoutState.RECONCILED)

        # --- 6. Customer info ---
        customer_info = build_customer_info(session, expanded)

        # --- 7. Identity ---
        counter = await self.deps.counter.next_value()
        order_number = generate_order_number(counter)
        now = _now()
        order = Order(
            id=generate_order_id(),
            userId=user_id,
            orderNumber=order_number,
            externalSessionId=session.id,
            externalPaymentId=session.payment_intent or expanded.payment_intent or "",
            status=OrderStatus.PROCESSING,
            items=items,
            totals=totals,
            customerInfo=customer_info,
            createdAt=now,
            updatedAt=now,
            paymentCompletedAt=now,
            metadata={"checkoutSessionId": checkout_id} if checkout_id != session.id else None,
        )

        # --- 8. Persist ---
        try:
            await self.deps.orders.create_order(order)
        except DuplicateOrderError as e:
            # A concurrent delivery for the same session won the race.
            log.warning(f"{log_prefix} Lost creation race to order {e.existing_order_id}; counter {counter} unused.")
            outcome.order = await self.deps.orders.get_order_by_id(e.existing_order_id)
            outcome.state = CheckoutState.DONE
            return outcome

        outcome.order = order
        outcome.created = True
        self._advance(outcome, CheckoutState.ORDER_PERSISTED)
        log_prefix = f"[Session: {session.id}][Order: {order_number}]"
        log.info(
            f"{log_prefix} Order {order.id} created for user {user_id}: "
            f"{len(items)} item(s), total {totals.total} {totals.currency}."
        )

        # --- 9. Stock ---
        stock = await self._best_effort(
            outcome, "decrement_stock", log_prefix,
            self.deps.inventory.decrement_stock((item.productId, item.quantity) for item in items),
        )
        if isinstance(stock, Failure):
            log.critical(
                f"{log_prefix} Order {order.id} persisted but stock NOT decremented. "
                f"Inventory is inconsistent and needs manual correction."
            )
        else:
            self._advance(outcome, CheckoutState.STOCK_DECREMENTED)

        # --- 10. Cart ---
        cart = await self._best_effort(outcome, "clear_cart", log_prefix, self.deps.carts.delete_cart(user_id))
        await self._best_effort(
            outcome, "clear_checkout_record", log_prefix, self.deps.carts.delete_checkout_lines(checkout_id)
        )
        if isinstance(cart, Success):
            self._advance(outcome, CheckoutState.CART_CLEARED)

        # --- 11. Notification ---
        outcome.notification = await self.deps.notifications.send_order_confirmation(order)
        if not outcome.notification.success:
            log.error(
                f"{log_prefix} Order confirmation email failed ({outcome.notification.error}). "
                f"Order {order.id} is unaffected."
            )
        self._advance(outcome, CheckoutState.NOTIFICATION_ATTEMPTED)

        outcome.state = CheckoutState.DONE
        if outcome.processed:
            log.info(f"{log_prefix} Checkout completion finished.")
        else:
            log.error(f"{log_prefix} Checkout completion finished with failures: {outcome.failures}")
        return outcome

    @staticmethod
    def _advance(outcome: CheckoutOutcome, state: CheckoutState):
        log.debug(f"[Session: {outcome.session_id}] {outcome.state.value} -> {state.value}")
        outcome.state = state

    @staticmethod
    async def _best_effort(outcome: CheckoutOutcome, name: str, log_prefix: str, step: Awaitable) -> Result[Any, Exception]:
        """Runs a post-persistence step. Its failure is recorded, never raised."""
        try:
            result: Result[Any, Exception] = Success(await step)
        except Exception as e:
            log.error(f"{log_prefix} Step '{name}' failed: {e}", exc_info=not isinstance(e, CheckoutError))
            result = Failure(e)
        outcome.steps[name] = result
        return result

    async def _build_items(self, expanded: ExpandedSession, checkout_id: str, log_prefix: str) -> List[OrderItem]:
        try:
            sizes = SizeResolver(await self.deps.carts.get_checkout_lines(checkout_id))
        except ExternalServiceError as e:
            log.warning(f"{log_prefix} Cart side-channel unavailable ({e}); sizes default to one size.")
            sizes = SizeResolver([])

        items = []
        for line in expanded.line_items:
            price = line.price
            product = price.product if price is not None else None
            if price is None or not isinstance(product, ProviderProduct):
                log.warning(f"{log_prefix} Skipping line item {line.id} without expanded price/product.")
                continue

            metadata = ProductMetadata.parse(product.metadata, price.metadata)
            if metadata.product_id is None:
                log.warning(f"{log_prefix} Skipping line item {line.id}: product {product.id} has no productId metadata.")
                continue

            quantity = line.quantity or 1
            unit_amount = Decimal(price.unit_amount or 0) / 100
            line_totals = compute_item_totals(unit_amount, quantity, metadata.discount_rate, metadata.tax_rate)
            items.append(OrderItem(
                productId=metadata.product_id,
                title=product.name,
                brand=metadata.brand,
                price=Price(amount=unit_amount, currency=price.currency.upper()),
                discount=Discount(rate=metadata.discount_rate) if metadata.discount_rate > 0 else None,
                size=sizes.resolve(metadata.product_id, quantity),
                quantity=quantity,
                image=product.images[0] if product.images else "",
                taxRate=metadata.tax_rate,
                subtotal=line_totals.subtotal,
                tax=line_totals.tax,
                total=line_totals.total,
            ))

        if not items:
            raise ValidationError(
                f"No valid order items could be created from {len(expanded.line_items)} line item(s)",
                constraint="items",
            )
        return items


class CheckoutExpirationHandler:
    """
    Handles expired checkout sessions: logs the abandonment and, when an email
    is known, sends an abandoned-cart reminder. Never raises.
    """

    def __init__(self, notifications: NotificationDispatcher):
        self.notifications = notifications

    async def handle(self, session: CheckoutSession) -> Optional[EmailResult]:
        amount = Decimal(session.amount_total) / 100 if session.amount_total is not None else None
        email = customer_email_of(session)
        log.info(
            f"[Session: {session.id}] Checkout expired without payment "
            f"(user: {session.metadata.get('userId')}, email: {email}, amount: {amount} {session.currency})."
        )
        if not email:
            return None

        result = await self.notifications.send_abandoned_cart(email, session.amount_total, session.currency)
        if not result.success:
            log.warning(f"[Session: {session.id}] Abandoned-cart email failed: {result.error}")
        return result


@dataclass
class EventOutcome:
    """What happened to one webhook event; reported on the outcome channel."""
    event_id: str
    event_type: str
    handled: bool
    processed: bool
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    failures: Dict[str, str] = field(default_factory=dict)

    def as_message(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "processed": self.processed,
            "failures": self.failures,
        }


class CheckoutEventRouter:
    """
    Classifies webhook events and routes them to the completion workflow or
    the expiration handler. Unknown event types are ignored.
    """

    def __init__(self, completion: CheckoutCompletionWorkflow, expiration: CheckoutExpirationHandler,
                 notifications: NotificationDispatcher):
        self.completion = completion
        self.expiration = expiration
        self.notifications = notifications

    async def route(self, event: WebhookEvent) -> EventOutcome:
        """
        Raises:
            CheckoutError: If checkout completion fails before the order is persisted.
        """
        if event.type == EVENT_SESSION_COMPLETED:
            session = self._session_of(event)
            try:
                outcome = await self.completion.handle(session)
            except CheckoutError as e:
                log.error(f"[Session: {session.id}] Checkout completion failed: {e}")
                await self._notify_processing_failed(session, e)
                raise
            return EventOutcome(
                event_id=event.id,
                event_type=event.type,
                handled=True,
                processed=outcome.processed,
                session_id=session.id,
                order_id=outcome.order.id if outcome.order else None,
                failures=outcome.failures,
            )

        if event.type == EVENT_SESSION_EXPIRED:
            session = self._session_of(event)
            await self.expiration.handle(session)
            return EventOutcome(event.id, event.type, handled=True, processed=True, session_id=session.id)

        log.info(f"Unhandled event type {event.type} ({event.id}).")
        return EventOutcome(event.id, event.type, handled=False, processed=True)

    @staticmethod
    def _session_of(event: WebhookEvent) -> CheckoutSession:
        try:
            return CheckoutSession.model_validate(event.data.object)
        except ValueError as e:
            raise ValidationError(f"Event {event.id} carries a malformed checkout session: {e}",
                                  constraint="session") from e

    async def _notify_processing_failed(self, session: CheckoutSession, error: CheckoutError):
        # Transient failures are retried through redelivery.
        if isinstance(error, ExternalServiceError):
            return
        email = customer_email_of(session)
        if not email:
            return
        result = await self.notifications.send_order_processing_failed(email, session.id)
        if not result.success:
            log.error(f"[Session: {session.id}] Processing-failure notice could not be sent: {result.error}")
