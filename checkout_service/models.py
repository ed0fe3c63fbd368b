"""
models.py — Data Models for Checkout Processing

This module defines the data structures exchanged between the checkout service,
the payment provider and the datastore. Pydantic models give type safety and
validation at every boundary; the provider's untyped metadata maps are parsed
into typed structures here before any pricing logic sees them.

Models:
    - OrderItem, OrderTotals, CustomerInfo, Order: The persisted order aggregate.
    - CheckoutSession, ExpandedSession, WebhookEvent: Payment provider payloads.
    - ProductMetadata: Typed view of provider-side product/price metadata.
    - EmailMessage, EmailResult: Notification boundary.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

ONE_SIZE = "one size"
UNKNOWN_BRAND = "Unknown"
DEFAULT_TAX_RATE = "1.0"


# --- Order aggregate ---

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"  # Payment confirmed, preparing order
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class Price(BaseModel):
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)  # ISO 4217, upper case


class Discount(BaseModel):
    rate: Decimal = Field(..., ge=0, le=100)  # percentage


class OrderItem(BaseModel):
    """
    Represents a single purchased product with its computed line totals.

    Attributes:
        productId (str): Internal product identifier (from provider product metadata).
        price (Price): Unit price before discount and tax.
        discount (Discount | None): Percentage discount, None when not discounted.
        size (str): Size/variant resolved from the cart side-channel.
        quantity (int): Purchased quantity. Must be greater than zero.
        taxRate (str): Tax MULTIPLIER as a string, e.g. "1.20" means 20% tax.
        subtotal, tax, total (Decimal): Line totals rounded to 2 decimals.
    """
    productId: str
    title: str
    brand: str
    price: Price
    discount: Optional[Discount] = None
    size: Optional[str] = None
    quantity: int = Field(..., gt=0)
    image: str = ""
    taxRate: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal


class OrderTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str = Field(..., min_length=3, max_length=3)


class Address(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    postalCode: str
    country: str


class CustomerInfo(BaseModel):
    """
    Customer contact data cached from the checkout session.

    Optional fields are left unset (None) when absent and are dropped entirely
    from the persisted document, never stored as explicit nulls.
    """
    email: str = Field(..., min_length=1)
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class Order(BaseModel):
    """
    The order aggregate root. Exactly one Order exists per externalSessionId.
    """
    id: str
    userId: str
    orderNumber: str
    externalSessionId: str
    externalPaymentId: str = ""
    status: OrderStatus
    items: List[OrderItem] = Field(..., min_length=1)
    totals: OrderTotals
    customerInfo: CustomerInfo
    createdAt: str
    updatedAt: str
    paymentCompletedAt: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None

    def to_document(self) -> Dict[str, Any]:
        """Serializes the order for the datastore. Absent optional fields are omitted."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Order":
        return cls.model_validate(document)


# --- Payment provider payloads ---

class ProviderProduct(BaseModel):
    id: str
    name: str = ""
    images: List[str] = []
    metadata: Dict[str, str] = {}


class ProviderPrice(BaseModel):
    id: str
    unit_amount: Optional[int] = None  # minor units (cents)
    currency: str = "usd"
    metadata: Dict[str, str] = {}
    product: Union[ProviderProduct, str, None] = None  # str when not expanded


class ProviderLineItem(BaseModel):
    id: str
    description: Optional[str] = None
    quantity: Optional[int] = None
    amount_total: Optional[int] = None
    price: Optional[ProviderPrice] = None


class ProviderAddress(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None


class CustomerDetails(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[ProviderAddress] = None


class CheckoutSession(BaseModel):
    """
    A checkout session as delivered inside a webhook event.

    Attributes:
        amount_total (int | None): Amount collected, in minor currency units.
        metadata (dict): Free-form strings set at session creation; carries
            `userId` and optionally `checkoutSessionId` (cart side-channel key).
    """
    id: str
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = {}
    customer_details: Optional[CustomerDetails] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _payment_intent_id(cls, value):
        # The provider returns the full object when the field is expanded.
        if isinstance(value, dict):
            return value.get("id")
        return value


class ExpandedSession(CheckoutSession):
    """Checkout session retrieved with line items and products expanded."""
    line_items: List[ProviderLineItem] = []

    @field_validator("line_items", mode="before")
    @classmethod
    def _unwrap_list_object(cls, value):
        # Provider lists arrive as {"object": "list", "data": [...]}
        if isinstance(value, dict):
            return value.get("data") or []
        return value or []


class EventData(BaseModel):
    object: Dict[str, Any]


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: EventData
    created: int = 0


# --- Typed provider metadata ---

@dataclass(frozen=True)
class ProductMetadata:
    """
    Typed view of the provider's untyped product and price metadata.

    Attributes:
        product_id (str | None): Internal product id, None when unresolvable.
        brand (str): Brand name, "Unknown" when absent.
        discount_rate (Decimal): Percentage in [0, 100]; 0 when absent or malformed.
        tax_rate (str): Tax multiplier string, passed through verbatim ("1.0" when absent).
    """
    product_id: Optional[str]
    brand: str
    discount_rate: Decimal
    tax_rate: str

    @classmethod
    def parse(cls, product_metadata: Mapping[str, str], price_metadata: Mapping[str, str]) -> "ProductMetadata":
        product_id = (product_metadata.get("productId") or "").strip() or None
        return cls(
            product_id=product_id,
            brand=product_metadata.get("brand") or UNKNOWN_BRAND,
            discount_rate=_parse_discount_rate(product_metadata.get("discountRate")),
            tax_rate=price_metadata.get("taxRate") or DEFAULT_TAX_RATE,
        )


def _parse_discount_rate(raw: Optional[str]) -> Decimal:
    if not raw:
        return Decimal(0)
    try:
        rate = Decimal(raw.strip())
    except InvalidOperation:
        return Decimal(0)
    if not rate.is_finite() or rate < 0 or rate > 100:
        return Decimal(0)
    return rate


# --- Notification boundary ---

class EmailMessage(BaseModel):
    sender: str
    to: str
    subject: str
    html: str


class EmailResult(BaseModel):
    """
    Outcome of an email send. The dispatcher reports failures here instead of raising.
    """
    success: bool
    messageId: Optional[str] = None
    error: Optional[str] = None
