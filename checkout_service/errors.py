"""
errors.py — Error Taxonomy for Checkout Processing

All failures raised by the checkout service derive from `CheckoutError`, so the
webhook entry point can distinguish domain failures from programming errors.

Errors:
    - ValidationError: Malformed input (bad counter, malformed session, no valid items).
    - NotFoundError: A referenced product, order or session does not exist.
    - InsufficientStockError: A product cannot cover the requested quantity.
    - ExternalServiceError: Payment provider, datastore or message broker unreachable.
    - DuplicateOrderError: Another delivery already persisted an order for the session.
    - ReconciliationWarning: Computed and collected totals disagree (logged, never raised).
"""


class CheckoutError(Exception):
    """Base class for every error raised by the checkout service."""


class ValidationError(CheckoutError):
    """
    Raised when input violates a constraint.

    Attributes:
        constraint (str): Short machine-readable name of the broken constraint.
    """

    def __init__(self, message: str, constraint: str = "invalid"):
        super().__init__(message)
        self.constraint = constraint


class NotFoundError(CheckoutError):
    def __init__(self, message: str, entity: str, entity_id: str):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class InsufficientStockError(CheckoutError):
    """
    Raised when a product's stock is lower than the requested quantity.

    Attributes:
        product_id (str): The offending product.
        available (int): Stock at the time of the check.
        requested (int): Total quantity requested for the product.
    """

    def __init__(self, product_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ExternalServiceError(CheckoutError):
    """Raised when a collaborator (provider API, datastore, broker) cannot be reached."""

    def __init__(self, message: str, service: str):
        super().__init__(message)
        self.service = service


class DuplicateOrderError(CheckoutError):
    """Raised by the order store when the session already owns a persisted order."""

    def __init__(self, session_id: str, existing_order_id: str):
        super().__init__(f"Order {existing_order_id} already exists for session {session_id}")
        self.session_id = session_id
        self.existing_order_id = existing_order_id


class ReconciliationWarning(UserWarning):
    """Computed order total differs from the amount the provider actually collected."""
