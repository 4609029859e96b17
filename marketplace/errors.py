"""Error taxonomy shared by every marketplace component.

Components raise these; only the HTTP boundary in ``main.py`` turns them into
status codes and JSON bodies.
"""


class MarketplaceError(Exception):
    """Base class for marketplace errors."""
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Raised when a request is well-formed but semantically invalid."""
    status_code = 400


class InvalidProduct(ValidationError):
    """Raised when an order references a missing or inactive product."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStock(ValidationError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: int, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"available {available}, requested {requested}"
        )


class InvalidTransition(ValidationError):
    """Raised when the order state machine forbids a status change."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from '{current}' to '{target}'")


class Unauthenticated(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class Conflict(MarketplaceError):
    """Raised when a conditional write lost a race against another request."""
    status_code = 409


class StorageError(MarketplaceError):
    """Raised on database failures that are not the caller's fault."""
    status_code = 500


class ConstraintViolation(StorageError):
    """Raised when a write breaks a unique, foreign key or check constraint."""
    status_code = 400


class PaymentProviderError(MarketplaceError):
    """Raised when the payment provider rejects or fails a request."""
    status_code = 502
