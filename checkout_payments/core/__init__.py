"""Checkout, payment reconciliation and order lifecycle services."""
from .errors import (
    AuthenticationRequiredError,
    AuthorizationError,
    CheckoutError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
    WebhookAuthError,
)
from .status import FulfillmentStatus, PaymentStatus, Rail

__all__ = [
    "AuthenticationRequiredError",
    "AuthorizationError",
    "CheckoutError",
    "ConflictError",
    "FulfillmentStatus",
    "InvariantViolation",
    "NotFoundError",
    "PaymentStatus",
    "Rail",
    "ServiceUnavailableError",
    "ValidationError",
    "WebhookAuthError",
]
