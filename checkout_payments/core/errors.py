"""
Checkout error taxonomy.

Every error carries a stable machine-readable code and the HTTP status the
API answers with, so handlers can raise and let the application map them.
"""
from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    """Base exception for checkout and payment lifecycle errors."""

    code = "checkout_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        """
        Initialize checkout error.

        Args:
            message: Human-readable message safe to return to clients
            **context: Extra fields included in the error body
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Render the error body returned to clients."""
        return {"error": self.code, "message": self.message, **self.context}


class ValidationError(CheckoutError):
    """Raised when checkout input or state is invalid."""

    code = "validation_error"
    http_status = 400


class EmptyCartError(ValidationError):
    code = "empty_cart"


class UnavailableProductError(ValidationError):
    code = "product_unavailable"


class InsufficientStockError(ValidationError):
    code = "insufficient_stock"


class ShippingUnavailableError(ValidationError):
    code = "shipping_unavailable"


class CaptureFailedError(ValidationError):
    """Raised when the gateway does not report the capture as completed."""

    code = "capture_failed"


class AuthenticationRequiredError(CheckoutError):
    code = "authentication_required"
    http_status = 401


class AuthorizationError(CheckoutError):
    code = "forbidden"
    http_status = 403


class NotFoundError(CheckoutError):
    code = "not_found"
    http_status = 404


class ConflictError(CheckoutError):
    """Raised when an operation is illegal for the order's current state."""

    code = "invalid_state"
    http_status = 400


class WebhookAuthError(CheckoutError):
    """Raised when a webhook cannot be authenticated."""

    code = "webhook_unauthorized"
    http_status = 401


class InvariantViolation(CheckoutError):
    """Raised when an event cannot be tied to any known order."""

    code = "invariant_violation"
    http_status = 400


class PaymentProviderError(CheckoutError):
    """Raised when a provider rejects a request; provider internals are not exposed."""

    code = "payment_provider_error"
    http_status = 500


class ServiceUnavailableError(CheckoutError):
    """Raised when a dependency is down; lists the rails the client can fall back to."""

    code = "service_unavailable"
    http_status = 503

    def __init__(self, message: str, alternatives: Optional[List[str]] = None, **context: Any):
        super().__init__(message, alternatives=list(alternatives or []), **context)
        self.alternatives = list(alternatives or [])
