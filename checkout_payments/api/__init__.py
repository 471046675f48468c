"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CancelOrderResponse,
    CaptureResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentStatusResponse,
)

__all__ = [
    "app",
    "create_app",
    "CancelOrderResponse",
    "CaptureResponse",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "PaymentStatusResponse",
]
