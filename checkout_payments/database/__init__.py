"""Database package for the checkout service."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import (
    Base,
    Cart,
    CartItem,
    LoyaltyCredit,
    Order,
    OutboxEvent,
    PaymentReference,
    ProcessedWebhookEvent,
    Product,
    Promotion,
    ShippingMethod,
)

__all__ = [
    "Base",
    "Cart",
    "CartItem",
    "LoyaltyCredit",
    "Order",
    "OutboxEvent",
    "PaymentReference",
    "ProcessedWebhookEvent",
    "Product",
    "Promotion",
    "ShippingMethod",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
