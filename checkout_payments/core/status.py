"""Payment and fulfillment lifecycles and the per-rail transition graphs."""
from enum import Enum
from typing import Dict, FrozenSet


class Rail(str, Enum):
    """Payment rails offered at checkout."""

    GATEWAY = "gateway"
    ADDRESS_CRYPTO = "address-crypto"
    INVOICE_CRYPTO = "invoice-crypto"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    UNDERPAID = "underpaid"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


TERMINAL_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}
)

CANCELLABLE_FULFILLMENT_STATUSES: FrozenSet[FulfillmentStatus] = frozenset(
    {FulfillmentStatus.PENDING, FulfillmentStatus.PROCESSING}
)

_ASYNC_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.AWAITING_CONFIRMATION,
            PaymentStatus.UNDERPAID,
            PaymentStatus.COMPLETED,
            PaymentStatus.EXPIRED,
            PaymentStatus.FAILED,
        }
    ),
    PaymentStatus.UNDERPAID: frozenset(
        {
            PaymentStatus.AWAITING_CONFIRMATION,
            PaymentStatus.COMPLETED,
            PaymentStatus.EXPIRED,
            PaymentStatus.FAILED,
        }
    ),
    PaymentStatus.AWAITING_CONFIRMATION: frozenset(
        {
            PaymentStatus.UNDERPAID,
            PaymentStatus.COMPLETED,
            PaymentStatus.EXPIRED,
            PaymentStatus.FAILED,
        }
    ),
}

_GATEWAY_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
}

TRANSITIONS: Dict[Rail, Dict[PaymentStatus, FrozenSet[PaymentStatus]]] = {
    Rail.GATEWAY: _GATEWAY_TRANSITIONS,
    Rail.ADDRESS_CRYPTO: _ASYNC_TRANSITIONS,
    Rail.INVOICE_CRYPTO: _ASYNC_TRANSITIONS,
}


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES


def can_transition(rail: Rail, current: PaymentStatus, target: PaymentStatus) -> bool:
    """
    Check whether the rail's graph allows moving from current to target.

    Staying in the same status is not a transition, and nothing leaves a
    terminal status.
    """
    return target in TRANSITIONS[rail].get(current, frozenset())
