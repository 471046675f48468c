"""Order mutations shared by checkout, capture, webhooks and cancellation."""
from datetime import datetime
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_payments.core.collaborators import CartStore, PromotionBook, Requester
from checkout_payments.core.payment_details import (
    AddressCryptoDetails,
    GatewayDetails,
    InvoiceCryptoDetails,
    dump_payment_details,
)
from checkout_payments.core.status import (
    FulfillmentStatus,
    PaymentStatus,
    Rail,
    can_transition,
)
from checkout_payments.database.models import Order, OutboxEvent
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_COMPLETED = "order.completed"
ORDER_CANCELLED = "order.cancelled"

AnyDetails = Union[GatewayDetails, AddressCryptoDetails, InvoiceCryptoDetails]


def append_history(order: Order, kind: str, status: str, note: str, now: datetime) -> None:
    """Append to the order's history; the list is replaced so the JSON column is flushed."""
    entry = {"kind": kind, "status": status, "timestamp": now.isoformat(), "note": note}
    order.status_history = [*(order.status_history or []), entry]


def apply_payment_transition(
    order: Order,
    target: Optional[PaymentStatus],
    details: AnyDetails,
    note: str,
    now: datetime,
) -> bool:
    """
    Store new payment details and move the payment status if the graph allows.

    Details always take the latest observation. A target the graph does not
    allow from the current status (backward or out of a terminal status)
    leaves the status untouched.

    Returns:
        bool: True if the payment status changed
    """
    order.payment_details = dump_payment_details(details)
    if target is None:
        return False

    rail = Rail(order.payment_method_type)
    current = PaymentStatus(order.payment_status)
    if not can_transition(rail, current, target):
        if target != current:
            logger.info(
                "payment_transition_ignored",
                order_id=str(order.id),
                current_status=current.value,
                requested_status=target.value,
            )
        return False

    order.payment_status = target.value
    append_history(order, "payment", target.value, note, now)
    metrics.record_payment_transition(rail.value, current.value, target.value)

    if target == PaymentStatus.COMPLETED:
        order.paid_at = now
        if order.status == FulfillmentStatus.PENDING.value:
            order.status = FulfillmentStatus.PROCESSING.value
            append_history(
                order,
                "fulfillment",
                FulfillmentStatus.PROCESSING.value,
                "Payment confirmed; order is being prepared",
                now,
            )

    logger.info(
        "payment_status_changed",
        order_id=str(order.id),
        rail=rail.value,
        from_status=current.value,
        to_status=target.value,
    )
    return True


def order_owner(order: Order) -> Requester:
    return Requester(user_id=order.user_id, session_id=order.session_id)


def order_event_payload(order: Order, **extra: Any) -> Dict[str, Any]:
    """JSON payload describing an order for outbox consumers."""
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "user_id": order.user_id,
        "session_id": order.session_id,
        "customer_email": order.customer_email,
        "payment_method_type": order.payment_method_type,
        "payment_status": order.payment_status,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        **extra,
    }


def enqueue_order_event(db: AsyncSession, order: Order, event_type: str, **extra: Any) -> None:
    """Write an outbox event in the caller's transaction."""
    db.add(
        OutboxEvent(
            aggregate_id=order.id,
            aggregate_type="order",
            event_type=event_type,
            payload=order_event_payload(order, **extra),
        )
    )


async def settle_paid_order(
    db: AsyncSession,
    order: Order,
    carts: CartStore,
    promotions: PromotionBook,
) -> None:
    """Clear the owner's cart and count the promotion use once payment is final."""
    owner = order_owner(order)
    await carts.clear_cart(db, owner)
    if order.promotion_id is not None:
        await promotions.record_usage(db, order.promotion_id, owner.owner_key)
