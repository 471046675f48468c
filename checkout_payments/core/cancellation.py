"""
Order cancellation with compensating actions.

Cancelling restores stock and, for paid orders, asks the originating rail
for a refund. The refund outcome is recorded on the order but never fails
the cancellation.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

import structlog

from checkout_payments.core.clock import utcnow
from checkout_payments.core.collaborators import Catalog, Requester
from checkout_payments.core.errors import ConflictError
from checkout_payments.core.orchestrator import authorize_requester, load_order_for_update
from checkout_payments.core.order_state import ORDER_CANCELLED, append_history, enqueue_order_event
from checkout_payments.core.status import (
    CANCELLABLE_FULFILLMENT_STATUSES,
    FulfillmentStatus,
    PaymentStatus,
    Rail,
)
from checkout_payments.core.transactions import TransactionExecutor
from checkout_payments.database.models import Order
from checkout_payments.integrations.base import ProviderError, RailAdapter, RefundResult
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CancellationResult:
    order: Order
    refund: Optional[RefundResult]


class CancellationService:
    """Cancels orders that have not shipped yet."""

    def __init__(
        self,
        executor: TransactionExecutor,
        adapters: Mapping[Rail, RailAdapter],
        catalog: Catalog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.adapters = dict(adapters)
        self.catalog = catalog
        self.clock = clock

    async def _refund(self, order: Order) -> RefundResult:
        rail = Rail(order.payment_method_type)
        adapter = self.adapters.get(rail)
        if adapter is None:
            return RefundResult(status="failed", error=f"Payment method {rail.value} is disabled")
        try:
            return await adapter.refund(order)
        except ProviderError as e:
            logger.error(
                "refund_request_failed",
                order_id=str(order.id),
                rail=rail.value,
                error=str(e),
                status_code=e.status_code,
            )
            return RefundResult(status="failed", error="Refund request failed at the provider")

    async def cancel_order(
        self, order_id: uuid.UUID, requester: Requester, reason: Optional[str] = None
    ) -> CancellationResult:
        """
        Cancel an order while it is pending or processing.

        Args:
            order_id: Order to cancel
            requester: Must own the order
            reason: Optional customer-supplied reason

        Returns:
            CancellationResult: Cancelled order and the refund outcome, if a refund was due

        Raises:
            NotFoundError: Unknown order
            AuthorizationError: Requester does not own the order
            ConflictError: Order has already left the cancellable states
        """
        async with self.executor.unit("cancel_order") as uow:
            db = uow.session
            order = await load_order_for_update(db, order_id)
            authorize_requester(order, requester)

            current = FulfillmentStatus(order.status)
            if current not in CANCELLABLE_FULFILLMENT_STATUSES:
                raise ConflictError(f"Order cannot be cancelled once {current.value}")

            now = self.clock()
            order.status = FulfillmentStatus.CANCELLED.value
            order.cancelled_at = now
            append_history(
                order,
                "fulfillment",
                FulfillmentStatus.CANCELLED.value,
                f"Cancelled by customer: {reason}" if reason else "Cancelled by customer",
                now,
            )

            for item in order.items:
                await self.catalog.restore_stock(
                    db, uuid.UUID(item["product_id"]), int(item["quantity"])
                )

            refund: Optional[RefundResult] = None
            if order.payment_status == PaymentStatus.COMPLETED.value:
                refund = await self._refund(order)
                order.refund = {**refund.as_dict(), "requested_at": now.isoformat()}

            enqueue_order_event(
                db,
                order,
                ORDER_CANCELLED,
                reason=reason,
                refund=refund.as_dict() if refund else None,
            )

        refund_status = refund.status if refund else "not_required"
        metrics.record_cancellation(refund_status)
        logger.info(
            "order_cancelled",
            order_id=str(order.id),
            previous_status=current.value,
            refund_status=refund_status,
        )
        return CancellationResult(order=order, refund=refund)
