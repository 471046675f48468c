"""
Order completion side effects.

Runs the deferred work for paid and cancelled orders from the outbox. Each
side effect is isolated: one failing never blocks the others and never
touches the order's payment status.
"""
from typing import Any, Awaitable, Callable, Dict, List, Tuple

import structlog

from checkout_payments.core.collaborators import OrderNotifier, ReferralCreditor
from checkout_payments.core.order_state import ORDER_CANCELLED, ORDER_COMPLETED
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SideEffect = Callable[[Dict[str, Any]], Awaitable[None]]


class OrderCompletionDispatcher:
    """Routes outbox events to the collaborators that act on them."""

    def __init__(self, referral_creditor: ReferralCreditor, notifier: OrderNotifier):
        self.referral_creditor = referral_creditor
        self.notifier = notifier

    def _effects_for(self, event_type: str) -> List[Tuple[str, SideEffect]]:
        if event_type == ORDER_COMPLETED:
            return [
                ("loyalty_credit", self.referral_creditor.credit),
                ("order_confirmation", self.notifier.order_confirmed),
            ]
        if event_type == ORDER_CANCELLED:
            return [("cancellation_notice", self.notifier.order_cancelled)]
        return []

    async def dispatch(self, event_data: Dict[str, Any]) -> Dict[str, str]:
        """
        Run every side effect registered for an outbox event.

        Args:
            event_data: Outbox event with event_type and payload

        Returns:
            Dict[str, str]: Failed side effects mapped to their error message
        """
        event_type = event_data.get("event_type", "")
        payload = event_data.get("payload") or {}
        effects = self._effects_for(event_type)
        if not effects:
            logger.warning("outbox_event_unhandled", event_type=event_type)
            return {}

        failures: Dict[str, str] = {}
        for name, effect in effects:
            try:
                await effect(payload)
                metrics.record_side_effect(name, "success")
            except Exception as e:
                failures[name] = str(e) or type(e).__name__
                metrics.record_side_effect(name, "failed")
                logger.error(
                    "completion_side_effect_failed",
                    effect=name,
                    order_id=payload.get("order_id"),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info(
            "completion_dispatched",
            event_type=event_type,
            order_id=payload.get("order_id"),
            failed=sorted(failures),
        )
        return failures
