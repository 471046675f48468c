"""
Webhook reconciliation.

Implements:
- Per-rail webhook authentication and parsing
- Replay protection (Redis fast path plus the durable processed-events ledger)
- Locked, versioned read-modify-write of the order's payment state
- Completion outbox event on a successful terminal transition
"""
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from checkout_payments.config import Settings
from checkout_payments.core.clock import utcnow
from checkout_payments.core.collaborators import CartStore, PromotionBook
from checkout_payments.core.errors import (
    InvariantViolation,
    ServiceUnavailableError,
)
from checkout_payments.core.order_state import (
    ORDER_COMPLETED,
    apply_payment_transition,
    enqueue_order_event,
    settle_paid_order,
)
from checkout_payments.core.payment_details import CryptoDetails, load_payment_details
from checkout_payments.core.status import FulfillmentStatus, PaymentStatus, Rail, is_terminal
from checkout_payments.core.transactions import TransactionExecutor
from checkout_payments.database.models import Order, PaymentReference, ProcessedWebhookEvent
from checkout_payments.integrations.base import (
    ProviderUnavailableError,
    RailAdapter,
    WebhookEvent,
)
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STALE_RETRY_ATTEMPTS = 5


@dataclass
class WebhookOutcome:
    """Result of handling one webhook delivery."""

    status: str
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    completed: bool = False

    def ack(self) -> Dict[str, Any]:
        return {"received": True}


class WebhookReconciler:
    """
    Applies provider notifications to orders.

    Events are idempotent: the same (rail, fingerprint) is applied at most
    once, and a terminal order is never moved again.
    """

    def __init__(
        self,
        executor: TransactionExecutor,
        adapters: Mapping[Rail, RailAdapter],
        carts: CartStore,
        promotions: PromotionBook,
        settings: Settings,
        redis_client: Optional[aioredis.Redis] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the reconciler.

        Args:
            executor: Unit-of-work strategy
            adapters: Rail adapters built at startup
            carts: Cart store, cleared when a gateway payment completes by webhook
            promotions: Promotion book, usage counted on the same path
            settings: Application settings
            redis_client: Optional Redis client for the replay fast path
            clock: Time source
        """
        self.executor = executor
        self.adapters = dict(adapters)
        self.carts = carts
        self.promotions = promotions
        self.settings = settings
        self.redis_client = redis_client
        self.clock = clock

    @staticmethod
    def _cache_key(event: WebhookEvent) -> str:
        return f"webhook:processed:{event.rail.value}:{event.fingerprint}"

    async def is_event_processed(self, event: WebhookEvent) -> bool:
        """Redis fast path; a Redis failure falls through to the durable ledger."""
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.exists(self._cache_key(event)))
        except Exception as e:
            logger.warning(
                "webhook_dedup_check_error", error=str(e), fingerprint=event.fingerprint
            )
            return False

    async def mark_event_processed(self, event: WebhookEvent) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._cache_key(event), self.settings.webhook_dedup_ttl_seconds, "1"
            )
        except Exception as e:
            logger.warning(
                "webhook_mark_processed_error", error=str(e), fingerprint=event.fingerprint
            )

    def _resolve_adapter(self, rail_name: str) -> RailAdapter:
        try:
            rail = Rail(rail_name)
        except ValueError:
            raise InvariantViolation(f"Unknown payment rail: {rail_name}", rail=rail_name)
        adapter = self.adapters.get(rail)
        if adapter is None:
            raise InvariantViolation(f"Payment rail {rail_name} is not enabled", rail=rail_name)
        return adapter

    async def handle(
        self, rail_name: str, headers: Mapping[str, str], body: bytes
    ) -> WebhookOutcome:
        """
        Authenticate, deduplicate and apply one webhook delivery.

        Args:
            rail_name: Rail from the webhook URL
            headers: Request headers with lowercased names
            body: Raw request body

        Returns:
            WebhookOutcome: What the delivery did

        Raises:
            WebhookAuthError: Authentication failed; nothing was changed
            ValidationError: Malformed payload
            InvariantViolation: Unknown rail, or payload does not resolve to an order
        """
        start_time = time.time()
        adapter = self._resolve_adapter(rail_name)

        try:
            await adapter.verify_webhook(headers, body)
        except ProviderUnavailableError as e:
            logger.error("webhook_verification_unavailable", rail=rail_name, error=str(e))
            raise ServiceUnavailableError("Webhook verification is temporarily unavailable") from e
        except Exception as e:
            logger.warning("webhook_rejected", rail=rail_name, error=str(e))
            metrics.record_webhook_event(rail_name, "rejected", time.time() - start_time)
            raise

        event = adapter.parse_webhook(body)
        logger.info(
            "processing_webhook_event",
            rail=rail_name,
            event_type=event.event_type,
            reference=event.reference,
            fingerprint=event.fingerprint,
        )

        if await self.is_event_processed(event):
            logger.info("webhook_event_already_processed", fingerprint=event.fingerprint)
            metrics.record_webhook_event(rail_name, "duplicate", time.time() - start_time)
            return WebhookOutcome(status="duplicate")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(StaleDataError),
                stop=stop_after_attempt(STALE_RETRY_ATTEMPTS),
                wait=wait_random(min=0, max=0.05),
                reraise=True,
            ):
                with attempt:
                    outcome = await self._apply(adapter, event)
        except IntegrityError:
            # A concurrent delivery of the same event won the ledger insert
            logger.info("webhook_event_concurrent_duplicate", fingerprint=event.fingerprint)
            outcome = WebhookOutcome(status="duplicate")
        except Exception:
            metrics.record_webhook_event(rail_name, "error", time.time() - start_time)
            raise

        await self.mark_event_processed(event)
        metrics.record_webhook_event(rail_name, outcome.status, time.time() - start_time)
        logger.info(
            "webhook_event_processed",
            rail=rail_name,
            fingerprint=event.fingerprint,
            outcome=outcome.status,
            order_id=outcome.order_id,
            payment_status=outcome.payment_status,
        )
        return outcome

    async def _load_order(self, db: AsyncSession, event: WebhookEvent) -> Order:
        order = None
        if event.reference:
            result = await db.execute(
                select(Order)
                .join(PaymentReference, PaymentReference.order_id == Order.id)
                .where(
                    PaymentReference.rail == event.rail.value,
                    PaymentReference.reference == event.reference,
                )
                .with_for_update(of=Order)
                .execution_options(populate_existing=True)
            )
            order = result.scalar_one_or_none()
        if order is None:
            logger.error(
                "webhook_order_unresolved",
                rail=event.rail.value,
                reference=event.reference,
                event_type=event.event_type,
                anomaly=True,
            )
            raise InvariantViolation(
                "Webhook does not match any order", reference=event.reference
            )
        return order

    async def _apply(self, adapter: RailAdapter, event: WebhookEvent) -> WebhookOutcome:
        async with self.executor.unit("reconcile_webhook") as uow:
            db = uow.session
            order = await self._load_order(db, event)
            order_id = str(order.id)

            seen = await db.execute(
                select(ProcessedWebhookEvent.id).where(
                    ProcessedWebhookEvent.rail == event.rail.value,
                    ProcessedWebhookEvent.fingerprint == event.fingerprint,
                )
            )
            if seen.scalar_one_or_none() is not None:
                return WebhookOutcome("duplicate", order_id, order.payment_status)

            def record(outcome: str) -> None:
                db.add(
                    ProcessedWebhookEvent(
                        rail=event.rail.value,
                        fingerprint=event.fingerprint,
                        order_id=order.id,
                        event_type=event.event_type,
                        outcome=outcome,
                    )
                )

            current = PaymentStatus(order.payment_status)
            if is_terminal(current):
                logger.info(
                    "webhook_for_terminal_order",
                    order_id=order_id,
                    payment_status=current.value,
                    event_type=event.event_type,
                )
                record("terminal")
                return WebhookOutcome("terminal", order_id, current.value)

            now = self.clock()
            details = load_payment_details(order.payment_details)
            transition = adapter.reconcile(event, order, details, now)
            target = transition.target
            note = transition.note
            if isinstance(details, CryptoDetails) and details.is_expired(now):
                target = PaymentStatus.EXPIRED
                note = "Payment window expired before the payment settled"

            changed = apply_payment_transition(order, target, transition.details, note, now)
            completed = changed and order.payment_status == PaymentStatus.COMPLETED.value
            record("applied" if changed else "ignored")

            if completed:
                if adapter.is_synchronous:
                    await settle_paid_order(db, order, self.carts, self.promotions)
                if order.status == FulfillmentStatus.CANCELLED.value:
                    logger.warning(
                        "payment_completed_for_cancelled_order",
                        order_id=order_id,
                        rail=event.rail.value,
                    )
                    completed = False
                else:
                    enqueue_order_event(db, order, ORDER_COMPLETED)

            return WebhookOutcome(
                "applied" if changed else "ignored",
                order_id,
                order.payment_status,
                completed=completed,
            )
