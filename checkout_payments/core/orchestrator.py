"""
Order orchestration.

Turns a cart into a pending order and hands it to the chosen payment rail:
- Revalidates every line against the live catalog
- Prices shipping and at most one promotion
- Takes stock, inserts the order and initiates the provider payment in one unit of work
- Finalizes gateway payments on capture
- Serves crypto payment handles and payment status
"""
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_payments.config import Settings
from checkout_payments.core.clock import utcnow
from checkout_payments.core.collaborators import (
    CartStore,
    Catalog,
    PromotionBook,
    Requester,
    ShippingCatalog,
)
from checkout_payments.core.errors import (
    AuthorizationError,
    CaptureFailedError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    NotFoundError,
    PaymentProviderError,
    ServiceUnavailableError,
    ShippingUnavailableError,
    UnavailableProductError,
    ValidationError,
)
from checkout_payments.core.order_state import (
    ORDER_COMPLETED,
    append_history,
    apply_payment_transition,
    enqueue_order_event,
    settle_paid_order,
)
from checkout_payments.core.payment_details import (
    CryptoDetails,
    GatewayDetails,
    dump_payment_details,
    load_payment_details,
)
from checkout_payments.core.pricing import (
    PricedLine,
    PromotionNotApplicable,
    PromotionQuote,
    apply_promotion,
    compute_subtotal,
    compute_totals,
    total_weight,
)
from checkout_payments.core.status import (
    FulfillmentStatus,
    PaymentStatus,
    Rail,
    is_terminal,
)
from checkout_payments.core.transactions import TransactionExecutor, UnitOfWork
from checkout_payments.database.models import Order, PaymentReference
from checkout_payments.integrations.base import (
    ProviderError,
    ProviderHandle,
    ProviderUnavailableError,
    RailAdapter,
)
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REQUIRED_ADDRESS_FIELDS = ("line1", "city", "postal_code", "country")


@dataclass
class CheckoutCollaborators:
    catalog: Catalog
    carts: CartStore
    shipping: ShippingCatalog
    promotions: PromotionBook


@dataclass
class CheckoutResult:
    order: Order
    rail_handle: Dict[str, Any]


def generate_order_number() -> str:
    """ORD-<last 8 digits of the epoch millis>-<3 random digits>."""
    millis = str(int(time.time() * 1000))[-8:]
    return f"ORD-{millis}-{secrets.randbelow(1000):03d}"


def authorize_requester(order: Order, requester: Requester) -> None:
    if not requester.owns(order.user_id, order.session_id):
        raise AuthorizationError("Not authorized to access this order")


async def load_order_for_update(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """Load an order with a row lock held until the unit of work ends."""
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


class OrderOrchestrator:
    """
    Checkout and payment entry points.

    Adapters are built once at startup and injected; the executor decides
    whether a unit of work is one transaction or a compensated sequence.
    """

    def __init__(
        self,
        executor: TransactionExecutor,
        adapters: Mapping[Rail, RailAdapter],
        collaborators: CheckoutCollaborators,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.adapters = dict(adapters)
        self.collaborators = collaborators
        self.settings = settings
        self.clock = clock

    def _alternatives(self, rail: Rail) -> List[str]:
        return [other.value for other in self.adapters if other != rail]

    def _resolve_rail(self, rail: str) -> Rail:
        try:
            resolved = Rail(rail)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {rail}")
        if resolved not in self.adapters:
            raise ValidationError(f"Payment method {rail} is not available")
        return resolved

    @staticmethod
    def _validate_address(address: Optional[Mapping[str, Any]], label: str) -> Dict[str, Any]:
        if not address:
            raise ValidationError(f"{label} is required")
        missing = [name for name in REQUIRED_ADDRESS_FIELDS if not address.get(name)]
        if missing:
            raise ValidationError(f"{label} is missing: {', '.join(missing)}")
        return dict(address)

    async def _price_lines(self, db: AsyncSession, cart: Any) -> List[PricedLine]:
        lines: List[PricedLine] = []
        for item in cart.items:
            product = await self.collaborators.catalog.get_product(db, item.product_id)
            if product is None or not product.is_active:
                raise UnavailableProductError(
                    f"{item.name} is no longer available", product_id=str(item.product_id)
                )
            if product.stock_quantity < item.quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.name}",
                    product_id=str(product.id),
                    available=product.stock_quantity,
                )
            lines.append(
                PricedLine(
                    product_id=product.id,
                    name=product.name,
                    slug=product.slug,
                    sku=product.sku,
                    unit_price=product.price,
                    quantity=item.quantity,
                    weight_kg=product.weight_kg or Decimal("0"),
                    category_ids=tuple(product.category_ids or ()),
                )
            )
        return lines

    async def _quote_promotion(
        self,
        db: AsyncSession,
        code: Optional[str],
        lines: List[PricedLine],
        shipping_cost: Decimal,
        requester: Requester,
    ) -> Optional[PromotionQuote]:
        """
        Resolve the cart's promotion code into a discount.

        A code that is unknown or not applicable is dropped. A failing lookup
        is dropped too unless promotion_failure_mode is "reject".
        """
        if not code:
            return None

        try:
            promotion = await self.collaborators.promotions.resolve_promotion(db, code)
        except Exception as e:
            if self.settings.promotion_failure_mode == "reject":
                logger.error("promotion_lookup_failed", code=code, error=str(e))
                raise ServiceUnavailableError(
                    "Promotions are temporarily unavailable; remove the code or retry"
                ) from e
            logger.warning(
                "promotion_lookup_degraded",
                code=code,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if promotion is None:
            logger.info("promotion_not_found", code=code)
            return None

        try:
            return apply_promotion(promotion, lines, shipping_cost, requester.owner_key, self.clock())
        except PromotionNotApplicable as e:
            logger.info("promotion_not_applied", code=code, reason=e.reason)
            return None

    async def _initiate(self, adapter: RailAdapter, order: Order) -> ProviderHandle:
        try:
            return await adapter.initiate(order)
        except ProviderUnavailableError as e:
            logger.error(
                "payment_initiation_unavailable",
                order_id=str(order.id),
                rail=adapter.rail.value,
                error=str(e),
            )
            raise ServiceUnavailableError(
                f"The {adapter.rail.value} payment service is temporarily unavailable",
                alternatives=self._alternatives(adapter.rail),
            ) from e
        except ProviderError as e:
            logger.error(
                "payment_initiation_rejected",
                order_id=str(order.id),
                rail=adapter.rail.value,
                error=str(e),
                status_code=e.status_code,
            )
            raise PaymentProviderError("The payment could not be started") from e

    @staticmethod
    def _apply_handle(order: Order, handle: ProviderHandle) -> None:
        order.payment_details = dump_payment_details(handle.details)
        order.payment_reference = handle.payment_reference

    @staticmethod
    def _record_reference(uow: UnitOfWork, order: Order, handle: ProviderHandle) -> None:
        uow.session.add(
            PaymentReference(
                rail=order.payment_method_type,
                reference=handle.payment_reference,
                order_id=order.id,
            )
        )

    async def create_order(
        self,
        requester: Requester,
        shipping_address: Optional[Mapping[str, Any]],
        shipping_method_id: Optional[uuid.UUID],
        rail: str,
        billing_address: Optional[Mapping[str, Any]] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Convert the requester's cart into a pending order and start payment.

        Args:
            requester: Cart owner
            shipping_address: Destination address
            shipping_method_id: Chosen shipping method
            rail: Payment rail name
            billing_address: Defaults to the shipping address
            customer_email: Contact for notifications

        Returns:
            CheckoutResult: Committed order and the rail's client handle

        Raises:
            ValidationError: Invalid input, empty cart, unavailable product,
                insufficient stock or unavailable shipping
            ServiceUnavailableError: Provider down; lists alternative rails
        """
        start_time = time.time()
        address = self._validate_address(shipping_address, "Shipping address")
        billing = self._validate_address(billing_address, "Billing address") if billing_address else address
        if not shipping_method_id:
            raise ValidationError("Shipping method is required")
        chosen_rail = self._resolve_rail(rail)
        adapter = self.adapters[chosen_rail]

        try:
            async with self.executor.unit("create_order") as uow:
                db = uow.session
                cart = await self.collaborators.carts.get_cart(db, requester)
                if cart is None or not cart.items:
                    raise EmptyCartError("Cart is empty")

                await self._release_open_gateway_orders(db, requester)

                lines = await self._price_lines(db, cart)
                subtotal = compute_subtotal(lines)

                shipping_rule = await self.collaborators.shipping.get_shipping_method(
                    db, shipping_method_id
                )
                if shipping_rule is None:
                    raise ValidationError("Invalid shipping method")
                shipping_cost = shipping_rule.cost(subtotal, total_weight(lines), address)
                if shipping_cost is None:
                    raise ShippingUnavailableError(
                        f"{shipping_rule.name} is not available for this order"
                    )

                quote = await self._quote_promotion(
                    db, cart.promotion_code, lines, shipping_cost, requester
                )
                totals = compute_totals(lines, shipping_cost, quote)

                for line in lines:
                    taken = await self.collaborators.catalog.decrement_stock(
                        db, line.product_id, line.quantity
                    )
                    if not taken:
                        raise InsufficientStockError(
                            f"Insufficient stock for {line.name}", product_id=str(line.product_id)
                        )
                    uow.on_rollback(
                        partial(self.collaborators.catalog.restore_stock, db, line.product_id, line.quantity)
                    )
                await uow.checkpoint()

                now = self.clock()
                order = Order(
                    id=uuid.uuid4(),
                    order_number=generate_order_number(),
                    user_id=requester.user_id,
                    session_id=None if requester.user_id else requester.session_id,
                    customer_email=customer_email,
                    items=[line.snapshot() for line in lines],
                    shipping_address=address,
                    billing_address=billing,
                    shipping_method=shipping_rule.snapshot(totals.shipping_cost),
                    subtotal=totals.subtotal,
                    shipping_cost=totals.shipping_cost,
                    discount_amount=totals.discount_amount,
                    total_amount=totals.total,
                    currency=self.settings.currency,
                    promotion_code=quote.code if quote else None,
                    promotion_id=quote.promotion_id if quote else None,
                    promotion=quote.snapshot() if quote else None,
                    payment_method_type=chosen_rail.value,
                    payment_status=PaymentStatus.PENDING.value,
                    status=FulfillmentStatus.PENDING.value,
                    status_history=[],
                    payment_details={},
                    created_at=now,
                )
                append_history(order, "fulfillment", FulfillmentStatus.PENDING.value, "Order created", now)

                handle = await self._initiate(adapter, order)
                self._apply_handle(order, handle)
                db.add(order)
                await uow.checkpoint()
                uow.on_rollback(partial(self._remove_order, db, order.id))
                self._record_reference(uow, order, handle)

                # Gateway carts stay intact until capture so an abandoned approval can be retried
                if not adapter.is_synchronous:
                    await self.collaborators.carts.clear_cart(db, requester)
                    if quote is not None:
                        await self.collaborators.promotions.record_usage(
                            db, quote.promotion_id, requester.owner_key
                        )
        except Exception:
            metrics.record_order(chosen_rail.value, "rejected")
            raise

        duration = time.time() - start_time
        metrics.record_order(chosen_rail.value, "created", float(order.total_amount))
        metrics.record_checkout_duration(duration)
        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            rail=chosen_rail.value,
            total_amount=str(order.total_amount),
            promotion_code=order.promotion_code,
            duration_seconds=duration,
        )

        return CheckoutResult(order=order, rail_handle=handle.client_payload)

    async def _release_open_gateway_orders(self, db: AsyncSession, requester: Requester) -> None:
        """
        Supersede the requester's uncaptured gateway orders.

        Gateway carts are only cleared at capture, so checking out the same
        cart again would reserve its stock twice. Earlier orders still waiting
        for approval are cancelled and their stock returned before the new
        order is priced; a later capture of them is refused.
        """
        owner = (
            Order.user_id == requester.user_id
            if requester.user_id
            else Order.session_id == requester.session_id
        )
        result = await db.execute(
            select(Order)
            .where(
                owner,
                Order.payment_method_type == Rail.GATEWAY.value,
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.status == FulfillmentStatus.PENDING.value,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        now = self.clock()
        for order in result.scalars().all():
            for item in order.items:
                await self.collaborators.catalog.restore_stock(
                    db, uuid.UUID(item["product_id"]), int(item["quantity"])
                )
            order.status = FulfillmentStatus.CANCELLED.value
            order.cancelled_at = now
            append_history(
                order,
                "fulfillment",
                FulfillmentStatus.CANCELLED.value,
                "Superseded by a new checkout",
                now,
            )
            apply_payment_transition(
                order,
                PaymentStatus.FAILED,
                load_payment_details(order.payment_details),
                "Approval abandoned",
                now,
            )
            logger.info(
                "gateway_order_superseded",
                order_id=str(order.id),
                order_number=order.order_number,
            )

    @staticmethod
    async def _remove_order(db: AsyncSession, order_id: uuid.UUID) -> None:
        await db.execute(delete(PaymentReference).where(PaymentReference.order_id == order_id))
        await db.execute(delete(Order).where(Order.id == order_id))

    async def capture(
        self, order_id: uuid.UUID, provider_order_id: str, requester: Requester
    ) -> Dict[str, Any]:
        """
        Capture an approved gateway payment and finalize the order.

        Raises:
            NotFoundError: Unknown order
            AuthorizationError: Requester does not own the order
            ConflictError: Order already paid, otherwise final, or cancelled
            ValidationError: Wrong rail or provider order mismatch
            CaptureFailedError: Provider did not complete the capture
        """
        async with self.executor.unit("capture_payment") as uow:
            db = uow.session
            order = await load_order_for_update(db, order_id)
            authorize_requester(order, requester)

            if order.payment_method_type != Rail.GATEWAY.value:
                raise ValidationError("Order was not placed with the gateway payment method")
            status = PaymentStatus(order.payment_status)
            if status == PaymentStatus.COMPLETED:
                raise ConflictError("Order is already paid")
            if is_terminal(status):
                raise ConflictError(f"Order payment is {status.value}")
            if order.status == FulfillmentStatus.CANCELLED.value:
                raise ConflictError("Order has been cancelled")

            details = load_payment_details(order.payment_details)
            if not isinstance(details, GatewayDetails) or details.provider_order_id != provider_order_id:
                raise ValidationError("Payment does not match this order")

            adapter = self.adapters.get(Rail.GATEWAY)
            if adapter is None:
                raise ServiceUnavailableError("The gateway payment method is disabled")
            try:
                result = await adapter.capture(order, provider_order_id)
            except ProviderUnavailableError as e:
                logger.error("capture_unavailable", order_id=str(order.id), error=str(e))
                raise ServiceUnavailableError(
                    "The gateway payment service is temporarily unavailable"
                ) from e
            except ProviderError as e:
                logger.warning("capture_rejected", order_id=str(order.id), error=str(e))
                raise CaptureFailedError("Payment capture failed") from e

            if result.status != "COMPLETED":
                logger.warning(
                    "capture_not_completed",
                    order_id=str(order.id),
                    provider_status=result.status,
                )
                raise CaptureFailedError(
                    "Payment capture failed", provider_status=result.status
                )

            now = self.clock()
            captured = details.model_copy(
                update={
                    "capture_id": result.capture_id,
                    "payer_id": result.payer_id,
                    "payer_email": result.payer_email,
                    "captured_at": now,
                    "provider_status": result.status,
                }
            )
            apply_payment_transition(order, PaymentStatus.COMPLETED, captured, "Payment captured", now)
            await settle_paid_order(db, order, self.collaborators.carts, self.collaborators.promotions)
            enqueue_order_event(db, order, ORDER_COMPLETED)

        logger.info(
            "payment_captured",
            order_id=str(order.id),
            capture_id=result.capture_id,
        )
        return {"order_id": str(order.id), "status": "captured", "capture_id": result.capture_id}

    async def initiate_async_payment(
        self, order_id: uuid.UUID, requester: Requester
    ) -> Dict[str, Any]:
        """
        Return the crypto payment handle for a pending order.

        The stored address or invoice is reused while its rate lock holds. A
        still-pending order whose lock has lapsed gets a fresh quote. Orders
        already final or past their payment window are refused.
        """
        expired = False
        async with self.executor.unit("initiate_crypto_payment") as uow:
            db = uow.session
            order = await load_order_for_update(db, order_id)
            authorize_requester(order, requester)

            rail = Rail(order.payment_method_type)
            adapter = self.adapters.get(rail)
            if adapter is None or adapter.is_synchronous:
                raise ValidationError("Order does not use a crypto payment method")

            status = PaymentStatus(order.payment_status)
            if is_terminal(status):
                raise ConflictError(f"Order payment is {status.value}")

            details = load_payment_details(order.payment_details)
            now = self.clock()
            if isinstance(details, CryptoDetails) and details.is_expired(now):
                apply_payment_transition(
                    order, PaymentStatus.EXPIRED, details, "Payment window expired", now
                )
                expired = True
                payload: Dict[str, Any] = {}
            elif (
                status == PaymentStatus.PENDING
                and isinstance(details, CryptoDetails)
                and not details.rate_lock_valid(now)
            ):
                handle = await self._initiate(adapter, order)
                self._apply_handle(order, handle)
                self._record_reference(uow, order, handle)
                append_history(
                    order, "payment", status.value, "Payment quote refreshed", now
                )
                payload = handle.client_payload
                logger.info("crypto_quote_refreshed", order_id=str(order.id), rail=rail.value)
            else:
                payload = adapter.describe(details)

        if expired:
            raise ConflictError("Payment window has expired")
        return {"order_id": str(order.id), "payment_method": rail.value, **payload}

    async def get_payment_status(
        self, order_id: uuid.UUID, requester: Requester
    ) -> Dict[str, Any]:
        """
        Report payment progress.

        is_expired is derived from the stored expiry whatever the provider
        reported; a non-final order found expired is moved to expired.
        """
        async with self.executor.unit("payment_status") as uow:
            db = uow.session
            order = await load_order_for_update(db, order_id)
            authorize_requester(order, requester)

            details = load_payment_details(order.payment_details)
            now = self.clock()
            is_expired = isinstance(details, CryptoDetails) and details.is_expired(now)
            if is_expired and not is_terminal(PaymentStatus(order.payment_status)):
                apply_payment_transition(
                    order, PaymentStatus.EXPIRED, details, "Payment window expired", now
                )

            response: Dict[str, Any] = {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "payment_method": order.payment_method_type,
                "payment_status": order.payment_status,
                "status": order.status,
                "is_expired": is_expired,
                "total_amount": str(order.total_amount),
                "currency": order.currency,
            }
            if isinstance(details, CryptoDetails):
                response.update(
                    confirmations=details.confirmations,
                    required_confirmations=details.required_confirmations,
                    amount_received=str(details.amount_received),
                    expected_amount=str(details.expected_amount),
                    expires_at=details.expires_at.isoformat(),
                )
            return response
