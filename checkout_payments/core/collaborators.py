"""
Collaborators consumed by checkout.

Catalog, cart, shipping and promotion sources are narrow protocols; the
SQL implementations share the caller's session so stock, order, cart and
promotion changes commit together. Loyalty credit and notifications are
called after payment from the outbox.
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_payments.core.errors import (
    AuthenticationRequiredError,
    UnavailableProductError,
    ValidationError,
)
from checkout_payments.core.pricing import quantize_money
from checkout_payments.database.models import (
    Cart,
    CartItem,
    LoyaltyCredit,
    Product,
    Promotion,
    ShippingMethod,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Requester:
    """Caller identity supplied by the outer auth layer: a user or an anonymous session."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.user_id and not self.session_id:
            raise AuthenticationRequiredError("A user id or session id is required")

    @property
    def owner_key(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"session:{self.session_id}"

    def owns(self, user_id: Optional[str], session_id: Optional[str]) -> bool:
        if user_id:
            return self.user_id == user_id
        return self.session_id is not None and self.session_id == session_id


@dataclass(frozen=True)
class ShippingRule:
    """Cost function of one shipping method."""

    id: uuid.UUID
    name: str
    code: str
    base_cost: Decimal
    free_shipping_threshold: Optional[Decimal]
    supported_countries: tuple
    min_order_value: Decimal
    max_order_value: Optional[Decimal]
    max_weight_kg: Optional[Decimal]

    @classmethod
    def from_model(cls, method: ShippingMethod) -> "ShippingRule":
        return cls(
            id=method.id,
            name=method.name,
            code=method.code,
            base_cost=method.base_cost,
            free_shipping_threshold=method.free_shipping_threshold,
            supported_countries=tuple(c.upper() for c in method.supported_countries or []),
            min_order_value=method.min_order_value,
            max_order_value=method.max_order_value,
            max_weight_kg=method.max_weight_kg,
        )

    def cost(
        self, subtotal: Decimal, weight_kg: Decimal, address: Mapping[str, Any]
    ) -> Optional[Decimal]:
        """
        Shipping cost for a cart, or None when the method cannot serve it.

        The method rejects unsupported destination countries, order values
        outside its range and carts heavier than its limit. Orders at or
        above the free shipping threshold ship free.
        """
        country = str(address.get("country", "")).upper()
        if self.supported_countries and country not in self.supported_countries:
            return None
        if subtotal < self.min_order_value:
            return None
        if self.max_order_value is not None and subtotal > self.max_order_value:
            return None
        if self.max_weight_kg is not None and weight_kg > self.max_weight_kg:
            return None
        if self.free_shipping_threshold is not None and subtotal >= self.free_shipping_threshold:
            return Decimal("0.00")
        return quantize_money(self.base_cost)

    def snapshot(self, cost: Decimal) -> Dict[str, Any]:
        return {"id": str(self.id), "name": self.name, "code": self.code, "cost": str(cost)}


class Catalog(Protocol):
    async def get_product(self, db: AsyncSession, product_id: uuid.UUID) -> Optional[Product]: ...

    async def decrement_stock(
        self, db: AsyncSession, product_id: uuid.UUID, quantity: int
    ) -> bool: ...

    async def restore_stock(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> None: ...


class CartStore(Protocol):
    async def get_cart(self, db: AsyncSession, requester: Requester) -> Optional[Cart]: ...

    async def clear_cart(self, db: AsyncSession, requester: Requester) -> None: ...


class ShippingCatalog(Protocol):
    async def get_shipping_method(
        self, db: AsyncSession, method_id: uuid.UUID
    ) -> Optional[ShippingRule]: ...


class PromotionBook(Protocol):
    async def resolve_promotion(self, db: AsyncSession, code: str) -> Optional[Promotion]: ...

    async def record_usage(
        self, db: AsyncSession, promotion_id: uuid.UUID, owner_key: str
    ) -> None: ...


class ReferralCreditor(Protocol):
    async def credit(self, order_event: Dict[str, Any]) -> None: ...


class OrderNotifier(Protocol):
    async def order_confirmed(self, order_event: Dict[str, Any]) -> None: ...

    async def order_cancelled(self, order_event: Dict[str, Any]) -> None: ...


class SqlCatalog:
    """Catalog backed by the products table."""

    async def get_product(self, db: AsyncSession, product_id: uuid.UUID) -> Optional[Product]:
        return await db.get(Product, product_id, populate_existing=True)

    async def decrement_stock(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> bool:
        """Conditionally take stock; False when less than quantity is left."""
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def restore_stock(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> None:
        await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )


class SqlCartStore:
    """Cart store backed by the carts tables."""

    def __init__(self, max_items: int = 50, max_quantity: int = 99):
        self.max_items = max_items
        self.max_quantity = max_quantity

    @staticmethod
    def _owner_clause(requester: Requester) -> Any:
        if requester.user_id:
            return Cart.user_id == requester.user_id
        return Cart.session_id == requester.session_id

    async def get_cart(self, db: AsyncSession, requester: Requester) -> Optional[Cart]:
        result = await db.execute(
            select(Cart)
            .where(self._owner_clause(requester))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def clear_cart(self, db: AsyncSession, requester: Requester) -> None:
        cart = await self.get_cart(db, requester)
        if cart is None:
            return
        await db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        await db.execute(
            update(Cart)
            .where(Cart.id == cart.id)
            .values(subtotal=Decimal("0.00"), promotion_code=None)
            .execution_options(synchronize_session=False)
        )

    async def add_item(
        self, db: AsyncSession, requester: Requester, product: Product, quantity: int
    ) -> Cart:
        """
        Add a product to the requester's cart, creating the cart if needed.

        Raises:
            ValidationError: On quantity or cart size limits
            UnavailableProductError: If the product is inactive
        """
        if not 1 <= quantity <= self.max_quantity:
            raise ValidationError(f"Quantity must be between 1 and {self.max_quantity}")
        if not product.is_active:
            raise UnavailableProductError(f"{product.name} is not available")

        cart = await self.get_cart(db, requester)
        if cart is None:
            cart = Cart(
                user_id=requester.user_id,
                session_id=None if requester.user_id else requester.session_id,
            )
            db.add(cart)
            await db.flush()
            await db.refresh(cart, attribute_names=["items"])

        existing = next((item for item in cart.items if item.product_id == product.id), None)
        if existing is None:
            if len(cart.items) >= self.max_items:
                raise ValidationError(f"A cart can hold at most {self.max_items} items")
            existing = CartItem(
                product_id=product.id,
                name=product.name,
                slug=product.slug,
                unit_price=product.price,
                quantity=0,
                subtotal=Decimal("0.00"),
            )
            cart.items.append(existing)

        new_quantity = existing.quantity + quantity
        if new_quantity > self.max_quantity:
            raise ValidationError(f"Quantity must be between 1 and {self.max_quantity}")
        existing.quantity = new_quantity
        existing.unit_price = product.price
        existing.subtotal = quantize_money(product.price * new_quantity)
        cart.subtotal = quantize_money(sum((item.subtotal for item in cart.items), Decimal("0")))
        await db.flush()
        return cart


class SqlShippingCatalog:
    async def get_shipping_method(
        self, db: AsyncSession, method_id: uuid.UUID
    ) -> Optional[ShippingRule]:
        method = await db.get(ShippingMethod, method_id)
        if method is None or not method.is_active:
            return None
        return ShippingRule.from_model(method)


class SqlPromotionBook:
    """Promotions backed by the promotions table."""

    async def resolve_promotion(self, db: AsyncSession, code: str) -> Optional[Promotion]:
        result = await db.execute(
            select(Promotion).where(
                Promotion.code == code.strip().upper(), Promotion.is_deleted.is_(False)
            )
        )
        return result.scalar_one_or_none()

    async def record_usage(self, db: AsyncSession, promotion_id: uuid.UUID, owner_key: str) -> None:
        """Count one use of the promotion for this owner."""
        result = await db.execute(
            select(Promotion).where(Promotion.id == promotion_id).with_for_update()
        )
        promotion = result.scalar_one_or_none()
        if promotion is None:
            logger.warning("promotion_usage_target_missing", promotion_id=str(promotion_id))
            return
        users_used = dict(promotion.users_used or {})
        users_used[owner_key] = users_used.get(owner_key, 0) + 1
        promotion.users_used = users_used
        promotion.times_used = promotion.times_used + 1
        await db.flush()


class SqlLoyaltyCreditor:
    """
    Grants one loyalty point per whole currency unit of a paid order.

    Guest orders earn nothing. A second credit for the same order is ignored.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def credit(self, order_event: Dict[str, Any]) -> None:
        user_id = order_event.get("user_id")
        if not user_id:
            logger.info("loyalty_credit_skipped_guest", order_id=order_event.get("order_id"))
            return

        points = int(Decimal(order_event["total_amount"]))
        async with self.session_factory() as db:
            db.add(
                LoyaltyCredit(
                    order_id=uuid.UUID(order_event["order_id"]),
                    user_id=user_id,
                    points=points,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("loyalty_credit_already_granted", order_id=order_event["order_id"])
                return

        logger.info(
            "loyalty_credit_granted",
            order_id=order_event["order_id"],
            user_id=user_id,
            points=points,
        )


class LoggingNotifier:
    """Hands customer notifications to the log stream for the mailer to pick up."""

    async def order_confirmed(self, order_event: Dict[str, Any]) -> None:
        logger.info(
            "order_confirmation_requested",
            order_id=order_event.get("order_id"),
            order_number=order_event.get("order_number"),
            customer_email=order_event.get("customer_email"),
        )

    async def order_cancelled(self, order_event: Dict[str, Any]) -> None:
        logger.info(
            "order_cancellation_notice_requested",
            order_id=order_event.get("order_id"),
            order_number=order_event.get("order_number"),
            refund_status=(order_event.get("refund") or {}).get("status"),
        )
