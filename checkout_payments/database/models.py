"""SQLAlchemy database models for checkout and payment reconciliation."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from checkout_payments.core.clock import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class TZDateTime(TypeDecorator):
    """DateTime that always comes back timezone-aware (UTC)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """Catalog product with live price and stock."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight_kg: Mapped[Decimal] = mapped_column(Numeric(8, 3), nullable=False, default=Decimal("0"))
    category_ids: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("price >= 0", name="non_negative_price"),
        CheckConstraint("stock_quantity >= 0", name="non_negative_stock"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, slug={self.slug}, stock={self.stock_quantity})>"


class Cart(Base):
    """
    Shopping cart owned by either a user or an anonymous session.

    Mutable until converted into an order, then cleared.
    """

    __tablename__ = "carts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    promotion_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["CartItem"]] = relationship(
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("(user_id IS NULL) <> (session_id IS NULL)", name="single_cart_owner"),
    )

    def __repr__(self) -> str:
        """String representation of Cart."""
        return f"<Cart(id={self.id}, user_id={self.user_id}, session_id={self.session_id})>"


class CartItem(Base):
    """Cart line; name and price are display copies, re-read from the catalog at checkout."""

    __tablename__ = "cart_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    cart: Mapped[Cart] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="positive_quantity"),
        UniqueConstraint("cart_id", "product_id", name="uq_cart_product"),
    )


class ShippingMethod(Base):
    """Shipping option with its cost and eligibility rules."""

    __tablename__ = "shipping_methods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    base_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    free_shipping_threshold: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    # Empty list means every country is served
    supported_countries: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    min_order_value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    max_order_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    max_weight_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation of ShippingMethod."""
        return f"<ShippingMethod(id={self.id}, code={self.code}, base_cost={self.base_cost})>"


class Promotion(Base):
    """Promotion code with its eligibility window and usage limits."""

    __tablename__ = "promotions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    minimum_order_subtotal: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    applicable_product_ids: Mapped[List[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    applicable_category_ids: Mapped[List[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    total_usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    per_user_usage_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # owner key -> number of uses
    users_used: Mapped[Dict[str, int]] = mapped_column(JSONType, nullable=False, default=dict)
    starts_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(
            "type IN ('percentage', 'fixed_amount', 'free_shipping')",
            name="valid_promotion_type",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Promotion."""
        return f"<Promotion(code={self.code}, type={self.type}, value={self.value})>"


class Order(Base):
    """
    Order records table.

    Holds an immutable snapshot of items and prices taken at checkout, the
    chosen rail's payment details and two independent lifecycles: payment
    status and fulfillment status. The version column guards every
    read-modify-write against lost updates.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    billing_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    shipping_method: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    promotion_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    promotion_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    promotion: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    payment_method_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    refund: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint(
            "payment_method_type IN ('gateway', 'address-crypto', 'invoice-crypto')",
            name="valid_payment_method",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'awaiting_confirmation', 'underpaid', "
            "'completed', 'expired', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'shipped', 'out_for_delivery', "
            "'delivered', 'cancelled', 'returned')",
            name="valid_fulfillment_status",
        ),
        Index("idx_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"payment_status={self.payment_status}, status={self.status})>"
        )


class PaymentReference(Base):
    """
    Webhook resolution keys.

    One row per address, invoice id or provider order id ever issued for an
    order, so callbacks for a superseded quote still find their order.
    """

    __tablename__ = "payment_references"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    rail: Mapped[str] = mapped_column(String(32), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("rail", "reference", name="uq_payment_reference"),)


class ProcessedWebhookEvent(Base):
    """
    Durable webhook replay ledger.

    Written in the same transaction as the change the event caused.
    """

    __tablename__ = "processed_webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    rail: Mapped[str] = mapped_column(String(32), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("rail", "fingerprint", name="uq_webhook_fingerprint"),)

    def __repr__(self) -> str:
        """String representation of ProcessedWebhookEvent."""
        return f"<ProcessedWebhookEvent(rail={self.rail}, fingerprint={self.fingerprint})>"


class LoyaltyCredit(Base):
    """Loyalty points granted once per paid order."""

    __tablename__ = "loyalty_credits"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as domain changes,
    then dispatched asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
