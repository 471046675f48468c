"""
Order pricing.

Computes line totals, promotion discounts and order totals with Decimal
arithmetic. Totals always satisfy: subtotal + shipping - discount == total.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from checkout_payments.database.models import Promotion

TWO_PLACES = Decimal("0.01")


def quantize_money(value: Any) -> Decimal:
    """Round a monetary amount to pence."""
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricedLine:
    """Cart line re-priced against the live catalog."""

    product_id: uuid.UUID
    name: str
    slug: str
    sku: Optional[str]
    unit_price: Decimal
    quantity: int
    weight_kg: Decimal = Decimal("0")
    category_ids: Sequence[str] = field(default_factory=tuple)

    @property
    def line_total(self) -> Decimal:
        return quantize_money(self.unit_price * self.quantity)

    def snapshot(self) -> Dict[str, Any]:
        """Immutable item copy stored on the order."""
        return {
            "product_id": str(self.product_id),
            "name": self.name,
            "slug": self.slug,
            "sku": self.sku,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "line_total": str(self.line_total),
        }


@dataclass(frozen=True)
class PromotionQuote:
    """Outcome of applying one promotion to a priced cart."""

    promotion_id: uuid.UUID
    code: str
    type: str
    discount_amount: Decimal
    shipping_waived: Decimal = Decimal("0")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "promotion_id": str(self.promotion_id),
            "code": self.code,
            "type": self.type,
            "discount_amount": str(self.discount_amount),
            "shipping_waived": str(self.shipping_waived),
        }


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal

    def __post_init__(self) -> None:
        if self.subtotal + self.shipping_cost - self.discount_amount != self.total:
            raise ArithmeticError("Order totals do not reconcile")


class PromotionNotApplicable(Exception):
    """Raised when a resolved promotion cannot be applied to this cart."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def compute_subtotal(lines: Sequence[PricedLine]) -> Decimal:
    return quantize_money(sum((line.line_total for line in lines), Decimal("0")))


def total_weight(lines: Sequence[PricedLine]) -> Decimal:
    return sum((line.weight_kg * line.quantity for line in lines), Decimal("0"))


def _applicable_lines(promotion: Promotion, lines: Sequence[PricedLine]) -> List[PricedLine]:
    """Lines the promotion targets; no product or category filter means every line."""
    product_ids = set(promotion.applicable_product_ids or [])
    category_ids = set(promotion.applicable_category_ids or [])
    if not product_ids and not category_ids:
        return list(lines)
    return [
        line
        for line in lines
        if str(line.product_id) in product_ids or category_ids.intersection(line.category_ids)
    ]


def apply_promotion(
    promotion: Promotion,
    lines: Sequence[PricedLine],
    shipping_cost: Decimal,
    owner_key: str,
    now: datetime,
) -> PromotionQuote:
    """
    Evaluate a promotion against a priced cart.

    Args:
        promotion: Resolved promotion
        lines: Live-priced cart lines
        shipping_cost: Shipping cost before any promotion
        owner_key: Cart owner used for per-user usage limits
        now: Evaluation time

    Returns:
        PromotionQuote: Discount to apply

    Raises:
        PromotionNotApplicable: If any eligibility rule fails
    """
    if promotion.is_deleted or promotion.status != "active":
        raise PromotionNotApplicable("inactive")
    if not (promotion.starts_at <= now <= promotion.ends_at):
        raise PromotionNotApplicable("outside_validity_window")
    if promotion.total_usage_limit is not None and promotion.times_used >= promotion.total_usage_limit:
        raise PromotionNotApplicable("usage_limit_reached")
    if (promotion.users_used or {}).get(owner_key, 0) >= promotion.per_user_usage_limit:
        raise PromotionNotApplicable("user_limit_reached")

    subtotal = compute_subtotal(lines)
    if subtotal < promotion.minimum_order_subtotal:
        raise PromotionNotApplicable("minimum_subtotal_not_met")

    applicable = compute_subtotal(_applicable_lines(promotion, lines))
    if applicable <= 0:
        raise PromotionNotApplicable("no_applicable_items")

    if promotion.type == "percentage":
        discount = min(quantize_money(applicable * promotion.value / 100), applicable)
        return PromotionQuote(promotion.id, promotion.code, promotion.type, discount)
    if promotion.type == "fixed_amount":
        discount = min(quantize_money(promotion.value), applicable)
        return PromotionQuote(promotion.id, promotion.code, promotion.type, discount)
    if promotion.type == "free_shipping":
        return PromotionQuote(
            promotion.id,
            promotion.code,
            promotion.type,
            Decimal("0.00"),
            shipping_waived=quantize_money(shipping_cost),
        )
    raise PromotionNotApplicable("unknown_type")


def compute_totals(
    lines: Sequence[PricedLine],
    shipping_cost: Decimal,
    promotion: Optional[PromotionQuote] = None,
) -> OrderTotals:
    """Compute order totals; free shipping zeroes the shipping charge instead of discounting."""
    subtotal = compute_subtotal(lines)
    shipping = quantize_money(shipping_cost)
    discount = Decimal("0.00")
    if promotion is not None:
        if promotion.shipping_waived > 0:
            shipping = Decimal("0.00")
        discount = promotion.discount_amount
    return OrderTotals(
        subtotal=subtotal,
        shipping_cost=shipping,
        discount_amount=discount,
        total=subtotal + shipping - discount,
    )
