# marketplace/domain/pricing.py
"""
Discount resolution for cart lines.

Order of application is fixed:
  1. the product's own discount is baked into its selling price,
  2. the offer is applied to the selling price,
  3. the coupon is applied to the offer-adjusted price.

Every function here is pure; the cart service re-runs them on each mutation.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from marketplace.domain.money import ZERO, HUNDRED, quantize, percent_of
from marketplace.domain.statuses import DiscountType


@dataclass(frozen=True)
class DiscountRule:
    kind: str
    amount: Decimal = ZERO
    percentage: Decimal = ZERO
    max_discount: Decimal = ZERO
    product_ids: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_model(cls, promo) -> "DiscountRule":
        """Build a rule from an OfferModel or CouponModel."""
        return cls(
            kind=promo.discount_type,
            amount=quantize(promo.discount_amount or 0),
            percentage=Decimal(str(promo.discount_percentage or 0)),
            max_discount=quantize(promo.max_discount or 0),
            product_ids=frozenset(p.product_id for p in promo.products),
        )

    def applies_to(self, product_id: int) -> bool:
        # empty product list means store-wide
        return not self.product_ids or product_id in self.product_ids

    def discount_for(self, current_price: Decimal) -> tuple[Decimal, Decimal]:
        """Return (discount, percentage) for one unit at current_price."""
        if current_price <= ZERO:
            return ZERO, ZERO

        if self.kind == DiscountType.PERCENTAGE:
            discount = percent_of(current_price, self.percentage)
            if self.max_discount > ZERO:
                discount = min(discount, self.max_discount)
            discount = min(discount, current_price)
            return discount, quantize(self.percentage)

        discount = min(self.amount, current_price)
        return discount, quantize(discount * HUNDRED / current_price)


@dataclass(frozen=True)
class LineBreakdown:
    base_price: Decimal
    selling_price: Decimal
    product_discount: Decimal
    product_discount_pct: Decimal
    offer_discount: Decimal
    offer_discount_pct: Decimal
    coupon_discount: Decimal
    coupon_discount_pct: Decimal
    effective_price: Decimal


@dataclass(frozen=True)
class CartTotals:
    total_without_discount: Decimal
    product_discount: Decimal
    offer_discount: Decimal
    coupon_discount: Decimal
    total_discount: Decimal
    subtotal: Decimal
    item_count: int


def resolve_line(
    product_id: int,
    base_price,
    selling_price,
    offer: DiscountRule | None = None,
    coupon: DiscountRule | None = None,
) -> LineBreakdown:
    base = quantize(base_price)
    # a selling price above list price would make the effective price exceed it
    selling = min(quantize(selling_price), base)

    product_discount = base - selling
    product_pct = quantize(product_discount * HUNDRED / base) if base > ZERO else ZERO

    current = selling

    offer_discount = offer_pct = ZERO
    if offer is not None and offer.applies_to(product_id):
        offer_discount, offer_pct = offer.discount_for(current)
        current -= offer_discount

    coupon_discount = coupon_pct = ZERO
    if coupon is not None and coupon.applies_to(product_id):
        coupon_discount, coupon_pct = coupon.discount_for(current)
        current -= coupon_discount

    return LineBreakdown(
        base_price=base,
        selling_price=selling,
        product_discount=product_discount,
        product_discount_pct=product_pct,
        offer_discount=offer_discount,
        offer_discount_pct=offer_pct,
        coupon_discount=coupon_discount,
        coupon_discount_pct=coupon_pct,
        effective_price=max(ZERO, current),
    )


def summarize(lines: Iterable) -> CartTotals:
    """
    Aggregate totals over cart lines (or snapshot lines).

    Each line needs quantity, price, discount_amt, offer_discount,
    coupon_discount and effective_price.
    """
    total = product = offer = coupon = subtotal = ZERO
    count = 0
    for line in lines:
        qty = line.quantity
        total += quantize(line.price) * qty
        product += quantize(line.discount_amt) * qty
        offer += quantize(line.offer_discount) * qty
        coupon += quantize(line.coupon_discount) * qty
        subtotal += quantize(line.effective_price) * qty
        count += qty

    return CartTotals(
        total_without_discount=total,
        product_discount=product,
        offer_discount=offer,
        coupon_discount=coupon,
        total_discount=product + offer + coupon,
        subtotal=subtotal,
        item_count=count,
    )
