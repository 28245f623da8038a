from decimal import Decimal
from types import SimpleNamespace

from marketplace.domain.pricing import DiscountRule, resolve_line, summarize
from marketplace.domain.statuses import DiscountType


def offer_10_pct_capped_80():
    return DiscountRule(kind=DiscountType.PERCENTAGE, percentage=Decimal("10"), max_discount=Decimal("80"))


def coupon_50_flat():
    return DiscountRule(kind=DiscountType.AMOUNT, amount=Decimal("50"))


def test_offer_cap_then_flat_coupon_gives_870():
    line = resolve_line(1, "1000", "1000", offer=offer_10_pct_capped_80(), coupon=coupon_50_flat())

    assert line.offer_discount == Decimal("80.00")
    assert line.coupon_discount == Decimal("50.00")
    assert line.effective_price == Decimal("870.00")


def test_coupon_percentage_applies_to_offer_adjusted_price():
    offer = DiscountRule(kind=DiscountType.AMOUNT, amount=Decimal("100"))
    coupon = DiscountRule(kind=DiscountType.PERCENTAGE, percentage=Decimal("10"))

    line = resolve_line(1, "1000", "1000", offer=offer, coupon=coupon)

    # 10% of 900, not of 1000
    assert line.coupon_discount == Decimal("90.00")
    assert line.effective_price == Decimal("810.00")


def test_product_discount_comes_from_selling_price():
    line = resolve_line(1, "200", "150")

    assert line.product_discount == Decimal("50.00")
    assert line.product_discount_pct == Decimal("25.00")
    assert line.effective_price == Decimal("150.00")


def test_selling_price_above_list_price_is_clamped():
    line = resolve_line(1, "100", "120")

    assert line.selling_price == Decimal("100.00")
    assert line.product_discount == Decimal("0.00")


def test_effective_price_never_negative():
    huge = DiscountRule(kind=DiscountType.AMOUNT, amount=Decimal("5000"))

    line = resolve_line(1, "300", "300", offer=huge, coupon=coupon_50_flat())

    assert line.offer_discount == Decimal("300.00")
    assert line.coupon_discount == Decimal("0")
    assert line.effective_price == Decimal("0")


def test_rule_limited_to_listed_products():
    offer = DiscountRule(
        kind=DiscountType.PERCENTAGE, percentage=Decimal("10"), product_ids=frozenset({7})
    )

    assert resolve_line(1, "1000", "1000", offer=offer).offer_discount == Decimal("0")
    assert resolve_line(7, "1000", "1000", offer=offer).offer_discount == Decimal("100.00")


def test_percentage_rounds_half_up():
    offer = DiscountRule(kind=DiscountType.PERCENTAGE, percentage=Decimal("12.5"))

    # 12.5% of 99.99 = 12.49875
    assert resolve_line(1, "99.99", "99.99", offer=offer).offer_discount == Decimal("12.50")


def test_summarize_multiplies_by_quantity():
    lines = [
        SimpleNamespace(quantity=2, price=Decimal("200"), discount_amt=Decimal("50"),
                        offer_discount=Decimal("10"), coupon_discount=Decimal("0"), effective_price=Decimal("140")),
        SimpleNamespace(quantity=1, price=Decimal("1000"), discount_amt=Decimal("0"),
                        offer_discount=Decimal("80"), coupon_discount=Decimal("50"), effective_price=Decimal("870")),
    ]

    totals = summarize(lines)

    assert totals.total_without_discount == Decimal("1400.00")
    assert totals.product_discount == Decimal("100.00")
    assert totals.offer_discount == Decimal("100.00")
    assert totals.coupon_discount == Decimal("50.00")
    assert totals.total_discount == Decimal("250.00")
    assert totals.subtotal == Decimal("1150.00")
    assert totals.total_without_discount - totals.total_discount == totals.subtotal
    assert totals.item_count == 3
