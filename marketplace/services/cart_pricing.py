# marketplace/services/cart_pricing.py
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel
from marketplace.domain.errors import ValidationError
from marketplace.domain.pricing import DiscountRule, CartTotals, resolve_line, summarize
from marketplace.domain.schemas import ProductInfo
from marketplace.repos.promotion_repo import PromotionRepo
from marketplace.services.catalog_client import CatalogClient
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def _usable(promo, store_id: int) -> bool:
    return (
        promo is not None
        and promo.is_active
        and not promo.is_deleted
        and promo.store_id == store_id
    )


class CartPricer:
    """
    Re-runs the discount resolver over every line of a cart.
    Used after each cart mutation and once more at checkout.
    """

    def __init__(self, db: Session, catalog: CatalogClient):
        self.promotions = PromotionRepo(db)
        self.catalog = catalog

    def reprice(self, cart: CartModel) -> tuple[CartTotals, dict[int, ProductInfo]]:
        offer = coupon = None

        if cart.offer_id is not None:
            offer_model = self.promotions.get_offer(cart.offer_id, include_deleted=True)
            if _usable(offer_model, cart.store_id):
                offer = DiscountRule.from_model(offer_model)
            else:
                logger.info(f"Offer {cart.offer_id} no longer usable, dropped from cart {cart.id}")
                cart.offer_id = None

        if cart.coupon_id is not None:
            coupon_model = self.promotions.get_coupon(cart.coupon_id, include_deleted=True)
            if _usable(coupon_model, cart.store_id):
                coupon = DiscountRule.from_model(coupon_model)
            else:
                logger.info(f"Coupon {cart.coupon_id} no longer usable, dropped from cart {cart.id}")
                cart.coupon_id = None

        products = self.catalog.fetch_products(item.product_id for item in cart.items)

        for item in cart.items:
            product = products.get(item.product_id)
            if product is None or product.store_id != cart.store_id:
                raise ValidationError(f"Product {item.product_id} is no longer available")

            pricing = product.pricing_for(item.variant, item.size)
            line = resolve_line(
                item.product_id,
                pricing.price,
                pricing.selling_price,
                offer=offer,
                coupon=coupon,
            )

            item.price = line.base_price
            item.selling_price = line.selling_price
            item.discount_amt = line.product_discount
            item.discount_pct = line.product_discount_pct
            item.offer_discount = line.offer_discount
            item.offer_discount_pct = line.offer_discount_pct
            item.coupon_discount = line.coupon_discount
            item.coupon_discount_pct = line.coupon_discount_pct
            item.effective_price = line.effective_price

        return summarize(cart.items), products
