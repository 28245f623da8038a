# marketplace/services/cart_service.py
from dataclasses import asdict
from typing import Any, Callable, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel, utcnow
from marketplace.data.models.cart_item import CartItemModel
from marketplace.domain.errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    InvariantViolationError,
)
from marketplace.domain.pricing import summarize
from marketplace.domain.statuses import CartState
from marketplace.repos.cart_repo import CartRepo
from marketplace.repos.promotion_repo import PromotionRepo
from marketplace.services.cart_pricing import CartPricer
from marketplace.services.catalog_client import CatalogClient
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def cart_to_dict(cart: CartModel) -> Dict[str, Any]:
    return {
        "cart_id": cart.id,
        "user_id": cart.user_id,
        "store_id": cart.store_id,
        "state": cart.state,
        "version": cart.version,
        "is_deleted": cart.is_deleted,
        "coupon_id": cart.coupon_id,
        "offer_id": cart.offer_id,
        "items": [
            {
                "product_id": i.product_id,
                "variant": i.variant,
                "size": i.size,
                "quantity": i.quantity,
                "price": i.price,
                "selling_price": i.selling_price,
                "discount_amt": i.discount_amt,
                "discount_pct": i.discount_pct,
                "offer_discount": i.offer_discount,
                "offer_discount_pct": i.offer_discount_pct,
                "coupon_discount": i.coupon_discount,
                "coupon_discount_pct": i.coupon_discount_pct,
                "effective_price": i.effective_price,
            }
            for i in cart.items
        ],
        "summary": asdict(summarize(cart.items)),
    }


class CartService:
    """
    Commands (add, remove, set quantity, coupon/offer, clear) mutate the cart
    under optimistic locking on carts.version; queries only read.

    Stock is checked but never reserved: two carts can both pass the check for
    the last unit. Stock is decremented at fulfilment, outside this service.
    """

    def __init__(self, db: Session, catalog: CatalogClient):
        self.repo = CartRepo(db)
        self.promotions = PromotionRepo(db)
        self.catalog = catalog
        self.pricer = CartPricer(db, catalog)

    # queries

    def _owned_cart(self, cart_id: int, user_id: int) -> CartModel:
        cart = self.repo.get_cart(cart_id)
        if not cart or cart.user_id != user_id:
            raise NotFoundError("Cart not found")
        return cart

    def get_cart(self, cart_id: int, user_id: int) -> Dict[str, Any]:
        return cart_to_dict(self._owned_cart(cart_id, user_id))

    def get_active_cart(self, user_id: int, store_id: int) -> Dict[str, Any]:
        cart = self.repo.get_active_cart(user_id, store_id)
        if not cart:
            raise NotFoundError("No active cart for this store")
        return cart_to_dict(cart)

    def item_count(self, user_id: int, store_id: int | None = None) -> Dict[str, Any]:
        carts = self.repo.list_active_carts(user_id)
        count = sum(
            i.quantity
            for c in carts
            if store_id is None or c.store_id == store_id
            for i in c.items
        )
        return {"count": count}

    def check_product(self, user_id: int, product_id: int, variant: str | None = None, size: str | None = None) -> Dict[str, Any]:
        for cart in self.repo.list_active_carts(user_id):
            for item in cart.items:
                if item.matches(product_id, variant, size):
                    return {"in_cart": True, "quantity": item.quantity, "cart_id": cart.id}
        return {"in_cart": False, "quantity": 0, "cart_id": None}

    # commands

    def _mutable_cart(self, cart_id: int, user_id: int) -> CartModel:
        cart = self._owned_cart(cart_id, user_id)
        if cart.state != CartState.ACTIVE:
            raise InvariantViolationError(f"Cart {cart_id} is {cart.state} and can no longer be modified")
        return cart

    def _check_stock(self, store_id: int, product_id: int, quantity: int, variant, size):
        product = self.catalog.fetch_product(product_id)
        if product is None or product.store_id != store_id:
            raise NotFoundError("Product not found or does not belong to this store")

        pricing = product.pricing_for(variant, size)
        if quantity > pricing.inventory:
            raise ValidationError("Not enough inventory available for this product")

    def _mutate(self, cart: CartModel, change: Callable[[CartModel], None], action: str) -> Dict[str, Any]:
        """
        Apply change, re-price every line and bump the version with
        UPDATE ... WHERE version = :old; zero rows means a concurrent writer won.
        """
        old_version = cart.version
        try:
            change(cart)
            self.pricer.reprice(cart)
            self.repo.flush()

            rowcount = self.repo.update_cart_version(
                cart_id=cart.id,
                old_version=old_version,
                new_data={"version": old_version + 1, "updated_at": utcnow()},
            )
            if rowcount == 0:
                raise ConflictError("Cart was modified by another request, please retry")
        except Exception:
            self.repo.rollback()
            raise

        self.repo.commit()
        logger.info(f"Cart {cart.id}: {action}, new version {old_version + 1}")
        return cart_to_dict(cart)

    @staticmethod
    def _soft_delete_if_empty(cart: CartModel):
        # an empty cart never stays active
        if not cart.items:
            cart.is_deleted = True
            cart.deleted_at = utcnow()
            cart.coupon_id = None
            cart.offer_id = None

    @staticmethod
    def _find_item(cart: CartModel, product_id: int, variant, size) -> CartItemModel:
        item = next((i for i in cart.items if i.matches(product_id, variant, size)), None)
        if item is None:
            raise NotFoundError(f"Product {product_id} is not in the cart")
        return item

    def add_or_update_item(
        self,
        user_id: int,
        store_id: int,
        product_id: int,
        quantity: int,
        variant: str | None = None,
        size: str | None = None,
    ) -> Dict[str, Any]:
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        self._check_stock(store_id, product_id, quantity, variant, size)

        cart = self.repo.get_active_cart(user_id, store_id)
        if cart is None:
            try:
                cart = self.repo.create_cart(
                    CartModel(user_id=user_id, store_id=store_id, state=CartState.ACTIVE, version=1)
                )
            except IntegrityError:
                # lost the race on uq_carts_active_user_store
                self.repo.rollback()
                raise ConflictError("Another request created this cart, please retry")
            logger.info(f"Created cart {cart.id} for user {user_id} in store {store_id}")

        def change(c: CartModel):
            existing = next((i for i in c.items if i.matches(product_id, variant, size)), None)
            if existing:
                existing.quantity = quantity
            else:
                c.items.append(
                    CartItemModel(product_id=product_id, variant=variant, size=size, quantity=quantity)
                )

        return self._mutate(cart, change, f"set product {product_id} x{quantity}")

    def set_quantity(
        self,
        user_id: int,
        cart_id: int,
        product_id: int,
        quantity: int,
        variant: str | None = None,
        size: str | None = None,
    ) -> Dict[str, Any]:
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        cart = self._mutable_cart(cart_id, user_id)
        item = self._find_item(cart, product_id, variant, size)
        self._check_stock(cart.store_id, product_id, quantity, variant, size)

        def change(c: CartModel):
            item.quantity = quantity

        return self._mutate(cart, change, f"quantity of product {product_id} -> {quantity}")

    def remove_item(
        self,
        user_id: int,
        cart_id: int,
        product_id: int,
        variant: str | None = None,
        size: str | None = None,
    ) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)
        item = self._find_item(cart, product_id, variant, size)

        def change(c: CartModel):
            c.items.remove(item)
            self._soft_delete_if_empty(c)

        return self._mutate(cart, change, f"removed product {product_id}")

    def clear(self, user_id: int, cart_id: int) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)

        def change(c: CartModel):
            c.items.clear()
            self._soft_delete_if_empty(c)

        return self._mutate(cart, change, "cleared")

    def apply_coupon(self, user_id: int, cart_id: int, code: str) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)

        coupon = self.promotions.get_coupon_by_code(cart.store_id, normalize_code(code))
        if not coupon:
            raise NotFoundError("Coupon not found for this store")
        if not coupon.is_active:
            raise ValidationError("Coupon is not active")

        def change(c: CartModel):
            c.coupon_id = coupon.id

        return self._mutate(cart, change, f"applied coupon {coupon.code}")

    def remove_coupon(self, user_id: int, cart_id: int) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)
        if cart.coupon_id is None:
            raise ValidationError("No coupon is applied to this cart")

        def change(c: CartModel):
            c.coupon_id = None

        return self._mutate(cart, change, "removed coupon")

    def apply_offer(self, user_id: int, cart_id: int, offer_id: int) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)

        offer = self.promotions.get_offer(offer_id)
        if not offer or offer.store_id != cart.store_id:
            raise NotFoundError("Offer not found for this store")
        if not offer.is_active:
            raise ValidationError("Offer is not active")

        def change(c: CartModel):
            c.offer_id = offer.id

        return self._mutate(cart, change, f"applied offer {offer.id}")

    def remove_offer(self, user_id: int, cart_id: int) -> Dict[str, Any]:
        cart = self._mutable_cart(cart_id, user_id)
        if cart.offer_id is None:
            raise ValidationError("No offer is applied to this cart")

        def change(c: CartModel):
            c.offer_id = None

        return self._mutate(cart, change, "removed offer")
