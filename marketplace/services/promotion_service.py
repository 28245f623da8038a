# marketplace/services/promotion_service.py
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import utcnow
from marketplace.data.models.promotion import (
    OfferModel,
    OfferProductModel,
    CouponModel,
    CouponProductModel,
)
from marketplace.domain.errors import ValidationError, NotFoundError, ConflictError
from marketplace.domain.money import quantize
from marketplace.domain.statuses import DiscountType
from marketplace.repos.promotion_repo import PromotionRepo
from marketplace.services.cart_service import normalize_code
from marketplace.services.catalog_client import CatalogClient
from marketplace.utils.settings import MAX_ACTIVE_OFFERS_PER_STORE
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

DISCOUNT_FIELDS = ("discount_type", "discount_amount", "discount_percentage", "max_discount")


def promotion_to_dict(promo) -> Dict[str, Any]:
    data = {
        "id": promo.id,
        "store_id": promo.store_id,
        "discount_type": promo.discount_type,
        "discount_amount": promo.discount_amount,
        "discount_percentage": promo.discount_percentage,
        "max_discount": promo.max_discount,
        "is_active": promo.is_active,
        "products": [p.product_id for p in promo.products],
        "created_at": promo.created_at,
        "updated_at": promo.updated_at,
    }
    if isinstance(promo, CouponModel):
        data["code"] = promo.code
    return data


def _check_discount(promo):
    if promo.discount_type == DiscountType.AMOUNT and promo.discount_amount <= 0:
        raise ValidationError("Discount amount must be greater than 0 for amount type")
    if promo.discount_type == DiscountType.PERCENTAGE and promo.discount_percentage <= 0:
        raise ValidationError("Discount percentage must be greater than 0 for percentage type")


class PromotionService:
    """
    Offers and coupons of a store.

    Offer exclusivity is enforced by the database, not only by the checks
    below: an active offer holds one of the store's two active_slot values,
    and a claim row per referenced product. Two concurrent activations that
    both pass the checks still cannot both commit.
    """

    def __init__(self, db: Session, catalog: CatalogClient):
        self.repo = PromotionRepo(db)
        self.catalog = catalog

    def _check_products(self, store_id: int, product_ids) -> list[int]:
        product_ids = list(dict.fromkeys(product_ids))
        products = self.catalog.fetch_products(product_ids)
        if len(products) != len(product_ids) or any(p.store_id != store_id for p in products.values()):
            raise ValidationError("One or more products do not exist or do not belong to this store")
        return product_ids

    # offers

    def _activate(self, offer: OfferModel):
        slot = self.repo.free_active_slot(offer.store_id)
        if slot is None:
            raise ConflictError(f"A store can have at most {MAX_ACTIVE_OFFERS_PER_STORE} active offers at a time")

        product_ids = [p.product_id for p in offer.products]
        taken = self.repo.claimed_products(offer.store_id, product_ids, exclude_offer_id=offer.id)
        if taken:
            raise ConflictError(f"Products {taken} are already in another active offer")

        offer.active_slot = slot
        self.repo.claim_products(offer, product_ids)

    def _deactivate(self, offer: OfferModel):
        offer.active_slot = None
        self.repo.release_products(offer.id)

    def _save_offer(self, offer: OfferModel, action: str) -> Dict[str, Any]:
        try:
            self.repo.add(offer)
        except IntegrityError:
            # a concurrent activation took the slot or a product claim first
            self.repo.rollback()
            raise ConflictError("Offer conflicts with another active offer of this store")
        self.repo.commit()
        logger.info(f"Offer {offer.id} {action} for store {offer.store_id}")
        return promotion_to_dict(offer)

    def create_offer(self, store_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        product_ids = self._check_products(store_id, data.get("products", []))

        offer = OfferModel(
            store_id=store_id,
            discount_type=data["discount_type"],
            discount_amount=quantize(data.get("discount_amount", 0)),
            discount_percentage=data.get("discount_percentage", 0),
            max_discount=quantize(data.get("max_discount", 0)),
            is_active=data.get("is_active", True),
            products=[OfferProductModel(product_id=pid) for pid in product_ids],
        )
        _check_discount(offer)

        try:
            self.repo.add(offer)
            if offer.is_active:
                self._activate(offer)
        except Exception:
            self.repo.rollback()
            raise
        return self._save_offer(offer, "created")

    def _store_offer(self, store_id: int, offer_id: int) -> OfferModel:
        offer = self.repo.get_offer(offer_id)
        if not offer or offer.store_id != store_id:
            raise NotFoundError("Offer not found")
        return offer

    def get_offer(self, store_id: int, offer_id: int) -> Dict[str, Any]:
        return promotion_to_dict(self._store_offer(store_id, offer_id))

    def list_offers(self, store_id: int, active_only: bool = False) -> list[Dict[str, Any]]:
        return [promotion_to_dict(o) for o in self.repo.list_offers(store_id, active_only)]

    def update_offer(self, store_id: int, offer_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        offer = self._store_offer(store_id, offer_id)

        product_ids = None
        if data.get("products") is not None:
            product_ids = self._check_products(store_id, data["products"])

        try:
            for field in DISCOUNT_FIELDS:
                if data.get(field) is not None:
                    setattr(offer, field, data[field])
            _check_discount(offer)

            was_active = offer.active_slot is not None
            if was_active:
                self._deactivate(offer)
                # claim rows must be gone before the same products are claimed again
                self.repo.flush()

            if product_ids is not None:
                offer.products = [OfferProductModel(product_id=pid) for pid in product_ids]
            if data.get("is_active") is not None:
                offer.is_active = data["is_active"]

            self.repo.flush()
            if offer.is_active:
                self._activate(offer)
        except Exception:
            self.repo.rollback()
            raise
        return self._save_offer(offer, "updated")

    def delete_offer(self, store_id: int, offer_id: int) -> Dict[str, Any]:
        offer = self._store_offer(store_id, offer_id)
        self._deactivate(offer)
        offer.is_active = False
        offer.is_deleted = True
        offer.deleted_at = utcnow()
        self.repo.commit()
        logger.info(f"Offer {offer_id} deleted for store {store_id}")
        return {"id": offer_id, "deleted": True}

    # coupons

    def _store_coupon(self, store_id: int, coupon_id: int) -> CouponModel:
        coupon = self.repo.get_coupon(coupon_id)
        if not coupon or coupon.store_id != store_id:
            raise NotFoundError("Coupon not found")
        return coupon

    def _save_coupon(self, coupon: CouponModel, action: str) -> Dict[str, Any]:
        try:
            self.repo.add(coupon)
        except IntegrityError:
            self.repo.rollback()
            raise ConflictError(f"Coupon code {coupon.code} already exists for this store")
        self.repo.commit()
        logger.info(f"Coupon {coupon.code} {action} for store {coupon.store_id}")
        return promotion_to_dict(coupon)

    def create_coupon(self, store_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        code = normalize_code(data["code"])
        if self.repo.get_coupon_by_code(store_id, code):
            raise ConflictError(f"Coupon code {code} already exists for this store")

        product_ids = self._check_products(store_id, data.get("products", []))
        coupon = CouponModel(
            store_id=store_id,
            code=code,
            discount_type=data["discount_type"],
            discount_amount=quantize(data.get("discount_amount", 0)),
            discount_percentage=data.get("discount_percentage", 0),
            max_discount=quantize(data.get("max_discount", 0)),
            is_active=data.get("is_active", True),
            products=[CouponProductModel(product_id=pid) for pid in product_ids],
        )
        _check_discount(coupon)
        return self._save_coupon(coupon, "created")

    def get_coupon(self, store_id: int, coupon_id: int) -> Dict[str, Any]:
        return promotion_to_dict(self._store_coupon(store_id, coupon_id))

    def list_coupons(self, store_id: int, active_only: bool = False) -> list[Dict[str, Any]]:
        return [promotion_to_dict(c) for c in self.repo.list_coupons(store_id, active_only)]

    def update_coupon(self, store_id: int, coupon_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        coupon = self._store_coupon(store_id, coupon_id)

        if data.get("code") is not None:
            code = normalize_code(data["code"])
            other = self.repo.get_coupon_by_code(store_id, code)
            if other and other.id != coupon.id:
                raise ConflictError(f"Coupon code {code} already exists for this store")
            coupon.code = code

        if data.get("products") is not None:
            product_ids = self._check_products(store_id, data["products"])
            coupon.products = [CouponProductModel(product_id=pid) for pid in product_ids]

        for field in DISCOUNT_FIELDS + ("is_active",):
            if data.get(field) is not None:
                setattr(coupon, field, data[field])

        try:
            _check_discount(coupon)
        except ValidationError:
            self.repo.rollback()
            raise
        return self._save_coupon(coupon, "updated")

    def delete_coupon(self, store_id: int, coupon_id: int) -> Dict[str, Any]:
        coupon = self._store_coupon(store_id, coupon_id)
        coupon.is_active = False
        coupon.is_deleted = True
        coupon.deleted_at = utcnow()
        self.repo.commit()
        logger.info(f"Coupon {coupon.code} deleted for store {store_id}")
        return {"id": coupon_id, "deleted": True}
