# marketplace/repos/promotion_repo.py
from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from marketplace.data.models.promotion import (
    OfferModel,
    ActiveOfferProductModel,
    CouponModel,
)
from marketplace.utils.settings import MAX_ACTIVE_OFFERS_PER_STORE


class PromotionRepo:
    def __init__(self, db: Session):
        self.db = db

    # offers

    def get_offer(self, offer_id: int, include_deleted: bool = False) -> OfferModel | None:
        stmt = select(OfferModel).where(OfferModel.id == offer_id)
        if not include_deleted:
            stmt = stmt.where(OfferModel.is_deleted.is_(False))
        return self.db.execute(stmt).scalar_one_or_none()

    def list_offers(self, store_id: int, active_only: bool = False) -> list[OfferModel]:
        stmt = select(OfferModel).where(
            OfferModel.store_id == store_id,
            OfferModel.is_deleted.is_(False),
        )
        if active_only:
            stmt = stmt.where(OfferModel.is_active.is_(True))
        return list(self.db.execute(stmt.order_by(OfferModel.id)).scalars())

    def free_active_slot(self, store_id: int) -> int | None:
        taken = set(
            self.db.execute(
                select(OfferModel.active_slot).where(
                    OfferModel.store_id == store_id,
                    OfferModel.active_slot.is_not(None),
                )
            ).scalars()
        )
        for slot in range(1, MAX_ACTIVE_OFFERS_PER_STORE + 1):
            if slot not in taken:
                return slot
        return None

    def claimed_products(self, store_id: int, product_ids, exclude_offer_id: int | None = None) -> list[int]:
        if not product_ids:
            return []
        stmt = select(ActiveOfferProductModel.product_id).where(
            ActiveOfferProductModel.store_id == store_id,
            ActiveOfferProductModel.product_id.in_(list(product_ids)),
        )
        if exclude_offer_id is not None:
            stmt = stmt.where(ActiveOfferProductModel.offer_id != exclude_offer_id)
        return sorted(self.db.execute(stmt).scalars())

    def claim_products(self, offer: OfferModel, product_ids) -> None:
        for product_id in product_ids:
            self.db.add(
                ActiveOfferProductModel(
                    store_id=offer.store_id,
                    product_id=product_id,
                    offer_id=offer.id,
                )
            )

    def release_products(self, offer_id: int) -> None:
        self.db.execute(
            delete(ActiveOfferProductModel).where(ActiveOfferProductModel.offer_id == offer_id)
        )

    # coupons

    def get_coupon(self, coupon_id: int, include_deleted: bool = False) -> CouponModel | None:
        stmt = select(CouponModel).where(CouponModel.id == coupon_id)
        if not include_deleted:
            stmt = stmt.where(CouponModel.is_deleted.is_(False))
        return self.db.execute(stmt).scalar_one_or_none()

    def get_coupon_by_code(self, store_id: int, code: str) -> CouponModel | None:
        return self.db.execute(
            select(CouponModel).where(
                CouponModel.store_id == store_id,
                CouponModel.code == code,
                CouponModel.is_deleted.is_(False),
            )
        ).scalar_one_or_none()

    def list_coupons(self, store_id: int, active_only: bool = False) -> list[CouponModel]:
        stmt = select(CouponModel).where(
            CouponModel.store_id == store_id,
            CouponModel.is_deleted.is_(False),
        )
        if active_only:
            stmt = stmt.where(CouponModel.is_active.is_(True))
        return list(self.db.execute(stmt.order_by(CouponModel.id)).scalars())

    def add(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def flush(self):
        self.db.flush()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
