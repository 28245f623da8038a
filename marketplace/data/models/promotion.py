# marketplace/data/models/promotion.py
from sqlalchemy import (
    Column,
    Integer,
    ForeignKey,
    String,
    DateTime,
    Boolean,
    Numeric,
    UniqueConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow


class OfferModel(Base):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, nullable=False, index=True)

    discount_type = Column(String(20), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    max_discount = Column(Numeric(12, 2), nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    # 1 or 2 while active, NULL otherwise; unique per store caps active offers
    active_slot = Column(Integer, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    products = relationship(
        "OfferProductModel",
        cascade="all, delete-orphan",
        order_by="OfferProductModel.id",
    )

    __table_args__ = (UniqueConstraint("store_id", "active_slot", name="uq_offers_store_slot"),)


class OfferProductModel(Base):
    __tablename__ = "offer_products"

    id = Column(Integer, primary_key=True)
    offer_id = Column(Integer, ForeignKey("offers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)


class ActiveOfferProductModel(Base):
    """Claim row held by the single active offer a product may belong to."""

    __tablename__ = "active_offer_products"

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, nullable=False)
    product_id = Column(Integer, nullable=False)
    offer_id = Column(Integer, ForeignKey("offers.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (UniqueConstraint("store_id", "product_id", name="uq_active_offer_product"),)


class CouponModel(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, nullable=False, index=True)
    code = Column(String(50), nullable=False)

    discount_type = Column(String(20), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    max_discount = Column(Numeric(12, 2), nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    products = relationship(
        "CouponProductModel",
        cascade="all, delete-orphan",
        order_by="CouponProductModel.id",
    )

    __table_args__ = (
        Index(
            "uq_coupons_store_code",
            "store_id",
            "code",
            unique=True,
            sqlite_where=text("NOT is_deleted"),
            postgresql_where=text("NOT is_deleted"),
        ),
    )


class CouponProductModel(Base):
    __tablename__ = "coupon_products"

    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
