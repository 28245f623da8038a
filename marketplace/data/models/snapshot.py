# marketplace/data/models/snapshot.py
from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, Numeric, Text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow


class CartSnapshotModel(Base):
    """Write-once freeze of a cart at checkout."""

    __tablename__ = "cart_snapshots"

    id = Column(Integer, primary_key=True)
    original_cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True)

    total_amount = Column(Numeric(12, 2), nullable=False)
    total_discount = Column(Numeric(12, 2), nullable=False, default=0)
    product_discount = Column(Numeric(12, 2), nullable=False, default=0)
    offer_discount = Column(Numeric(12, 2), nullable=False, default=0)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    delivery_charges = Column(Numeric(12, 2), nullable=False, default=0)
    payable_amount = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "CartSnapshotItemModel",
        cascade="all, delete-orphan",
        order_by="CartSnapshotItemModel.position",
    )


class CartSnapshotItemModel(Base):
    __tablename__ = "cart_snapshot_items"

    id = Column(Integer, primary_key=True)
    snapshot_id = Column(Integer, ForeignKey("cart_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    product_id = Column(Integer, nullable=False)
    variant = Column(String(100), nullable=True)
    size = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False)

    price = Column(Numeric(12, 2), nullable=False)
    discount_amt = Column(Numeric(12, 2), nullable=False, default=0)
    discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    offer_discount = Column(Numeric(12, 2), nullable=False, default=0)
    offer_discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    coupon_discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    effective_price = Column(Numeric(12, 2), nullable=False)

    # catalog fields as they were at checkout
    product_name = Column(String(255), nullable=True)
    product_image = Column(String(500), nullable=True)
    product_sku = Column(String(100), nullable=True)
    product_description = Column(Text, nullable=True)
