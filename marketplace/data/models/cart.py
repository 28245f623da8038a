#marketplace/data/models/cart.py
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, Boolean, Index, text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.domain.statuses import CartState


def utcnow():
    return datetime.now(timezone.utc)


class CartModel(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, nullable=False, index=True)

    state = Column(String(20), nullable=False, default=CartState.ACTIVE)
    version = Column(Integer, nullable=False, default=1)

    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItemModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItemModel.id",
    )

    __table_args__ = (
        # one live active cart per (user, store)
        Index(
            "uq_carts_active_user_store",
            "user_id",
            "store_id",
            unique=True,
            sqlite_where=text("state = 'active' AND NOT is_deleted"),
            postgresql_where=text("state = 'active' AND NOT is_deleted"),
        ),
    )
