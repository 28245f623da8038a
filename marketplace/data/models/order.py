from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, Numeric, Boolean, Text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow
from marketplace.domain.statuses import OrderStatus, OrderItemStatus, PaymentStatus


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True)
    cart_snapshot_id = Column(Integer, ForeignKey("cart_snapshots.id"), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, nullable=False, index=True)

    payment_type = Column(String(20), nullable=False)
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", use_alter=True), nullable=True)

    total_without_discount = Column(Numeric(12, 2), nullable=False)
    total_discount = Column(Numeric(12, 2), nullable=False, default=0)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    offer_discount = Column(Numeric(12, 2), nullable=False, default=0)
    delivery_charges = Column(Numeric(12, 2), nullable=False, default=0)
    total_payable_amount = Column(Numeric(12, 2), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True)

    order_status = Column(String(30), nullable=False, default=OrderStatus.PENDING, index=True)
    delivery_tracking_id = Column(Integer, ForeignKey("delivery_tracking.id", use_alter=True), nullable=True)
    delivery_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=False)

    special_note_buyer = Column(Text, nullable=True)
    special_note_seller = Column(Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.position",
    )


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # index callers use for partial cancellation / return
    position = Column(Integer, nullable=False)

    product_id = Column(Integer, nullable=False)
    variant = Column(String(100), nullable=True)
    size = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    discounted_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=OrderItemStatus.ACTIVE)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)
    return_reason = Column(Text, nullable=True)

    order = relationship("OrderModel", back_populates="items")
