from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, Numeric, Text, Boolean
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow
from marketplace.domain.statuses import PayoutStatus


class PayoutModel(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, nullable=False, index=True)
    payout_batch = Column(String(32), nullable=False, unique=True)

    total_amount = Column(Numeric(12, 2), nullable=False)
    total_platform_fee = Column(Numeric(12, 2), nullable=False)
    total_tax = Column(Numeric(12, 2), nullable=False)
    net_payout_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee_percentage = Column(Numeric(5, 2), nullable=False)

    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING, index=True)
    payout_date = Column(DateTime(timezone=True), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    transaction_reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "PayoutItemModel",
        cascade="all, delete-orphan",
        order_by="PayoutItemModel.id",
    )


class PayoutItemModel(Base):
    __tablename__ = "payout_items"

    id = Column(Integer, primary_key=True)
    payout_id = Column(Integer, ForeignKey("payouts.id", ondelete="CASCADE"), nullable=False, index=True)
    # an order is settled at most once, across every payout ever created
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)

    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
