from sqlalchemy import (
    Column,
    Integer,
    ForeignKey,
    String,
    DateTime,
    Numeric,
    Boolean,
    Text,
    JSON,
    Index,
    text,
)

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow
from marketplace.domain.statuses import PaymentStatus


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    payment_method = Column(String(20), nullable=False)
    status = Column(String(30), nullable=False, default=PaymentStatus.PENDING, index=True)

    gateway_order_id = Column(String(100), nullable=True, unique=True)
    gateway_payment_id = Column(String(100), nullable=True, index=True)
    gateway_signature = Column(String(255), nullable=True)
    gateway_response = Column(JSON, nullable=True)

    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refund_id = Column(String(100), nullable=True)
    refund_status = Column(String(30), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # never two live payments for the same order
        Index(
            "uq_payments_live_order",
            "order_id",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
    )

    @property
    def remaining_amount(self):
        return self.amount - (self.refunded_amount or 0)


class RefundModel(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    gateway_refund_id = Column(String(100), nullable=True, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
