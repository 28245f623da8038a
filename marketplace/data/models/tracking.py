from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, Text, Boolean
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.data.models.cart import utcnow
from marketplace.domain.statuses import DeliveryStatus


class DeliveryTrackingModel(Base):
    __tablename__ = "delivery_tracking"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    tracking_number = Column(String(100), nullable=True, index=True)
    courier_name = Column(String(100), nullable=True)
    courier_website = Column(String(255), nullable=True)
    estimated_delivery_date = Column(DateTime(timezone=True), nullable=True)
    current_status = Column(String(30), nullable=False, default=DeliveryStatus.PENDING)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # append-only
    status_updates = relationship(
        "DeliveryUpdateModel",
        cascade="all, delete-orphan",
        order_by="DeliveryUpdateModel.id",
    )

    def add_status_update(self, status: str, description: str, location: str | None = None):
        self.status_updates.append(
            DeliveryUpdateModel(status=status, description=description, location=location)
        )
        self.current_status = status


class DeliveryUpdateModel(Base):
    __tablename__ = "delivery_updates"

    id = Column(Integer, primary_key=True)
    tracking_id = Column(Integer, ForeignKey("delivery_tracking.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    location = Column(String(255), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
