from sqlalchemy import Column, Integer, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from marketplace.data.database import Base


class CartItemModel(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    variant = Column(String(100), nullable=True)
    size = Column(String(50), nullable=True)

    quantity = Column(Integer, nullable=False)

    # derived by the discount resolver, never written by callers
    price = Column(Numeric(12, 2), nullable=False, default=0)
    selling_price = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amt = Column(Numeric(12, 2), nullable=False, default=0)
    discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    offer_discount = Column(Numeric(12, 2), nullable=False, default=0)
    offer_discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    coupon_discount_pct = Column(Numeric(5, 2), nullable=False, default=0)
    effective_price = Column(Numeric(12, 2), nullable=False, default=0)

    cart = relationship("CartModel", back_populates="items")

    def matches(self, product_id: int, variant: str | None, size: str | None) -> bool:
        return self.product_id == product_id and self.variant == variant and self.size == size
