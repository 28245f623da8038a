# every model imported here so Base.metadata knows all tables before create_all

from marketplace.data.models.address import AddressModel
from marketplace.data.models.cart import CartModel
from marketplace.data.models.cart_item import CartItemModel
from marketplace.data.models.promotion import (
    OfferModel,
    OfferProductModel,
    ActiveOfferProductModel,
    CouponModel,
    CouponProductModel,
)
from marketplace.data.models.snapshot import CartSnapshotModel, CartSnapshotItemModel
from marketplace.data.models.order import OrderModel, OrderItemModel
from marketplace.data.models.payment import PaymentModel, RefundModel
from marketplace.data.models.tracking import DeliveryTrackingModel, DeliveryUpdateModel
from marketplace.data.models.payout import PayoutModel, PayoutItemModel

__all__ = [
    "AddressModel",
    "CartModel",
    "CartItemModel",
    "OfferModel",
    "OfferProductModel",
    "ActiveOfferProductModel",
    "CouponModel",
    "CouponProductModel",
    "CartSnapshotModel",
    "CartSnapshotItemModel",
    "OrderModel",
    "OrderItemModel",
    "PaymentModel",
    "RefundModel",
    "DeliveryTrackingModel",
    "DeliveryUpdateModel",
    "PayoutModel",
    "PayoutItemModel",
]
