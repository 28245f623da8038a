# marketplace/services/checkout_service.py
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel, utcnow
from marketplace.data.models.order import OrderModel, OrderItemModel
from marketplace.data.models.payment import PaymentModel
from marketplace.data.models.snapshot import CartSnapshotModel, CartSnapshotItemModel
from marketplace.data.models.tracking import DeliveryTrackingModel
from marketplace.domain.errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    InvariantViolationError,
    ExternalDependencyError,
)
from marketplace.domain.money import ZERO, quantize
from marketplace.domain.pricing import CartTotals
from marketplace.domain.statuses import (
    CartState,
    OrderStatus,
    OrderItemStatus,
    PaymentStatus,
    PaymentType,
    DeliveryStatus,
)
from marketplace.repos.cart_repo import CartRepo
from marketplace.repos.order_repo import OrderRepo
from marketplace.repos.tracking_repo import TrackingRepo, AddressRepo
from marketplace.services.cart_pricing import CartPricer
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.event_bus import EventBus, ORDER_PLACED
from marketplace.services.gateway_client import PaymentGateway, GatewayError
from marketplace.services.order_service import order_to_dict
from marketplace.utils.retry import allocation_retry
from marketplace.utils.settings import DELIVERY_CHARGES, CURRENCY
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class OrderNumberTaken(Exception):
    """Another checkout committed the same order number first."""


def order_number_prefix(now=None) -> str:
    return f"#{(now or utcnow()).strftime('%y%m%d')}-"


class CheckoutService:
    """
    Use case: freeze an active cart into an order.

    Everything below runs in one transaction:
      1. re-price the cart,
      2. claim it (active -> consumed, compare-and-set on version),
      3. write the snapshot,
      4. create the order with a date-scoped number,
      5. seed the delivery tracking,
      6. for online payments, open a charge intent and a pending payment.
    Any failure rolls all of it back. Events go out after the commit.
    """

    def __init__(self, db: Session, catalog: CatalogClient, gateway: PaymentGateway, event_bus: EventBus):
        self.db = db
        self.carts = CartRepo(db)
        self.orders = OrderRepo(db)
        self.tracking = TrackingRepo(db)
        self.addresses = AddressRepo(db)
        self.pricer = CartPricer(db, catalog)
        self.gateway = gateway
        self.event_bus = event_bus

    def checkout(
        self,
        user_id: int,
        cart_id: int,
        payment_type: str,
        delivery_address_id: int,
        special_note_buyer: str | None = None,
        special_note_seller: str | None = None,
    ) -> Dict[str, Any]:
        if payment_type not in PaymentType.ALL:
            raise ValidationError(f"Unknown payment type '{payment_type}'")

        order = self._place_order(
            user_id,
            cart_id,
            payment_type,
            delivery_address_id,
            special_note_buyer,
            special_note_seller,
        )

        self.event_bus.publish(
            ORDER_PLACED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "user_id": order.user_id,
                "store_id": order.store_id,
            },
        )
        return order_to_dict(order, payment=self._payment_of(order), key_id=self.gateway.key_id)

    @allocation_retry(OrderNumberTaken)
    def _place_order(
        self,
        user_id: int,
        cart_id: int,
        payment_type: str,
        delivery_address_id: int,
        special_note_buyer: str | None,
        special_note_seller: str | None,
    ) -> OrderModel:
        try:
            cart = self._checkout_cart(cart_id, user_id)
            if not self.addresses.get_user_address(delivery_address_id, user_id):
                raise NotFoundError("Delivery address not found")

            totals, products = self.pricer.reprice(cart)
            payable = quantize(totals.subtotal + DELIVERY_CHARGES)
            if payment_type != PaymentType.COD and payable <= ZERO:
                raise ValidationError("Online payment needs a payable amount greater than 0")

            self._consume(cart)
            snapshot = self._snapshot(cart, totals, products, payable)
            order = self._create_order(
                cart, snapshot, totals, payable, payment_type,
                delivery_address_id, special_note_buyer, special_note_seller,
            )
            self._seed_tracking(order)

            if payment_type != PaymentType.COD:
                self._open_payment(order)

            self.orders.commit()
        except Exception:
            self.orders.rollback()
            raise

        logger.info(
            f"Order {order.order_number} placed from cart {cart_id}: "
            f"payable {order.total_payable_amount}, payment {payment_type}"
        )
        return order

    def _checkout_cart(self, cart_id: int, user_id: int) -> CartModel:
        cart = self.carts.get_cart(cart_id)
        if not cart or cart.user_id != user_id:
            raise NotFoundError("Cart not found")
        if cart.state != CartState.ACTIVE:
            raise InvariantViolationError(f"Cart {cart_id} is {cart.state} and cannot be checked out")
        if not cart.items:
            raise ValidationError("Cannot check out an empty cart")
        return cart

    def _consume(self, cart: CartModel):
        self.carts.flush()
        rowcount = self.carts.update_cart_version(
            cart_id=cart.id,
            old_version=cart.version,
            new_data={"state": CartState.CONSUMED, "version": cart.version + 1, "updated_at": utcnow()},
        )
        if rowcount == 0:
            raise ConflictError("Cart was modified or checked out by another request")

    def _snapshot(self, cart: CartModel, totals: CartTotals, products, payable) -> CartSnapshotModel:
        snapshot = CartSnapshotModel(
            original_cart_id=cart.id,
            user_id=cart.user_id,
            store_id=cart.store_id,
            coupon_id=cart.coupon_id,
            offer_id=cart.offer_id,
            total_amount=totals.total_without_discount,
            total_discount=totals.total_discount,
            product_discount=totals.product_discount,
            offer_discount=totals.offer_discount,
            coupon_discount=totals.coupon_discount,
            delivery_charges=quantize(DELIVERY_CHARGES),
            payable_amount=payable,
        )
        for position, item in enumerate(cart.items):
            product = products[item.product_id]
            pricing = product.pricing_for(item.variant, item.size)
            snapshot.items.append(
                CartSnapshotItemModel(
                    position=position,
                    product_id=item.product_id,
                    variant=item.variant,
                    size=item.size,
                    quantity=item.quantity,
                    price=item.price,
                    discount_amt=item.discount_amt,
                    discount_pct=item.discount_pct,
                    offer_discount=item.offer_discount,
                    offer_discount_pct=item.offer_discount_pct,
                    coupon_discount=item.coupon_discount,
                    coupon_discount_pct=item.coupon_discount_pct,
                    effective_price=item.effective_price,
                    product_name=product.name,
                    product_image=product.image,
                    product_sku=pricing.sku,
                    product_description=product.description,
                )
            )
        return self.orders.add(snapshot)

    def _create_order(
        self,
        cart: CartModel,
        snapshot: CartSnapshotModel,
        totals: CartTotals,
        payable,
        payment_type: str,
        delivery_address_id: int,
        special_note_buyer,
        special_note_seller,
    ) -> OrderModel:
        order = OrderModel(
            order_number=self.orders.next_order_number(order_number_prefix()),
            cart_snapshot_id=snapshot.id,
            user_id=cart.user_id,
            store_id=cart.store_id,
            payment_type=payment_type,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.PENDING,
            total_without_discount=totals.total_without_discount,
            total_discount=totals.total_discount,
            offer_discount=totals.offer_discount,
            coupon_discount=totals.coupon_discount,
            delivery_charges=snapshot.delivery_charges,
            total_payable_amount=payable,
            coupon_id=cart.coupon_id,
            offer_id=cart.offer_id,
            delivery_address_id=delivery_address_id,
            special_note_buyer=special_note_buyer,
            special_note_seller=special_note_seller,
        )
        for line in snapshot.items:
            order.items.append(
                OrderItemModel(
                    position=line.position,
                    product_id=line.product_id,
                    variant=line.variant,
                    size=line.size,
                    quantity=line.quantity,
                    price=line.price,
                    discounted_price=line.effective_price,
                    total_price=quantize(line.effective_price * line.quantity),
                    status=OrderItemStatus.ACTIVE,
                )
            )

        try:
            return self.orders.add(order)
        except IntegrityError as e:
            if "order_number" in str(e.orig):
                logger.warning(f"Order number {order.order_number} taken, allocating another")
                self.orders.rollback()
                raise OrderNumberTaken(order.order_number) from e
            raise

    def _seed_tracking(self, order: OrderModel):
        tracking = DeliveryTrackingModel(order_id=order.id, current_status=DeliveryStatus.PENDING)
        tracking.add_status_update(DeliveryStatus.PENDING, "Order has been placed")
        self.tracking.add(tracking)
        order.delivery_tracking_id = tracking.id

    def _open_payment(self, order: OrderModel):
        try:
            intent = self.gateway.create_charge_intent(
                order.total_payable_amount,
                receipt=order.order_number,
                notes={"order_id": str(order.id)},
            )
        except GatewayError as e:
            logger.error(f"Charge intent for order {order.order_number} failed: {e}")
            raise ExternalDependencyError("Payment gateway is unavailable, checkout was not completed") from e

        payment = self.orders.add(
            PaymentModel(
                user_id=order.user_id,
                order_id=order.id,
                amount=order.total_payable_amount,
                currency=CURRENCY,
                payment_method=order.payment_type,
                status=PaymentStatus.PENDING,
                gateway_order_id=intent["id"],
                gateway_response=intent,
            )
        )
        order.payment_id = payment.id

    def _payment_of(self, order: OrderModel) -> PaymentModel | None:
        if order.payment_id is None:
            return None
        return self.db.get(PaymentModel, order.payment_id)

