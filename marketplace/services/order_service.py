# marketplace/services/order_service.py
from typing import Any, Dict

from sqlalchemy.orm import Session

from marketplace.data.models.cart import utcnow
from marketplace.data.models.order import OrderModel
from marketplace.data.models.payment import PaymentModel
from marketplace.domain.errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    InvariantViolationError,
)
from marketplace.domain.money import ZERO, quantize
from marketplace.domain.order_states import ensure_transition
from marketplace.domain.statuses import (
    OrderStatus,
    OrderItemStatus,
    PaymentStatus,
    PaymentType,
    DeliveryStatus,
)
from marketplace.repos.order_repo import OrderRepo
from marketplace.repos.tracking_repo import TrackingRepo
from marketplace.services.event_bus import EventBus, ORDER_CANCELLED
from marketplace.services.payment_service import PaymentService, payment_intent_dict
from marketplace.utils.settings import CURRENCY
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

# order status -> (delivery status, default tracking description)
TRACKING_FOR_STATUS = {
    OrderStatus.CONFIRMED: (DeliveryStatus.PROCESSING, "Order confirmed by the seller"),
    OrderStatus.PROCESSING: (DeliveryStatus.PROCESSING, "Order is being prepared"),
    OrderStatus.SHIPPED: (DeliveryStatus.SHIPPED, "Order has been shipped"),
    OrderStatus.DELIVERED: (DeliveryStatus.DELIVERED, "Order has been delivered"),
}


def order_to_dict(order: OrderModel, payment: PaymentModel | None = None, key_id: str = "") -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "store_id": order.store_id,
        "cart_snapshot_id": order.cart_snapshot_id,
        "payment_type": order.payment_type,
        "payment_status": order.payment_status,
        "order_status": order.order_status,
        "total_without_discount": order.total_without_discount,
        "total_discount": order.total_discount,
        "offer_discount": order.offer_discount,
        "coupon_discount": order.coupon_discount,
        "delivery_charges": order.delivery_charges,
        "total_payable_amount": order.total_payable_amount,
        "coupon_id": order.coupon_id,
        "offer_id": order.offer_id,
        "delivery_address_id": order.delivery_address_id,
        "delivery_tracking_id": order.delivery_tracking_id,
        "special_note_buyer": order.special_note_buyer,
        "special_note_seller": order.special_note_seller,
        "cancelled_at": order.cancelled_at,
        "cancel_reason": order.cancel_reason,
        "created_at": order.created_at,
        "items": [
            {
                "index": i.position,
                "product_id": i.product_id,
                "variant": i.variant,
                "size": i.size,
                "quantity": i.quantity,
                "price": i.price,
                "discounted_price": i.discounted_price,
                "total_price": i.total_price,
                "status": i.status,
                "cancelled_at": i.cancelled_at,
                "cancel_reason": i.cancel_reason,
                "returned_at": i.returned_at,
                "return_reason": i.return_reason,
            }
            for i in order.items
        ],
        "payment": payment_intent_dict(payment, key_id),
    }


class OrderService:
    """
    Order lifecycle after checkout: seller status updates, cancellation
    (whole order or selected items) and returns.

    Status changes go through order_states and are written with
    UPDATE ... WHERE order_status = :current, so two sellers or a seller and
    a buyer racing on the same order cannot both win.

    Refunds for cancellations run after the order change has committed. A
    refund that fails is reported next to the cancelled order and left for
    manual follow-up; the cancellation itself stands.
    """

    def __init__(self, db: Session, payments: PaymentService, event_bus: EventBus):
        self.db = db
        self.repo = OrderRepo(db)
        self.tracking = TrackingRepo(db)
        self.payments = payments
        self.event_bus = event_bus

    # queries

    def _order(self, order_id: int, user_id: int | None = None, store_id: int | None = None) -> OrderModel:
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if user_id is not None and order.user_id != user_id:
            raise NotFoundError("Order not found")
        if store_id is not None and order.store_id != store_id:
            raise NotFoundError("Order not found")
        return order

    def get_order(self, order_id: int, user_id: int | None = None, store_id: int | None = None) -> Dict[str, Any]:
        order = self._order(order_id, user_id, store_id)
        payment = self.db.get(PaymentModel, order.payment_id) if order.payment_id else None
        return order_to_dict(order, payment=payment, key_id=self.payments.gateway.key_id)

    def _page(self, rows, total, page, limit) -> Dict[str, Any]:
        return {"items": [order_to_dict(o) for o in rows], "total": total, "page": page, "limit": limit}

    def list_user_orders(self, user_id: int, status: str | None = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        rows, total = self.repo.list_orders(user_id=user_id, status=status, offset=(page - 1) * limit, limit=limit)
        return self._page(rows, total, page, limit)

    def list_store_orders(self, store_id: int, status: str | None = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        rows, total = self.repo.list_orders(store_id=store_id, status=status, offset=(page - 1) * limit, limit=limit)
        return self._page(rows, total, page, limit)

    # status

    def _move(self, order: OrderModel, target: str, extra: Dict[str, Any] | None = None):
        ensure_transition(order.order_status, target)
        data = {"order_status": target, "updated_at": utcnow()}
        data.update(extra or {})
        if self.repo.transition_status(order.id, order.order_status, data) == 0:
            raise ConflictError("Order was changed by another request, please retry")

    def _track(self, order: OrderModel, status: str, description: str, location: str | None = None):
        tracking = self.tracking.get_by_order(order.id)
        if tracking is not None:
            tracking.add_status_update(status, description, location)

    def update_status(
        self,
        order_id: int,
        status: str,
        store_id: int | None = None,
        description: str | None = None,
        location: str | None = None,
    ) -> Dict[str, Any]:
        if status not in TRACKING_FOR_STATUS:
            raise ValidationError(f"Status '{status}' is set through cancellation or return, not directly")

        order = self._order(order_id, store_id=store_id)
        previous = order.order_status
        try:
            self._move(order, status)
            delivery_status, default_description = TRACKING_FOR_STATUS[status]
            self._track(order, delivery_status, description or default_description, location)

            if (
                status == OrderStatus.DELIVERED
                and order.payment_type == PaymentType.COD
                and order.payment_status == PaymentStatus.PENDING
            ):
                self._collect_cash(order)

            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Order {order.order_number}: {previous} -> {status}")
        return self.get_order(order.id)

    def _collect_cash(self, order: OrderModel):
        payment = self.repo.add(
            PaymentModel(
                user_id=order.user_id,
                order_id=order.id,
                amount=order.total_payable_amount,
                currency=CURRENCY,
                payment_method=PaymentType.COD,
                status=PaymentStatus.CAPTURED,
                notes="Cash collected on delivery",
            )
        )
        order.payment_id = payment.id
        order.payment_status = PaymentStatus.CAPTURED
        logger.info(f"Cash on delivery collected for order {order.order_number}")

    # cancellation

    def _selected_items(self, order: OrderModel, item_indices) -> list:
        by_index = {i.position: i for i in order.items}
        indices = list(dict.fromkeys(item_indices))
        invalid = [i for i in indices if i not in by_index]
        if invalid:
            raise ValidationError(f"Invalid item indices: {invalid}")
        return [by_index[i] for i in indices if by_index[i].status == OrderItemStatus.ACTIVE]

    def _claim_items(self, order: OrderModel, items, status: str, data: Dict[str, Any]) -> int:
        """
        Moves the given active items to status and returns how many items of
        the order are still active. Items changed by another request since
        they were read make the whole change a conflict.
        """
        self.repo.lock_order(order.id)
        data = dict(data, status=status)
        claimed = self.repo.transition_items(order.id, [i.id for i in items], OrderItemStatus.ACTIVE, data)
        if claimed != len(items):
            raise ConflictError("Order items were changed by another request, please retry")
        return self.repo.count_active_items(order.id)

    def _cancelled(self, order: OrderModel, amount, reason: str | None, partial: bool) -> Dict[str, Any]:
        self.event_bus.publish(
            ORDER_CANCELLED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "user_id": order.user_id,
                "store_id": order.store_id,
                "partial": partial,
            },
        )
        refund_reason = f"Order {order.order_number} cancelled" + (f": {reason}" if reason else "")
        refund = self.payments.refund_order(order, amount, refund_reason)
        return {"order": self.get_order(order.id), "refund": refund}

    def cancel_order(
        self,
        order_id: int,
        reason: str | None = None,
        user_id: int | None = None,
        store_id: int | None = None,
    ) -> Dict[str, Any]:
        order = self._order(order_id, user_id, store_id)
        if order.order_status not in OrderStatus.CANCELLABLE:
            raise InvariantViolationError(f"Order in status '{order.order_status}' cannot be cancelled")

        now = utcnow()
        try:
            self._move(order, OrderStatus.CANCELLED, {"cancelled_at": now, "cancel_reason": reason})
            self.repo.transition_items(
                order.id,
                None,
                OrderItemStatus.ACTIVE,
                {"status": OrderItemStatus.CANCELLED, "cancelled_at": now, "cancel_reason": reason},
            )
            self._track(order, DeliveryStatus.CANCELLED, "Order has been cancelled")
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Order {order.order_number} cancelled: {reason}")
        # everything still captured goes back
        return self._cancelled(order, None, reason, partial=False)

    def cancel_items(
        self,
        order_id: int,
        item_indices,
        reason: str | None = None,
        user_id: int | None = None,
        store_id: int | None = None,
    ) -> Dict[str, Any]:
        order = self._order(order_id, user_id, store_id)
        if order.order_status not in OrderStatus.CANCELLABLE:
            raise InvariantViolationError(f"Items of an order in status '{order.order_status}' cannot be cancelled")

        selected = self._selected_items(order, item_indices)
        if not selected:
            raise InvariantViolationError("None of the selected items can be cancelled")
        positions = [i.position for i in selected]
        amount = quantize(sum((i.total_price for i in selected), ZERO))

        now = utcnow()
        try:
            remaining = self._claim_items(
                order, selected, OrderItemStatus.CANCELLED, {"cancelled_at": now, "cancel_reason": reason}
            )
            if remaining:
                self._move(order, OrderStatus.PARTIALLY_CANCELLED)
            else:
                self._move(order, OrderStatus.CANCELLED, {"cancelled_at": now, "cancel_reason": reason})
                self._track(order, DeliveryStatus.CANCELLED, "All items of the order have been cancelled")
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Order {order.order_number}: cancelled items {positions}, {remaining} still active")
        return self._cancelled(order, amount if remaining else None, reason, partial=bool(remaining))

    # returns

    def return_items(
        self,
        order_id: int,
        item_indices,
        reason: str | None = None,
        user_id: int | None = None,
    ) -> Dict[str, Any]:
        """
        Mark delivered items as returned. Money for returns is refunded
        separately, once the goods are back with the seller.
        """
        order = self._order(order_id, user_id)
        if order.order_status not in (OrderStatus.DELIVERED, OrderStatus.PARTIALLY_RETURNED):
            raise InvariantViolationError(f"Items of an order in status '{order.order_status}' cannot be returned")

        selected = self._selected_items(order, item_indices)
        if not selected:
            raise InvariantViolationError("None of the selected items can be returned")
        positions = [i.position for i in selected]

        now = utcnow()
        try:
            remaining = self._claim_items(
                order, selected, OrderItemStatus.RETURNED, {"returned_at": now, "return_reason": reason}
            )
            if remaining:
                self._move(order, OrderStatus.PARTIALLY_RETURNED)
            else:
                self._move(order, OrderStatus.RETURNED)
                self._track(order, DeliveryStatus.RETURNED, "Order has been returned")
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Order {order.order_number}: returned items {positions}")
        return self.get_order(order.id)
