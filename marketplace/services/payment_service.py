# marketplace/services/payment_service.py
from decimal import Decimal
from typing import Any, Dict

import pydantic
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import utcnow
from marketplace.data.models.order import OrderModel
from marketplace.data.models.payment import PaymentModel, RefundModel
from marketplace.domain.errors import (
    CommerceError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InvariantViolationError,
    ExternalDependencyError,
)
from marketplace.domain.money import ZERO, quantize, to_minor_units, from_minor_units
from marketplace.domain.schemas import WebhookEnvelope, GatewayPaymentEntity, GatewayRefundEntity
from marketplace.domain.statuses import (
    OrderStatus,
    OrderItemStatus,
    PaymentStatus,
    PaymentType,
    RefundStatus,
    DeliveryStatus,
)
from marketplace.repos.order_repo import OrderRepo
from marketplace.repos.payment_repo import PaymentRepo
from marketplace.repos.tracking_repo import TrackingRepo
from marketplace.services.event_bus import EventBus, PAYMENT_CAPTURED
from marketplace.services.gateway_client import PaymentGateway, GatewayError, GatewayTimeout
from marketplace.services.lock_service import LockService, webhook_event_key
from marketplace.utils.settings import CURRENCY, WEBHOOK_EVENT_TTL_SECONDS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

WEBHOOK_ACK = {"status": "ok"}
PAYMENT_EVENTS = ("payment.authorized", "payment.captured", "payment.failed")
REFUND_PROCESSED = "refund.processed"


class RefundOutcomeUnknown(ExternalDependencyError):
    """The gateway did not answer; the refund is recorded with status unknown."""


def payment_intent_dict(payment: PaymentModel | None, key_id: str) -> Dict[str, Any] | None:
    if payment is None or not payment.gateway_order_id:
        return None
    return {
        "payment_id": payment.id,
        "gateway_order_id": payment.gateway_order_id,
        "key_id": key_id,
        "amount": to_minor_units(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
    }


def payment_to_dict(payment: PaymentModel, refunds) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "user_id": payment.user_id,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "gateway_order_id": payment.gateway_order_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "refunded_amount": payment.refunded_amount,
        "refund_status": payment.refund_status,
        "refunds": [
            {
                "id": r.id,
                "gateway_refund_id": r.gateway_refund_id,
                "amount": r.amount,
                "status": r.status,
                "reason": r.reason,
                "created_at": r.created_at,
            }
            for r in refunds
        ],
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


class PaymentService:
    """
    Keeps Payment and Order payment state in step with the gateway.

    The synchronous verify call and the webhook both end in the same
    conditional updates (UPDATE ... WHERE status IN (...)), so replays and
    racing deliveries settle on one outcome. A capture is accepted from
    failed, a failure is never accepted after capture.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        lock_service: LockService,
        event_bus: EventBus,
    ):
        self.db = db
        self.repo = PaymentRepo(db)
        self.orders = OrderRepo(db)
        self.tracking = TrackingRepo(db)
        self.gateway = gateway
        self.lock_service = lock_service
        self.event_bus = event_bus

    # queries

    def get_payment(self, payment_id: int, user_id: int | None = None) -> Dict[str, Any]:
        payment = self.repo.get_payment(payment_id)
        if not payment or (user_id is not None and payment.user_id != user_id):
            raise NotFoundError("Payment not found")
        return payment_to_dict(payment, self.repo.list_refunds(payment.id))

    # intents

    def create_intent(self, user_id: int, order_id: int) -> Dict[str, Any]:
        order = self.orders.get_order(order_id)
        if not order or order.user_id != user_id:
            raise NotFoundError("Order not found")
        if order.payment_type == PaymentType.COD:
            raise ValidationError("Cash on delivery orders are paid at delivery")
        if order.order_status in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
            raise InvariantViolationError(f"Order is {order.order_status} and cannot be paid")

        live = self.repo.get_live_payment(order.id)
        if live is not None:
            if live.status in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
                return payment_intent_dict(live, self.gateway.key_id)
            raise ConflictError("Order is already paid")

        try:
            intent = self.gateway.create_charge_intent(
                order.total_payable_amount,
                receipt=order.order_number,
                notes={"order_id": str(order.id)},
            )
        except GatewayError as e:
            logger.error(f"Charge intent for order {order.order_number} failed: {e}")
            raise ExternalDependencyError("Payment gateway is unavailable") from e

        try:
            payment = self.repo.add(
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
        except IntegrityError:
            # uq_payments_live_order: another attempt became live meanwhile
            self.repo.rollback()
            raise ConflictError("Another payment attempt for this order is in progress")

        order.payment_id = payment.id
        order.payment_status = PaymentStatus.PENDING
        self.repo.commit()
        logger.info(f"Payment {payment.id} opened for order {order.order_number} ({intent['id']})")
        return payment_intent_dict(payment, self.gateway.key_id)

    # synchronous verification

    def verify_payment(
        self,
        user_id: int,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> Dict[str, Any]:
        if not self.gateway.verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(f"Signature mismatch for gateway order {gateway_order_id}")
            raise ValidationError("Invalid payment signature")

        payment = self.repo.get_by_gateway_order_id(gateway_order_id)
        if not payment or payment.user_id != user_id:
            raise NotFoundError("Payment not found")

        self._capture(payment, gateway_payment_id, signature=signature)
        return self.get_payment(payment.id)

    # transitions shared by verify and webhook

    def _supersede_siblings(self, payment: PaymentModel):
        """
        A late success for a failed attempt makes it the order's live payment,
        so any newer unpaid attempt is closed first.
        """
        if payment.status != PaymentStatus.FAILED:
            return
        sibling = self.repo.get_live_payment(payment.order_id)
        if sibling is not None and sibling.id != payment.id:
            self.repo.transition(
                sibling.id,
                (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED),
                {"status": PaymentStatus.FAILED, "notes": f"Superseded by payment {payment.id}", "updated_at": utcnow()},
            )

    def _capture(
        self,
        payment: PaymentModel,
        gateway_payment_id: str,
        signature: str | None = None,
        response: dict | None = None,
    ) -> bool:
        try:
            self._supersede_siblings(payment)
            data = {
                "status": PaymentStatus.CAPTURED,
                "gateway_payment_id": gateway_payment_id,
                "updated_at": utcnow(),
            }
            if signature:
                data["gateway_signature"] = signature
            if response is not None:
                data["gateway_response"] = response
                data["payment_method"] = response.get("method") or payment.payment_method

            if self.repo.transition(payment.id, PaymentStatus.CAPTURABLE, data) == 0:
                self.repo.rollback()
                self.repo.refresh(payment)
                logger.info(f"Payment {payment.id} already {payment.status}, capture ignored")
                return False

            order = self.orders.get_order(payment.order_id)
            self.orders.mirror_payment_status(order.id, PaymentStatus.CAPTURED)
            order.payment_id = payment.id

            if order.order_status == OrderStatus.PENDING:
                self.orders.transition_status(order.id, OrderStatus.PENDING, {"order_status": OrderStatus.CONFIRMED})

            if order.order_status != OrderStatus.CANCELLED:
                tracking = self.tracking.get_by_order(order.id)
                if tracking is not None:
                    tracking.add_status_update(DeliveryStatus.PROCESSING, "Payment received, order confirmed")

            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Payment {payment.id} captured for order {order.order_number}")
        self.event_bus.publish(
            PAYMENT_CAPTURED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "user_id": order.user_id,
                "store_id": order.store_id,
            },
        )
        self._refund_cancelled_before_capture(order)
        return True

    def _refund_cancelled_before_capture(self, order: OrderModel) -> Dict[str, Any] | None:
        """
        The charge intent carries the amount of the order at checkout. Items
        cancelled while the payment was open go back as soon as it is captured.
        """
        cancelled = [i for i in order.items if i.status == OrderItemStatus.CANCELLED]
        if not cancelled:
            return None

        amount = None
        if order.order_status != OrderStatus.CANCELLED:
            amount = quantize(sum((i.total_price for i in cancelled), ZERO))
        logger.warning(
            f"Order {order.order_number} captured with {len(cancelled)} cancelled items, refunding {amount or 'all'}"
        )
        return self.refund_order(order, amount, f"Order {order.order_number} cancelled before payment")

    def _authorize(self, payment: PaymentModel, gateway_payment_id: str, response: dict | None = None) -> bool:
        try:
            self._supersede_siblings(payment)
            changed = self.repo.transition(
                payment.id,
                PaymentStatus.AUTHORIZABLE,
                {
                    "status": PaymentStatus.AUTHORIZED,
                    "gateway_payment_id": gateway_payment_id,
                    "gateway_response": response,
                    "updated_at": utcnow(),
                },
            )
            if changed == 0:
                self.repo.rollback()
                logger.info(f"Payment {payment.id} past authorization, event ignored")
                return False

            self.orders.mirror_payment_status(
                payment.order_id,
                PaymentStatus.AUTHORIZED,
                only_from=(PaymentStatus.PENDING, PaymentStatus.FAILED),
            )
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Payment {payment.id} authorized")
        return True

    def _fail(self, payment: PaymentModel, gateway_payment_id: str | None, reason: str | None, response: dict | None = None) -> bool:
        try:
            changed = self.repo.transition(
                payment.id,
                PaymentStatus.FAILABLE,
                {
                    "status": PaymentStatus.FAILED,
                    "gateway_payment_id": gateway_payment_id or payment.gateway_payment_id,
                    "gateway_response": response,
                    "notes": reason,
                    "updated_at": utcnow(),
                },
            )
            if changed == 0:
                self.repo.rollback()
                logger.info(f"Payment {payment.id} not failable any more, event ignored")
                return False

            order = self.orders.get_order(payment.order_id)
            if order.payment_id == payment.id:
                self.orders.mirror_payment_status(
                    order.id,
                    PaymentStatus.FAILED,
                    only_from=(PaymentStatus.PENDING, PaymentStatus.AUTHORIZED),
                )
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Payment {payment.id} failed: {reason}")
        return True

    # webhook

    def handle_webhook(self, body: bytes, signature: str | None, event_id: str | None = None) -> Dict[str, Any]:
        """
        Unverifiable or malformed deliveries are logged and acknowledged with
        the same answer as good ones, so the gateway stops retrying them.
        Database errors propagate and the gateway retries later.
        """
        if not self.gateway.verify_webhook_signature(body, signature):
            logger.warning("Webhook rejected: invalid signature")
            return WEBHOOK_ACK

        try:
            envelope = WebhookEnvelope.model_validate_json(body)
            event = envelope.event
            entity = None
            if event in PAYMENT_EVENTS:
                entity = GatewayPaymentEntity.model_validate(envelope.payload.get("payment") or {})
            elif event == REFUND_PROCESSED:
                entity = GatewayRefundEntity.model_validate(envelope.payload.get("refund") or {})
        except pydantic.ValidationError as e:
            logger.warning(f"Webhook rejected: malformed body ({e.error_count()} errors: {e.errors()[0]['msg']})")
            return WEBHOOK_ACK

        if event_id and self._already_seen(event_id):
            logger.info(f"Webhook event {event_id} ({event}) already processed")
            return WEBHOOK_ACK

        if event in PAYMENT_EVENTS:
            self._on_payment_event(event, entity)
        elif event == REFUND_PROCESSED:
            self._on_refund_processed(entity)
        else:
            logger.info(f"Webhook event {event} ignored")

        if event_id:
            self._mark_seen(event_id)
        return WEBHOOK_ACK

    def _already_seen(self, event_id: str) -> bool:
        try:
            return self.lock_service.is_seen(webhook_event_key(event_id))
        except RedisError as e:
            # handlers are idempotent, de-duplication is only a shortcut
            logger.warning(f"Webhook de-duplication unavailable: {e}")
            return False

    def _mark_seen(self, event_id: str):
        try:
            self.lock_service.mark_seen(webhook_event_key(event_id), WEBHOOK_EVENT_TTL_SECONDS)
        except RedisError as e:
            logger.warning(f"Could not mark webhook event {event_id} as seen: {e}")

    def _find_payment(self, entity: GatewayPaymentEntity) -> PaymentModel | None:
        payment = None
        if entity.id:
            payment = self.repo.get_by_gateway_payment_id(entity.id)
        if payment is None and entity.order_id:
            payment = self.repo.get_by_gateway_order_id(entity.order_id)
        return payment

    def _on_payment_event(self, event: str, entity: GatewayPaymentEntity):
        payment = self._find_payment(entity)
        if payment is None:
            logger.warning(f"Webhook {event}: no payment for {entity.id} / {entity.order_id}")
            return

        response = entity.model_dump(exclude_none=True)
        if event == "payment.captured":
            self._capture(payment, entity.id, response=response)
        elif event == "payment.authorized":
            self._authorize(payment, entity.id, response=response)
        else:
            self._fail(payment, entity.id, entity.error_description, response=response)

    def _on_refund_processed(self, entity: GatewayRefundEntity):
        if self.repo.get_refund_by_gateway_id(entity.id):
            logger.info(f"Refund {entity.id} already recorded")
            return

        payment = self.repo.get_by_gateway_payment_id(entity.payment_id)
        if payment is None:
            logger.warning(f"Webhook {REFUND_PROCESSED}: no payment for {entity.payment_id}")
            return

        self._reconcile_refund(payment.id, entity.id, from_minor_units(entity.amount))

    def _reconcile_refund(self, payment_id: int, refund_id: str, amount: Decimal):
        try:
            payment = self.repo.lock_payment(payment_id)
            unknown = self.repo.find_unknown_refund(payment.id, amount)

            if unknown is not None:
                unknown.status = RefundStatus.PROCESSED
                unknown.gateway_refund_id = refund_id
                logger.info(f"Refund {unknown.id} of payment {payment.id} resolved as {refund_id}")
            else:
                if payment.status not in PaymentStatus.REFUNDABLE or amount > payment.remaining_amount:
                    logger.error(
                        f"Refund {refund_id} of {amount} does not fit payment {payment.id} "
                        f"({payment.status}, remaining {payment.remaining_amount}), needs manual review"
                    )
                    self.repo.rollback()
                    return
                self.repo.add(
                    RefundModel(
                        payment_id=payment.id,
                        gateway_refund_id=refund_id,
                        amount=amount,
                        status=RefundStatus.PROCESSED,
                        reason="Refund issued at the gateway",
                    )
                )

            self._apply_refund(payment, amount, refund_id)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

    def _apply_refund(
        self,
        payment: PaymentModel,
        amount: Decimal,
        refund_id: str | None,
        reason: str | None = None,
        status: str = RefundStatus.PROCESSED,
    ):
        payment.refunded_amount = quantize(payment.refunded_amount + amount)
        payment.status = (
            PaymentStatus.REFUNDED
            if payment.refunded_amount >= payment.amount
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        payment.refund_id = refund_id
        payment.refunded_at = utcnow()
        if reason:
            payment.refund_reason = reason

        self.repo.flush()
        payment.refund_status = (
            RefundStatus.UNKNOWN if self.repo.has_unknown_refund(payment.id) else status
        )
        self.orders.mirror_payment_status(payment.order_id, payment.status)

    # refunds

    def issue_refund(self, payment_id: int, amount: Decimal | None = None, reason: str | None = None) -> Dict[str, Any]:
        """
        Refund part or all of what is left on a captured payment.

        The payment row stays locked for the gateway call. A gateway error
        leaves no trace; a timeout is recorded as an unknown refund and
        blocks further refunds until the gateway confirms or denies it.
        """
        try:
            payment = self.repo.lock_payment(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status not in PaymentStatus.REFUNDABLE:
                raise InvariantViolationError(f"Payment is {payment.status}, only captured payments can be refunded")
            if self.repo.has_unknown_refund(payment.id):
                raise ConflictError("A refund with unknown outcome is awaiting reconciliation")

            remaining = payment.remaining_amount
            amount = remaining if amount is None else quantize(amount)
            if amount <= ZERO or amount > remaining:
                raise ValidationError(f"Refund amount must be greater than 0 and at most {remaining}")
        except Exception:
            self.repo.rollback()
            raise

        refund_status = RefundStatus.PROCESSED
        refund_id = None
        if payment.payment_method != PaymentType.COD:
            try:
                result = self.gateway.refund(payment.gateway_payment_id, amount, notes={"reason": reason or ""})
            except GatewayTimeout as e:
                self.repo.add(
                    RefundModel(payment_id=payment.id, amount=amount, status=RefundStatus.UNKNOWN, reason=reason)
                )
                payment.refund_status = RefundStatus.UNKNOWN
                self.repo.commit()
                logger.error(f"Refund of {amount} on payment {payment_id} has unknown outcome: {e}")
                raise RefundOutcomeUnknown("Refund outcome is unknown and has been recorded for reconciliation") from e
            except GatewayError as e:
                self.repo.rollback()
                logger.error(f"Refund of {amount} on payment {payment_id} failed: {e}")
                raise ExternalDependencyError("Refund failed at the payment gateway, nothing was refunded") from e
            refund_id = result.get("id")
            refund_status = result.get("status") or RefundStatus.PROCESSED

        try:
            self.repo.add(
                RefundModel(
                    payment_id=payment.id,
                    gateway_refund_id=refund_id,
                    amount=amount,
                    status=refund_status,
                    reason=reason,
                )
            )
            self._apply_refund(payment, amount, refund_id, reason, refund_status)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            logger.error(f"Refund {refund_id} of {amount} went through but was not recorded for payment {payment_id}")
            raise

        logger.info(f"Refunded {amount} on payment {payment_id} ({refund_id}), status {payment.status}")
        return {"status": refund_status, "amount": amount, "refund_id": refund_id}

    def refund_order(self, order: OrderModel, amount: Decimal | None, reason: str | None) -> Dict[str, Any] | None:
        """
        Refund what an order change gave back. None when nothing was captured.

        Failures are reported in the result instead of raised: the order
        change that asked for the refund has already committed.
        """
        if order.payment_id is None or order.payment_status not in PaymentStatus.REFUNDABLE:
            return None
        try:
            return self.issue_refund(order.payment_id, amount, reason)
        except CommerceError as e:
            logger.error(f"Refund for order {order.order_number} needs manual follow-up: {e.message}")
            status = RefundStatus.UNKNOWN if isinstance(e, RefundOutcomeUnknown) else RefundStatus.FAILED
            return {"status": status, "amount": amount, "refund_id": None, "error": e.message}
