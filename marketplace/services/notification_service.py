# marketplace/services/notification_service.py
from marketplace.celery_worker import celery_app
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

MESSAGES = {
    "order.placed": "Order {order_number} has been placed",
    "payment.captured": "Payment received for order {order_number}",
    "order.cancelled": "Order {order_number} has been cancelled",
}


class NotificationService:
    """
    Buyer notifications. Delivery happens in a Celery worker.
    """

    @staticmethod
    def send_order_notification(event: str, payload: dict):
        send_order_notification_task.delay(
            payload["user_id"],
            payload["order_id"],
            event,
            payload.get("order_number", ""),
        )


@celery_app.task(name="marketplace.services.notification_service.send_order_notification_task")
def send_order_notification_task(user_id: int, order_id: int, event: str, order_number: str = ""):
    """
    Only logs for now; a mail/SMS/push provider plugs in here.
    """
    template = MESSAGES.get(event, "Order {order_number} was updated")
    message = template.format(order_number=order_number or order_id)
    logger.info(f"[NOTIFICATION] User {user_id}: {message}")
    return {"user_id": user_id, "order_id": order_id, "event": event, "status": "sent"}
