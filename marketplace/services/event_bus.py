# marketplace/services/event_bus.py
"""
In-process domain events.

Services publish only after their transaction has committed, so a handler
never sees state that could still be rolled back, and a failing handler
never undoes the command that triggered it.
"""
from collections import defaultdict
from typing import Callable

from marketplace.services.notification_service import NotificationService
from marketplace.tasks.catalog_counters import increment_store_order_count_task
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

ORDER_PLACED = "order.placed"
PAYMENT_CAPTURED = "payment.captured"
ORDER_CANCELLED = "order.cancelled"

Handler = Callable[[str, dict], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def publish(self, event: str, payload: dict) -> None:
        logger.info(f"Publishing {event} for order {payload.get('order_id')}")
        for handler in self._handlers.get(event, []):
            try:
                handler(event, payload)
            except Exception:
                logger.exception(f"Handler {getattr(handler, '__name__', handler)} failed for {event}")


def _notify(event: str, payload: dict) -> None:
    NotificationService.send_order_notification(event, payload)


def _bump_store_order_count(event: str, payload: dict) -> None:
    increment_store_order_count_task.delay(payload["store_id"])


def build_default_bus() -> EventBus:
    bus = EventBus()
    for event in (ORDER_PLACED, PAYMENT_CAPTURED, ORDER_CANCELLED):
        bus.subscribe(event, _notify)
    bus.subscribe(ORDER_PLACED, _bump_store_order_count)
    return bus
