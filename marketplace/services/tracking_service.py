# marketplace/services/tracking_service.py
from typing import Any, Dict

from sqlalchemy.orm import Session

from marketplace.data.models.tracking import DeliveryTrackingModel
from marketplace.domain.errors import NotFoundError, InvariantViolationError
from marketplace.domain.order_states import TERMINAL
from marketplace.repos.order_repo import OrderRepo
from marketplace.repos.tracking_repo import TrackingRepo
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def tracking_to_dict(tracking: DeliveryTrackingModel) -> Dict[str, Any]:
    return {
        "id": tracking.id,
        "order_id": tracking.order_id,
        "tracking_number": tracking.tracking_number,
        "courier_name": tracking.courier_name,
        "courier_website": tracking.courier_website,
        "estimated_delivery_date": tracking.estimated_delivery_date,
        "current_status": tracking.current_status,
        "status_updates": [
            {"status": u.status, "description": u.description, "location": u.location, "timestamp": u.timestamp}
            for u in tracking.status_updates
        ],
    }


COURIER_FIELDS = ("tracking_number", "courier_name", "courier_website", "estimated_delivery_date")


class TrackingService:
    """Courier details and the append-only delivery history of an order."""

    def __init__(self, db: Session):
        self.repo = TrackingRepo(db)
        self.orders = OrderRepo(db)

    def _tracking(self, order_id: int, user_id: int | None = None, store_id: int | None = None) -> DeliveryTrackingModel:
        order = self.orders.get_order(order_id)
        if (
            not order
            or (user_id is not None and order.user_id != user_id)
            or (store_id is not None and order.store_id != store_id)
        ):
            raise NotFoundError("Order not found")

        tracking = self.repo.get_by_order(order_id)
        if tracking is None:
            raise NotFoundError("Tracking not found for this order")
        return tracking

    def get_tracking(self, order_id: int, user_id: int | None = None, store_id: int | None = None) -> Dict[str, Any]:
        return tracking_to_dict(self._tracking(order_id, user_id, store_id))

    def add_update(self, order_id: int, data: Dict[str, Any], store_id: int | None = None) -> Dict[str, Any]:
        tracking = self._tracking(order_id, store_id=store_id)
        order = self.orders.get_order(order_id)
        if order.order_status in TERMINAL:
            raise InvariantViolationError(f"Order is {order.order_status}, tracking is closed")

        try:
            for field in COURIER_FIELDS:
                if data.get(field) is not None:
                    setattr(tracking, field, data[field])
            tracking.add_status_update(data["status"], data["description"], data.get("location"))
            self.orders.commit()
        except Exception:
            self.orders.rollback()
            raise

        logger.info(f"Tracking of order {order_id}: {data['status']}")
        return tracking_to_dict(tracking)
