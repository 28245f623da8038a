# marketplace/repos/tracking_repo.py
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.data.models.address import AddressModel
from marketplace.data.models.tracking import DeliveryTrackingModel


class TrackingRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_by_order(self, order_id: int) -> DeliveryTrackingModel | None:
        return self.db.execute(
            select(DeliveryTrackingModel).where(DeliveryTrackingModel.order_id == order_id)
        ).scalar_one_or_none()

    def add(self, tracking: DeliveryTrackingModel) -> DeliveryTrackingModel:
        self.db.add(tracking)
        self.db.flush()
        return tracking


class AddressRepo:
    """Read-only access to the address book."""

    def __init__(self, db: Session):
        self.db = db

    def get_user_address(self, address_id: int, user_id: int) -> AddressModel | None:
        return self.db.execute(
            select(AddressModel).where(AddressModel.id == address_id, AddressModel.user_id == user_id)
        ).scalar_one_or_none()
