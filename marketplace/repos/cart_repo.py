# marketplace/repos/cart_repo.py
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel
from marketplace.domain.statuses import CartState


class CartRepo:
    """
    Every read excludes soft-deleted carts unless include_deleted=True is passed.
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _live(stmt, include_deleted: bool):
        if not include_deleted:
            stmt = stmt.where(CartModel.is_deleted.is_(False))
        return stmt

    def get_cart(self, cart_id: int, include_deleted: bool = False) -> CartModel | None:
        stmt = self._live(select(CartModel).where(CartModel.id == cart_id), include_deleted)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_active_cart(self, user_id: int, store_id: int) -> CartModel | None:
        stmt = self._live(
            select(CartModel).where(
                CartModel.user_id == user_id,
                CartModel.store_id == store_id,
                CartModel.state == CartState.ACTIVE,
            ),
            include_deleted=False,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_active_carts(self, user_id: int) -> list[CartModel]:
        stmt = self._live(
            select(CartModel)
            .where(CartModel.user_id == user_id, CartModel.state == CartState.ACTIVE)
            .order_by(CartModel.id),
            include_deleted=False,
        )
        return list(self.db.execute(stmt).scalars())

    def create_cart(self, cart: CartModel) -> CartModel:
        self.db.add(cart)
        self.db.flush()
        return cart

    def update_cart_version(self, cart_id: int, old_version: int, new_data: dict) -> int:
        """
        UPDATE carts SET ... WHERE id = :id AND version = :old_version
        Returns the number of rows touched; 0 means somebody else won.
        """
        result = self.db.execute(
            update(CartModel)
            .where(CartModel.id == cart_id, CartModel.version == old_version)
            .values(**new_data)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def flush(self):
        self.db.flush()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
