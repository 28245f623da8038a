# marketplace/repos/order_repo.py
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from marketplace.data.models.order import OrderModel, OrderItemModel
from marketplace.domain.statuses import OrderItemStatus


def latest_sequence(db: Session, column, prefix: str) -> int:
    """Highest numeric suffix among values starting with prefix, 0 if none."""
    latest = db.execute(
        select(column)
        .where(column.like(f"{prefix}%"))
        .order_by(func.length(column).desc(), column.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None:
        return 0
    return int(latest[len(prefix):])


class OrderRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_order(self, order_id: int) -> OrderModel | None:
        return self.db.get(OrderModel, order_id)

    def get_orders(self, order_ids) -> dict[int, OrderModel]:
        if not order_ids:
            return {}
        rows = self.db.execute(select(OrderModel).where(OrderModel.id.in_(list(order_ids)))).scalars()
        return {o.id: o for o in rows}

    def lock_order(self, order_id: int) -> None:
        # SELECT ... FOR UPDATE; item changes of one order run one at a time
        self.db.execute(select(OrderModel.id).where(OrderModel.id == order_id).with_for_update())

    def next_order_number(self, prefix: str) -> str:
        return f"{prefix}{latest_sequence(self.db, OrderModel.order_number, prefix) + 1:04d}"

    def _filtered(self, stmt, status: str | None):
        if status:
            stmt = stmt.where(OrderModel.order_status == status)
        return stmt

    def list_orders(
        self,
        user_id: int | None = None,
        store_id: int | None = None,
        status: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[OrderModel], int]:
        stmt = select(OrderModel)
        count_stmt = select(func.count(OrderModel.id))
        if user_id is not None:
            stmt = stmt.where(OrderModel.user_id == user_id)
            count_stmt = count_stmt.where(OrderModel.user_id == user_id)
        if store_id is not None:
            stmt = stmt.where(OrderModel.store_id == store_id)
            count_stmt = count_stmt.where(OrderModel.store_id == store_id)

        stmt = self._filtered(stmt, status)
        count_stmt = self._filtered(count_stmt, status)

        rows = self.db.execute(
            stmt.order_by(OrderModel.created_at.desc(), OrderModel.id.desc()).offset(offset).limit(limit)
        ).scalars()
        return list(rows), self.db.execute(count_stmt).scalar_one()

    def transition_status(self, order_id: int, from_status: str, new_data: dict) -> int:
        """Conditional update on the current order status; returns rowcount."""
        result = self.db.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.order_status == from_status)
            .values(**new_data)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def transition_items(self, order_id: int, item_ids, from_status: str, new_data: dict) -> int:
        """
        UPDATE order_items SET ... WHERE order_id = :id AND status = :from_status
        [AND id IN (:item_ids)]; returns rowcount. None for item_ids means every item.
        """
        stmt = update(OrderItemModel).where(
            OrderItemModel.order_id == order_id,
            OrderItemModel.status == from_status,
        )
        if item_ids is not None:
            stmt = stmt.where(OrderItemModel.id.in_(list(item_ids)))
        result = self.db.execute(stmt.values(**new_data).execution_options(synchronize_session=False))
        return result.rowcount

    def count_active_items(self, order_id: int) -> int:
        return self.db.execute(
            select(func.count(OrderItemModel.id)).where(
                OrderItemModel.order_id == order_id,
                OrderItemModel.status == OrderItemStatus.ACTIVE,
            )
        ).scalar_one()

    def mirror_payment_status(self, order_id: int, status: str, only_from=None) -> int:
        stmt = update(OrderModel).where(OrderModel.id == order_id)
        if only_from:
            stmt = stmt.where(OrderModel.payment_status.in_(only_from))
        result = self.db.execute(
            stmt.values(payment_status=status).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def add(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def refresh(self, entity):
        self.db.refresh(entity)
        return entity

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
