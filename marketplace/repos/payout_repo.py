# marketplace/repos/payout_repo.py
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from marketplace.data.models.payout import PayoutModel, PayoutItemModel
from marketplace.repos.order_repo import latest_sequence


class PayoutRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_payout(self, payout_id: int) -> PayoutModel | None:
        return self.db.get(PayoutModel, payout_id)

    def paid_out_order_ids(self, order_ids) -> set[int]:
        """Orders already referenced by any payout, whatever its status."""
        if not order_ids:
            return set()
        rows = self.db.execute(
            select(PayoutItemModel.order_id).where(PayoutItemModel.order_id.in_(list(order_ids)))
        ).scalars()
        return set(rows)

    def next_batch_id(self, prefix: str) -> str:
        return f"{prefix}{latest_sequence(self.db, PayoutModel.payout_batch, prefix) + 1:04d}"

    def _scoped(self, stmt, store_id: int, status: str | None, start: datetime | None = None, end: datetime | None = None):
        stmt = stmt.where(PayoutModel.store_id == store_id, PayoutModel.is_active.is_(True))
        if status:
            stmt = stmt.where(PayoutModel.status == status)
        if start is not None:
            stmt = stmt.where(PayoutModel.created_at >= start)
        if end is not None:
            stmt = stmt.where(PayoutModel.created_at <= end)
        return stmt

    def list_payouts(
        self,
        store_id: int,
        status: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PayoutModel], int]:
        rows = self.db.execute(
            self._scoped(select(PayoutModel), store_id, status)
            .order_by(PayoutModel.created_at.desc(), PayoutModel.id.desc())
            .offset(offset)
            .limit(limit)
        ).scalars()
        total = self.db.execute(
            self._scoped(select(func.count(PayoutModel.id)), store_id, status)
        ).scalar_one()
        return list(rows), total

    def payouts_between(self, store_id: int, start: datetime | None, end: datetime | None) -> list[PayoutModel]:
        return list(
            self.db.execute(
                self._scoped(select(PayoutModel), store_id, None, start, end).order_by(PayoutModel.created_at)
            ).scalars()
        )

    def complete(self, payout_id: int, from_status: str, new_data: dict) -> int:
        result = self.db.execute(
            update(PayoutModel)
            .where(PayoutModel.id == payout_id, PayoutModel.status == from_status)
            .values(**new_data)
            .execution_options(synchronize_session=False)
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
