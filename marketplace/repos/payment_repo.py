# marketplace/repos/payment_repo.py
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.data.models.payment import PaymentModel, RefundModel
from marketplace.domain.statuses import PaymentStatus, RefundStatus


class PaymentRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_payment(self, payment_id: int) -> PaymentModel | None:
        return self.db.get(PaymentModel, payment_id)

    def lock_payment(self, payment_id: int) -> PaymentModel | None:
        # SELECT ... FOR UPDATE; serialises refunds on the same payment
        return self.db.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_by_gateway_order_id(self, gateway_order_id: str) -> PaymentModel | None:
        return self.db.execute(
            select(PaymentModel).where(PaymentModel.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> PaymentModel | None:
        return self.db.execute(
            select(PaymentModel)
            .where(PaymentModel.gateway_payment_id == gateway_payment_id)
            .order_by(PaymentModel.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_live_payment(self, order_id: int) -> PaymentModel | None:
        return self.db.execute(
            select(PaymentModel).where(
                PaymentModel.order_id == order_id,
                PaymentModel.status != PaymentStatus.FAILED,
            )
        ).scalar_one_or_none()

    def transition(self, payment_id: int, allowed_from, new_data: dict) -> int:
        """
        UPDATE payments SET ... WHERE id = :id AND status IN (:allowed_from)
        Concurrent webhook deliveries and verify calls resolve on this row.
        """
        result = self.db.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status.in_(allowed_from))
            .values(**new_data)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def list_refunds(self, payment_id: int) -> list[RefundModel]:
        return list(
            self.db.execute(
                select(RefundModel).where(RefundModel.payment_id == payment_id).order_by(RefundModel.id)
            ).scalars()
        )

    def get_refund_by_gateway_id(self, gateway_refund_id: str) -> RefundModel | None:
        return self.db.execute(
            select(RefundModel).where(RefundModel.gateway_refund_id == gateway_refund_id)
        ).scalar_one_or_none()

    def find_unknown_refund(self, payment_id: int, amount) -> RefundModel | None:
        return self.db.execute(
            select(RefundModel)
            .where(
                RefundModel.payment_id == payment_id,
                RefundModel.status == RefundStatus.UNKNOWN,
                RefundModel.amount == amount,
            )
            .order_by(RefundModel.id)
            .limit(1)
        ).scalar_one_or_none()

    def has_unknown_refund(self, payment_id: int) -> bool:
        return self.db.execute(
            select(RefundModel.id)
            .where(RefundModel.payment_id == payment_id, RefundModel.status == RefundStatus.UNKNOWN)
            .limit(1)
        ).first() is not None

    def list_unknown_refunds(self) -> list[RefundModel]:
        return list(
            self.db.execute(
                select(RefundModel).where(RefundModel.status == RefundStatus.UNKNOWN).order_by(RefundModel.id)
            ).scalars()
        )

    def add(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def flush(self):
        self.db.flush()

    def refresh(self, entity):
        self.db.refresh(entity)
        return entity

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
