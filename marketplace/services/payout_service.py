# marketplace/services/payout_service.py
import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import utcnow
from marketplace.data.models.payout import PayoutModel, PayoutItemModel
from marketplace.domain.errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    InvariantViolationError,
)
from marketplace.domain.money import ZERO, quantize, percent_of
from marketplace.domain.statuses import OrderStatus, PaymentStatus, PayoutStatus
from marketplace.repos.order_repo import OrderRepo
from marketplace.repos.payout_repo import PayoutRepo
from marketplace.services.lock_service import LockService, payout_lock_key
from marketplace.utils.retry import allocation_retry
from marketplace.utils.settings import (
    DEFAULT_PLATFORM_FEE_PERCENTAGE,
    PLATFORM_FEE_TAX_PERCENTAGE,
    PAYOUT_LOCK_TTL_SECONDS,
)
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

TOTAL_FIELDS = ("total_amount", "total_platform_fee", "total_tax", "net_payout_amount")


class BatchIdTaken(Exception):
    """Another payout committed the same batch id first."""


def batch_prefix(now=None) -> str:
    return f"PAY-{(now or utcnow()).strftime('%y%m%d')}-"


def settle_amount(amount: Decimal, fee_percentage: Decimal) -> Dict[str, Decimal]:
    """Fee on the order amount, tax on the fee, the rest goes to the store."""
    fee = percent_of(amount, fee_percentage)
    tax = percent_of(fee, PLATFORM_FEE_TAX_PERCENTAGE)
    return {
        "amount": quantize(amount),
        "platform_fee": fee,
        "tax": tax,
        "net_amount": quantize(amount - fee - tax),
    }


def payout_to_dict(payout: PayoutModel, excluded=None) -> Dict[str, Any]:
    return {
        "id": payout.id,
        "store_id": payout.store_id,
        "payout_batch": payout.payout_batch,
        "status": payout.status,
        "platform_fee_percentage": payout.platform_fee_percentage,
        "total_amount": payout.total_amount,
        "total_platform_fee": payout.total_platform_fee,
        "total_tax": payout.total_tax,
        "net_payout_amount": payout.net_payout_amount,
        "payout_date": payout.payout_date,
        "transaction_id": payout.transaction_id,
        "transaction_reference": payout.transaction_reference,
        "notes": payout.notes,
        "created_at": payout.created_at,
        "items": [
            {
                "order_id": i.order_id,
                "amount": i.amount,
                "platform_fee": i.platform_fee,
                "tax": i.tax,
                "net_amount": i.net_amount,
            }
            for i in payout.items
        ],
        "excluded": excluded or [],
    }


def _empty_totals() -> Dict[str, Any]:
    totals = {field: ZERO for field in TOTAL_FIELDS}
    totals["count"] = 0
    return totals


def _accumulate(totals: Dict[str, Any], payout: PayoutModel):
    totals["count"] += 1
    for field in TOTAL_FIELDS:
        totals[field] = quantize(totals[field] + getattr(payout, field))


class PayoutService:
    """
    Settlement of delivered, captured orders back to their store.

    An order is paid out at most once: payout_items.order_id is unique, so
    two generations over overlapping orders cannot both commit even if both
    passed the eligibility check. The per-store Redis lock only keeps such
    collisions rare.
    """

    def __init__(self, db: Session, lock_service: LockService):
        self.repo = PayoutRepo(db)
        self.orders = OrderRepo(db)
        self.lock_service = lock_service

    def _eligibility(self, store_id: int, order_ids) -> tuple[list, list]:
        order_ids = list(dict.fromkeys(order_ids))
        orders = self.orders.get_orders(order_ids)
        paid_out = self.repo.paid_out_order_ids(order_ids)

        eligible, excluded = [], []
        for order_id in order_ids:
            order = orders.get(order_id)
            if order is None:
                reason = "not_found"
            elif order.store_id != store_id:
                reason = "wrong_store"
            elif order.order_status != OrderStatus.DELIVERED:
                reason = "not_delivered"
            elif order.payment_status != PaymentStatus.CAPTURED:
                reason = "not_captured"
            elif order_id in paid_out:
                reason = "already_paid_out"
            else:
                eligible.append(order)
                continue
            excluded.append({"order_id": order_id, "reason": reason})
        return eligible, excluded

    def generate(
        self,
        store_id: int,
        order_ids,
        platform_fee_percentage: Decimal | None = None,
        notes: str | None = None,
    ) -> Dict[str, Any]:
        fee_percentage = (
            DEFAULT_PLATFORM_FEE_PERCENTAGE if platform_fee_percentage is None else Decimal(platform_fee_percentage)
        )
        if fee_percentage < 0 or fee_percentage > 100:
            raise ValidationError("Platform fee percentage must be between 0 and 100")

        key = payout_lock_key(store_id)
        owner = uuid.uuid4().hex
        if not self.lock_service.acquire(key, owner, PAYOUT_LOCK_TTL_SECONDS):
            raise ConflictError("A payout for this store is being generated, please retry")
        try:
            eligible, excluded = self._eligibility(store_id, order_ids)
            if not eligible:
                raise ValidationError(
                    "No eligible orders for payout: "
                    + ", ".join(f"{e['order_id']} ({e['reason']})" for e in excluded)
                )
            payout = self._create_batch(store_id, eligible, fee_percentage, notes)
        finally:
            self.lock_service.release(key, owner)

        for entry in excluded:
            logger.info(f"Payout {payout.payout_batch}: order {entry['order_id']} excluded ({entry['reason']})")
        logger.info(
            f"Payout {payout.payout_batch} generated for store {store_id}: "
            f"{len(payout.items)} orders, net {payout.net_payout_amount}"
        )
        return payout_to_dict(payout, excluded)

    @allocation_retry(BatchIdTaken)
    def _create_batch(self, store_id: int, orders, fee_percentage: Decimal, notes: str | None) -> PayoutModel:
        payout = PayoutModel(
            store_id=store_id,
            payout_batch=self.repo.next_batch_id(batch_prefix()),
            platform_fee_percentage=fee_percentage,
            status=PayoutStatus.PENDING,
            notes=notes,
        )
        totals = _empty_totals()
        for order in orders:
            line = settle_amount(order.total_payable_amount, fee_percentage)
            payout.items.append(PayoutItemModel(order_id=order.id, **line))
            totals["total_amount"] += line["amount"]
            totals["total_platform_fee"] += line["platform_fee"]
            totals["total_tax"] += line["tax"]
            totals["net_payout_amount"] += line["net_amount"]
        for field in TOTAL_FIELDS:
            setattr(payout, field, quantize(totals[field]))

        try:
            self.repo.add(payout)
            self.repo.commit()
        except IntegrityError as e:
            self.repo.rollback()
            if "payout_batch" in str(e.orig):
                logger.warning(f"Batch id {payout.payout_batch} taken, allocating another")
                raise BatchIdTaken(payout.payout_batch) from e
            raise ConflictError("One or more orders were paid out by a concurrent payout") from e
        return payout

    def process(
        self,
        payout_id: int,
        transaction_id: str,
        transaction_reference: str | None = None,
        notes: str | None = None,
    ) -> Dict[str, Any]:
        payout = self.repo.get_payout(payout_id)
        if not payout:
            raise NotFoundError("Payout not found")
        if payout.status != PayoutStatus.PENDING:
            raise InvariantViolationError(f"Payout {payout.payout_batch} is already {payout.status}")

        data = {
            "status": PayoutStatus.COMPLETED,
            "payout_date": utcnow(),
            "transaction_id": transaction_id,
            "transaction_reference": transaction_reference,
            "updated_at": utcnow(),
        }
        if notes:
            data["notes"] = notes
        try:
            if self.repo.complete(payout.id, PayoutStatus.PENDING, data) == 0:
                raise InvariantViolationError(f"Payout {payout.payout_batch} was processed by another request")
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        self.repo.refresh(payout)
        logger.info(f"Payout {payout.payout_batch} completed with transaction {transaction_id}")
        return payout_to_dict(payout)

    # queries

    def get_payout(self, payout_id: int, store_id: int | None = None) -> Dict[str, Any]:
        payout = self.repo.get_payout(payout_id)
        if not payout or (store_id is not None and payout.store_id != store_id):
            raise NotFoundError("Payout not found")
        return payout_to_dict(payout)

    def list_store_payouts(self, store_id: int, status: str | None = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        rows, total = self.repo.list_payouts(store_id, status, offset=(page - 1) * limit, limit=limit)
        return {"items": [payout_to_dict(p) for p in rows], "total": total, "page": page, "limit": limit}

    def summary(self, store_id: int, start: datetime | None = None, end: datetime | None = None) -> Dict[str, Any]:
        totals = _empty_totals()
        by_status = defaultdict(_empty_totals)
        monthly = defaultdict(_empty_totals)

        for payout in self.repo.payouts_between(store_id, start, end):
            _accumulate(totals, payout)
            _accumulate(by_status[payout.status], payout)
            _accumulate(monthly[payout.created_at.strftime("%Y-%m")], payout)

        return {
            "store_id": store_id,
            "totals": totals,
            "by_status": dict(by_status),
            "monthly": [dict(month=month, **values) for month, values in sorted(monthly.items())],
        }
