# marketplace/api/routers/payouts.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.api.dependencies import get_lock_service
from marketplace.data.database import get_db
from marketplace.domain.schemas import (
    PayoutGenerateIn,
    PayoutProcessIn,
    PayoutOut,
    PayoutPageOut,
    PayoutSummaryOut,
)
from marketplace.services.lock_service import LockService
from marketplace.services.payout_service import PayoutService

router = APIRouter(prefix="/payouts", tags=["payouts"])


def get_service(db: Session, lock_service: LockService):
    return PayoutService(db=db, lock_service=lock_service)


@router.post("/generate", response_model=PayoutOut, status_code=201)
def generate_payout(
    payload: PayoutGenerateIn,
    db: Session = Depends(get_db),
    lock_service: LockService = Depends(get_lock_service),
):
    """
    Creates a pending batch over the eligible orders. Orders that are not
    delivered, not captured or already paid out come back under "excluded".
    """
    svc = get_service(db, lock_service)
    return svc.generate(
        payload.store_id, payload.order_ids, payload.platform_fee_percentage, payload.notes
    )


@router.post("/{payout_id}/process", response_model=PayoutOut)
def process_payout(
    payout_id: int,
    payload: PayoutProcessIn,
    db: Session = Depends(get_db),
    lock_service: LockService = Depends(get_lock_service),
):
    svc = get_service(db, lock_service)
    return svc.process(payout_id, payload.transaction_id, payload.transaction_reference, payload.notes)


@router.get("/store/{store_id}", response_model=PayoutPageOut)
def list_store_payouts(
    store_id: int,
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    lock_service: LockService = Depends(get_lock_service),
):
    return get_service(db, lock_service).list_store_payouts(store_id, status, page, limit)


@router.get("/store/{store_id}/summary", response_model=PayoutSummaryOut)
def store_summary(
    store_id: int,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    lock_service: LockService = Depends(get_lock_service),
):
    return get_service(db, lock_service).summary(store_id, start, end)


@router.get("/{payout_id}", response_model=PayoutOut)
def get_payout(
    payout_id: int,
    store_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    lock_service: LockService = Depends(get_lock_service),
):
    return get_service(db, lock_service).get_payout(payout_id, store_id)
