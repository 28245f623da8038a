# marketplace/api/routers/payments.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from marketplace.api.dependencies import get_gateway, get_lock_service, get_event_bus
from marketplace.data.database import get_db
from marketplace.domain.schemas import (
    CreateIntentIn,
    PaymentIntentOut,
    VerifyPaymentIn,
    RefundIn,
    RefundOutcomeOut,
    PaymentOut,
    WebhookAckOut,
)
from marketplace.services.event_bus import EventBus
from marketplace.services.gateway_client import PaymentGateway
from marketplace.services.lock_service import LockService
from marketplace.services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


def get_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    lock_service: LockService = Depends(get_lock_service),
    event_bus: EventBus = Depends(get_event_bus),
) -> PaymentService:
    return PaymentService(db=db, gateway=gateway, lock_service=lock_service, event_bus=event_bus)


@router.post("/intent", response_model=PaymentIntentOut, status_code=201)
def create_intent(
    payload: CreateIntentIn,
    user_id: int = Query(...),
    svc: PaymentService = Depends(get_service),
):
    """Opens (or returns the open) charge intent of an unpaid order."""
    return svc.create_intent(user_id, payload.order_id)


@router.post("/verify", response_model=PaymentOut)
def verify_payment(
    payload: VerifyPaymentIn,
    user_id: int = Query(...),
    svc: PaymentService = Depends(get_service),
):
    return svc.verify_payment(
        user_id, payload.gateway_order_id, payload.gateway_payment_id, payload.gateway_signature
    )


@router.post("/webhook", response_model=WebhookAckOut)
async def webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    svc: PaymentService = Depends(get_service),
):
    # signature covers the raw bytes, so the body is not parsed by FastAPI
    body = await request.body()
    # database and Redis calls block, keep them off the event loop
    return await run_in_threadpool(svc.handle_webhook, body, x_razorpay_signature, x_razorpay_event_id)


@router.post("/{payment_id}/refund", response_model=RefundOutcomeOut)
def refund(
    payment_id: int,
    payload: RefundIn,
    svc: PaymentService = Depends(get_service),
):
    return svc.issue_refund(payment_id, payload.amount, payload.reason)


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: int,
    user_id: Optional[int] = Query(None),
    svc: PaymentService = Depends(get_service),
):
    return svc.get_payment(payment_id, user_id)
