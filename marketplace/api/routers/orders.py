# marketplace/api/routers/orders.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.api.dependencies import (
    get_catalog_client,
    get_gateway,
    get_lock_service,
    get_event_bus,
)
from marketplace.data.database import get_db
from marketplace.domain.schemas import (
    CheckoutIn,
    OrderOut,
    OrderPageOut,
    StatusUpdateIn,
    CancelIn,
    ItemsIn,
    CancellationOut,
    TrackingUpdateIn,
    TrackingOut,
)
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.checkout_service import CheckoutService
from marketplace.services.event_bus import EventBus
from marketplace.services.gateway_client import PaymentGateway
from marketplace.services.lock_service import LockService
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService
from marketplace.services.tracking_service import TrackingService

router = APIRouter(prefix="/orders", tags=["orders"])


def get_service(db: Session, gateway: PaymentGateway, lock_service: LockService, event_bus: EventBus):
    payments = PaymentService(db=db, gateway=gateway, lock_service=lock_service, event_bus=event_bus)
    return OrderService(db=db, payments=payments, event_bus=event_bus)


def order_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    lock_service: LockService = Depends(get_lock_service),
    event_bus: EventBus = Depends(get_event_bus),
) -> OrderService:
    return get_service(db, gateway, lock_service, event_bus)


@router.post("/checkout", response_model=OrderOut, status_code=201)
def checkout(
    payload: CheckoutIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
    gateway: PaymentGateway = Depends(get_gateway),
    event_bus: EventBus = Depends(get_event_bus),
):
    """
    Turns the cart into an order. Online payment types come back with the
    charge intent the client needs to open the gateway checkout.
    """
    svc = CheckoutService(db=db, catalog=catalog, gateway=gateway, event_bus=event_bus)
    return svc.checkout(
        user_id=user_id,
        cart_id=payload.cart_id,
        payment_type=payload.payment_type,
        delivery_address_id=payload.delivery_address_id,
        special_note_buyer=payload.special_note_buyer,
        special_note_seller=payload.special_note_seller,
    )


@router.get("/", response_model=OrderPageOut)
def list_user_orders(
    user_id: int = Query(...),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    svc: OrderService = Depends(order_service),
):
    return svc.list_user_orders(user_id, status, page, limit)


@router.get("/store/{store_id}", response_model=OrderPageOut)
def list_store_orders(
    store_id: int,
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    svc: OrderService = Depends(order_service),
):
    return svc.list_store_orders(store_id, status, page, limit)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    user_id: Optional[int] = Query(None),
    store_id: Optional[int] = Query(None),
    svc: OrderService = Depends(order_service),
):
    return svc.get_order(order_id, user_id=user_id, store_id=store_id)


@router.put("/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int,
    payload: StatusUpdateIn,
    store_id: Optional[int] = Query(None),
    svc: OrderService = Depends(order_service),
):
    return svc.update_status(
        order_id, payload.status, store_id=store_id, description=payload.description, location=payload.location
    )


@router.post("/{order_id}/cancel", response_model=CancellationOut)
def cancel_order(
    order_id: int,
    payload: CancelIn,
    user_id: Optional[int] = Query(None),
    store_id: Optional[int] = Query(None),
    svc: OrderService = Depends(order_service),
):
    """
    Cancels the whole order and refunds what was captured. A failed refund
    is reported in the response; the order stays cancelled.
    """
    return svc.cancel_order(order_id, payload.reason, user_id=user_id, store_id=store_id)


@router.post("/{order_id}/cancel-items", response_model=CancellationOut)
def cancel_items(
    order_id: int,
    payload: ItemsIn,
    user_id: Optional[int] = Query(None),
    store_id: Optional[int] = Query(None),
    svc: OrderService = Depends(order_service),
):
    return svc.cancel_items(order_id, payload.item_indices, payload.reason, user_id=user_id, store_id=store_id)


@router.post("/{order_id}/return-items", response_model=OrderOut)
def return_items(
    order_id: int,
    payload: ItemsIn,
    user_id: int = Query(...),
    svc: OrderService = Depends(order_service),
):
    return svc.return_items(order_id, payload.item_indices, payload.reason, user_id=user_id)


@router.get("/{order_id}/tracking", response_model=TrackingOut)
def get_tracking(
    order_id: int,
    user_id: Optional[int] = Query(None),
    store_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return TrackingService(db).get_tracking(order_id, user_id=user_id, store_id=store_id)


@router.post("/{order_id}/tracking", response_model=TrackingOut)
def add_tracking_update(
    order_id: int,
    payload: TrackingUpdateIn,
    store_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return TrackingService(db).add_update(order_id, payload.model_dump(), store_id=store_id)
