# marketplace/api/routers/carts.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.api.dependencies import get_catalog_client
from marketplace.data.database import get_db
from marketplace.domain.schemas import (
    ItemIn,
    ItemRefIn,
    QuantityIn,
    ApplyCouponIn,
    ApplyOfferIn,
    CartOut,
    ItemCountOut,
    ProductInCartOut,
)
from marketplace.services.cart_service import CartService
from marketplace.services.catalog_client import CatalogClient

router = APIRouter(prefix="/carts", tags=["carts"])


def get_service(db: Session, catalog: CatalogClient):
    return CartService(db=db, catalog=catalog)


@router.post("/items", response_model=CartOut)
def add_or_update_item(
    payload: ItemIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    """
    Puts a product into the user's active cart of the store, creating the
    cart on first use. An existing line gets the new quantity.
    """
    svc = get_service(db, catalog)
    return svc.add_or_update_item(
        user_id=user_id,
        store_id=payload.store_id,
        product_id=payload.product_id,
        quantity=payload.quantity,
        variant=payload.variant,
        size=payload.size,
    )


@router.get("/active", response_model=CartOut)
def get_active_cart(
    store_id: int = Query(...),
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).get_active_cart(user_id, store_id)


@router.get("/count", response_model=ItemCountOut)
def item_count(
    user_id: int = Query(...),
    store_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).item_count(user_id, store_id)


@router.get("/contains/{product_id}", response_model=ProductInCartOut)
def check_product(
    product_id: int,
    user_id: int = Query(...),
    variant: Optional[str] = Query(None),
    size: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).check_product(user_id, product_id, variant, size)


@router.get("/{cart_id}", response_model=CartOut)
def get_cart(
    cart_id: int,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).get_cart(cart_id, user_id)


@router.put("/{cart_id}/items", response_model=CartOut)
def set_quantity(
    cart_id: int,
    payload: QuantityIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    svc = get_service(db, catalog)
    return svc.set_quantity(
        user_id, cart_id, payload.product_id, payload.quantity, payload.variant, payload.size
    )


@router.post("/{cart_id}/items/remove", response_model=CartOut)
def remove_item(
    cart_id: int,
    payload: ItemRefIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    svc = get_service(db, catalog)
    return svc.remove_item(user_id, cart_id, payload.product_id, payload.variant, payload.size)


@router.delete("/{cart_id}/items", response_model=CartOut)
def clear_cart(
    cart_id: int,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).clear(user_id, cart_id)


@router.post("/{cart_id}/coupon", response_model=CartOut)
def apply_coupon(
    cart_id: int,
    payload: ApplyCouponIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).apply_coupon(user_id, cart_id, payload.code)


@router.delete("/{cart_id}/coupon", response_model=CartOut)
def remove_coupon(
    cart_id: int,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).remove_coupon(user_id, cart_id)


@router.post("/{cart_id}/offer", response_model=CartOut)
def apply_offer(
    cart_id: int,
    payload: ApplyOfferIn,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).apply_offer(user_id, cart_id, payload.offer_id)


@router.delete("/{cart_id}/offer", response_model=CartOut)
def remove_offer(
    cart_id: int,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).remove_offer(user_id, cart_id)
