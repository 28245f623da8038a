# marketplace/api/routers/promotions.py
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.api.dependencies import get_catalog_client
from marketplace.data.database import get_db
from marketplace.domain.schemas import (
    OfferCreate,
    OfferUpdate,
    OfferOut,
    CouponCreate,
    CouponUpdate,
    CouponOut,
)
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.promotion_service import PromotionService

router = APIRouter(prefix="/stores/{store_id}", tags=["promotions"])


def get_service(db: Session, catalog: CatalogClient):
    return PromotionService(db=db, catalog=catalog)


# offers

@router.post("/offers", response_model=OfferOut, status_code=201)
def create_offer(
    store_id: int,
    payload: OfferCreate,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    """
    Creates an offer. An active offer must not share a product with another
    active offer of the store, and a store has at most two active offers.
    """
    return get_service(db, catalog).create_offer(store_id, payload.model_dump())


@router.get("/offers", response_model=List[OfferOut])
def list_offers(
    store_id: int,
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).list_offers(store_id, active_only)


@router.get("/offers/{offer_id}", response_model=OfferOut)
def get_offer(
    store_id: int,
    offer_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).get_offer(store_id, offer_id)


@router.patch("/offers/{offer_id}", response_model=OfferOut)
def update_offer(
    store_id: int,
    offer_id: int,
    payload: OfferUpdate,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).update_offer(store_id, offer_id, payload.model_dump(exclude_unset=True))


@router.delete("/offers/{offer_id}")
def delete_offer(
    store_id: int,
    offer_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).delete_offer(store_id, offer_id)


# coupons

@router.post("/coupons", response_model=CouponOut, status_code=201)
def create_coupon(
    store_id: int,
    payload: CouponCreate,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).create_coupon(store_id, payload.model_dump())


@router.get("/coupons", response_model=List[CouponOut])
def list_coupons(
    store_id: int,
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).list_coupons(store_id, active_only)


@router.get("/coupons/{coupon_id}", response_model=CouponOut)
def get_coupon(
    store_id: int,
    coupon_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).get_coupon(store_id, coupon_id)


@router.patch("/coupons/{coupon_id}", response_model=CouponOut)
def update_coupon(
    store_id: int,
    coupon_id: int,
    payload: CouponUpdate,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).update_coupon(store_id, coupon_id, payload.model_dump(exclude_unset=True))


@router.delete("/coupons/{coupon_id}")
def delete_coupon(
    store_id: int,
    coupon_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    return get_service(db, catalog).delete_coupon(store_id, coupon_id)
