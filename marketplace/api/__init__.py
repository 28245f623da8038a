# marketplace/api/__init__.py
from fastapi import APIRouter

from marketplace.api.routers import health, carts, promotions, orders, payments, payouts

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(carts.router)
api_router.include_router(promotions.router)
api_router.include_router(orders.router)
api_router.include_router(payments.router)
api_router.include_router(payouts.router)
