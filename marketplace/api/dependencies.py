# marketplace/api/dependencies.py
from functools import lru_cache

from marketplace.services.catalog_client import CatalogClient
from marketplace.services.event_bus import EventBus, build_default_bus
from marketplace.services.gateway_client import PaymentGateway
from marketplace.services.lock_service import LockService


# one instance per process; tests swap them through app.dependency_overrides

@lru_cache
def get_catalog_client() -> CatalogClient:
    return CatalogClient()


@lru_cache
def get_gateway() -> PaymentGateway:
    return PaymentGateway()


@lru_cache
def get_lock_service() -> LockService:
    return LockService()


@lru_cache
def get_event_bus() -> EventBus:
    return build_default_bus()
