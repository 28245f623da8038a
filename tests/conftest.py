"""Shared fixtures: in-memory database, fakes for the catalog, gateway, Redis and event bus."""
import hashlib
import hmac
import os

# must be set before marketplace.utils.settings is imported
os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.data import models  # noqa: F401
from marketplace.data.database import Base
from marketplace.data.models import AddressModel
from marketplace.domain.money import to_minor_units
from marketplace.domain.order_states import can_transition
from marketplace.domain.schemas import ProductInfo
from marketplace.services.cart_service import CartService
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.checkout_service import CheckoutService
from marketplace.services.event_bus import EventBus
from marketplace.services.gateway_client import PaymentGateway, GatewayError, GatewayTimeout
from marketplace.services.lock_service import LockService
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService
from marketplace.services.payout_service import PayoutService
from marketplace.services.promotion_service import PromotionService

USER_ID = 1
STORE_ID = 1
OTHER_STORE_ID = 2

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class FakeCatalog(CatalogClient):
    def __init__(self):
        super().__init__(base_url="http://catalog.test")
        self.products: dict[int, ProductInfo] = {}
        self.order_counts: dict[int, int] = {}

    def add(self, product_id, store_id=STORE_ID, price="1000.00", selling_price=None, inventory=10, **extra):
        self.products[product_id] = ProductInfo(
            id=product_id,
            store_id=store_id,
            name=f"Product {product_id}",
            sku=f"SKU-{product_id}",
            price=Decimal(price),
            selling_price=Decimal(selling_price or price),
            inventory=inventory,
            **extra,
        )
        return self.products[product_id]

    def fetch_product(self, product_id):
        return self.products.get(product_id)

    def increment_store_order_count(self, store_id):
        self.order_counts[store_id] = self.order_counts.get(store_id, 0) + 1


class FakeGateway(PaymentGateway):
    """Real signature checks, canned transport."""

    def __init__(self):
        super().__init__(
            base_url="http://gateway.test",
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
        )
        self.fail_intents = False
        self.refund_outcome = "ok"
        self.intents = []
        self.refunds = []

    def create_charge_intent(self, amount, receipt, currency="INR", notes=None):
        if self.fail_intents:
            raise GatewayError("Gateway returned 503")
        intent = {
            "id": f"order_gw_{len(self.intents) + 1}",
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "status": "created",
        }
        self.intents.append(intent)
        return intent

    def refund(self, gateway_payment_id, amount, notes=None):
        self.refunds.append((gateway_payment_id, amount))
        if self.refund_outcome == "timeout":
            raise GatewayTimeout("read timed out")
        if self.refund_outcome == "error":
            raise GatewayError("Gateway returned 400: amount exceeds captured")
        return {
            "id": f"rfnd_{len(self.refunds)}",
            "payment_id": gateway_payment_id,
            "amount": to_minor_units(amount),
            "status": "processed",
        }


class FakeLockService(LockService):
    def __init__(self):
        self.locks: dict[str, str] = {}
        self.seen: set[str] = set()

    def acquire(self, key, owner, ttl):
        if key in self.locks:
            return False
        self.locks[key] = owner
        return True

    def release(self, key, owner):
        if self.locks.get(key) == owner:
            del self.locks[key]
            return True
        return False

    def is_seen(self, key):
        return key in self.seen

    def mark_seen(self, key, ttl):
        first = key not in self.seen
        self.seen.add(key)
        return first


class RecordingEventBus(EventBus):
    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, event, payload):
        self.published.append((event, payload))
        super().publish(event, payload)

    def names(self):
        return [event for event, _ in self.published]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def catalog():
    catalog = FakeCatalog()
    catalog.add(1, price="1000.00")
    catalog.add(2, price="500.00")
    catalog.add(3, price="500.00")
    catalog.add(4, price="200.00", selling_price="150.00", inventory=2)
    catalog.add(9, store_id=OTHER_STORE_ID, price="300.00")
    return catalog


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locks():
    return FakeLockService()


@pytest.fixture
def bus():
    return RecordingEventBus()


@pytest.fixture
def address(db):
    address = AddressModel(
        user_id=USER_ID,
        name="Asha Rao",
        phone="9800000000",
        line1="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        pincode="560001",
    )
    db.add(address)
    db.commit()
    return address


@pytest.fixture
def carts(db, catalog):
    return CartService(db, catalog)


@pytest.fixture
def promotions(db, catalog):
    return PromotionService(db, catalog)


@pytest.fixture
def checkout(db, catalog, gateway, bus):
    return CheckoutService(db, catalog, gateway, bus)


@pytest.fixture
def payments(db, gateway, locks, bus):
    return PaymentService(db, gateway, locks, bus)


@pytest.fixture
def orders(db, payments, bus):
    return OrderService(db, payments, bus)


@pytest.fixture
def payouts(db, locks):
    return PayoutService(db, locks)


@pytest.fixture
def place_order(carts, checkout, address):
    """Cart with the given {product_id: quantity} lines, checked out."""

    def _place(lines, payment_type="upi", store_id=STORE_ID, user_id=USER_ID):
        cart = None
        for product_id, quantity in lines.items():
            cart = carts.add_or_update_item(user_id, store_id, product_id, quantity)
        return checkout.checkout(user_id, cart["cart_id"], payment_type, address.id)

    return _place


@pytest.fixture
def capture(payments):
    """Completes the client-side payment flow for an order dict from checkout."""

    def _capture(order, gateway_payment_id="pay_1"):
        gateway_order_id = order["payment"]["gateway_order_id"]
        signature = sign(KEY_SECRET, f"{gateway_order_id}|{gateway_payment_id}".encode())
        return payments.verify_payment(order["user_id"], gateway_order_id, gateway_payment_id, signature)

    return _capture


@pytest.fixture
def deliver(orders):
    def _deliver(order_id):
        for status in ("confirmed", "processing", "shipped", "delivered"):
            current = orders.get_order(order_id)["order_status"]
            if can_transition(current, status):
                orders.update_status(order_id, status)
        return orders.get_order(order_id)

    return _deliver
