import asyncio
import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from marketplace.api.dependencies import get_catalog_client, get_gateway, get_lock_service, get_event_bus
from marketplace.data.database import get_db
from marketplace.main import create_app
from marketplace.services.lock_service import payout_lock_key
from marketplace.services.payment_service import PaymentService

from conftest import USER_ID, STORE_ID, KEY_SECRET, WEBHOOK_SECRET, sign


@pytest.fixture
def client(db, catalog, gateway, locks, bus):
    app = create_app()

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_catalog_client] = lambda: catalog
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_lock_service] = lambda: locks
    app.dependency_overrides[get_event_bus] = lambda: bus
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def cart(client):
    response = client.post(
        "/carts/items", params={"user_id": USER_ID}, json={"store_id": STORE_ID, "product_id": 1, "quantity": 1}
    )
    assert response.status_code == 200
    return response.json()


def checkout(client, cart, address, payment_type="cod"):
    return client.post(
        "/orders/checkout",
        params={"user_id": USER_ID},
        json={"cart_id": cart["cart_id"], "payment_type": payment_type, "delivery_address_id": address.id},
    )


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok"}


def test_cart_endpoints(client, cart):
    cart_id = cart["cart_id"]
    assert Decimal(cart["summary"]["subtotal"]) == Decimal("1000")

    response = client.put(f"/carts/{cart_id}/items", params={"user_id": USER_ID}, json={"product_id": 1, "quantity": 3})
    assert response.json()["items"][0]["quantity"] == 3

    assert client.get("/carts/count", params={"user_id": USER_ID}).json() == {"count": 3}
    contains = client.get("/carts/contains/1", params={"user_id": USER_ID}).json()
    assert contains["in_cart"] is True
    assert client.get("/carts/active", params={"user_id": USER_ID, "store_id": STORE_ID}).json()["cart_id"] == cart_id

    response = client.post(f"/carts/{cart_id}/items/remove", params={"user_id": USER_ID}, json={"product_id": 1})
    assert response.json()["items"] == []


def test_promotions_and_checkout_through_http(client, cart, address, bus):
    offer = client.post(
        f"/stores/{STORE_ID}/offers",
        json={"discount_type": "percentage", "discount_percentage": "10", "max_discount": "80", "products": [1]},
    )
    assert offer.status_code == 201
    coupon = client.post(
        f"/stores/{STORE_ID}/coupons", json={"code": "FLAT50", "discount_type": "amount", "discount_amount": "50"}
    )
    assert coupon.status_code == 201
    assert [c["code"] for c in client.get(f"/stores/{STORE_ID}/coupons").json()] == ["FLAT50"]

    client.post(f"/carts/{cart['cart_id']}/offer", params={"user_id": USER_ID}, json={"offer_id": offer.json()["id"]})
    priced = client.post(f"/carts/{cart['cart_id']}/coupon", params={"user_id": USER_ID}, json={"code": "flat50"})
    assert Decimal(priced.json()["summary"]["subtotal"]) == Decimal("870")

    response = checkout(client, cart, address)

    assert response.status_code == 201
    order = response.json()
    assert Decimal(order["total_payable_amount"]) == Decimal("870")
    assert order["payment_status"] == "pending"
    assert order["payment"] is None
    assert "order.placed" in bus.names()

    listing = client.get("/orders/", params={"user_id": USER_ID}).json()
    assert listing["total"] == 1
    tracking = client.get(f"/orders/{order['id']}/tracking", params={"user_id": USER_ID}).json()
    assert tracking["current_status"] == "pending"


def test_error_kinds(client, cart, address, gateway):
    missing = client.get("/orders/999")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "not_found"

    invalid = client.post("/carts/items", params={"user_id": USER_ID}, json={"store_id": STORE_ID, "product_id": 1, "quantity": 0})
    assert invalid.status_code == 400
    assert invalid.json()["kind"] == "validation"

    unknown_type = checkout(client, cart, address, payment_type="cheque")
    assert unknown_type.status_code == 400

    gateway.fail_intents = True
    unavailable = checkout(client, cart, address, payment_type="upi")
    assert unavailable.status_code == 502
    assert unavailable.json()["kind"] == "external_dependency"


def test_unexpected_errors_are_opaque(client, catalog):
    def broken(product_id):
        raise RuntimeError("catalog exploded")

    catalog.fetch_product = broken
    response = client.post("/carts/items", params={"user_id": USER_ID}, json={"store_id": STORE_ID, "product_id": 1, "quantity": 1})

    assert response.status_code == 500
    assert response.json() == {"kind": "internal", "detail": "Internal server error"}


def test_online_payment_flow(client, cart, address, gateway):
    order = checkout(client, cart, address, payment_type="upi").json()
    intent = order["payment"]
    assert intent["amount"] == 100000
    assert intent["key_id"] == "rzp_test_key"

    signature = sign(KEY_SECRET, f"{intent['gateway_order_id']}|pay_1".encode())
    verified = client.post(
        "/payments/verify",
        params={"user_id": USER_ID},
        json={"gateway_order_id": intent["gateway_order_id"], "gateway_payment_id": "pay_1", "gateway_signature": signature},
    )
    assert verified.status_code == 200
    assert verified.json()["status"] == "captured"

    again = client.post("/payments/intent", params={"user_id": USER_ID}, json={"order_id": order["id"]})
    assert again.status_code == 409

    refund = client.post(f"/payments/{intent['payment_id']}/refund", json={"amount": "200", "reason": "Late"})
    assert refund.status_code == 200
    assert Decimal(refund.json()["amount"]) == Decimal("200")

    payment = client.get(f"/payments/{intent['payment_id']}").json()
    assert payment["status"] == "partially_refunded"
    assert len(payment["refunds"]) == 1


def test_webhook_endpoint(client, cart, address, locks):
    order = checkout(client, cart, address, payment_type="card").json()
    body = json.dumps(
        {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_9", "order_id": order["payment"]["gateway_order_id"], "method": "card"}}},
        }
    ).encode()

    forged = client.post("/payments/webhook", content=body, headers={"x-razorpay-signature": "nope"})
    assert forged.json() == {"status": "ok"}
    assert client.get(f"/orders/{order['id']}").json()["payment_status"] == "pending"

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"x-razorpay-signature": sign(WEBHOOK_SECRET, body), "x-razorpay-event-id": "evt_42"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.get(f"/orders/{order['id']}").json()["payment_status"] == "captured"
    assert "webhook:event:evt_42" in locks.seen


def test_order_status_and_cancellation(client, cart, address):
    order = checkout(client, cart, address).json()

    for status in ("confirmed", "processing", "shipped"):
        response = client.put(f"/orders/{order['id']}/status", params={"store_id": STORE_ID}, json={"status": status})
        assert response.status_code == 200

    blocked = client.post(f"/orders/{order['id']}/cancel", params={"user_id": USER_ID}, json={"reason": "Too slow"})
    assert blocked.status_code == 422
    assert blocked.json()["kind"] == "invariant_violation"

    tracked = client.post(
        f"/orders/{order['id']}/tracking",
        params={"store_id": STORE_ID},
        json={"status": "out_for_delivery", "description": "With the courier", "courier_name": "BlueDart"},
    )
    assert tracked.status_code == 200
    assert tracked.json()["courier_name"] == "BlueDart"
    assert tracked.json()["current_status"] == "out_for_delivery"


def test_cancel_items_endpoint(client, address):
    for product_id in (2, 3):
        cart = client.post(
            "/carts/items", params={"user_id": USER_ID}, json={"store_id": STORE_ID, "product_id": product_id, "quantity": 1}
        ).json()
    order = checkout(client, cart, address).json()

    response = client.post(
        f"/orders/{order['id']}/cancel-items", params={"user_id": USER_ID}, json={"item_indices": [1], "reason": "Duplicate"}
    )

    assert response.status_code == 200
    assert response.json()["order"]["order_status"] == "partially_cancelled"
    assert response.json()["refund"] is None


def test_payout_endpoints(client, cart, address, deliver, locks):
    order = checkout(client, cart, address).json()
    deliver(order["id"])

    locks.locks[payout_lock_key(STORE_ID)] = "busy"
    busy = client.post("/payouts/generate", json={"store_id": STORE_ID, "order_ids": [order["id"]]})
    assert busy.status_code == 409
    locks.locks.clear()

    created = client.post("/payouts/generate", json={"store_id": STORE_ID, "order_ids": [order["id"], 999]})
    assert created.status_code == 201
    payout = created.json()
    assert Decimal(payout["net_payout_amount"]) == Decimal("900")
    assert payout["excluded"] == [{"order_id": 999, "reason": "not_found"}]

    processed = client.post(f"/payouts/{payout['id']}/process", json={"transaction_id": "TXN-1"})
    assert processed.json()["status"] == "completed"

    assert client.get(f"/payouts/store/{STORE_ID}").json()["total"] == 1
    summary = client.get(f"/payouts/store/{STORE_ID}/summary").json()
    assert summary["totals"]["count"] == 1


def test_webhook_is_handled_off_the_event_loop(client, monkeypatch):
    seen = []

    def handle(self, body, signature, event_id=None):
        try:
            asyncio.get_running_loop()
            seen.append("event loop")
        except RuntimeError:
            seen.append("worker thread")
        return {"status": "ok"}

    monkeypatch.setattr(PaymentService, "handle_webhook", handle)

    assert client.post("/payments/webhook", content=b"{}").json() == {"status": "ok"}
    assert seen == ["worker thread"]
