import json
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from marketplace.data.models import OrderModel, PaymentModel, DeliveryTrackingModel
from marketplace.domain.errors import ValidationError, NotFoundError, ConflictError, InvariantViolationError
from marketplace.repos.order_repo import OrderRepo
from marketplace.services.event_bus import ORDER_CANCELLED
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService

from conftest import USER_ID, STORE_ID, OTHER_STORE_ID, WEBHOOK_SECRET, sign


@pytest.fixture
def paid_order(place_order, capture):
    """Products 2 and 3 at 500 each, paid online."""
    order = place_order({2: 1, 3: 1}, payment_type="upi")
    capture(order)
    return order


def payment_of(db, order):
    return db.get(PaymentModel, db.get(OrderModel, order["id"]).payment_id)


def test_partial_cancellation_refunds_cancelled_items(paid_order, orders, db, bus):
    result = orders.cancel_items(paid_order["id"], [0], reason="Wrong size", user_id=USER_ID)

    assert result["refund"]["amount"] == Decimal("500.00")
    assert result["order"]["order_status"] == "partially_cancelled"
    assert result["order"]["payment_status"] == "partially_refunded"
    assert [i["status"] for i in result["order"]["items"]] == ["cancelled", "active"]
    assert result["order"]["items"][0]["cancel_reason"] == "Wrong size"

    payment = payment_of(db, paid_order)
    assert payment.status == "partially_refunded"
    assert payment.refunded_amount + payment.remaining_amount == payment.amount
    # line totals are history, cancellation does not rewrite them
    assert sum(i["total_price"] for i in result["order"]["items"]) == Decimal("1000.00")

    event, payload = bus.published[-1]
    assert event == ORDER_CANCELLED
    assert payload["partial"] is True


def test_cancelling_the_last_item_refunds_the_rest(paid_order, orders, db, bus):
    orders.cancel_items(paid_order["id"], [0], user_id=USER_ID)

    result = orders.cancel_items(paid_order["id"], [1], user_id=USER_ID)

    assert result["order"]["order_status"] == "cancelled"
    assert result["order"]["cancelled_at"] is not None
    assert result["refund"]["amount"] == Decimal("500.00")
    payment = payment_of(db, paid_order)
    assert payment.status == "refunded"
    assert payment.refunded_amount == Decimal("1000.00")
    assert bus.published[-1][1]["partial"] is False


def test_cancel_item_validation(paid_order, orders):
    with pytest.raises(ValidationError):
        orders.cancel_items(paid_order["id"], [5], user_id=USER_ID)

    orders.cancel_items(paid_order["id"], [0], user_id=USER_ID)
    with pytest.raises(InvariantViolationError):
        orders.cancel_items(paid_order["id"], [0], user_id=USER_ID)

    with pytest.raises(NotFoundError):
        orders.cancel_items(paid_order["id"], [1], user_id=42)


def test_full_cancellation_of_paid_order(paid_order, orders, gateway):
    result = orders.cancel_order(paid_order["id"], reason="No longer needed", user_id=USER_ID)

    assert result["order"]["order_status"] == "cancelled"
    assert result["order"]["cancel_reason"] == "No longer needed"
    assert all(i["status"] == "cancelled" for i in result["order"]["items"])
    assert result["refund"]["amount"] == Decimal("1000.00")
    assert gateway.refunds == [("pay_1", Decimal("1000.00"))]


def test_cancelling_unpaid_orders_refunds_nothing(place_order, orders, db, bus, gateway):
    cod = place_order({1: 1}, payment_type="cod")
    online = place_order({2: 1}, payment_type="upi")

    for order in (cod, online):
        result = orders.cancel_order(order["id"], store_id=STORE_ID)
        assert result["refund"] is None
        assert result["order"]["order_status"] == "cancelled"

    tracking = db.get(DeliveryTrackingModel, cod["delivery_tracking_id"])
    assert tracking.current_status == "cancelled"
    assert bus.names().count(ORDER_CANCELLED) == 2
    assert gateway.refunds == []


def test_refund_failure_does_not_undo_cancellation(paid_order, orders, gateway, db):
    gateway.refund_outcome = "error"

    result = orders.cancel_order(paid_order["id"], user_id=USER_ID)

    assert result["order"]["order_status"] == "cancelled"
    assert result["refund"]["status"] == "failed"
    assert result["refund"]["refund_id"] is None
    assert "nothing was refunded" in result["refund"]["error"]
    assert payment_of(db, paid_order).status == "captured"


def test_shipped_orders_cannot_be_cancelled(place_order, orders):
    order = place_order({1: 1}, payment_type="cod")
    for status in ("confirmed", "processing", "shipped"):
        orders.update_status(order["id"], status, store_id=STORE_ID)

    with pytest.raises(InvariantViolationError):
        orders.cancel_order(order["id"], user_id=USER_ID)
    with pytest.raises(InvariantViolationError):
        orders.cancel_items(order["id"], [0], user_id=USER_ID)

def test_refund_timeout_during_cancellation_is_reported_unknown(paid_order, orders, gateway, db):
    gateway.refund_outcome = "timeout"

    result = orders.cancel_order(paid_order["id"], user_id=USER_ID)

    assert result["order"]["order_status"] == "cancelled"
    assert result["refund"]["status"] == "unknown"
    assert result["refund"]["refund_id"] is None
    db.expire_all()
    assert payment_of(db, paid_order).refund_status == "unknown"


def test_cancellation_race_is_a_conflict(paid_order, orders, monkeypatch):
    monkeypatch.setattr(OrderRepo, "transition_status", lambda self, order_id, current, data: 0)

    with pytest.raises(ConflictError):
        orders.cancel_order(paid_order["id"], user_id=USER_ID)


@pytest.fixture
def three_item_order(catalog, place_order, capture, orders):
    """Three items at 500 each, paid online, the first one already cancelled."""
    catalog.add(6, price="500.00")
    order = place_order({2: 1, 3: 1, 6: 1}, payment_type="upi")
    capture(order)
    orders.cancel_items(order["id"], [0], user_id=USER_ID)
    return order


@pytest.fixture
def two_requests(engine, gateway, locks, bus):
    """Two order services on their own sessions, like two API workers."""
    make_session = sessionmaker(bind=engine, autoflush=False)
    sessions = [make_session(), make_session()]
    yield [OrderService(s, PaymentService(s, gateway, locks, bus), bus) for s in sessions]
    for session in sessions:
        session.close()


def test_same_item_cancelled_twice_concurrently_is_refunded_once(three_item_order, two_requests, gateway, db):
    first, second = two_requests
    # both requests read the order before either writes
    first.get_order(three_item_order["id"])
    second.get_order(three_item_order["id"])

    first.cancel_items(three_item_order["id"], [1], user_id=USER_ID)
    with pytest.raises(ConflictError):
        second.cancel_items(three_item_order["id"], [1], user_id=USER_ID)

    assert [amount for _, amount in gateway.refunds] == [Decimal("500.00"), Decimal("500.00")]
    db.expire_all()
    assert payment_of(db, three_item_order).refunded_amount == Decimal("1000.00")
    order = db.get(OrderModel, three_item_order["id"])
    assert [i.status for i in order.items] == ["cancelled", "cancelled", "active"]
    assert order.order_status == "partially_cancelled"


def test_last_items_cancelled_concurrently_cancel_the_order(three_item_order, two_requests, db):
    first, second = two_requests
    first.get_order(three_item_order["id"])
    second.get_order(three_item_order["id"])

    first.cancel_items(three_item_order["id"], [1], user_id=USER_ID)
    result = second.cancel_items(three_item_order["id"], [2], user_id=USER_ID)

    assert result["order"]["order_status"] == "cancelled"
    # whatever was left on the payment
    assert result["refund"]["amount"] == Decimal("500.00")
    db.expire_all()
    payment = payment_of(db, three_item_order)
    assert payment.status == "refunded"
    assert payment.refunded_amount == Decimal("1500.00")


# cancelled before the payment came in

def test_items_cancelled_before_capture_are_refunded_on_capture(place_order, orders, capture, gateway):
    order = place_order({2: 1, 3: 1}, payment_type="upi")
    cancelled = orders.cancel_items(order["id"], [0], user_id=USER_ID)
    assert cancelled["refund"] is None

    payment = capture(order)

    assert payment["amount"] == Decimal("1000.00")
    assert payment["refunded_amount"] == Decimal("500.00")
    assert payment["status"] == "partially_refunded"
    assert gateway.refunds == [("pay_1", Decimal("500.00"))]
    assert orders.get_order(order["id"])["payment_status"] == "partially_refunded"


def test_capture_of_cancelled_order_is_refunded_in_full(place_order, orders, payments, gateway):
    order = place_order({2: 1, 3: 1}, payment_type="upi")
    orders.cancel_order(order["id"], user_id=USER_ID)
    entity = {"id": "pay_7", "order_id": order["payment"]["gateway_order_id"], "method": "upi"}
    body = json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": entity}}}).encode()

    payments.handle_webhook(body, sign(WEBHOOK_SECRET, body))

    payment = payments.get_payment(order["payment"]["payment_id"])
    assert payment["status"] == "refunded"
    assert payment["refunded_amount"] == Decimal("1000.00")
    assert gateway.refunds == [("pay_7", Decimal("1000.00"))]
    assert orders.get_order(order["id"])["order_status"] == "cancelled"


# status updates

def test_status_updates_follow_the_lifecycle(place_order, orders, db):
    order = place_order({1: 1}, payment_type="cod")

    updated = orders.update_status(order["id"], "confirmed", store_id=STORE_ID)
    assert updated["order_status"] == "confirmed"

    with pytest.raises(InvariantViolationError):
        orders.update_status(order["id"], "delivered", store_id=STORE_ID)
    with pytest.raises(ValidationError):
        orders.update_status(order["id"], "cancelled", store_id=STORE_ID)
    with pytest.raises(NotFoundError):
        orders.update_status(order["id"], "processing", store_id=OTHER_STORE_ID)

    orders.update_status(order["id"], "processing", store_id=STORE_ID)
    orders.update_status(order["id"], "shipped", store_id=STORE_ID, location="Bengaluru hub")

    tracking = db.get(DeliveryTrackingModel, order["delivery_tracking_id"])
    assert tracking.current_status == "shipped"
    assert tracking.status_updates[-1].location == "Bengaluru hub"


def test_cod_delivery_records_cash_payment(place_order, deliver, db):
    order = place_order({2: 1, 3: 1}, payment_type="cod")

    delivered = deliver(order["id"])

    assert delivered["order_status"] == "delivered"
    assert delivered["payment_status"] == "captured"
    payment = payment_of(db, order)
    assert payment.payment_method == "cod"
    assert payment.amount == Decimal("1000.00")


def test_order_listings(place_order, orders):
    first = place_order({1: 1}, payment_type="cod")
    place_order({2: 1}, payment_type="cod")
    orders.cancel_order(first["id"], user_id=USER_ID)

    assert orders.list_user_orders(USER_ID)["total"] == 2
    assert orders.list_user_orders(USER_ID, status="cancelled")["total"] == 1
    assert orders.list_store_orders(STORE_ID, limit=1)["items"][0]["store_id"] == STORE_ID
    assert orders.list_store_orders(OTHER_STORE_ID)["total"] == 0


# returns

def test_returns_partial_then_full(place_order, deliver, orders, db, gateway):
    order = place_order({1: 1, 2: 1, 3: 1}, payment_type="cod")
    deliver(order["id"])

    partial = orders.return_items(order["id"], [0], reason="Damaged", user_id=USER_ID)
    assert partial["order_status"] == "partially_returned"
    assert partial["items"][0]["status"] == "returned"
    assert partial["items"][0]["return_reason"] == "Damaged"

    full = orders.return_items(order["id"], [1, 2], user_id=USER_ID)
    assert full["order_status"] == "returned"
    assert all(i["status"] == "returned" for i in full["items"])
    assert db.get(DeliveryTrackingModel, order["delivery_tracking_id"]).current_status == "returned"

    # returns are refunded separately
    assert full["payment_status"] == "captured"
    assert gateway.refunds == []

    with pytest.raises(InvariantViolationError):
        orders.return_items(order["id"], [0], user_id=USER_ID)


def test_only_delivered_orders_can_be_returned(paid_order, orders):
    with pytest.raises(InvariantViolationError):
        orders.return_items(paid_order["id"], [0], user_id=USER_ID)
