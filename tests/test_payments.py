import json
from decimal import Decimal

import pytest

from marketplace.data.models import OrderModel, PaymentModel, DeliveryTrackingModel
from marketplace.domain.errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    ExternalDependencyError,
    InvariantViolationError,
)
from marketplace.services.event_bus import PAYMENT_CAPTURED
from marketplace.tasks.reconcile import flag_unresolved_refunds

from conftest import USER_ID, KEY_SECRET, WEBHOOK_SECRET, sign


def webhook(payments, event, key, entity, event_id=None, secret=WEBHOOK_SECRET):
    body = json.dumps({"event": event, "payload": {key: {"entity": entity}}}).encode()
    return payments.handle_webhook(body, sign(secret, body), event_id)


def captured_event(order, gateway_payment_id="pay_1"):
    return {
        "id": gateway_payment_id,
        "order_id": order["payment"]["gateway_order_id"],
        "amount": order["payment"]["amount"],
        "method": "upi",
        "status": "captured",
    }


def failed_event(order, gateway_payment_id="pay_1"):
    return {
        "id": gateway_payment_id,
        "order_id": order["payment"]["gateway_order_id"],
        "error_description": "Payment declined by bank",
        "status": "failed",
    }


@pytest.fixture
def online_order(place_order):
    return place_order({2: 1, 3: 1}, payment_type="upi")


# verify

def test_verify_captures_and_confirms_order(online_order, capture, db, bus):
    payment = capture(online_order)

    assert payment["status"] == "captured"
    assert payment["gateway_payment_id"] == "pay_1"
    order = db.get(OrderModel, online_order["id"])
    assert order.payment_status == "captured"
    assert order.order_status == "confirmed"
    tracking = db.get(DeliveryTrackingModel, order.delivery_tracking_id)
    assert [u.status for u in tracking.status_updates] == ["pending", "processing"]
    assert bus.names().count(PAYMENT_CAPTURED) == 1


def test_verify_rejects_bad_signature(online_order, payments, db):
    with pytest.raises(ValidationError):
        payments.verify_payment(USER_ID, online_order["payment"]["gateway_order_id"], "pay_1", "forged")

    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "pending"


def test_verify_of_someone_elses_payment_not_found(online_order, payments):
    gateway_order_id = online_order["payment"]["gateway_order_id"]
    signature = sign(KEY_SECRET, f"{gateway_order_id}|pay_1".encode())

    with pytest.raises(NotFoundError):
        payments.verify_payment(77, gateway_order_id, "pay_1", signature)


def test_verify_after_webhook_is_a_no_op(online_order, payments, capture, bus):
    webhook(payments, "payment.captured", "payment", captured_event(online_order))

    payment = capture(online_order)

    assert payment["status"] == "captured"
    assert bus.names().count(PAYMENT_CAPTURED) == 1


# webhooks

def test_webhook_replay_is_idempotent(online_order, payments, locks, bus, db):
    entity = captured_event(online_order)

    assert webhook(payments, "payment.captured", "payment", entity, event_id="evt_1") == {"status": "ok"}
    assert webhook(payments, "payment.captured", "payment", entity, event_id="evt_1") == {"status": "ok"}
    # same delivery under a new id still lands on the status check
    assert webhook(payments, "payment.captured", "payment", entity, event_id="evt_2") == {"status": "ok"}

    assert "webhook:event:evt_1" in locks.seen
    assert bus.names().count(PAYMENT_CAPTURED) == 1
    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "captured"


def test_failed_event_after_capture_is_ignored(online_order, payments, db):
    webhook(payments, "payment.captured", "payment", captured_event(online_order))
    webhook(payments, "payment.failed", "payment", failed_event(online_order))

    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "captured"
    assert db.get(OrderModel, online_order["id"]).payment_status == "captured"


def test_capture_after_failure_wins(online_order, payments, db):
    webhook(payments, "payment.failed", "payment", failed_event(online_order))
    assert db.get(OrderModel, online_order["id"]).payment_status == "failed"

    webhook(payments, "payment.captured", "payment", captured_event(online_order))

    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "captured"
    assert db.get(OrderModel, online_order["id"]).payment_status == "captured"


def test_authorized_then_captured(online_order, payments, db):
    webhook(payments, "payment.authorized", "payment", dict(captured_event(online_order), status="authorized"))
    assert db.get(OrderModel, online_order["id"]).payment_status == "authorized"

    webhook(payments, "payment.captured", "payment", captured_event(online_order))
    assert db.get(OrderModel, online_order["id"]).payment_status == "captured"


def test_bad_webhook_signature_is_acknowledged_without_changes(online_order, payments, db, locks):
    ack = webhook(payments, "payment.captured", "payment", captured_event(online_order), event_id="evt_x", secret="wrong")

    assert ack == {"status": "ok"}
    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "pending"
    assert locks.seen == set()


def test_malformed_and_unknown_webhooks_are_acknowledged(online_order, payments, db):
    garbage = b"not json"
    assert payments.handle_webhook(garbage, sign(WEBHOOK_SECRET, garbage)) == {"status": "ok"}
    assert webhook(payments, "payment.captured", "payment", {"id": "pay_zzz", "order_id": "order_zzz"}) == {"status": "ok"}
    assert webhook(payments, "order.paid", "order", {"id": "x"}) == {"status": "ok"}

    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "pending"


@pytest.mark.parametrize(
    "body",
    [
        {"event": "payment.captured", "payload": "oops"},
        {"event": "payment.captured", "payload": {"payment": "oops"}},
        {"event": "payment.captured", "payload": {"payment": {"entity": ["pay_1"]}}},
        {"event": "refund.processed", "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1", "amount": "lots"}}}},
        {"event": "refund.processed", "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1"}}}},
        {"payload": {}},
        ["payment.captured"],
    ],
)
def test_wrongly_shaped_webhooks_are_acknowledged(online_order, capture, payments, locks, body):
    capture(online_order)
    raw = json.dumps(body).encode()

    assert payments.handle_webhook(raw, sign(WEBHOOK_SECRET, raw), "evt_bad") == {"status": "ok"}

    payment = payments.get_payment(online_order["payment"]["payment_id"])
    assert payment["status"] == "captured"
    assert payment["refunds"] == []
    # never processed, so a corrected redelivery is not skipped
    assert locks.seen == set()


# intents

def test_intent_is_reused_while_pending(online_order, payments, gateway):
    intent = payments.create_intent(USER_ID, online_order["id"])

    assert intent["gateway_order_id"] == online_order["payment"]["gateway_order_id"]
    assert len(gateway.intents) == 1


def test_new_intent_after_failed_attempt(online_order, payments, capture, gateway, db):
    webhook(payments, "payment.failed", "payment", failed_event(online_order))

    intent = payments.create_intent(USER_ID, online_order["id"])

    assert intent["gateway_order_id"] == "order_gw_2"
    assert intent["payment_id"] != online_order["payment"]["payment_id"]
    order = db.get(OrderModel, online_order["id"])
    assert order.payment_id == intent["payment_id"]
    assert order.payment_status == "pending"

    capture(dict(online_order, payment=intent), gateway_payment_id="pay_2")
    with pytest.raises(ConflictError):
        payments.create_intent(USER_ID, online_order["id"])


def test_late_capture_of_abandoned_attempt_supersedes_newer_one(online_order, payments, db):
    webhook(payments, "payment.failed", "payment", failed_event(online_order))
    retry = payments.create_intent(USER_ID, online_order["id"])

    webhook(payments, "payment.captured", "payment", captured_event(online_order))

    assert db.get(PaymentModel, online_order["payment"]["payment_id"]).status == "captured"
    assert db.get(PaymentModel, retry["payment_id"]).status == "failed"
    assert db.get(OrderModel, online_order["id"]).payment_id == online_order["payment"]["payment_id"]


def test_no_intent_for_cod_orders(place_order, payments):
    order = place_order({1: 1}, payment_type="cod")

    with pytest.raises(ValidationError):
        payments.create_intent(USER_ID, order["id"])


# refunds

def test_full_refund_by_default(online_order, capture, payments, gateway, db):
    capture(online_order)
    payment_id = online_order["payment"]["payment_id"]

    outcome = payments.issue_refund(payment_id, reason="Changed my mind")

    assert outcome["amount"] == Decimal("1000.00")
    assert gateway.refunds == [("pay_1", Decimal("1000.00"))]
    payment = payments.get_payment(payment_id)
    assert payment["status"] == "refunded"
    assert payment["refunded_amount"] == Decimal("1000.00")
    assert payment["refunds"][0]["gateway_refund_id"] == "rfnd_1"
    assert db.get(OrderModel, online_order["id"]).payment_status == "refunded"


def test_partial_refunds_add_up(online_order, capture, payments):
    capture(online_order)
    payment_id = online_order["payment"]["payment_id"]

    payments.issue_refund(payment_id, Decimal("200"))
    assert payments.get_payment(payment_id)["status"] == "partially_refunded"

    with pytest.raises(ValidationError):
        payments.issue_refund(payment_id, Decimal("800.01"))

    payments.issue_refund(payment_id, Decimal("800"))
    payment = payments.get_payment(payment_id)
    assert payment["status"] == "refunded"
    assert payment["refunded_amount"] == Decimal("1000.00")

    with pytest.raises(InvariantViolationError):
        payments.issue_refund(payment_id, Decimal("1"))


def test_refund_needs_captured_payment(online_order, payments):
    with pytest.raises(InvariantViolationError):
        payments.issue_refund(online_order["payment"]["payment_id"])
    with pytest.raises(NotFoundError):
        payments.issue_refund(999)


def test_gateway_refund_error_leaves_no_trace(online_order, capture, payments, gateway):
    capture(online_order)
    gateway.refund_outcome = "error"
    payment_id = online_order["payment"]["payment_id"]

    with pytest.raises(ExternalDependencyError):
        payments.issue_refund(payment_id, Decimal("100"))

    payment = payments.get_payment(payment_id)
    assert payment["status"] == "captured"
    assert payment["refunds"] == []


def test_refund_timeout_is_recorded_as_unknown_and_reconciled(online_order, capture, payments, gateway, db):
    capture(online_order)
    gateway.refund_outcome = "timeout"
    payment_id = online_order["payment"]["payment_id"]

    with pytest.raises(ExternalDependencyError):
        payments.issue_refund(payment_id, Decimal("300"))

    payment = payments.get_payment(payment_id)
    assert payment["refund_status"] == "unknown"
    assert payment["refunded_amount"] == Decimal("0.00")
    assert [r["status"] for r in payment["refunds"]] == ["unknown"]
    assert flag_unresolved_refunds(db) == [payment["refunds"][0]["id"]]

    gateway.refund_outcome = "ok"
    with pytest.raises(ConflictError):
        payments.issue_refund(payment_id, Decimal("100"))

    processed = {"id": "rfnd_gw_9", "payment_id": "pay_1", "amount": 30000, "status": "processed"}
    webhook(payments, "refund.processed", "refund", processed, event_id="evt_r1")
    webhook(payments, "refund.processed", "refund", processed, event_id="evt_r2")

    payment = payments.get_payment(payment_id)
    assert payment["status"] == "partially_refunded"
    assert payment["refund_status"] == "processed"
    assert payment["refunded_amount"] == Decimal("300.00")
    assert [(r["gateway_refund_id"], r["status"]) for r in payment["refunds"]] == [("rfnd_gw_9", "processed")]
    assert flag_unresolved_refunds(db) == []


def test_refund_issued_at_gateway_is_recorded(online_order, capture, payments):
    capture(online_order)
    payment_id = online_order["payment"]["payment_id"]

    webhook(payments, "refund.processed", "refund", {"id": "rfnd_dash", "payment_id": "pay_1", "amount": 25050})

    payment = payments.get_payment(payment_id)
    assert payment["refunded_amount"] == Decimal("250.50")
    assert payment["refunds"][0]["gateway_refund_id"] == "rfnd_dash"


def test_cod_refund_does_not_call_gateway(place_order, deliver, payments, gateway, db):
    order = place_order({2: 1}, payment_type="cod")
    delivered = deliver(order["id"])
    assert delivered["payment_status"] == "captured"

    outcome = payments.issue_refund(db.get(OrderModel, order["id"]).payment_id, Decimal("100"))

    assert outcome["refund_id"] is None
    assert gateway.refunds == []
