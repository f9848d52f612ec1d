"""
支付回调对账测试
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from rastuci_core.event_bus import ORDER_STATUS_CHANGED, PUSH_NOTIFICATION
from rastuci_core.models import PaymentWebhookEvent
from rastuci_core.services import WebhookNotification, parse_webhook_notification
from rastuci_core.services.reconciler import WebhookPayloadError
from rastuci_core.services.notifications import TEMPLATES, PAYMENT_CONFIRMED

OFFICIAL_TRACKING = "000500076393019A3G0C701"


def notification(payment_id: str, action: str = "payment.updated") -> WebhookNotification:
    return WebhookNotification(action=action, payment_id=payment_id, raw={"action": action, "data": {"id": payment_id}})


async def load_events(db_manager):
    async with db_manager.get_session() as session:
        result = await session.execute(select(PaymentWebhookEvent).order_by(PaymentWebhookEvent.id))
        return list(result.scalars().all())


def test_parse_webhook_notification():
    parsed = parse_webhook_notification({"action": "payment.created", "data": {"id": 123456}})
    assert parsed.payment_id == "123456"
    assert parsed.action == "payment.created"


@pytest.mark.parametrize("body,message", [
    (None, "Missing payload"),
    ({}, "Missing payload"),
    ([1, 2], "Missing payload"),
    ({"action": "merchant_order"}, "Invalid action"),
    ({"action": "payment.updated"}, "Missing payment ID"),
    ({"action": "payment.updated", "data": {"id": " "}}, "Missing payment ID"),
])
def test_parse_webhook_notification_rejects(body, message):
    with pytest.raises(WebhookPayloadError) as exc_info:
        parse_webhook_notification(body)
    assert exc_info.value.message == message


async def test_approved_payment_runs_full_pipeline(
    reconciler, make_order, gateway_stub, courier_stub, email_stub, event_bus, notifier,
    fetch_order, fetch_stock, db_manager
):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)

    outcome = await reconciler.reconcile(notification("900001"), request_id="req-1")
    await notifier.drain()

    assert outcome.status == "processed"
    assert outcome.order_id == order_id
    assert outcome.canonical_status == "COMPLETED"
    assert outcome.previous_status == "PENDING"
    assert outcome.order_status == "PROCESSED"
    assert outcome.steps["transition"]["newly_paid"] is True
    assert outcome.steps["stock"] == {"ok": True, "already_debited": False}
    assert outcome.steps["shipment"]["status"] == "created"
    assert outcome.steps["notifications"]["scheduled"] == 2

    order = await fetch_order(order_id)
    assert order.status == "PROCESSED"
    assert order.mp_payment_id == "900001"
    assert order.mp_status == "approved"
    assert order.paid_at is not None
    assert order.stock_decremented_at is not None
    assert order.tracking_number == OFFICIAL_TRACKING
    assert await fetch_stock("prd_remera") == 3

    assert email_stub.sent[0]["subject"] == TEMPLATES[PAYMENT_CONFIRMED].subject
    status_events = [e for e in event_bus.published if e["topic"] == ORDER_STATUS_CHANGED]
    assert status_events[0]["payload"]["from_status"] == "PENDING"
    assert status_events[0]["payload"]["to_status"] == "PROCESSED"
    assert PUSH_NOTIFICATION in event_bus.topics()

    events = await load_events(db_manager)
    assert len(events) == 1
    assert events[0].idempotency_key == "900001:approved:accredited"
    assert events[0].status == "processed"
    assert events[0].request_id == "req-1"
    assert events[0].order_id == order_id
    assert events[0].result["order_status"] == "PROCESSED"


async def test_duplicate_delivery_is_noop(
    reconciler, make_order, gateway_stub, courier_stub, notifier, email_stub, fetch_stock
):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)

    await reconciler.reconcile(notification("900001"))
    outcome = await reconciler.reconcile(notification("900001", action="payment.created"))
    await notifier.drain()

    assert outcome.status == "duplicate"
    assert await fetch_stock("prd_remera") == 3
    assert len(courier_stub.calls("/shipping/import")) == 1
    assert len(email_stub.sent) == 1


async def test_pickup_order_waits_for_store(reconciler, make_order, gateway_stub, courier_stub, fetch_order, fetch_stock):
    order_id = await make_order(shipping_method="pickup")
    gateway_stub.add_payment("900001", order_id)

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.steps["stock"]["skipped"] == "pickup"
    assert outcome.steps["shipment"]["skipped"] == "pickup"
    order = await fetch_order(order_id)
    assert order.status == "PENDING_PAYMENT"
    assert order.stock_decremented_at is None
    assert await fetch_stock("prd_remera") == 5
    assert courier_stub.requests == []


async def test_shipment_failure_keeps_order_paid(reconciler, make_order, gateway_stub, courier_stub, fetch_order):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)
    courier_stub.import_status = 500

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "processed"
    assert outcome.steps["shipment"]["ok"] is False
    assert outcome.steps["stock"]["ok"] is True
    order = await fetch_order(order_id)
    assert order.status == "PENDING_PAYMENT"
    assert order.shipment_error.startswith("IMPORT_ERROR")
    assert order.stock_decremented_at is not None


async def test_shipment_timeout_is_recorded(reconciler, make_order, gateway_stub, courier_stub, fetch_order):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)
    courier_stub.import_timeout = True

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.steps["shipment"]["status"] == "unknown_outcome"
    assert (await fetch_order(order_id)).status == "PENDING_PAYMENT"


async def test_insufficient_stock_blocks_processed(
    reconciler, make_order, gateway_stub, fetch_order, fetch_stock
):
    order_id = await make_order(items=(("prd_buzo", 3, "2500.00"),))
    gateway_stub.add_payment("900001", order_id)

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.steps["stock"]["ok"] is False
    assert outcome.steps["stock"]["error_code"] == "INSUFFICIENT_STOCK"
    # 发货仍然尝试，但订单不进入 PROCESSED
    assert outcome.steps["shipment"]["status"] == "created"
    order = await fetch_order(order_id)
    assert order.status == "PENDING_PAYMENT"
    assert order.stock_decremented_at is None
    assert order.tracking_number == OFFICIAL_TRACKING
    assert await fetch_stock("prd_buzo") == 1


async def test_rejected_payment_fails_order(reconciler, make_order, gateway_stub, event_bus, fetch_order, courier_stub):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id, status="rejected", status_detail="cc_rejected_other_reason")

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.canonical_status == "FAILED"
    assert outcome.order_status == "FAILED"
    assert (await fetch_order(order_id)).status == "FAILED"
    assert event_bus.published[0]["payload"]["to_status"] == "FAILED"
    assert courier_stub.requests == []


async def test_review_then_approval(reconciler, make_order, gateway_stub, fetch_order):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id, status="in_process", status_detail="pending_contingency")

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.order_status == "PROCESSING"
    assert (await fetch_order(order_id)).paid_at is None

    gateway_stub.add_payment("900001", order_id)
    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "processed"
    assert outcome.steps["transition"]["from_status"] == "PROCESSING"
    assert (await fetch_order(order_id)).status == "PROCESSED"


async def test_waiting_payment_then_approval(reconciler, make_order, gateway_stub, fetch_order, notifier, email_stub):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id, status="pending", status_detail="pending_waiting_transfer")

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.order_status == "PENDING_PAYMENT"
    assert "stock" not in outcome.steps

    gateway_stub.add_payment("900001", order_id)
    outcome = await reconciler.reconcile(notification("900001"))
    await notifier.drain()

    assert outcome.steps["transition"]["unchanged"] is True
    assert outcome.steps["transition"]["newly_paid"] is True
    assert (await fetch_order(order_id)).status == "PROCESSED"
    assert len(email_stub.sent) == 1


async def test_late_approval_does_not_regress_order(reconciler, make_order, gateway_stub, event_bus, fetch_order):
    order_id = await make_order(status="DELIVERED", tracking_number=OFFICIAL_TRACKING)
    gateway_stub.add_payment("900001", order_id)

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.steps["transition"]["ok"] is False
    assert outcome.steps["transition"]["skipped"] == "invalid_transition"
    assert outcome.order_status == "DELIVERED"
    assert (await fetch_order(order_id)).status == "DELIVERED"
    assert event_bus.published == []


async def test_unknown_order_is_ignored(reconciler, seeded, gateway_stub, db_manager):
    gateway_stub.add_payment("900001", "ord_missing")

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.status == "ignored"

    events = await load_events(db_manager)
    assert events[0].status == "ignored"

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.status == "duplicate"


async def test_order_found_by_payment_id(reconciler, make_order, gateway_stub):
    order_id = await make_order(status="PENDING_PAYMENT", mp_payment_id="900001")
    gateway_stub.add_payment("900001", None, status="refunded", status_detail="refunded")

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.order_id == order_id
    assert outcome.order_status == "REFUNDED"


async def test_gateway_timeout_is_not_recorded(reconciler, make_order, gateway_stub, db_manager):
    await make_order()
    gateway_stub.payment_timeout = True

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "unknown_outcome"
    assert await load_events(db_manager) == []


async def test_gateway_error_fails_reconciliation(reconciler, seeded, gateway_stub, db_manager):
    outcome = await reconciler.reconcile(notification("404404"))

    assert outcome.status == "failed"
    assert "404" in outcome.error
    assert await load_events(db_manager) == []


async def test_failed_event_can_be_retried(reconciler, make_order, gateway_stub, db_manager, fetch_order):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)
    async with db_manager.get_transaction() as session:
        session.add(PaymentWebhookEvent(
            idempotency_key="900001:approved:accredited",
            payment_id="900001",
            action="payment.updated",
            status="failed",
            retry_count=0,
            error_message="boom",
        ))

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "processed"
    assert (await fetch_order(order_id)).status == "PROCESSED"
    events = await load_events(db_manager)
    assert events[0].retry_count == 1
    assert events[0].status == "processed"
    assert events[0].error_message is None


async def test_in_flight_event_is_skipped_until_stale(reconciler, make_order, gateway_stub, db_manager):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)
    async with db_manager.get_transaction() as session:
        session.add(PaymentWebhookEvent(
            idempotency_key="900001:approved:accredited",
            payment_id="900001",
            action="payment.updated",
            status="received",
            retry_count=0,
        ))

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.status == "duplicate"

    async with db_manager.get_transaction() as session:
        event = (await load_events(db_manager))[0]
        event = await session.get(PaymentWebhookEvent, event.id)
        event.updated_at = datetime.now(timezone.utc) - timedelta(minutes=10)

    outcome = await reconciler.reconcile(notification("900001"))
    assert outcome.status == "processed"


async def test_event_bus_failure_does_not_abort(reconciler, make_order, gateway_stub, event_bus, fetch_order):
    event_bus.fail = True
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "processed"
    assert outcome.steps["event"]["ok"] is False
    assert (await fetch_order(order_id)).status == "PROCESSED"


async def test_concurrent_reclaim_of_failed_event_runs_once(
    reconciler, make_order, gateway_stub, courier_stub, db_manager, monkeypatch
):
    order_id = await make_order()
    gateway_stub.add_payment("900001", order_id)
    async with db_manager.get_transaction() as session:
        session.add(PaymentWebhookEvent(
            idempotency_key="900001:approved:accredited",
            payment_id="900001",
            action="payment.updated",
            status="failed",
            retry_count=0,
        ))
    seen = (await load_events(db_manager))[0]

    # 另一投递已先一步认领
    async with db_manager.get_transaction() as session:
        event = await session.get(PaymentWebhookEvent, seen.id)
        event.status = "received"
        event.retry_count = 1

    async def stale_lookup(session, model, field_name, value):
        return seen

    monkeypatch.setattr(reconciler, "get_by_field", stale_lookup)

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.status == "duplicate"
    assert courier_stub.calls("/shipping/import") == []
    events = await load_events(db_manager)
    assert events[0].status == "received"
    assert events[0].retry_count == 1


async def test_order_found_by_metadata_when_reference_is_unknown(reconciler, make_order, gateway_stub):
    order_id = await make_order()
    gateway_stub.add_payment("900001", "ord_missing", metadata={"order_id": order_id})

    outcome = await reconciler.reconcile(notification("900001"))

    assert outcome.order_id == order_id
    assert outcome.status == "processed"
