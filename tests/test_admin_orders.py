"""
后台订单操作测试
"""
import pytest

from rastuci_core.event_bus import ORDER_STATUS_CHANGED
from rastuci_core.services.notifications import ORDER_DELIVERED, ORDER_SHIPPED, TEMPLATES
from rastuci_core.services.order_admin import required_source
from rastuci_core.models import OrderStatus
from rastuci_core.utils.errors import BadRequestError, InsufficientStockError, NotFoundError

OFFICIAL_TRACKING = "000500076393019A3G0C701"


def test_required_source():
    assert required_source(OrderStatus.PENDING_PAYMENT) is OrderStatus.PENDING
    assert required_source(OrderStatus.PROCESSED) is OrderStatus.PENDING_PAYMENT
    assert required_source(OrderStatus.DELIVERED) is OrderStatus.PROCESSED
    assert required_source(OrderStatus.PENDING) is None


async def test_get_order(order_admin, make_order):
    order_id = await make_order()

    data = await order_admin.get_order(order_id)

    assert data["id"] == order_id
    assert data["status"] == "PENDING"
    assert data["total"] == "3500.00"
    assert data["items"][0]["product_id"] == "prd_remera"


async def test_get_missing_order(order_admin, seeded):
    with pytest.raises(NotFoundError) as exc_info:
        await order_admin.get_order("ord_missing")
    assert exc_info.value.detail == "Pedido no encontrado"


async def test_update_status_forward(order_admin, make_order, event_bus):
    order_id = await make_order()

    result = await order_admin.update_status(order_id, "PENDING_PAYMENT")

    assert result.success
    assert result.data["order"]["status"] == "PENDING_PAYMENT"
    assert event_bus.published[0]["topic"] == ORDER_STATUS_CHANGED
    assert event_bus.published[0]["payload"] == {
        "order_id": order_id,
        "from_status": "PENDING",
        "to_status": "PENDING_PAYMENT",
        "source": "admin",
    }


async def test_update_status_rejects_unknown_status(order_admin, make_order):
    order_id = await make_order()

    with pytest.raises(BadRequestError) as exc_info:
        await order_admin.update_status(order_id, "SHIPPED")
    assert exc_info.value.code == "INVALID_STATUS"


async def test_update_status_rejects_skipping(order_admin, make_order, fetch_order):
    order_id = await make_order()

    with pytest.raises(BadRequestError) as exc_info:
        await order_admin.update_status(order_id, "DELIVERED")

    assert exc_info.value.code == "INVALID_TRANSITION"
    assert exc_info.value.detail == "El pedido debe estar en estado PROCESSED. Estado actual: PENDING"
    assert (await fetch_order(order_id)).status == "PENDING"


async def test_update_status_rejects_backwards(order_admin, make_order):
    order_id = await make_order(status="PROCESSED", tracking_number=OFFICIAL_TRACKING)

    with pytest.raises(BadRequestError):
        await order_admin.update_status(order_id, "PENDING")


async def test_mark_processed_pickup_debits_stock(order_admin, make_order, fetch_order, fetch_stock, notifier, email_stub):
    order_id = await make_order(status="PENDING_PAYMENT", shipping_method="pickup")

    result = await order_admin.mark_processed(order_id)
    await notifier.drain()

    assert result.data["message"] == "Pedido marcado como procesado exitosamente"
    order = await fetch_order(order_id)
    assert order.status == "PROCESSED"
    assert order.stock_decremented_at is not None
    assert await fetch_stock("prd_remera") == 3
    # 自提订单没有运单号，不发送发货通知
    assert email_stub.sent == []


async def test_mark_processed_does_not_debit_twice(order_admin, make_order, stock_ledger, fetch_stock):
    order_id = await make_order(status="PENDING_PAYMENT", shipping_method="pickup")
    await stock_ledger.debit_order(order_id)

    await order_admin.mark_processed(order_id)

    assert await fetch_stock("prd_remera") == 3


async def test_mark_processed_insufficient_stock(order_admin, make_order, fetch_order, fetch_stock):
    order_id = await make_order(
        status="PENDING_PAYMENT",
        shipping_method="pickup",
        items=(("prd_remera", 1, "1000.00"), ("prd_buzo", 2, "2500.00")),
    )

    with pytest.raises(InsufficientStockError) as exc_info:
        await order_admin.mark_processed(order_id)

    assert exc_info.value.status == 409
    order = await fetch_order(order_id)
    assert order.status == "PENDING_PAYMENT"
    assert order.stock_decremented_at is None
    assert await fetch_stock("prd_remera") == 5


async def test_mark_processed_requires_shipment(order_admin, make_order):
    order_id = await make_order(status="PENDING_PAYMENT")

    with pytest.raises(BadRequestError) as exc_info:
        await order_admin.mark_processed(order_id)
    assert exc_info.value.code == "MISSING_SHIPMENT"


async def test_mark_processed_with_shipment_notifies(order_admin, make_order, notifier, email_stub, fetch_order):
    order_id = await make_order(status="PENDING_PAYMENT", tracking_number=OFFICIAL_TRACKING)

    await order_admin.mark_processed(order_id)
    await notifier.drain()

    assert (await fetch_order(order_id)).status == "PROCESSED"
    assert email_stub.sent[0]["subject"] == TEMPLATES[ORDER_SHIPPED].subject


async def test_mark_processed_requires_paid_order(order_admin, make_order):
    order_id = await make_order(status="PENDING", shipping_method="pickup")

    with pytest.raises(BadRequestError) as exc_info:
        await order_admin.mark_processed(order_id)
    assert "PENDING_PAYMENT" in exc_info.value.detail


async def test_mark_delivered(order_admin, make_order, notifier, email_stub, event_bus, fetch_order):
    order_id = await make_order(status="PROCESSED", tracking_number=OFFICIAL_TRACKING)

    result = await order_admin.mark_delivered(order_id)
    await notifier.drain()

    assert result.data["order"]["status"] == "DELIVERED"
    assert result.data["order"]["updated_at"] is not None
    assert [item["product_id"] for item in result.data["order"]["items"]]
    assert (await fetch_order(order_id)).status == "DELIVERED"
    assert email_stub.sent[0]["subject"] == TEMPLATES[ORDER_DELIVERED].subject
    status_events = [e for e in event_bus.published if e["topic"] == ORDER_STATUS_CHANGED]
    assert status_events[0]["payload"]["to_status"] == "DELIVERED"


async def test_mark_delivered_twice_rejected(order_admin, make_order):
    order_id = await make_order(status="DELIVERED")

    with pytest.raises(BadRequestError):
        await order_admin.mark_delivered(order_id)


async def test_retry_shipment_notifies_customer(order_admin, make_order, notifier, email_stub, fetch_order):
    order_id = await make_order(status="PENDING_PAYMENT")

    result = await order_admin.retry_shipment(order_id)
    await notifier.drain()

    assert result.success
    assert (await fetch_order(order_id)).status == "PROCESSED"
    assert email_stub.sent[0]["subject"] == TEMPLATES[ORDER_SHIPPED].subject


async def test_retry_shipment_reports_order_status_and_publishes(order_admin, make_order, event_bus, notifier):
    order_id = await make_order(status="PENDING_PAYMENT")

    result = await order_admin.retry_shipment(order_id)
    await notifier.drain()

    assert result.data["order_status"] == "PROCESSED"
    assert result.data["status"] == "created"
    status_events = [e for e in event_bus.published if e["topic"] == ORDER_STATUS_CHANGED]
    assert status_events[0]["payload"]["from_status"] == "PENDING_PAYMENT"
    assert status_events[0]["payload"]["to_status"] == "PROCESSED"


async def test_retry_shipment_failure_is_returned(order_admin, make_order, courier_stub, email_stub, notifier):
    order_id = await make_order(status="PENDING_PAYMENT")
    courier_stub.import_status = 500

    result = await order_admin.retry_shipment(order_id)
    await notifier.drain()

    assert not result.success
    assert result.error_code == "IMPORT_ERROR"
    assert email_stub.sent == []


async def test_sync_tracking_notifies_on_new_number(order_admin, make_order, courier_stub, notifier, email_stub):
    order_id = await make_order(status="PROCESSED", tracking_number="SHP-1001", shipment_id="SHP-1001")
    courier_stub.tracking_response = [{"shippingId": OFFICIAL_TRACKING, "events": []}]

    result = await order_admin.sync_tracking(order_id)
    await notifier.drain()

    assert result.data["updated"] is True
    assert OFFICIAL_TRACKING in email_stub.sent[0]["text"]
