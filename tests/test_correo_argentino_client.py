"""
Correo Argentino 客户端测试
"""
import json

import pytest

from rastuci_core.clients.correo_argentino import (
    CourierAPIError,
    CourierTimeoutError,
    ImportShipmentRequest,
    PackageDimensions,
    ShipmentAddress,
    ShipmentDetails,
    ShipmentRecipient,
)

CUSTOMER_ID = "0001718183"


def shipment_request(**shipping) -> ImportShipmentRequest:
    details = {
        "delivery_type": "D",
        "address": ShipmentAddress(
            street_name="Av. Corrientes",
            street_number="1234",
            floor="10mo",
            apartment="Depto B",
            city="CABA",
            province_code="C",
            postal_code="1043",
        ),
        "weight": 612.4,
        "declared_value": 3500.0,
        "height": 10,
        "length": 30,
        "width": 20,
    }
    details.update(shipping)
    return ImportShipmentRequest(
        customer_id=CUSTOMER_ID,
        ext_order_id="ord_123",
        order_number="ord_123",
        recipient=ShipmentRecipient(name="Lucía Fernández", email="lucia@example.com"),
        shipping=ShipmentDetails(**details),
    )


async def test_token_is_cached(courier, courier_stub):
    courier_stub.tracking_response = [{"shippingId": "000500076393019A3G0C701", "events": []}]

    await courier.get_tracking("SHP-1")
    await courier.get_tracking("SHP-1")

    assert len(courier_stub.calls("/token")) == 1
    token_request = courier_stub.calls("/token")[0]
    assert token_request.headers["authorization"].startswith("Basic ")
    tracking_request = courier_stub.calls("/shipping/tracking")[0]
    assert tracking_request.headers["authorization"] == "Bearer ca-token"
    assert tracking_request.url.params["shippingId"] == "SHP-1"


async def test_rejected_token_is_refreshed_once(courier, courier_stub):
    await courier.authenticate()
    courier_stub.token_rejections = 1

    agencies = await courier.get_agencies("B")

    assert agencies == [{"code": "B0107", "name": "Don Torcuato"}]
    assert len(courier_stub.calls("/token")) == 2
    assert len(courier_stub.calls("/agencies")) == 2
    assert courier_stub.calls("/agencies")[-1].url.params["customerId"] == CUSTOMER_ID


async def test_import_shipment_payload(courier, courier_stub):
    result = await courier.import_shipment(shipment_request())

    assert result.tracking_number == "000500076393019A3G0C701"
    assert result.internal_id == "SHP-1001"

    body = json.loads(courier_stub.calls("/shipping/import")[0].content)
    assert body["customerId"] == CUSTOMER_ID
    assert body["extOrderId"] == "ord_123"
    assert body["shipping"]["deliveryType"] == "D"
    assert body["shipping"]["productType"] == "CP"
    assert body["shipping"]["address"]["floor"] == "10m"
    assert body["shipping"]["address"]["apartment"] == "Dep"
    assert body["shipping"]["weight"] == 612
    assert isinstance(body["shipping"]["height"], int)
    assert "agency" not in body["shipping"]


async def test_import_shipment_requires_address(courier, courier_stub):
    with pytest.raises(CourierAPIError) as exc_info:
        await courier.import_shipment(shipment_request(address=ShipmentAddress(street_name="Sin datos")))
    assert exc_info.value.code == "MISSING_ADDRESS"
    assert courier_stub.requests == []


async def test_import_shipment_requires_agency(courier, courier_stub):
    with pytest.raises(CourierAPIError) as exc_info:
        await courier.import_shipment(shipment_request(delivery_type="S", address=None))
    assert exc_info.value.code == "MISSING_AGENCY"
    assert courier_stub.requests == []


async def test_import_shipment_string_response(courier, courier_stub):
    courier_stub.import_response = json.dumps({"shipmentId": "SHP-77"})

    result = await courier.import_shipment(shipment_request())

    assert result.tracking_number is None
    assert result.best_tracking == "SHP-77"


async def test_import_shipment_error(courier, courier_stub):
    courier_stub.import_status = 400
    courier_stub.import_response = {"message": "postal code invalid"}

    with pytest.raises(CourierAPIError) as exc_info:
        await courier.import_shipment(shipment_request())

    assert exc_info.value.code == "IMPORT_ERROR"
    assert exc_info.value.status_code == 400
    assert exc_info.value.details == {"message": "postal code invalid"}


async def test_import_shipment_timeout(courier, courier_stub):
    courier_stub.import_timeout = True

    with pytest.raises(CourierTimeoutError) as exc_info:
        await courier.import_shipment(shipment_request())
    assert exc_info.value.message == "Tiempo de espera agotado con Correo Argentino"


async def test_tracking_accepts_object_or_list(courier, courier_stub):
    courier_stub.tracking_response = {
        "shippingId": "000500076393019A3G0C701",
        "status": "EN TRANSITO",
        "events": [{"eventDate": "2026-10-19", "eventDescription": "Admitido", "branchName": "Tigre"}],
    }
    infos = await courier.get_tracking("SHP-1001")
    assert len(infos) == 1
    assert infos[0].events[0].event_description == "Admitido"

    courier_stub.tracking_response = [{"error": "not found"}, {"shippingId": "X1"}]
    infos = await courier.get_tracking("SHP-1001")
    assert [info.shipping_id for info in infos] == ["X1"]


async def test_rates_and_user_validation(courier, courier_stub):
    rates = await courier.get_rates("1611", "5000", PackageDimensions(weight=500, height=10, width=20, length=30))
    assert rates["rates"][0]["price"] == 4500
    body = json.loads(courier_stub.calls("/rates")[0].content)
    assert body["dimensions"] == {"weight": 500, "height": 10, "width": 20, "length": 30}

    user = await courier.validate_user("tienda@rastuci.com", "secret")
    assert user.customer_id == CUSTOMER_ID


async def test_customer_id_required_for_scoped_calls(courier):
    courier.customer_id = None
    with pytest.raises(CourierAPIError) as exc_info:
        await courier.get_agencies("B")
    assert exc_info.value.code == "MISSING_CUSTOMER_ID"
