"""
Pytest 配置和 fixtures

每个测试使用独立的 SQLite 数据库文件；外部 API 通过 httpx.MockTransport 模拟
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from rastuci_core.clients import CorreoArgentinoClient, MercadoPagoClient, ResendEmailClient
from rastuci_core.config import Settings
from rastuci_core.database import DatabaseManager
from rastuci_core.models import Coupon, Order, OrderItem, Product, ProductVariant
from rastuci_core.services import (
    CheckoutService,
    CouponService,
    NotificationDispatcher,
    OrderAdminService,
    ShipmentService,
    StockLedgerService,
    WebhookReconciler,
)

API_PREFIX = "/api/rs/v1"
CA_BASE_URL = "https://ca.test/micorreo/v1"
MP_BASE_URL = "https://mp.test"
CUSTOMER_ID = "0001718183"


class FakeEventBus:
    """记录发布内容的事件总线替身"""

    def __init__(self, fail: bool = False):
        self.published: List[Dict[str, Any]] = []
        self.fail = fail

    async def publish(self, topic: str, payload: Dict[str, Any], key: Optional[str] = None) -> str:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append({"topic": topic, "payload": payload, "key": key})
        return f"evt-{len(self.published)}"

    def topics(self) -> List[str]:
        return [event["topic"] for event in self.published]


class CourierStub:
    """Correo Argentino API 替身"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.import_status = 200
        self.import_response: Any = {
            "createdAt": "2026-10-19T12:00:00Z",
            "trackingNumber": "000500076393019A3G0C701",
            "shipmentId": "SHP-1001",
        }
        self.import_timeout = False
        self.tracking_response: Any = []
        self.token_rejections = 0

    def calls(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/token"):
            return httpx.Response(200, json={"token": "ca-token", "expires": "2099-01-01T00:00:00Z"})

        if self.token_rejections:
            self.token_rejections -= 1
            return httpx.Response(401, json={"message": "token expired"})

        if path.endswith("/shipping/import"):
            if self.import_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            if isinstance(self.import_response, str):
                return httpx.Response(self.import_status, text=self.import_response)
            return httpx.Response(self.import_status, json=self.import_response)

        if path.endswith("/shipping/tracking"):
            return httpx.Response(200, json=self.tracking_response)

        if path.endswith("/agencies"):
            return httpx.Response(200, json=[{"code": "B0107", "name": "Don Torcuato"}])

        if path.endswith("/rates"):
            return httpx.Response(200, json={"rates": [{"deliveredType": "D", "price": 4500}]})

        if path.endswith("/users/validate"):
            return httpx.Response(200, json={"customerId": CUSTOMER_ID, "createdAt": "2024-01-01"})

        return httpx.Response(404, json={"message": "not found"})


class GatewayStub:
    """MercadoPago API 替身"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.payment_errors: List[int] = []  # 依次返回的错误状态码
        self.payment_timeout = False
        self.preference_status = 201

    def add_payment(
        self,
        payment_id: str,
        order_id: Optional[str],
        status: str = "approved",
        status_detail: Optional[str] = "accredited",
        **extra
    ) -> Dict[str, Any]:
        payload = {
            "id": int(payment_id),
            "status": status,
            "status_detail": status_detail,
            "external_reference": order_id,
            "metadata": {"order_id": order_id} if order_id else {},
            "transaction_amount": 2500,
            "currency_id": "ARS",
            "date_approved": "2026-10-19T12:00:00.000-03:00" if status == "approved" else None,
            **extra,
        }
        self.payments[payment_id] = payload
        return payload

    def calls(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/v1/payments/"):
            if self.payment_timeout:
                raise httpx.ConnectTimeout("timed out", request=request)
            if self.payment_errors:
                return httpx.Response(self.payment_errors.pop(0), json={"message": "error"})
            payment_id = path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.payments[payment_id])

        if path == "/checkout/preferences":
            if self.preference_status >= 400:
                return httpx.Response(self.preference_status, json={"message": "invalid"})
            body = json.loads(request.content)
            return httpx.Response(201, json={
                "id": f"pref-{body['external_reference']}",
                "init_point": f"https://www.mercadopago.test/checkout?pref={body['external_reference']}",
                "sandbox_init_point": "https://sandbox.mercadopago.test/checkout",
            })

        return httpx.Response(404, json={"message": "not found"})


class EmailStub:
    """Resend API 替身"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.status >= 400:
            return httpx.Response(self.status, json={"message": "rejected"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": f"email-{len(self.sent)}"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    """测试配置"""
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'rastuci_test.db'}",
        public_base_url="https://rastuci.test",
        mp_access_token="TEST-access-token",
        mp_webhook_secret=None,
        mp_api_base_url=MP_BASE_URL,
        mp_retry_max=3,
        mp_retry_backoff_base=0,
        ca_base_url=CA_BASE_URL,
        ca_user="rastuci",
        ca_password="secret",
        ca_customer_id=CUSTOMER_ID,
        resend_api_key="re_test_key",
    )


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(database_url=settings.database_url)
    await manager.create_tables()

    yield manager

    await manager.drop_tables()
    await manager.close()


@pytest_asyncio.fixture
async def seeded(db_manager):
    """示例商品、变体和优惠券"""
    async with db_manager.get_transaction() as session:
        session.add_all([
            Product(id="prd_remera", name="Remera Básica", price=Decimal("1000.00"), stock=5),
            Product(id="prd_buzo", name="Buzo Oversize", price=Decimal("2500.00"), stock=1),
            Product(id="prd_viejo", name="Campera Discontinuada", price=Decimal("9000.00"), stock=10, is_active=False),
        ])
        await session.flush()
        session.add(ProductVariant(id="var_remera_m_negro", product_id="prd_remera", size="M", color="Negro", stock=3))
        session.add_all([
            Coupon(code="VERANO10", type="percentage", value=Decimal("10")),
            Coupon(code="FIJO500", type="fixed", value=Decimal("500"), max_uses=1),
            Coupon(code="MINIMO", type="fixed", value=Decimal("100"), min_order_value=Decimal("50000")),
            Coupon(
                code="VENCIDO",
                type="percentage",
                value=Decimal("20"),
                expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
            ),
        ])
    return db_manager


@pytest.fixture
def make_order(seeded):
    """订单工厂：写入订单及行项目，返回订单ID"""

    async def _make(
        status: str = "PENDING",
        shipping_method: str = "correo_argentino",
        items=(("prd_remera", 2, "1000.00"),),
        **fields
    ) -> str:
        data = {
            "status": status,
            "payment_method": "mercadopago",
            "shipping_method": shipping_method,
            "shipping_cost": Decimal("0") if shipping_method == "pickup" else Decimal("1500"),
            "customer_name": "Lucía Fernández",
            "customer_email": "lucia@example.com",
            "customer_phone": "+54 11 5555 1234",
            "customer_address": "Av. Corrientes 1234, CABA, Buenos Aires, 1043",
            "shipping_street": "Av. Corrientes",
            "shipping_number": "1234",
            "shipping_city": "CABA",
            "shipping_province": "Capital Federal",
            "shipping_postal_code": "C1043AAZ",
        }
        data.update(fields)

        order_items = [
            OrderItem(product_id=product_id, quantity=quantity, price=Decimal(price), name=product_id)
            for product_id, quantity, price in items
        ]
        subtotal = sum((item.price * item.quantity for item in order_items), Decimal("0"))
        data.setdefault("subtotal", subtotal)
        data.setdefault("total", subtotal + data["shipping_cost"])

        async with seeded.get_transaction() as session:
            order = Order(**data)
            order.items = order_items
            session.add(order)
            await session.flush()
            return order.id

    return _make


@pytest.fixture
def event_bus() -> FakeEventBus:
    return FakeEventBus()


@pytest.fixture
def courier_stub() -> CourierStub:
    return CourierStub()


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def email_stub() -> EmailStub:
    return EmailStub()


@pytest_asyncio.fixture
async def courier(courier_stub):
    client = CorreoArgentinoClient(
        base_url=CA_BASE_URL,
        username="rastuci",
        password="secret",
        customer_id=CUSTOMER_ID,
        transport=httpx.MockTransport(courier_stub.handler),
    )
    yield client
    await client.close()


@pytest_asyncio.fixture
async def gateway(settings, gateway_stub):
    client = MercadoPagoClient.from_settings(settings, transport=httpx.MockTransport(gateway_stub.handler))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def email_client(settings, email_stub):
    client = ResendEmailClient.from_settings(settings, transport=httpx.MockTransport(email_stub.handler))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def notifier(email_client, event_bus, settings, db_manager):
    dispatcher = NotificationDispatcher(
        email_client=email_client,
        event_bus=event_bus,
        settings=settings,
        db_manager=db_manager,
    )
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def stock_ledger(db_manager) -> StockLedgerService:
    return StockLedgerService(db_manager)


@pytest.fixture
def shipment_service(courier, settings, db_manager) -> ShipmentService:
    return ShipmentService(courier, settings=settings, db_manager=db_manager)


@pytest.fixture
def reconciler(gateway, shipment_service, notifier, event_bus, db_manager) -> WebhookReconciler:
    return WebhookReconciler(
        gateway,
        shipment_service,
        notifier,
        event_bus=event_bus,
        db_manager=db_manager,
    )


@pytest.fixture
def order_admin(shipment_service, notifier, event_bus, db_manager) -> OrderAdminService:
    return OrderAdminService(shipment_service, notifier, event_bus=event_bus, db_manager=db_manager)


@pytest.fixture
def checkout_service(gateway, db_manager) -> CheckoutService:
    return CheckoutService(payment_gateway=gateway, db_manager=db_manager)


@pytest.fixture
def coupon_service(db_manager) -> CouponService:
    return CouponService(db_manager)


@pytest.fixture
def fetch_order(db_manager):
    """重新从数据库读取订单"""

    async def _fetch(order_id: str) -> Order:
        async with db_manager.get_session() as session:
            return await session.get(Order, order_id)

    return _fetch


@pytest.fixture
def fetch_stock(db_manager):
    """读取商品或变体当前库存"""

    async def _fetch(record_id: str) -> int:
        model = ProductVariant if record_id.startswith("var_") else Product
        async with db_manager.get_session() as session:
            return (await session.get(model, record_id)).stock

    return _fetch
