"""
依赖注入

外部客户端与通知分发器在应用启动时创建并挂在 app.state 上，
这里的 provider 只负责取出并组装服务；测试通过 dependency_overrides 替换
"""
from typing import Optional

from fastapi import Depends, Request

from rastuci_core.clients import CorreoArgentinoClient, MercadoPagoClient
from rastuci_core.config import Settings, get_settings
from rastuci_core.database import DatabaseManager, get_db_manager
from rastuci_core.event_bus import EventBus
from rastuci_core.services import (
    CheckoutService,
    CouponService,
    NotificationDispatcher,
    OrderAdminService,
    ShipmentService,
    WebhookReconciler,
)
from rastuci_core.utils.errors import ServiceUnavailableError


def get_app_settings() -> Settings:
    return get_settings()


def get_db(request: Request) -> DatabaseManager:
    return getattr(request.app.state, "db_manager", None) or get_db_manager()


def get_event_bus_dep(request: Request) -> Optional[EventBus]:
    return getattr(request.app.state, "event_bus", None)


def get_optional_payment_gateway(request: Request) -> Optional[MercadoPagoClient]:
    return getattr(request.app.state, "payment_gateway", None)


def get_payment_gateway(request: Request) -> MercadoPagoClient:
    client = getattr(request.app.state, "payment_gateway", None)
    if client is None:
        raise ServiceUnavailableError(
            code="PAYMENT_GATEWAY_UNAVAILABLE",
            detail="MercadoPago client not initialized"
        )
    return client


def get_courier(request: Request) -> CorreoArgentinoClient:
    client = getattr(request.app.state, "courier", None)
    if client is None:
        raise ServiceUnavailableError(
            code="COURIER_UNAVAILABLE",
            detail="Correo Argentino client not initialized"
        )
    return client


def get_notifier(request: Request) -> NotificationDispatcher:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        raise ServiceUnavailableError(
            code="NOTIFIER_UNAVAILABLE",
            detail="Notification dispatcher not initialized"
        )
    return notifier


async def get_shipment_service(
    courier: CorreoArgentinoClient = Depends(get_courier),
    settings: Settings = Depends(get_app_settings),
    db_manager: DatabaseManager = Depends(get_db),
) -> ShipmentService:
    """依赖注入：获取发货服务"""
    return ShipmentService(courier, settings=settings, db_manager=db_manager)


async def get_checkout_service(
    payment_gateway: Optional[MercadoPagoClient] = Depends(get_optional_payment_gateway),
    db_manager: DatabaseManager = Depends(get_db),
) -> CheckoutService:
    """依赖注入：获取下单服务"""
    return CheckoutService(payment_gateway=payment_gateway, db_manager=db_manager)


async def get_coupon_service(db_manager: DatabaseManager = Depends(get_db)) -> CouponService:
    """依赖注入：获取优惠券服务"""
    return CouponService(db_manager)


async def get_reconciler(
    payment_gateway: MercadoPagoClient = Depends(get_payment_gateway),
    shipment_service: ShipmentService = Depends(get_shipment_service),
    notifier: NotificationDispatcher = Depends(get_notifier),
    event_bus: Optional[EventBus] = Depends(get_event_bus_dep),
    db_manager: DatabaseManager = Depends(get_db),
) -> WebhookReconciler:
    """依赖注入：获取回调对账器"""
    return WebhookReconciler(
        payment_gateway,
        shipment_service,
        notifier,
        event_bus=event_bus,
        db_manager=db_manager,
    )


async def get_order_admin_service(
    shipment_service: ShipmentService = Depends(get_shipment_service),
    notifier: NotificationDispatcher = Depends(get_notifier),
    event_bus: Optional[EventBus] = Depends(get_event_bus_dep),
    db_manager: DatabaseManager = Depends(get_db),
) -> OrderAdminService:
    """依赖注入：获取后台订单服务"""
    return OrderAdminService(shipment_service, notifier, event_bus=event_bus, db_manager=db_manager)
