"""
Rastuci 服务层
"""
from .base import BaseService, ServiceResult
from .checkout import CheckoutService, CheckoutRequest
from .coupons import CouponService
from .notifications import NotificationDispatcher
from .order_admin import OrderAdminService
from .reconciler import WebhookReconciler, WebhookNotification, parse_webhook_notification
from .shipments import ShipmentService, ShipmentOutcome
from .stock_ledger import StockLedgerService

__all__ = [
    "BaseService",
    "ServiceResult",
    "CheckoutService",
    "CheckoutRequest",
    "CouponService",
    "NotificationDispatcher",
    "OrderAdminService",
    "WebhookReconciler",
    "WebhookNotification",
    "parse_webhook_notification",
    "ShipmentService",
    "ShipmentOutcome",
    "StockLedgerService",
]
