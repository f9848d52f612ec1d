"""
Rastuci 数据模型包
"""
from .base import Base
from .orders import Order, OrderItem, OrderStatus, PaymentMethod
from .products import Product, ProductVariant
from .coupons import Coupon
from .webhooks import PaymentWebhookEvent
from .notifications import NotificationOutcome

__all__ = [
    "Base",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "Product",
    "ProductVariant",
    "Coupon",
    "PaymentWebhookEvent",
    "NotificationOutcome",
]
