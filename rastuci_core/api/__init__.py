"""
Rastuci API 路由模块
"""
from fastapi import APIRouter

from .admin_orders import router as admin_orders_router
from .checkout import router as checkout_router
from .coupons import router as coupons_router
from .webhooks import router as webhooks_router

# 创建主路由器
api_router = APIRouter()

api_router.include_router(checkout_router, prefix="/checkout", tags=["Checkout"])
api_router.include_router(coupons_router, prefix="/coupons", tags=["Coupons"])
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(admin_orders_router, prefix="/admin/orders", tags=["Admin Orders"])

__all__ = ["api_router"]
