"""
后台订单 API 路由
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from rastuci_core.services import OrderAdminService
from rastuci_core.utils.logger import get_logger
from .dependencies import get_order_admin_service
from .models import ApiResponse, StatusUpdateRequest, failure_response

router = APIRouter()
logger = get_logger(__name__)


@router.get("/{order_id}", response_model=ApiResponse[Dict[str, Any]])
async def get_order(
    order_id: str,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """订单详情（含明细）"""
    return ApiResponse.success(await service.get_order(order_id))


@router.patch("/{order_id}/status", response_model=ApiResponse[Dict[str, Any]])
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """按主链路推进订单状态"""
    result = await service.update_status(order_id, body.status)
    return ApiResponse.success(result.data)


@router.patch("/{order_id}/mark-processed", response_model=ApiResponse[Dict[str, Any]])
async def mark_processed(
    order_id: str,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """PENDING_PAYMENT → PROCESSED"""
    result = await service.mark_processed(order_id)
    return ApiResponse.success(result.data)


@router.patch("/{order_id}/mark-delivered", response_model=ApiResponse[Dict[str, Any]])
async def mark_delivered(
    order_id: str,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """PROCESSED → DELIVERED"""
    result = await service.mark_delivered(order_id)
    return ApiResponse.success(result.data)


@router.post("/{order_id}/retry-shipment", response_model=ApiResponse[Dict[str, Any]])
async def retry_shipment(
    order_id: str,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """重新导入快递发货单"""
    result = await service.retry_shipment(order_id)
    if not result.success:
        logger.warning("Shipment retry failed", order_id=order_id, error_code=result.error_code)
        return failure_response(result, 502)
    return ApiResponse.success(result.data)


@router.post("/{order_id}/sync-tracking", response_model=ApiResponse[Dict[str, Any]])
async def sync_tracking(
    order_id: str,
    service: OrderAdminService = Depends(get_order_admin_service)
):
    """同步快递官方运单号"""
    result = await service.sync_tracking(order_id)
    if not result.success:
        return failure_response(result, 502)
    return ApiResponse.success(result.data)
