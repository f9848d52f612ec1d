"""
优惠券 API 路由
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from rastuci_core.services import CouponService
from .dependencies import get_coupon_service
from .models import ApiResponse, CouponValidationResponse, failure_response

router = APIRouter()


@router.get("/{code}/validate", response_model=ApiResponse[CouponValidationResponse])
async def validate_coupon(
    code: str,
    total: Decimal = Query(..., ge=0, description="订单金额"),
    service: CouponService = Depends(get_coupon_service)
):
    """校验优惠券并返回折扣金额"""
    result = await service.check(code, total)
    if not result.success:
        status = 404 if result.error_code == "COUPON_NOT_FOUND" else 400
        return failure_response(result, status)
    return ApiResponse.success(CouponValidationResponse(**result.data))
