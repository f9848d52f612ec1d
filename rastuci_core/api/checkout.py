"""
下单 API 路由

对前端保持原有契约：成功 {success, orderId, ...}，
失败 {success: false, error}（西语提示）
"""
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from rastuci_core.services import CheckoutService, CheckoutRequest
from rastuci_core.utils.errors import RastuciException
from rastuci_core.utils.logger import get_logger
from .dependencies import get_checkout_service

router = APIRouter()
logger = get_logger(__name__)

INVALID_REQUEST = "Datos del pedido inválidos"


def _error(status: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "error": message, **extra})


@router.post("")
async def checkout(
    request: Request,
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """创建订单（现金/转账/MercadoPago）"""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, INVALID_REQUEST)

    try:
        checkout_request = CheckoutRequest.model_validate(body)
    except PydanticValidationError as e:
        logger.warning("Checkout payload rejected", errors=e.errors(include_url=False, include_context=False))
        return _error(400, INVALID_REQUEST)

    try:
        result = await checkout_service.checkout(checkout_request)
    except RastuciException as e:
        logger.warning("Checkout failed", code=e.code, status=e.status, detail=e.detail)
        extra = {"code": e.code}
        if "order_id" in e.extra:
            extra["orderId"] = e.extra["order_id"]
        return _error(e.status, e.detail or e.title, **extra)

    return result.data
