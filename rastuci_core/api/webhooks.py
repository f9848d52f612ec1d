"""
MercadoPago 回调路由

签名错误返回 401；其余情况（载荷错误、处理失败）一律 200，
避免网关对同一通知无限重试
"""
import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from rastuci_core.config import Settings
from rastuci_core.services import WebhookReconciler, parse_webhook_notification
from rastuci_core.services.reconciler import WebhookPayloadError
from rastuci_core.utils.logger import get_logger
from rastuci_core.utils.signature import verify_webhook_signature
from .dependencies import get_app_settings, get_reconciler

router = APIRouter()
logger = get_logger(__name__)


def _extract_data_id(request: Request, body: Any) -> Optional[str]:
    """data.id 优先取查询参数（网关签名所用），其次取请求体"""
    data_id = request.query_params.get("data.id") or request.query_params.get("id")
    if not data_id and isinstance(body, dict) and isinstance(body.get("data"), dict):
        value = body["data"].get("id")
        data_id = str(value) if value is not None else None
    return data_id


@router.post("/mercadopago")
async def mercadopago_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    """接收 MercadoPago 支付通知"""
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    x_request_id = request.headers.get("x-request-id")
    data_id = _extract_data_id(request, body)

    if not verify_webhook_signature(
        request.headers.get("x-signature"),
        x_request_id,
        data_id,
        settings.mp_webhook_secret,
    ):
        logger.warning("Invalid MercadoPago webhook signature", data_id=data_id, request_id=x_request_id)
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        notification = parse_webhook_notification(body)
    except WebhookPayloadError as e:
        logger.info("Webhook payload ignored", reason=e.message)
        return {"received": True, "status": "ignored", "error": e.message}

    outcome = await reconciler.reconcile(notification, request_id=x_request_id)

    logger.info(
        "Webhook processed",
        payment_id=notification.payment_id,
        status=outcome.status,
        order_id=outcome.order_id,
    )
    return {"received": True, **outcome.to_dict()}
