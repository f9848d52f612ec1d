"""
MercadoPago 回调签名校验

x-signature 形如 "ts=1704908010,v1=<hex>"，
签名清单为 "id:{data.id};request-id:{x-request-id};ts:{ts};"
"""
import hashlib
import hmac
from typing import Dict, Optional

from .logger import get_logger

logger = get_logger(__name__)


def parse_signature_header(x_signature: Optional[str]) -> Dict[str, str]:
    """拆分 x-signature 头中的键值对"""
    parts: Dict[str, str] = {}
    for chunk in (x_signature or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_signature_manifest(data_id: str, x_request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{x_request_id};ts:{ts};"


def verify_webhook_signature(
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[str],
    secret: Optional[str]
) -> bool:
    """
    校验回调签名

    未配置密钥时直接放行（开发环境），并记录警告
    """
    if not secret:
        logger.warning("MercadoPago webhook secret not configured, skipping signature check")
        return True

    parts = parse_signature_header(x_signature)
    ts = parts.get("ts")
    signature = parts.get("v1")
    if not ts or not signature or not x_request_id or not data_id:
        logger.warning(
            "Webhook signature header incomplete",
            has_ts=bool(ts),
            has_v1=bool(signature),
            has_request_id=bool(x_request_id),
        )
        return False

    manifest = build_signature_manifest(data_id, x_request_id, ts)
    expected_signature = hmac.new(
        secret.encode(),
        manifest.encode(),
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(signature, expected_signature)
