"""
支付网关状态映射
MercadoPago (status, status_detail) → 规范状态
"""
import enum
from typing import Optional

from rastuci_core.models.orders import OrderStatus


class CanonicalStatus(str, enum.Enum):
    """规范支付状态"""
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_REVIEW = "PENDING_REVIEW"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"


# 顶层状态映射（pending 需要结合 status_detail）
GATEWAY_STATUS_MAP = {
    "approved": CanonicalStatus.COMPLETED,
    "in_process": CanonicalStatus.PROCESSING,
    "rejected": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.CANCELLED,
    "refunded": CanonicalStatus.REFUNDED,
    "charged_back": CanonicalStatus.CHARGED_BACK,
}

PENDING_DETAIL_MAP = {
    "pending_waiting_payment": CanonicalStatus.PENDING_PAYMENT,
    "pending_waiting_transfer": CanonicalStatus.PENDING_PAYMENT,
    "pending_review_manual": CanonicalStatus.PENDING_REVIEW,
    "pending_waiting_for_remedy": CanonicalStatus.PENDING_REVIEW,
}


def map_payment_status(status: Optional[str], status_detail: Optional[str] = None) -> CanonicalStatus:
    """
    网关状态 → 规范状态（纯函数）

    未识别的顶层状态返回 PENDING，交由后续对账处理而不是丢弃订单
    """
    if status == "pending":
        return PENDING_DETAIL_MAP.get(status_detail or "", CanonicalStatus.PENDING)
    return GATEWAY_STATUS_MAP.get(status or "", CanonicalStatus.PENDING)


def is_paid(canonical: CanonicalStatus) -> bool:
    return canonical is CanonicalStatus.COMPLETED


def to_order_status(canonical: CanonicalStatus) -> Optional[OrderStatus]:
    """
    规范状态 → 持久化订单状态

    COMPLETED 没有单一对应状态（沿已支付路径推进），返回 None
    """
    if canonical is CanonicalStatus.COMPLETED:
        return None
    return OrderStatus(canonical.value)
