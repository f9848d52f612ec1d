"""
订单生命周期（状态机）

主链路只允许逐步向前：
PENDING → PENDING_PAYMENT → PROCESSED → DELIVERED

支付失败等分支状态（挂起状态）只能从未发货的早期状态进入
"""
from typing import Union

from rastuci_core.models.orders import OrderStatus

StatusLike = Union[OrderStatus, str]

# 主链路转换表
FORWARD_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PENDING_PAYMENT}),
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PROCESSED}),
    OrderStatus.PROCESSED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
}

# 网关驱动的挂起状态
HOLD_STATES = frozenset({
    OrderStatus.PENDING_REVIEW,
    OrderStatus.PROCESSING,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
    OrderStatus.CHARGED_BACK,
})

# 网关仍可能改判的挂起状态（审核中/处理中）
REVIEW_STATES = frozenset({OrderStatus.PENDING_REVIEW, OrderStatus.PROCESSING})

# 可以进入挂起状态的来源
HOLD_SOURCES = frozenset({OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT}) | REVIEW_STATES


def _coerce(status: StatusLike) -> OrderStatus:
    return status if isinstance(status, OrderStatus) else OrderStatus(status)


def can_transition(from_status: StatusLike, to_status: StatusLike) -> bool:
    """主链路转换校验（不含同状态、回退和跳级）"""
    try:
        source, target = _coerce(from_status), _coerce(to_status)
    except ValueError:
        return False
    return target in FORWARD_TRANSITIONS.get(source, frozenset())


def can_hold(from_status: StatusLike, to_status: StatusLike) -> bool:
    """是否可以进入网关挂起状态"""
    try:
        source, target = _coerce(from_status), _coerce(to_status)
    except ValueError:
        return False
    return source != target and source in HOLD_SOURCES and target in HOLD_STATES


def can_release(from_status: StatusLike, to_status: StatusLike) -> bool:
    """审核中/处理中的支付被网关批准后回到已支付链路"""
    try:
        source, target = _coerce(from_status), _coerce(to_status)
    except ValueError:
        return False
    return source in REVIEW_STATES and target is OrderStatus.PENDING_PAYMENT


def is_allowed(from_status: StatusLike, to_status: StatusLike) -> bool:
    """对账流程使用的完整转换校验"""
    return (
        can_transition(from_status, to_status)
        or can_hold(from_status, to_status)
        or can_release(from_status, to_status)
    )
