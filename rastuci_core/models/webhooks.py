"""
支付 Webhook 事件记录（幂等账本）
"""
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import String, Integer, DateTime, JSON, Index, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PaymentWebhookEvent(Base):
    """网关回调事件记录"""
    __tablename__ = "payment_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # 幂等键：{payment_id}:{status}:{status_detail}
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, comment="幂等键")

    # 事件信息
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="网关支付ID")
    action: Mapped[str] = mapped_column(String(64), nullable=False, comment="网关动作")
    request_id: Mapped[Optional[str]] = mapped_column(String(128), comment="x-request-id 头")
    gateway_status: Mapped[Optional[str]] = mapped_column(String(64), comment="网关状态")
    gateway_status_detail: Mapped[Optional[str]] = mapped_column(String(128), comment="网关状态详情")
    order_id: Mapped[Optional[str]] = mapped_column(String(64), comment="关联订单")

    # 处理状态 received/processed/failed/ignored
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="received", comment="处理状态")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="重试次数")
    error_message: Mapped[Optional[str]] = mapped_column(String(1000), comment="错误信息")
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, comment="对账结果摘要")
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, comment="原始通知载荷")

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="处理完成时间")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="记录创建时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="记录更新时间"
    )

    __table_args__ = (
        UniqueConstraint('idempotency_key', name='uq_payment_webhook_events_idempotency_key'),
        Index('ix_payment_webhook_events_payment', 'payment_id'),
        Index('ix_payment_webhook_events_status', 'status', 'created_at'),
    )
