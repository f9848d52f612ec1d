"""
通知发送结果记录
邮件/推送为后台任务，结果落库以便排查和重发
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, Text, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class NotificationOutcome(Base):
    """通知结果表"""
    __tablename__ = "notification_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="关联订单")
    channel: Mapped[str] = mapped_column(String(16), nullable=False, comment="email/push")
    kind: Mapped[str] = mapped_column(String(64), nullable=False, comment="通知类型")
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, comment="是否成功")
    skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment="未配置或无收件人")
    error: Mapped[Optional[str]] = mapped_column(Text, comment="失败原因")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="记录创建时间"
    )

    __table_args__ = (
        Index('ix_notification_outcomes_order', 'order_id', 'created_at'),
    )
