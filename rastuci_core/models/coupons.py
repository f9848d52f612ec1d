"""
优惠券模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, Numeric, Boolean, DateTime,
    CheckConstraint, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id


class Coupon(Base):
    """优惠券表"""
    __tablename__ = "coupons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("cpn_"))
    code: Mapped[str] = mapped_column(String(64), nullable=False, comment="券码")
    type: Mapped[str] = mapped_column(
        String(16),
        CheckConstraint("type IN ('percentage','fixed')", name="ck_coupons_type"),
        nullable=False,
        comment="折扣类型"
    )
    value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        CheckConstraint("value >= 0", name="ck_coupons_value_non_negative"),
        nullable=False,
        comment="折扣值（百分比或金额）"
    )
    min_order_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), comment="最低订单金额")
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, comment="最大使用次数（空为不限）")
    used_count: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        nullable=False,
        default=0,
        comment="已使用次数"
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="过期时间")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, comment="是否启用")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="记录创建时间"
    )

    __table_args__ = (
        UniqueConstraint('code', name='uq_coupons_code'),
    )
