"""
优惠券校验与核销
校验为纯函数（只依赖券字段、订单金额和当前时间），核销为条件更新
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any

from sqlalchemy import select, and_, or_, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.models import Coupon
from rastuci_core.utils.errors import ConflictError
from .base import BaseService, ServiceResult, RepositoryMixin

COUPON_NOT_FOUND = "Cupón no encontrado"
COUPON_INACTIVE = "El cupón no está activo"
COUPON_EXPIRED = "El cupón ha expirado"
COUPON_EXHAUSTED = "El cupón alcanzó el límite de usos"

CENTS = Decimal("0.01")


@dataclass
class CouponCheck:
    """券校验结果"""
    valid: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    discount: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid, "discount": str(self.discount)}
        if self.error:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def format_amount(amount: Decimal) -> str:
    """金额显示：整数不带小数位"""
    amount = Decimal(amount)
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal("1")))
    return str(amount.quantize(CENTS))


def compute_discount(coupon: Coupon, total: Decimal) -> Decimal:
    """折扣金额：百分比按总额计算，固定金额不超过总额"""
    total = Decimal(total)
    if coupon.type == "percentage":
        discount = total * Decimal(coupon.value) / Decimal("100")
    else:
        discount = Decimal(coupon.value)
    discount = min(discount, total)
    return max(discount, Decimal("0")).quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_coupon(
    coupon: Optional[Coupon],
    order_total: Decimal,
    now: Optional[datetime] = None
) -> CouponCheck:
    """校验优惠券是否可用于当前订单"""
    if coupon is None:
        return CouponCheck(valid=False, error=COUPON_NOT_FOUND, error_code="COUPON_NOT_FOUND")

    if not coupon.is_active:
        return CouponCheck(valid=False, error=COUPON_INACTIVE, error_code="COUPON_INACTIVE")

    now = now or datetime.now(timezone.utc)
    if coupon.expires_at is not None:
        expires_at = coupon.expires_at
        if expires_at.tzinfo is None:
            # SQLite 读回的时间不带时区，按 UTC 处理
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            return CouponCheck(valid=False, error=COUPON_EXPIRED, error_code="COUPON_EXPIRED")

    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        return CouponCheck(valid=False, error=COUPON_EXHAUSTED, error_code="COUPON_EXHAUSTED")

    if coupon.min_order_value is not None and Decimal(order_total) < Decimal(coupon.min_order_value):
        return CouponCheck(
            valid=False,
            error=f"El monto mínimo para usar este cupón es ${format_amount(coupon.min_order_value)}",
            error_code="COUPON_MIN_ORDER"
        )

    return CouponCheck(valid=True, discount=compute_discount(coupon, order_total))


class CouponService(BaseService, RepositoryMixin):
    """优惠券服务"""

    async def check(self, code: str, order_total: Decimal) -> ServiceResult[Dict[str, Any]]:
        """只读校验（前端展示折扣）"""
        coupon = await self.execute_with_session(self.find_by_code, code)
        check = validate_coupon(coupon, order_total)
        if not check.valid:
            return ServiceResult.error(error=check.error, error_code=check.error_code)
        return ServiceResult.ok({
            "code": coupon.code,
            "type": coupon.type,
            "value": str(coupon.value),
            "discount": str(check.discount),
        })

    async def find_by_code(self, session: AsyncSession, code: str) -> Optional[Coupon]:
        return await self.get_by_field(session, Coupon, "code", normalize_code(code))

    async def redeem(self, session: AsyncSession, code: str) -> int:
        """
        在调用方事务中核销一次

        used_count 只在未达上限时自增，并发下不会超发
        """
        stmt = sql_update(Coupon).where(
            and_(
                Coupon.code == normalize_code(code),
                Coupon.is_active.is_(True),
                or_(
                    Coupon.max_uses.is_(None),
                    Coupon.used_count < Coupon.max_uses
                )
            )
        ).values(
            used_count=Coupon.used_count + 1
        ).returning(Coupon.used_count)

        result = await session.execute(stmt)
        used_count = result.scalar_one_or_none()
        if used_count is None:
            self.logger.warning("Coupon redemption rejected", coupon_code=normalize_code(code))
            raise ConflictError(code="COUPON_EXHAUSTED", detail=COUPON_EXHAUSTED)

        self.logger.info("Coupon redeemed", coupon_code=normalize_code(code), used_count=used_count)
        return used_count

    async def load_for_update(self, session: AsyncSession, code: str) -> Optional[Coupon]:
        """事务内读取优惠券（PostgreSQL 下加行锁）"""
        stmt = select(Coupon).where(Coupon.code == normalize_code(code))
        if not self.db_manager.is_sqlite:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalars().first()
