"""
库存账本服务
原子条件扣减：UPDATE ... SET stock = stock - :qty WHERE stock >= :qty
多行扣减在同一事务内完成，任一失败整体回滚
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from sqlalchemy import select, and_, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.models import Order, Product, ProductVariant
from rastuci_core.utils.errors import (
    RastuciException, InsufficientStockError, NotFoundError, ValidationError
)
from .base import BaseService, ServiceResult, RepositoryMixin


@dataclass
class StockLine:
    """一行库存需求"""
    product_id: str
    quantity: int
    variant_id: Optional[str] = None
    name: Optional[str] = None


class StockLedgerService(BaseService, RepositoryMixin):
    """库存账本服务"""

    async def decrement(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """单行扣减（独立事务）"""
        try:
            new_stock = await self.execute_with_transaction(
                self.apply_decrement,
                product_id, quantity, variant_id
            )
            return ServiceResult.ok({
                "product_id": product_id,
                "variant_id": variant_id,
                "new_stock": new_stock
            })
        except InsufficientStockError as e:
            return ServiceResult.error(
                error=e.detail,
                error_code=e.code,
                metadata={"requested": e.requested, "available": e.available}
            )

    async def apply_decrement(
        self,
        session: AsyncSession,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> int:
        """在调用方事务中执行一次条件扣减，返回扣减后的库存"""
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(
                code="INVALID_QUANTITY",
                detail=f"Quantity must be a positive integer: {quantity!r}"
            )

        model = ProductVariant if variant_id else Product
        target_id = variant_id or product_id

        stmt = sql_update(model).where(
            and_(
                model.id == target_id,
                model.stock >= quantity
            )
        ).values(
            stock=model.stock - quantity
        ).returning(model.stock)

        result = await session.execute(stmt)
        new_stock = result.scalar_one_or_none()

        if new_stock is None:
            # 条件未命中：并发售罄或记录不存在
            available = await session.scalar(select(model.stock).where(model.id == target_id))
            self.logger.warning(
                "Stock decrement rejected",
                product_id=product_id,
                variant_id=variant_id,
                requested=quantity,
                available=available,
            )
            raise InsufficientStockError(
                product_id=product_id,
                requested=quantity,
                available=available if available is not None else 0,
                variant_id=variant_id,
                name=name
            )

        return new_stock

    async def debit_order(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        """扣减订单全部行项目的库存（至多一次）"""
        try:
            result = await self.execute_with_transaction(self._debit_order_tx, order_id)
        except InsufficientStockError as e:
            self.logger.error(
                "Order stock debit rolled back",
                order_id=order_id,
                product_id=e.product_id,
                variant_id=e.variant_id,
            )
            return ServiceResult.error(
                error=e.detail,
                error_code=e.code,
                metadata={"product_id": e.product_id, "variant_id": e.variant_id}
            )

        if result["already_debited"]:
            self.logger.info("Order stock already debited", order_id=order_id)
        else:
            self.logger.info(
                f"Debited stock for {len(result['items'])} items",
                order_id=order_id
            )
        return ServiceResult.ok(result)

    async def _debit_order_tx(self, session: AsyncSession, order_id: str) -> Dict[str, Any]:
        order = await self.get_by_id(session, Order, order_id)
        if not order:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource="Pedido", detail="Pedido no encontrado")
        return await self.debit_order_tx(session, order)

    async def debit_order_tx(self, session: AsyncSession, order: Order) -> Dict[str, Any]:
        """
        在调用方事务中扣减订单库存

        先以条件更新写入 stock_decremented_at 作为幂等标记，
        重复投递的回调在这里即被拦截
        """
        now = datetime.now(timezone.utc)
        stamp = await session.execute(
            sql_update(Order).where(
                and_(
                    Order.id == order.id,
                    Order.stock_decremented_at.is_(None)
                )
            ).values(
                stock_decremented_at=now
            ).returning(Order.id)
        )
        if stamp.scalar_one_or_none() is None:
            return {"already_debited": True, "items": []}
        order.stock_decremented_at = now

        debited = []
        for item in order.items:
            new_stock = await self.apply_decrement(
                session,
                item.product_id,
                item.quantity,
                item.variant_id,
                item.name
            )
            debited.append({
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "quantity": item.quantity,
                "new_stock": new_stock
            })

        return {"already_debited": False, "items": debited}

    async def check_availability(self, lines: List[StockLine]) -> ServiceResult[Dict[str, Any]]:
        """只读的库存可用性检查"""
        try:
            result = await self.execute_with_session(self.check_availability_tx, lines)
            return ServiceResult.ok(result)
        except RastuciException:
            raise
        except Exception as e:
            self.logger.error("Stock availability check failed", exc_info=True)
            return ServiceResult.error(
                error=f"Failed to check stock availability: {str(e)}",
                error_code="STOCK_CHECK_FAILED"
            )

    async def check_availability_tx(
        self,
        session: AsyncSession,
        lines: List[StockLine]
    ) -> Dict[str, Any]:
        """库存可用性检查逻辑（同一商品的多行合并计算）"""
        required: Dict[tuple, int] = {}
        names: Dict[tuple, str] = {}
        for line in lines:
            key = (line.product_id, line.variant_id)
            required[key] = required.get(key, 0) + line.quantity
            names[key] = line.name or line.product_id

        check_results = []
        overall_available = True

        for (product_id, variant_id), quantity in required.items():
            model = ProductVariant if variant_id else Product
            available = await session.scalar(
                select(model.stock).where(model.id == (variant_id or product_id))
            )
            ok = available is not None and available >= quantity
            check_result = {
                "product_id": product_id,
                "variant_id": variant_id,
                "required_qty": quantity,
                "available_qty": available or 0,
                "available": ok
            }
            if not ok:
                overall_available = False
                check_result["reason"] = (
                    f"Stock insuficiente para {names[(product_id, variant_id)]}. "
                    f"Disponible: {available or 0}, Solicitado: {quantity}"
                )
            check_results.append(check_result)

        return {
            "overall_available": overall_available,
            "items": check_results
        }
