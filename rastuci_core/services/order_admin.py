"""
后台订单操作
状态只能沿主链路逐步推进；进入 PROCESSED 前必须完成库存扣减，
非自提订单还必须已有快递发货单
"""
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.database import DatabaseManager
from rastuci_core.event_bus import EventBus, ORDER_STATUS_CHANGED
from rastuci_core.models import Order, OrderStatus
from rastuci_core.utils.errors import BadRequestError, NotFoundError
from .base import BaseService, ServiceResult, RepositoryMixin
from .lifecycle import FORWARD_TRANSITIONS, can_transition
from .notifications import NotificationDispatcher, ORDER_SHIPPED, ORDER_DELIVERED
from .shipments import ShipmentService
from .stock_ledger import StockLedgerService

ORDER_NOT_FOUND = "Pedido no encontrado"


def order_not_found() -> NotFoundError:
    return NotFoundError(code="ORDER_NOT_FOUND", resource="Pedido", detail=ORDER_NOT_FOUND)


def required_source(target: OrderStatus) -> Optional[OrderStatus]:
    """主链路上能到达 target 的前一状态"""
    for source, targets in FORWARD_TRANSITIONS.items():
        if target in targets:
            return source
    return None


def serialize_order(order: Order) -> Dict[str, Any]:
    data = order.to_dict()
    data["items"] = [item.to_dict() for item in order.items]
    return data


class OrderAdminService(BaseService, RepositoryMixin):
    """后台订单服务"""

    def __init__(
        self,
        shipment_service: ShipmentService,
        notifier: NotificationDispatcher,
        event_bus: Optional[EventBus] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        super().__init__(db_manager)
        self.shipment_service = shipment_service
        self.notifier = notifier
        self.event_bus = event_bus
        self.stock_ledger = StockLedgerService(self.db_manager)

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        order = await self.execute_with_session(self.get_by_id, Order, order_id)
        if not order:
            raise order_not_found()
        return serialize_order(order)

    async def update_status(self, order_id: str, status: str) -> ServiceResult[Dict[str, Any]]:
        """通用状态推进（只允许主链路的下一步）"""
        try:
            target = OrderStatus(status)
        except ValueError:
            raise BadRequestError(code="INVALID_STATUS", detail=f"Estado no válido: {status}")

        if target is OrderStatus.PROCESSED:
            return await self.mark_processed(order_id)
        if target is OrderStatus.DELIVERED:
            return await self.mark_delivered(order_id)

        order, previous, data = await self.execute_with_transaction(self._advance, order_id, target)
        await self._publish(order, previous)
        return ServiceResult.ok({
            "order": data,
            "message": f"Estado del pedido actualizado a {target.value}",
        })

    async def mark_processed(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        """
        PENDING_PAYMENT → PROCESSED

        未扣库存时在同一事务内扣减，库存不足返回 409
        """
        order, previous, data = await self.execute_with_transaction(
            self._advance, order_id, OrderStatus.PROCESSED
        )
        self.logger.info("Order marked as PROCESSED", order_id=order_id, total=str(order.total))

        if order.tracking_number:
            self.notifier.dispatch(order, ORDER_SHIPPED)
        await self._publish(order, previous)

        return ServiceResult.ok({
            "order": data,
            "message": "Pedido marcado como procesado exitosamente",
        })

    async def mark_delivered(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        """PROCESSED → DELIVERED"""
        order, previous, data = await self.execute_with_transaction(
            self._advance, order_id, OrderStatus.DELIVERED
        )
        self.logger.info("Order marked as DELIVERED", order_id=order_id)

        self.notifier.dispatch(order, ORDER_DELIVERED)
        await self._publish(order, previous)

        return ServiceResult.ok({
            "order": data,
            "message": "Pedido marcado como entregado exitosamente",
        })

    async def retry_shipment(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        result = await self.shipment_service.retry_shipment(order_id)
        if result.success and result.data["order_status"] == OrderStatus.PROCESSED.value:
            order = await self.execute_with_session(self.get_by_id, Order, order_id)
            self.notifier.dispatch(order, ORDER_SHIPPED)
            await self._publish(order, OrderStatus.PENDING_PAYMENT.value)
        return result

    async def sync_tracking(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        result = await self.shipment_service.sync_tracking(order_id)
        if result.success and result.data["updated"]:
            # 官方运单号生成后通知客户
            order = await self.execute_with_session(self.get_by_id, Order, order_id)
            self.notifier.dispatch(order, ORDER_SHIPPED)
        return result

    async def _advance(self, session: AsyncSession, order_id: str, target: OrderStatus):
        order = await self.get_by_id(session, Order, order_id)
        if not order:
            raise order_not_found()

        previous = order.status
        if not can_transition(previous, target):
            source = required_source(target)
            raise BadRequestError(
                code="INVALID_TRANSITION",
                detail=(
                    f"El pedido debe estar en estado {source.value}. Estado actual: {previous}"
                    if source else f"No se puede cambiar el pedido a {target.value}"
                )
            )

        if target is OrderStatus.PROCESSED:
            if not order.is_pickup and not (order.shipment_id or order.tracking_number):
                raise BadRequestError(
                    code="MISSING_SHIPMENT",
                    detail="El pedido no tiene un envío importado. Reintentá la importación del envío primero."
                )
            if order.stock_decremented_at is None:
                # InsufficientStockError → 409，整个事务回滚
                await self.stock_ledger.debit_order_tx(session, order)

        order.status = target.value
        await session.flush()
        # updated_at 由数据库生成，flush 后已过期，须在会话内重新加载后再序列化
        await session.refresh(order)
        return order, previous, serialize_order(order)

    async def _publish(self, order: Order, previous: str) -> None:
        if not self.event_bus:
            return
        try:
            await self.event_bus.publish(
                ORDER_STATUS_CHANGED,
                {
                    "order_id": order.id,
                    "from_status": previous,
                    "to_status": order.status,
                    "source": "admin",
                },
                key=order.id,
            )
        except Exception:
            self.logger.error("Failed to publish status change", order_id=order.id, exc_info=True)
