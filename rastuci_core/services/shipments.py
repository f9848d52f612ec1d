"""
发货服务
根据订单快照生成 Correo Argentino 发货单，失败时不抛异常，
由调用方（回调对账/后台）决定后续动作
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.clients.correo_argentino import (
    CorreoArgentinoClient,
    CourierAPIError,
    CourierTimeoutError,
    ImportShipmentRequest,
    ShipmentAddress,
    ShipmentDetails,
    ShipmentRecipient,
    ShipmentSender,
)
from rastuci_core.config import Settings, get_settings
from rastuci_core.database import DatabaseManager
from rastuci_core.models import Order, OrderStatus
from rastuci_core.utils.errors import (
    BadRequestError, ConflictError, NotFoundError
)
from .address import resolve_address
from .base import BaseService, ServiceResult, RepositoryMixin
from .lifecycle import can_transition
from .stock_ledger import StockLedgerService

# 包裹估算：每件 300g，最低 500g；固定箱规（厘米）
MIN_WEIGHT_GRAMS = 500
GRAMS_PER_UNIT = 300
BOX_HEIGHT_CM = 10
BOX_WIDTH_CM = 20
BOX_LENGTH_CM = 30

# 新运单号需长于内部ID才视为官方运单号
OFFICIAL_TRACKING_MIN_LENGTH = 10


@dataclass
class ShipmentOutcome:
    """一次发货尝试的结果"""
    status: str  # created / skipped / failed / unknown_outcome
    tracking_number: Optional[str] = None
    shipment_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in ("created", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status, "success": self.success}
        for key in ("tracking_number", "shipment_id", "error", "error_code"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


def estimate_weight(unit_count: int) -> int:
    return max(MIN_WEIGHT_GRAMS, unit_count * GRAMS_PER_UNIT)


def has_address_data(order: Order) -> bool:
    """订单至少要有结构化街道或自由文本地址"""
    return bool((order.shipping_street or "").strip() or (order.customer_address or "").strip())


def build_shipment_request(
    order: Order,
    settings: Settings,
    customer_id: Optional[str] = None
) -> ImportShipmentRequest:
    """订单 → /shipping/import 请求"""
    agency = (order.shipping_agency or "").strip() or None
    delivery_type = "S" if agency else "D"

    address = None
    if delivery_type == "D":
        resolved = resolve_address(order)
        address = ShipmentAddress(
            street_name=resolved.street_name,
            street_number=resolved.street_number,
            floor=resolved.floor[:3] if resolved.floor else None,
            apartment=resolved.apartment[:3] if resolved.apartment else None,
            city=resolved.city,
            province_code=resolved.province_code,
            postal_code=resolved.postal_code,
        )

    sender = ShipmentSender(
        name=settings.store_name,
        phone=settings.store_phone,
        cell_phone=settings.store_phone,
        email=settings.store_email,
        origin_address=ShipmentAddress(
            street_name=settings.store_street,
            street_number=settings.store_street_number,
            city=settings.store_city,
            province_code=settings.store_province_code,
            postal_code=settings.store_postal_code,
        ),
    )

    return ImportShipmentRequest(
        customer_id=customer_id or settings.ca_customer_id or "",
        ext_order_id=order.id,
        order_number=order.id[:20],
        sender=sender,
        recipient=ShipmentRecipient(
            name=order.customer_name,
            phone=order.customer_phone or None,
            cell_phone=order.customer_phone or None,
            email=order.customer_email or settings.store_email,
        ),
        shipping=ShipmentDetails(
            delivery_type=delivery_type,
            product_type="CP",
            agency=agency,
            address=address,
            weight=estimate_weight(order.unit_count),
            declared_value=float(order.total),
            height=BOX_HEIGHT_CM,
            length=BOX_LENGTH_CM,
            width=BOX_WIDTH_CM,
        ),
    )


class ShipmentService(BaseService, RepositoryMixin):
    """Correo Argentino 发货服务"""

    def __init__(
        self,
        courier: CorreoArgentinoClient,
        settings: Optional[Settings] = None,
        db_manager: Optional[DatabaseManager] = None,
        stock_ledger: Optional[StockLedgerService] = None
    ):
        super().__init__(db_manager)
        self.courier = courier
        self.settings = settings or get_settings()
        self.stock_ledger = stock_ledger or StockLedgerService(self.db_manager)

    async def create_shipment(self, order: Order) -> ShipmentOutcome:
        """
        为订单导入发货单

        自提订单直接跳过；快递接口失败返回 failed，超时返回 unknown_outcome
        """
        if order.is_pickup:
            self.logger.info("Pickup order, skipping courier shipment", order_id=order.id)
            return ShipmentOutcome(status="skipped")

        if not self.courier.customer_id and not self.settings.ca_customer_id:
            self.logger.error("Courier customer id not configured", order_id=order.id)
            return ShipmentOutcome(
                status="failed",
                error="CORREO_ARGENTINO_CUSTOMER_ID no configurado",
                error_code="MISSING_CUSTOMER_ID",
            )

        try:
            request = build_shipment_request(order, self.settings, self.courier.customer_id)
            result = await self.courier.import_shipment(request)
        except CourierTimeoutError as e:
            self.logger.warning(
                "Courier shipment outcome unknown",
                order_id=order.id,
                error_code=e.code,
            )
            return ShipmentOutcome(
                status="unknown_outcome",
                error=e.message,
                error_code=e.code,
            )
        except CourierAPIError as e:
            self.logger.error(
                "Courier shipment import failed",
                order_id=order.id,
                error_code=e.code,
                status_code=e.status_code,
            )
            return ShipmentOutcome(
                status="failed",
                error=e.message,
                error_code=e.code,
                details={"status_code": e.status_code, "response": e.details},
            )

        tracking_number = result.best_tracking
        if not tracking_number:
            self.logger.error("Courier import returned no identifiers", order_id=order.id)
            return ShipmentOutcome(
                status="failed",
                error="Correo Argentino no devolvió número de seguimiento",
                error_code="IMPORT_ERROR",
            )

        self.logger.info(
            "Courier shipment created",
            order_id=order.id,
            tracking_number=tracking_number,
            shipment_id=result.internal_id,
        )
        return ShipmentOutcome(
            status="created",
            tracking_number=tracking_number,
            shipment_id=result.internal_id,
        )

    def apply_outcome(self, order: Order, outcome: ShipmentOutcome) -> bool:
        """
        把发货结果写回订单（调用方负责事务）

        发货成功且库存已扣减时推进 PENDING_PAYMENT → PROCESSED，返回是否推进
        """
        if outcome.status == "skipped":
            return False

        if outcome.status != "created":
            order.shipment_error = f"{outcome.error_code}: {outcome.error}"
            return False

        order.tracking_number = outcome.tracking_number
        order.shipment_id = outcome.shipment_id
        order.shipment_error = None

        if order.stock_decremented_at is None:
            self.logger.warning(
                "Shipment created but stock not debited, order stays in place",
                order_id=order.id,
            )
            return False

        if can_transition(order.status, OrderStatus.PROCESSED):
            order.status = OrderStatus.PROCESSED.value
            return True
        return False

    async def retry_shipment(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        """后台重试导入发货单（已有发货单的订单拒绝重复导入）"""
        order = await self.execute_with_transaction(self._prepare_retry, order_id)

        outcome = await self.create_shipment(order)

        if outcome.status != "created":
            await self.execute_with_transaction(self._store_outcome, order_id, outcome)
            return ServiceResult.error(
                error=outcome.error or "Error importando envío",
                error_code=outcome.error_code or "IMPORT_ERROR",
                metadata=outcome.to_dict()
            )

        order_status = await self.execute_with_transaction(self._store_outcome, order_id, outcome)
        # status 是发货结果，order_status 是订单状态
        return ServiceResult.ok({
            "order_id": order_id,
            **outcome.to_dict(),
            "order_status": order_status,
        })

    async def _prepare_retry(self, session: AsyncSession, order_id: str) -> Order:
        order = await self.get_by_id(session, Order, order_id)
        if not order:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource="Pedido", detail="Pedido no encontrado")

        existing = order.shipment_id or order.tracking_number
        if existing:
            raise ConflictError(
                code="SHIPMENT_EXISTS",
                detail=f"El pedido ya tiene un envío importado: {existing}"
            )
        if order.is_pickup:
            raise BadRequestError(
                code="PICKUP_ORDER",
                detail="El pedido es para retiro en tienda y no requiere envío"
            )
        if order.status not in (OrderStatus.PENDING_PAYMENT.value, OrderStatus.PROCESSED.value):
            raise BadRequestError(
                code="INVALID_ORDER_STATUS",
                detail=f"El pedido debe estar en estado PENDING_PAYMENT. Estado actual: {order.status}"
            )
        if not has_address_data(order):
            raise BadRequestError(
                code="MISSING_ADDRESS",
                detail="El pedido no tiene datos de dirección suficientes para importar"
            )

        # 先扣库存，保证 PROCESSED 之前库存已扣减
        if order.stock_decremented_at is None:
            await self.stock_ledger.debit_order_tx(session, order)
        return order

    async def _store_outcome(
        self,
        session: AsyncSession,
        order_id: str,
        outcome: ShipmentOutcome
    ) -> str:
        order = await self.get_by_id(session, Order, order_id)
        self.apply_outcome(order, outcome)
        await session.flush()
        return order.status

    async def sync_tracking(self, order_id: str) -> ServiceResult[Dict[str, Any]]:
        """
        从快递查询轨迹并同步官方运单号

        导入时可能只拿到内部ID，官方运单号生成后在这里补上
        """
        order = await self.execute_with_session(self.get_by_id, Order, order_id)
        if not order:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource="Pedido", detail="Pedido no encontrado")

        lookup_id = order.shipment_id or order.tracking_number
        if not lookup_id:
            raise BadRequestError(
                code="NO_SHIPMENT",
                detail="El pedido no tiene un envío importado"
            )

        try:
            infos = await self.courier.get_tracking(lookup_id)
        except CourierAPIError as e:
            self.logger.error("Tracking sync failed", order_id=order_id, error_code=e.code)
            return ServiceResult.error(error=e.message, error_code="TRACKING_ERROR")

        if not infos:
            return ServiceResult.ok({
                "order_id": order_id,
                "updated": False,
                "tracking_number": order.tracking_number,
                "events": [],
            })

        info = infos[0]
        new_tracking = info.shipping_id
        updated = (
            new_tracking != order.tracking_number
            and len(new_tracking) > OFFICIAL_TRACKING_MIN_LENGTH
        )
        if updated:
            await self.execute_with_transaction(self._store_tracking, order_id, new_tracking)
            self.logger.info(
                "Official tracking number synced",
                order_id=order_id,
                old_tracking=order.tracking_number,
                tracking_number=new_tracking,
            )

        events: List[Dict[str, Any]] = [event.model_dump() for event in info.events]
        return ServiceResult.ok({
            "order_id": order_id,
            "updated": updated,
            "tracking_number": new_tracking if updated else order.tracking_number,
            "courier_status": info.status,
            "events": events,
        })

    async def _store_tracking(self, session: AsyncSession, order_id: str, tracking_number: str) -> None:
        order = await self.get_by_id(session, Order, order_id)
        await self.update(session, order, {"tracking_number": tracking_number})
