"""
MercadoPago 回调对账

流程（每一步独立容错，单步失败不阻止后续步骤）：
1. 查询网关支付详情并映射为规范状态
2. 校验并应用订单状态转换
3. 已支付且非自提：扣减库存（幂等）
4. 已支付且非自提：导入快递发货单，成功后推进到 PROCESSED
5. 发送支付确认通知（后台任务）
6. 发布 rs.orders.status_changed 事件

回调事件按 {payment_id}:{status}:{status_detail} 记录在 payment_webhook_events，
同一状态的重复投递直接返回 duplicate
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import and_, update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.clients.mercadopago import (
    MercadoPagoClient,
    GatewayAPIError,
    GatewayPayment,
    GatewayTimeoutError,
)
from rastuci_core.database import DatabaseManager
from rastuci_core.event_bus import EventBus, ORDER_STATUS_CHANGED
from rastuci_core.models import Order, OrderStatus, PaymentWebhookEvent
from rastuci_core.utils.errors import RastuciException, problem_payload
from rastuci_core.utils.logger import LogContext
from .base import BaseService, RepositoryMixin
from .lifecycle import can_release, can_transition, is_allowed
from .notifications import NotificationDispatcher, PAYMENT_CONFIRMED
from .payment_status import CanonicalStatus, is_paid, map_payment_status, to_order_status
from .shipments import ShipmentService
from .stock_ledger import StockLedgerService

VALID_ACTIONS = frozenset({"payment.created", "payment.updated"})

# "received" 状态的事件超过该时长视为中断，可被重新处理
STALE_CLAIM = timedelta(minutes=5)


class WebhookPayloadError(Exception):
    """回调载荷不合法"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class WebhookNotification:
    """经过校验的回调通知"""
    action: str
    payment_id: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


def parse_webhook_notification(body: Any) -> WebhookNotification:
    """
    校验回调载荷

    Raises:
        WebhookPayloadError: 载荷为空、动作不支持或缺少支付ID
    """
    if not body or not isinstance(body, dict):
        raise WebhookPayloadError("Missing payload")

    action = body.get("action")
    if action not in VALID_ACTIONS:
        raise WebhookPayloadError("Invalid action")

    data = body.get("data")
    payment_id = data.get("id") if isinstance(data, dict) else None
    if payment_id is None or str(payment_id).strip() == "":
        raise WebhookPayloadError("Missing payment ID")

    return WebhookNotification(action=action, payment_id=str(payment_id).strip(), raw=body)


def build_idempotency_key(payment: GatewayPayment) -> str:
    return f"{payment.id}:{payment.status}:{payment.status_detail or ''}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ReconciliationOutcome:
    """一次对账的结果（逐步记录）"""
    status: str  # processed / duplicate / ignored / failed / unknown_outcome
    payment_id: str
    order_id: Optional[str] = None
    canonical_status: Optional[str] = None
    previous_status: Optional[str] = None
    order_status: Optional[str] = None
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: Optional[str] = None

    def record(self, step: str, ok: bool, **details) -> None:
        self.steps[step] = {"ok": ok, **details}

    @property
    def status_changed(self) -> bool:
        return bool(self.order_status and self.order_status != self.previous_status)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "canonical_status": self.canonical_status,
            "previous_status": self.previous_status,
            "order_status": self.order_status,
            "steps": self.steps,
        }
        if self.error:
            data["error"] = self.error
        return data


class WebhookReconciler(BaseService, RepositoryMixin):
    """支付回调对账器"""

    def __init__(
        self,
        payment_gateway: MercadoPagoClient,
        shipment_service: ShipmentService,
        notifier: NotificationDispatcher,
        event_bus: Optional[EventBus] = None,
        stock_ledger: Optional[StockLedgerService] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        super().__init__(db_manager)
        self.payment_gateway = payment_gateway
        self.shipment_service = shipment_service
        self.notifier = notifier
        self.event_bus = event_bus
        self.stock_ledger = stock_ledger or StockLedgerService(self.db_manager)

    async def reconcile(
        self,
        notification: WebhookNotification,
        request_id: Optional[str] = None
    ) -> ReconciliationOutcome:
        """处理一条回调通知，不向调用方抛出异常"""
        outcome = ReconciliationOutcome(status="processed", payment_id=notification.payment_id)

        # 1. 查询支付详情
        try:
            payment = await self.payment_gateway.get_payment(notification.payment_id)
        except GatewayTimeoutError as e:
            self.logger.warning(
                "Payment lookup outcome unknown, gateway will redeliver",
                payment_id=notification.payment_id,
                error=e.message,
            )
            outcome.status = "unknown_outcome"
            outcome.error = e.message
            return outcome
        except GatewayAPIError as e:
            self.logger.error(
                "Payment lookup failed",
                payment_id=notification.payment_id,
                status_code=e.status_code,
                error=e.message,
            )
            outcome.status = "failed"
            outcome.error = e.message
            return outcome

        canonical = map_payment_status(payment.status, payment.status_detail)
        outcome.canonical_status = canonical.value
        self.logger.info(
            "Payment status mapped",
            payment_id=payment.id,
            gateway_status=payment.status,
            status_detail=payment.status_detail,
            canonical_status=canonical.value,
        )

        # 幂等登记
        try:
            event_id = await self._claim(notification, payment, request_id)
        except Exception as e:
            self.logger.error("Failed to register webhook event", payment_id=payment.id, exc_info=True)
            outcome.status = "failed"
            outcome.error = str(e)
            return outcome

        if event_id is None:
            self.logger.info("Duplicate payment notification", payment_id=payment.id)
            outcome.status = "duplicate"
            return outcome

        try:
            await self._reconcile_payment(payment, canonical, outcome)
        except Exception as e:
            # 兜底：任何未预期的异常都只记录，不影响网关的 200 应答
            self.logger.error("Reconciliation failed", payment_id=payment.id, exc_info=True)
            outcome.status = "failed"
            outcome.error = str(e)

        await self._finish_event(event_id, outcome)
        return outcome

    async def _reconcile_payment(
        self,
        payment: GatewayPayment,
        canonical: CanonicalStatus,
        outcome: ReconciliationOutcome
    ) -> None:
        # 2. 状态转换
        try:
            order = await self.execute_with_transaction(
                self._apply_transition, payment, canonical, outcome
            )
        except RastuciException as e:
            outcome.record("transition", False, error=problem_payload(e))
            outcome.status = "failed"
            outcome.error = e.detail
            return

        if order is None:
            self.logger.warning(
                "No order matches payment",
                payment_id=payment.id,
                external_reference=payment.external_reference,
            )
            outcome.status = "ignored"
            outcome.error = "order not found"
            return

        with LogContext(order_id=order.id):
            if is_paid(canonical) and order.status == OrderStatus.PENDING_PAYMENT.value and order.paid_at:
                order = await self._fulfil_paid_order(order, outcome)

            outcome.order_status = order.status
            await self._publish_status_change(order, outcome)

    async def _fulfil_paid_order(self, order: Order, outcome: ReconciliationOutcome) -> Order:
        """已支付订单的后续步骤：扣库存 → 发货 → 通知"""
        if order.is_pickup:
            outcome.record("stock", True, skipped="pickup")
            outcome.record("shipment", True, skipped="pickup")
        else:
            # 3. 扣减库存
            try:
                result = await self.stock_ledger.debit_order(order.id)
                if result.success:
                    outcome.record("stock", True, already_debited=result.data["already_debited"])
                else:
                    outcome.record("stock", False, error=result.error, error_code=result.error_code)
            except RastuciException as e:
                outcome.record("stock", False, error=problem_payload(e))

            # 4. 导入发货单
            if order.shipment_id or order.tracking_number:
                outcome.record("shipment", True, skipped="already_shipped")
            else:
                shipment = await self.shipment_service.create_shipment(order)
                outcome.record("shipment", shipment.success, **shipment.to_dict())
                try:
                    order = await self.execute_with_transaction(
                        self._store_shipment, order.id, shipment
                    )
                except RastuciException as e:
                    outcome.record("shipment_store", False, error=problem_payload(e))

        # 5. 通知（同一笔支付只确认一次）
        if not outcome.steps.get("transition", {}).get("newly_paid"):
            outcome.record("notifications", True, skipped="already_notified")
            return order
        try:
            tasks = self.notifier.dispatch(order, PAYMENT_CONFIRMED)
            outcome.record("notifications", True, scheduled=len(tasks))
        except Exception as e:
            self.logger.error("Failed to schedule notifications", exc_info=True)
            outcome.record("notifications", False, error=str(e))

        return order

    async def _claim(
        self,
        notification: WebhookNotification,
        payment: GatewayPayment,
        request_id: Optional[str]
    ) -> Optional[int]:
        try:
            async with self.db_manager.get_transaction() as session:
                return await self._claim_event(session, notification, payment, request_id)
        except IntegrityError:
            # 并发投递：另一请求已登记同一事件
            return None

    async def _claim_event(
        self,
        session: AsyncSession,
        notification: WebhookNotification,
        payment: GatewayPayment,
        request_id: Optional[str]
    ) -> Optional[int]:
        """登记回调事件，重复事件返回 None"""
        key = build_idempotency_key(payment)
        existing = await self.get_by_field(session, PaymentWebhookEvent, "idempotency_key", key)

        if existing:
            stale = (_as_utc(existing.updated_at) or datetime.now(timezone.utc)) < (
                datetime.now(timezone.utc) - STALE_CLAIM
            )
            if existing.status in ("processed", "ignored") or (existing.status == "received" and not stale):
                return None
            # failed 或中断的事件允许重新处理；以读到的 status/retry_count 作条件，
            # 并发投递中只有一个能认领成功
            claimed = await session.execute(
                sql_update(PaymentWebhookEvent).where(
                    and_(
                        PaymentWebhookEvent.id == existing.id,
                        PaymentWebhookEvent.status == existing.status,
                        PaymentWebhookEvent.retry_count == existing.retry_count
                    )
                ).values(
                    status="received",
                    retry_count=PaymentWebhookEvent.retry_count + 1,
                    error_message=None
                ).returning(PaymentWebhookEvent.id).execution_options(synchronize_session=False)
            )
            event_id = claimed.scalar_one_or_none()
            if event_id is None:
                self.logger.info("Webhook event claimed by a concurrent delivery", idempotency_key=key)
            return event_id

        event = PaymentWebhookEvent(
            idempotency_key=key,
            payment_id=payment.id,
            action=notification.action,
            request_id=request_id,
            gateway_status=payment.status,
            gateway_status_detail=payment.status_detail,
            status="received",
            payload=notification.raw,
        )
        session.add(event)
        await session.flush()
        return event.id

    async def _finish_event(self, event_id: int, outcome: ReconciliationOutcome) -> None:
        event_status = {
            "processed": "processed",
            "ignored": "ignored",
        }.get(outcome.status, "failed")
        try:
            async with self.db_manager.get_transaction() as session:
                event = await session.get(PaymentWebhookEvent, event_id)
                event.status = event_status
                event.order_id = outcome.order_id
                event.error_message = (outcome.error or "")[:1000] or None
                event.result = outcome.to_dict()
                event.processed_at = datetime.now(timezone.utc)
        except Exception:
            self.logger.error("Failed to finalize webhook event", event_id=event_id, exc_info=True)

    async def _find_order(self, session: AsyncSession, payment: GatewayPayment) -> Optional[Order]:
        """external_reference → metadata.order_id → mp_payment_id"""
        for reference in payment.order_references:
            order = await self.get_by_id(session, Order, reference)
            if order:
                return order
        return await self.get_by_field(session, Order, "mp_payment_id", payment.id)

    async def _apply_transition(
        self,
        session: AsyncSession,
        payment: GatewayPayment,
        canonical: CanonicalStatus,
        outcome: ReconciliationOutcome
    ) -> Optional[Order]:
        order = await self._find_order(session, payment)
        if order is None:
            return None

        outcome.order_id = order.id
        outcome.previous_status = order.status
        current = order.status

        # 网关关联字段总是更新
        order.mp_payment_id = payment.id
        order.mp_status = payment.status
        order.mp_status_detail = payment.status_detail

        if is_paid(canonical):
            target = OrderStatus.PENDING_PAYMENT
            newly_paid = order.paid_at is None
            if can_transition(current, target) or can_release(current, target):
                order.status = target.value
                order.paid_at = payment.date_approved or datetime.now(timezone.utc)
                outcome.record(
                    "transition", True,
                    from_status=current,
                    to_status=target.value,
                    newly_paid=newly_paid,
                )
            elif current == target.value:
                order.paid_at = order.paid_at or payment.date_approved or datetime.now(timezone.utc)
                outcome.record("transition", True, unchanged=True, newly_paid=newly_paid)
            else:
                self.logger.warning(
                    "Rejected status transition",
                    from_status=current,
                    canonical_status=canonical.value,
                    order_id=order.id,
                )
                outcome.record("transition", False, skipped="invalid_transition", from_status=current)
        else:
            target = to_order_status(canonical)
            if current == target.value:
                outcome.record("transition", True, unchanged=True)
            elif is_allowed(current, target):
                order.status = target.value
                outcome.record("transition", True, from_status=current, to_status=target.value)
            else:
                self.logger.warning(
                    "Rejected status transition",
                    from_status=current,
                    to_status=target.value,
                    order_id=order.id,
                )
                outcome.record(
                    "transition", False,
                    skipped="invalid_transition",
                    from_status=current,
                    to_status=target.value,
                )

        await session.flush()
        outcome.order_status = order.status
        return order

    async def _store_shipment(self, session: AsyncSession, order_id: str, shipment) -> Order:
        order = await self.get_by_id(session, Order, order_id)
        self.shipment_service.apply_outcome(order, shipment)
        await session.flush()
        return order

    async def _publish_status_change(self, order: Order, outcome: ReconciliationOutcome) -> None:
        if not self.event_bus or not outcome.status_changed:
            return
        try:
            await self.event_bus.publish(
                ORDER_STATUS_CHANGED,
                {
                    "order_id": order.id,
                    "from_status": outcome.previous_status,
                    "to_status": order.status,
                    "payment_id": outcome.payment_id,
                    "tracking_number": order.tracking_number,
                },
                key=order.id,
            )
            outcome.record("event", True)
        except Exception as e:
            self.logger.error("Failed to publish status change", exc_info=True)
            outcome.record("event", False, error=str(e))
