"""
订单通知分发
邮件与推送作为独立的 asyncio 任务执行，不阻塞对账主流程；
每个任务的结果写入 notification_outcomes 并记录日志
"""
import asyncio
import html
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Set

from rastuci_core.clients.resend import ResendEmailClient
from rastuci_core.config import Settings, get_settings
from rastuci_core.database import DatabaseManager
from rastuci_core.event_bus import EventBus, PUSH_NOTIFICATION
from rastuci_core.models import Order, NotificationOutcome
from .base import BaseService

PAYMENT_CONFIRMED = "payment_confirmed"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"


@dataclass(frozen=True)
class NotificationTemplate:
    subject: str
    title: str
    message: str
    color: str


TEMPLATES = {
    PAYMENT_CONFIRMED: NotificationTemplate(
        subject="🛍️ Confirmación de tu pedido - Rastuci",
        title="¡Recibimos tu pago!",
        message="Tu pago fue aprobado y ya estamos preparando tu pedido.",
        color="#e91e63",
    ),
    ORDER_SHIPPED: NotificationTemplate(
        subject="📦 Tu pedido está en camino - Rastuci",
        title="🚚 Tu pedido está en camino",
        message="Tu pedido ha salido de nuestras instalaciones y está en camino hacia tu dirección.",
        color="#3b82f6",
    ),
    ORDER_DELIVERED: NotificationTemplate(
        subject="✅ Tu pedido fue entregado - Rastuci",
        title="✅ ¡Tu pedido ha sido entregado!",
        message="Tu pedido ha sido entregado exitosamente. ¡Esperamos que disfrutes tu compra!",
        color="#059669",
    ),
}


@dataclass
class OrderSnapshot:
    """通知所需的订单字段（任务执行时不再访问 ORM 实例）"""
    order_id: str
    customer_name: str
    customer_email: Optional[str]
    tracking_number: Optional[str]
    total: str
    status: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderSnapshot":
        return cls(
            order_id=order.id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            tracking_number=order.tracking_number,
            total=str(order.total),
            status=order.status,
        )


def render_email(snapshot: OrderSnapshot, template: NotificationTemplate, base_url: str) -> Dict[str, str]:
    """生成邮件正文（HTML + 纯文本）"""
    order_url = f"{base_url}/orders/{snapshot.order_id}"
    tracking_line = ""
    tracking_html = ""
    if snapshot.tracking_number:
        tracking_url = f"{base_url}/tracking?code={snapshot.tracking_number}"
        tracking_line = (
            f"- Código de Seguimiento: {snapshot.tracking_number}\n"
            f"Puedes rastrear tu envío en: {tracking_url}\n"
        )
        tracking_html = (
            f'<p><strong>Código de Seguimiento:</strong> {html.escape(snapshot.tracking_number)}</p>'
            f'<p><a href="{html.escape(tracking_url)}">🔍 Rastrear Envío</a></p>'
        )

    text = (
        f"Hola {snapshot.customer_name},\n\n"
        f"{template.message}\n\n"
        f"Detalles del Pedido:\n"
        f"- Número de Pedido: #{snapshot.order_id}\n"
        f"- Total: ${snapshot.total}\n"
        f"{tracking_line}\n"
        f"Saludos,\nEquipo Rastuci\n"
    )
    body = (
        '<!DOCTYPE html><html lang="es"><body style="font-family: Arial, sans-serif;">'
        f'<div style="background-color: {template.color}; color: white; padding: 20px;">'
        f'<h2>{html.escape(template.title)}</h2></div>'
        f'<p>Hola <strong>{html.escape(snapshot.customer_name)}</strong>,</p>'
        f'<p>{html.escape(template.message)}</p>'
        f'<p><strong>Número de Pedido:</strong> #{html.escape(snapshot.order_id)}</p>'
        f'<p><strong>Total:</strong> ${html.escape(snapshot.total)}</p>'
        f'{tracking_html}'
        f'<p><a href="{html.escape(order_url)}">📋 Ver Pedido</a></p>'
        '</body></html>'
    )
    return {"subject": template.subject, "html": body, "text": text}


class NotificationDispatcher(BaseService):
    """通知分发器"""

    def __init__(
        self,
        email_client: Optional[ResendEmailClient] = None,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        super().__init__(db_manager)
        self.email_client = email_client
        self.event_bus = event_bus
        self.settings = settings or get_settings()
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, order: Order, kind: str) -> List[asyncio.Task]:
        """为订单调度邮件和推送，返回已创建的任务"""
        if kind not in TEMPLATES:
            raise ValueError(f"Unknown notification kind: {kind}")

        snapshot = OrderSnapshot.from_order(order)
        tasks = [
            asyncio.create_task(self._run("email", kind, snapshot, self._send_email)),
            asyncio.create_task(self._run("push", kind, snapshot, self._send_push)),
        ]
        for task in tasks:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self.logger.info("Notifications scheduled", order_id=snapshot.order_id, kind=kind)
        return tasks

    async def drain(self) -> None:
        """等待所有未完成的通知任务"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _run(self, channel: str, kind: str, snapshot: OrderSnapshot, sender) -> Dict[str, Any]:
        """执行单个通知并记录结果"""
        outcome: Dict[str, Any] = {"success": True, "skipped": False, "error": None}
        try:
            skipped_reason = await sender(kind, snapshot)
            if skipped_reason:
                outcome.update(skipped=True, error=skipped_reason)
        except Exception as e:
            outcome.update(success=False, error=str(e)[:1000])
            self.logger.error(
                "Notification failed",
                order_id=snapshot.order_id,
                channel=channel,
                kind=kind,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            self.logger.info(
                "Notification processed",
                order_id=snapshot.order_id,
                channel=channel,
                kind=kind,
                skipped=outcome["skipped"],
            )

        try:
            async with self.db_manager.get_transaction() as session:
                session.add(NotificationOutcome(
                    order_id=snapshot.order_id,
                    channel=channel,
                    kind=kind,
                    success=outcome["success"],
                    skipped=outcome["skipped"],
                    error=outcome["error"],
                ))
        except Exception:
            self.logger.error(
                "Failed to record notification outcome",
                order_id=snapshot.order_id,
                channel=channel,
                exc_info=True,
            )
        return outcome

    async def _send_email(self, kind: str, snapshot: OrderSnapshot) -> Optional[str]:
        """返回跳过原因，发送失败时抛出 EmailDeliveryError"""
        if not self.email_client or not self.email_client.is_configured:
            self.logger.warning("Email not configured, skipping", order_id=snapshot.order_id, kind=kind)
            return "email not configured"
        if not snapshot.customer_email:
            return "order has no customer email"

        message = render_email(snapshot, TEMPLATES[kind], self.settings.public_base_url.rstrip("/"))
        await self.email_client.send(
            to=[snapshot.customer_email],
            subject=message["subject"],
            html=message["html"],
            text=message["text"],
        )
        return None

    async def _send_push(self, kind: str, snapshot: OrderSnapshot) -> Optional[str]:
        if not self.event_bus:
            return "event bus not available"

        template = TEMPLATES[kind]
        await self.event_bus.publish(
            PUSH_NOTIFICATION,
            {
                "order_id": snapshot.order_id,
                "kind": kind,
                "title": template.title,
                "body": template.message,
                "tracking_number": snapshot.tracking_number,
            },
            key=snapshot.order_id,
        )
        return None
