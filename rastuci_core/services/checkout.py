"""
下单服务
校验购物车 → 按实时价格快照 → 校验库存 → 优惠券 → 运费 → 原子写入订单
MercadoPago 支付在订单提交后创建支付偏好
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.clients.mercadopago import MercadoPagoClient, GatewayAPIError, PreferenceItem
from rastuci_core.database import DatabaseManager
from rastuci_core.models import (
    Order, OrderItem, OrderStatus, PaymentMethod, Product, ProductVariant
)
from rastuci_core.models.orders import PICKUP, SHIPPING_COSTS, normalize_shipping_method
from rastuci_core.utils.errors import BadRequestError, ServiceUnavailableError
from .base import BaseService, ServiceResult, RepositoryMixin
from .coupons import CouponService, validate_coupon
from .stock_ledger import StockLedgerService, StockLine

EMPTY_CART = "No hay productos en el carrito"
MISSING_CUSTOMER = "Faltan datos del cliente o método de pago"
INVALID_PAYMENT_METHOD = "Método de pago no válido"
INVALID_SHIPPING_METHOD = "Método de envío no válido"
PAYMENT_UNAVAILABLE = "No se pudo iniciar el pago con MercadoPago. Intenta nuevamente."

CASH_MESSAGE = "Pedido creado exitosamente. Te confirmaremos por WhatsApp cuando esté listo para retirar."
TRANSFER_MESSAGE = "Pedido creado exitosamente. Te enviaremos los datos para realizar la transferencia."


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutItemInput(CamelModel):
    product_id: str
    quantity: int = Field(gt=0)
    price: Optional[Decimal] = None  # 客户端显示价格，仅用于对比
    variant_id: Optional[str] = None
    name: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None


class CheckoutCustomerInput(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    province_code: Optional[str] = None
    postal_code: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    floor: Optional[str] = None
    apartment: Optional[str] = None


class ShippingMethodInput(CamelModel):
    id: str
    name: Optional[str] = None
    price: Optional[Decimal] = None


class ShippingAgencyInput(CamelModel):
    code: str


class OrderDataInput(CamelModel):
    total: Optional[Decimal] = None


class CheckoutRequest(CamelModel):
    """POST /checkout 请求体"""
    items: List[CheckoutItemInput] = Field(default_factory=list)
    customer: Optional[CheckoutCustomerInput] = None
    payment_method: Optional[str] = None
    shipping_method: Optional[Union[str, ShippingMethodInput]] = None
    shipping_agency: Optional[Union[str, ShippingAgencyInput]] = None
    coupon_code: Optional[str] = None
    order_data: Optional[OrderDataInput] = None


def resolve_shipping_method(value: Optional[Union[str, ShippingMethodInput]]) -> str:
    """前端配送方式（字符串或 {id,name,price}）→ 内部标识"""
    raw = value.id if isinstance(value, ShippingMethodInput) else value
    method = normalize_shipping_method(raw)
    if method.startswith("ca_"):
        # 前端的 Correo Argentino 报价项（ca-domicilio / ca-sucursal）
        return "correo_argentino"
    return method


def resolve_agency(value: Optional[Union[str, ShippingAgencyInput]]) -> Optional[str]:
    raw = value.code if isinstance(value, ShippingAgencyInput) else value
    return (raw or "").strip() or None


class CheckoutService(BaseService, RepositoryMixin):
    """下单服务"""

    def __init__(
        self,
        payment_gateway: Optional[MercadoPagoClient] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        super().__init__(db_manager)
        self.payment_gateway = payment_gateway
        self.stock_ledger = StockLedgerService(self.db_manager)
        self.coupons = CouponService(self.db_manager)

    def validate_request(self, request: CheckoutRequest) -> PaymentMethod:
        """请求级校验，返回支付方式"""
        if not request.items:
            raise BadRequestError(code="EMPTY_CART", detail=EMPTY_CART)

        customer = request.customer
        if not customer or not request.payment_method or not customer.name or not customer.email:
            raise BadRequestError(code="MISSING_CUSTOMER", detail=MISSING_CUSTOMER)

        try:
            return PaymentMethod(request.payment_method.strip().lower())
        except ValueError:
            raise BadRequestError(code="INVALID_PAYMENT_METHOD", detail=INVALID_PAYMENT_METHOD)

    async def checkout(self, request: CheckoutRequest) -> ServiceResult[Dict[str, Any]]:
        """
        创建订单

        Raises:
            BadRequestError: 购物车/客户/库存/优惠券校验失败（西语提示）
            ServiceUnavailableError: MercadoPago 偏好创建失败
        """
        payment_method = self.validate_request(request)

        shipping_method = resolve_shipping_method(request.shipping_method)
        agency = resolve_agency(request.shipping_agency)
        if payment_method is PaymentMethod.CASH:
            # 现金只支持门店自提
            shipping_method, agency = PICKUP, None
        if shipping_method not in SHIPPING_COSTS:
            raise BadRequestError(code="INVALID_SHIPPING_METHOD", detail=INVALID_SHIPPING_METHOD)

        order = await self.execute_with_transaction(
            self._create_order_tx,
            request,
            payment_method,
            shipping_method,
            agency
        )

        self.logger.info(
            "Order created",
            order_id=order.id,
            payment_method=payment_method.value,
            total=str(order.total),
            shipping_method=shipping_method,
        )

        response: Dict[str, Any] = {
            "success": True,
            "orderId": order.id,
            "paymentMethod": payment_method.value,
            "total": float(order.total),
        }

        if payment_method is PaymentMethod.CASH:
            response["message"] = CASH_MESSAGE
        elif payment_method is PaymentMethod.TRANSFER:
            response["message"] = TRANSFER_MESSAGE
        else:
            preference = await self._create_preference(order)
            response["preferenceId"] = preference.id
            response["initPoint"] = preference.init_point

        return ServiceResult.ok(response)

    async def _create_order_tx(
        self,
        session: AsyncSession,
        request: CheckoutRequest,
        payment_method: PaymentMethod,
        shipping_method: str,
        agency: Optional[str]
    ) -> Order:
        """在一个事务内完成价格快照、库存校验、优惠券核销和订单写入"""
        priced_items = []
        lines = []
        for item in request.items:
            product = await self.get_by_id(session, Product, item.product_id)
            if not product or not product.is_active:
                raise BadRequestError(
                    code="PRODUCT_NOT_FOUND",
                    detail=f"Producto no encontrado: {item.product_id}"
                )

            variant = await self._resolve_variant(session, product, item)
            if item.price is not None and Decimal(item.price) != product.price:
                self.logger.warning(
                    "Client price differs from catalog price",
                    product_id=product.id,
                    client_price=str(item.price),
                    catalog_price=str(product.price),
                )

            priced_items.append((item, product, variant))
            lines.append(StockLine(
                product_id=product.id,
                quantity=item.quantity,
                variant_id=variant.id if variant else None,
                name=product.name,
            ))

        availability = await self.stock_ledger.check_availability_tx(session, lines)
        if not availability["overall_available"]:
            reason = next(r["reason"] for r in availability["items"] if not r["available"])
            raise BadRequestError(code="INSUFFICIENT_STOCK", detail=reason)

        subtotal = sum(
            (product.price * item.quantity for item, product, _ in priced_items),
            Decimal("0")
        )

        discount = Decimal("0")
        coupon_code = None
        if request.coupon_code:
            coupon = await self.coupons.load_for_update(session, request.coupon_code)
            check = validate_coupon(coupon, subtotal, datetime.now(timezone.utc))
            if not check.valid:
                raise BadRequestError(code=check.error_code, detail=check.error)
            await self.coupons.redeem(session, coupon.code)
            discount = check.discount
            coupon_code = coupon.code

        shipping_cost = SHIPPING_COSTS[shipping_method]
        total = subtotal - discount + shipping_cost

        client_total = request.order_data.total if request.order_data else None
        if client_total is not None and Decimal(client_total) != total:
            self.logger.warning(
                "Client total differs from computed total",
                client_total=str(client_total),
                total=str(total),
            )

        customer = request.customer
        address_snapshot = ", ".join(
            part for part in (customer.address, customer.city, customer.province) if part
        )

        mp_status = None
        if payment_method is PaymentMethod.CASH:
            mp_status = "cash_payment"
        elif payment_method is PaymentMethod.TRANSFER:
            mp_status = "transfer_pending"

        order = Order(
            status=OrderStatus.PENDING.value,
            subtotal=subtotal,
            discount=discount,
            shipping_cost=shipping_cost,
            total=total,
            coupon_code=coupon_code,
            payment_method=payment_method.value,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            customer_address=address_snapshot or None,
            shipping_street=customer.street,
            shipping_number=customer.number,
            shipping_floor=customer.floor,
            shipping_apartment=customer.apartment,
            shipping_city=customer.city,
            shipping_province=customer.province,
            shipping_province_code=(customer.province_code or "").upper()[:1] or None,
            shipping_postal_code=customer.postal_code,
            shipping_method=shipping_method,
            shipping_agency=agency,
            mp_status=mp_status,
            items=[
                OrderItem(
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    name=product.name,
                    size=item.size,
                    color=item.color,
                    quantity=item.quantity,
                    price=product.price,
                )
                for item, product, variant in priced_items
            ],
        )
        session.add(order)
        await session.flush()
        return order

    async def _resolve_variant(
        self,
        session: AsyncSession,
        product: Product,
        item: CheckoutItemInput
    ) -> Optional[ProductVariant]:
        """按 variantId 或 (尺码, 颜色) 定位变体；商品无变体时按商品库存处理"""
        if item.variant_id:
            variant = await self.get_by_id(session, ProductVariant, item.variant_id)
            if not variant or variant.product_id != product.id:
                raise BadRequestError(
                    code="VARIANT_NOT_FOUND",
                    detail=f"Variante no encontrada para {product.name}"
                )
            return variant

        if not item.size and not item.color:
            return None

        stmt = select(ProductVariant).where(
            and_(
                ProductVariant.product_id == product.id,
                ProductVariant.size == item.size,
                ProductVariant.color == item.color,
            )
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _create_preference(self, order: Order):
        """为已提交的订单创建支付偏好，失败时返回 503"""
        if not self.payment_gateway:
            raise ServiceUnavailableError(code="PAYMENT_GATEWAY_UNAVAILABLE", detail=PAYMENT_UNAVAILABLE)

        items = [
            PreferenceItem(
                id=item.product_id,
                title=item.name or item.product_id,
                quantity=item.quantity,
                unit_price=float(item.price),
            )
            for item in order.items
        ]
        if order.discount:
            items.append(PreferenceItem(
                id="discount",
                title="Cupón o promoción",
                quantity=1,
                unit_price=-float(order.discount),
            ))

        try:
            preference = await self.payment_gateway.create_preference(
                order_id=order.id,
                items=items,
                payer_email=order.customer_email,
                payer_name=order.customer_name,
                shipping_cost=order.shipping_cost,
            )
        except GatewayAPIError as e:
            self.logger.error(
                "Payment preference creation failed",
                order_id=order.id,
                error=e.message,
                status_code=e.status_code,
            )
            raise ServiceUnavailableError(
                code="PAYMENT_GATEWAY_UNAVAILABLE",
                detail=PAYMENT_UNAVAILABLE,
                order_id=order.id
            )

        await self.execute_with_transaction(self._store_preference, order.id, preference.id)
        return preference

    async def _store_preference(self, session: AsyncSession, order_id: str, preference_id: str) -> None:
        order = await self.get_by_id(session, Order, order_id)
        await self.update(session, order, {"mp_preference_id": preference_id})
