"""
订单相关数据模型
订单 + 行项目 + 客户/收货地址快照
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    String, Text, Integer, Numeric,
    DateTime, CheckConstraint, Index,
    ForeignKey, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, new_id


class OrderStatus(str, enum.Enum):
    """持久化的订单状态"""
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_REVIEW = "PENDING_REVIEW"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"


class PaymentMethod(str, enum.Enum):
    """支付方式"""
    MERCADOPAGO = "mercadopago"
    CASH = "cash"
    TRANSFER = "transfer"


# 门店自提哨兵值
PICKUP = "pickup"

# 配送方式 → 运费（ARS）
SHIPPING_COSTS = {
    PICKUP: Decimal("0"),
    "standard": Decimal("1500"),
    "correo_argentino": Decimal("1500"),
    "express": Decimal("2500"),
}


def normalize_shipping_method(method: Optional[str]) -> str:
    """统一配送方式标识（correo-argentino → correo_argentino）"""
    if not method:
        return PICKUP
    return method.strip().lower().replace("-", "_")


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    # 主键
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("ord_"))

    # 状态（只允许向前推进）
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=OrderStatus.PENDING.value,
        comment="订单状态"
    )

    # 金额（必须使用 Decimal）
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), comment="商品小计")
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), comment="优惠金额")
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), comment="运费")
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        nullable=False,
        comment="订单总额"
    )
    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), comment="使用的优惠券")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, comment="支付方式")

    # 客户信息快照（下单时写入，不随客户资料变化）
    customer_name: Mapped[str] = mapped_column(Text, nullable=False, comment="客户姓名")
    customer_email: Mapped[Optional[str]] = mapped_column(Text, comment="客户邮箱")
    customer_phone: Mapped[Optional[str]] = mapped_column(Text, comment="客户电话")
    customer_address: Mapped[Optional[str]] = mapped_column(Text, comment="客户地址（自由文本）")

    # 结构化收货地址
    shipping_street: Mapped[Optional[str]] = mapped_column(Text, comment="街道")
    shipping_number: Mapped[Optional[str]] = mapped_column(String(32), comment="门牌号")
    shipping_floor: Mapped[Optional[str]] = mapped_column(String(16), comment="楼层")
    shipping_apartment: Mapped[Optional[str]] = mapped_column(String(16), comment="公寓")
    shipping_city: Mapped[Optional[str]] = mapped_column(Text, comment="城市")
    shipping_province: Mapped[Optional[str]] = mapped_column(Text, comment="省份名称")
    shipping_province_code: Mapped[Optional[str]] = mapped_column(String(1), comment="省份代码")
    shipping_postal_code: Mapped[Optional[str]] = mapped_column(String(16), comment="邮编")

    # 配送
    shipping_method: Mapped[str] = mapped_column(String(64), nullable=False, default=PICKUP, comment="配送方式")
    shipping_agency: Mapped[Optional[str]] = mapped_column(String(64), comment="快递网点ID")
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), comment="运单号")
    shipment_id: Mapped[Optional[str]] = mapped_column(String(64), comment="快递内部发货ID")
    shipment_error: Mapped[Optional[str]] = mapped_column(Text, comment="最近一次发货失败原因")

    # 支付网关关联
    mp_payment_id: Mapped[Optional[str]] = mapped_column(String(64), comment="MercadoPago 支付ID")
    mp_preference_id: Mapped[Optional[str]] = mapped_column(String(128), comment="MercadoPago 偏好ID")
    mp_status: Mapped[Optional[str]] = mapped_column(String(64), comment="网关原始状态")
    mp_status_detail: Mapped[Optional[str]] = mapped_column(String(128), comment="网关原始状态详情")
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="支付确认时间")

    # 库存扣减幂等标记
    stock_decremented_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="库存扣减时间（非空表示已扣减）"
    )

    # 系统时间戳
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
        Index('ix_orders_status', 'status'),
        Index('ix_orders_mp_payment', 'mp_payment_id'),
        Index('ix_orders_created_at', 'created_at'),
    )

    # 关系
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def is_pickup(self) -> bool:
        """门店自提订单不生成快递发货单"""
        return (
            normalize_shipping_method(self.shipping_method) == PICKUP
            or (self.shipping_agency or "").strip().lower() == PICKUP
        )

    @property
    def unit_count(self) -> int:
        return sum(item.quantity for item in self.items)


class OrderItem(Base):
    """订单行项目表（随订单一起创建，之后不可变）"""
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("itm_"))

    order_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="关联订单ID"
    )

    # 商品信息
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="商品ID")
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), comment="变体ID")
    name: Mapped[str] = mapped_column(Text, nullable=False, default="", comment="商品名称快照")
    size: Mapped[Optional[str]] = mapped_column(String(32), comment="尺码")
    color: Mapped[Optional[str]] = mapped_column(String(32), comment="颜色")

    # 数量和价格
    quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        nullable=False,
        comment="数量"
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
        nullable=False,
        comment="下单时单价快照"
    )

    __table_args__ = (
        Index('ix_order_items_order', 'order_id'),
        Index('ix_order_items_product', 'product_id'),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")
