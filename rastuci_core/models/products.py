"""
商品与变体库存模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Text, Integer, Numeric, Boolean, DateTime,
    CheckConstraint, UniqueConstraint, Index, ForeignKey, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("prd_"))
    name: Mapped[str] = mapped_column(Text, nullable=False, comment="商品名称")
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        nullable=False,
        comment="当前售价"
    )

    # 库存数量（不允许为负）
    stock: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        nullable=False,
        default=0,
        comment="可售库存"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, comment="是否上架")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="最后更新时间"
    )


class ProductVariant(Base):
    """商品变体（尺码/颜色）库存表"""
    __tablename__ = "product_variants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("var_"))
    product_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        comment="所属商品"
    )
    size: Mapped[Optional[str]] = mapped_column(String(32), comment="尺码")
    color: Mapped[Optional[str]] = mapped_column(String(32), comment="颜色")
    stock: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("stock >= 0", name="ck_product_variants_stock_non_negative"),
        nullable=False,
        default=0,
        comment="变体库存"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="最后更新时间"
    )

    __table_args__ = (
        UniqueConstraint('product_id', 'size', 'color', name='uq_product_variants_product_size_color'),
        Index('ix_product_variants_product', 'product_id'),
    )
