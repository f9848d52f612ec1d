"""Create Rastuci core tables

Revision ID: 0001_rastuci_core
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_rastuci_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """商品/变体、订单/明细、优惠券、回调幂等账本、通知结果"""

    op.create_table('products',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.Text(), nullable=False, comment='商品名称'),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, comment='当前售价'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0', comment='可售库存'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否上架'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='最后更新时间'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('product_variants',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False, comment='所属商品'),
        sa.Column('size', sa.String(length=32), nullable=True, comment='尺码'),
        sa.Column('color', sa.String(length=32), nullable=True, comment='颜色'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0', comment='变体库存'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='最后更新时间'),
        sa.CheckConstraint('stock >= 0', name='ck_product_variants_stock_non_negative'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'size', 'color', name='uq_product_variants_product_size_color')
    )
    op.create_index('ix_product_variants_product', 'product_variants', ['product_id'], unique=False)

    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING', comment='订单状态'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0', comment='商品小计'),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False, server_default='0', comment='优惠金额'),
        sa.Column('shipping_cost', sa.Numeric(12, 2), nullable=False, server_default='0', comment='运费'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, comment='订单总额'),
        sa.Column('coupon_code', sa.String(length=64), nullable=True, comment='使用的优惠券'),
        sa.Column('payment_method', sa.String(length=32), nullable=False, comment='支付方式'),
        sa.Column('customer_name', sa.Text(), nullable=False, comment='客户姓名'),
        sa.Column('customer_email', sa.Text(), nullable=True, comment='客户邮箱'),
        sa.Column('customer_phone', sa.Text(), nullable=True, comment='客户电话'),
        sa.Column('customer_address', sa.Text(), nullable=True, comment='客户地址（自由文本）'),
        sa.Column('shipping_street', sa.Text(), nullable=True, comment='街道'),
        sa.Column('shipping_number', sa.String(length=32), nullable=True, comment='门牌号'),
        sa.Column('shipping_floor', sa.String(length=16), nullable=True, comment='楼层'),
        sa.Column('shipping_apartment', sa.String(length=16), nullable=True, comment='公寓'),
        sa.Column('shipping_city', sa.Text(), nullable=True, comment='城市'),
        sa.Column('shipping_province', sa.Text(), nullable=True, comment='省份名称'),
        sa.Column('shipping_province_code', sa.String(length=1), nullable=True, comment='省份代码'),
        sa.Column('shipping_postal_code', sa.String(length=16), nullable=True, comment='邮编'),
        sa.Column('shipping_method', sa.String(length=64), nullable=False, server_default='pickup', comment='配送方式'),
        sa.Column('shipping_agency', sa.String(length=64), nullable=True, comment='快递网点ID'),
        sa.Column('tracking_number', sa.String(length=64), nullable=True, comment='运单号'),
        sa.Column('shipment_id', sa.String(length=64), nullable=True, comment='快递内部发货ID'),
        sa.Column('shipment_error', sa.Text(), nullable=True, comment='最近一次发货失败原因'),
        sa.Column('mp_payment_id', sa.String(length=64), nullable=True, comment='MercadoPago 支付ID'),
        sa.Column('mp_preference_id', sa.String(length=128), nullable=True, comment='MercadoPago 偏好ID'),
        sa.Column('mp_status', sa.String(length=64), nullable=True, comment='网关原始状态'),
        sa.Column('mp_status_detail', sa.String(length=128), nullable=True, comment='网关原始状态详情'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付确认时间'),
        sa.Column('stock_decremented_at', sa.DateTime(timezone=True), nullable=True, comment='库存扣减时间（非空表示已扣减）'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录更新时间'),
        sa.CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_mp_payment', 'orders', ['mp_payment_id'], unique=False)
    op.create_index('ix_orders_created_at', 'orders', ['created_at'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False, comment='关联订单ID'),
        sa.Column('product_id', sa.String(length=64), nullable=False, comment='商品ID'),
        sa.Column('variant_id', sa.String(length=64), nullable=True, comment='变体ID'),
        sa.Column('name', sa.Text(), nullable=False, server_default='', comment='商品名称快照'),
        sa.Column('size', sa.String(length=32), nullable=True, comment='尺码'),
        sa.Column('color', sa.String(length=32), nullable=True, comment='颜色'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, comment='下单时单价快照'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('price >= 0', name='ck_order_items_price_non_negative'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'], unique=False)
    op.create_index('ix_order_items_product', 'order_items', ['product_id'], unique=False)

    op.create_table('coupons',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False, comment='券码'),
        sa.Column('type', sa.String(length=16), nullable=False, comment='折扣类型'),
        sa.Column('value', sa.Numeric(12, 2), nullable=False, comment='折扣值（百分比或金额）'),
        sa.Column('min_order_value', sa.Numeric(12, 2), nullable=True, comment='最低订单金额'),
        sa.Column('max_uses', sa.Integer(), nullable=True, comment='最大使用次数（空为不限）'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0', comment='已使用次数'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='过期时间'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否启用'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录创建时间'),
        sa.CheckConstraint("type IN ('percentage','fixed')", name='ck_coupons_type'),
        sa.CheckConstraint('value >= 0', name='ck_coupons_value_non_negative'),
        sa.CheckConstraint('used_count >= 0', name='ck_coupons_used_count_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_coupons_code')
    )

    op.create_table('payment_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False, comment='幂等键'),
        sa.Column('payment_id', sa.String(length=64), nullable=False, comment='网关支付ID'),
        sa.Column('action', sa.String(length=64), nullable=False, comment='网关动作'),
        sa.Column('request_id', sa.String(length=128), nullable=True, comment='x-request-id 头'),
        sa.Column('gateway_status', sa.String(length=64), nullable=True, comment='网关状态'),
        sa.Column('gateway_status_detail', sa.String(length=128), nullable=True, comment='网关状态详情'),
        sa.Column('order_id', sa.String(length=64), nullable=True, comment='关联订单'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='received', comment='处理状态'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0', comment='重试次数'),
        sa.Column('error_message', sa.String(length=1000), nullable=True, comment='错误信息'),
        sa.Column('result', sa.JSON(), nullable=True, comment='对账结果摘要'),
        sa.Column('payload', sa.JSON(), nullable=True, comment='原始通知载荷'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理完成时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_payment_webhook_events_idempotency_key')
    )
    op.create_index('ix_payment_webhook_events_payment', 'payment_webhook_events', ['payment_id'], unique=False)
    op.create_index('ix_payment_webhook_events_status', 'payment_webhook_events', ['status', 'created_at'], unique=False)

    op.create_table('notification_outcomes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False, comment='关联订单'),
        sa.Column('channel', sa.String(length=16), nullable=False, comment='email/push'),
        sa.Column('kind', sa.String(length=64), nullable=False, comment='通知类型'),
        sa.Column('success', sa.Boolean(), nullable=False, comment='是否成功'),
        sa.Column('skipped', sa.Boolean(), nullable=False, server_default=sa.false(), comment='未配置或无收件人'),
        sa.Column('error', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录创建时间'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notification_outcomes_order', 'notification_outcomes', ['order_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_notification_outcomes_order', table_name='notification_outcomes')
    op.drop_table('notification_outcomes')
    op.drop_index('ix_payment_webhook_events_status', table_name='payment_webhook_events')
    op.drop_index('ix_payment_webhook_events_payment', table_name='payment_webhook_events')
    op.drop_table('payment_webhook_events')
    op.drop_table('coupons')
    op.drop_index('ix_order_items_product', table_name='order_items')
    op.drop_index('ix_order_items_order', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_mp_payment', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_product_variants_product', table_name='product_variants')
    op.drop_table('product_variants')
    op.drop_table('products')
