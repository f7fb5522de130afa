"""create_reconciliation_tables

Revision ID: 3b8e51c2a7d4
Revises:
Create Date: 2025-10-19 09:00:12.418305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b8e51c2a7d4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 商户配置
    op.create_table(
        'merchant_config',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=False, comment='商户店铺域名'),
        sa.Column('encrypted_session', sa.Text(), nullable=True, comment='加密的远端会话令牌'),
        sa.Column('encrypted_keys', sa.Text(), nullable=True, comment='加密的网关密钥包'),
        sa.Column('account_id', sa.String(length=64), nullable=True, comment='网关账户ID'),
        sa.Column('installed', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否已安装'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_merchant_config_domain', 'merchant_config', ['domain'], unique=True)

    # 订单
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='商户订单ID'),
        sa.Column('merchant', sa.String(length=255), nullable=False, comment='商户店铺域名'),
        sa.Column('gid', sa.String(length=255), nullable=False, comment='远端支付会话ID'),
        sa.Column('raw_json', sa.Text(), nullable=False, comment='创建时的原始请求快照'),
        sa.Column('is_test', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否测试环境'),
        sa.Column('hosted_link', sa.String(length=1024), nullable=True, comment='托管支付链接'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='订单状态: pending/completed/failed/cancelled'),
        sa.Column('remote_tx_id', sa.String(length=64), nullable=True, comment='网关交易ID'),
        sa.Column('account_id', sa.String(length=64), nullable=True, comment='网关账户ID'),
        sa.Column('forward_pending', sa.Boolean(), nullable=False, server_default=sa.false(),
                  comment='远端会话推进待执行'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant', 'order_id', name='uq_orders_merchant_order'),
    )
    op.create_index('ix_orders_order_id', 'orders', ['order_id'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_forward_pending', 'orders', ['forward_pending'], unique=False)

    # 退款
    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('refund_id', sa.String(length=100), nullable=False, comment='商户退款ID'),
        sa.Column('gid', sa.String(length=255), nullable=False, comment='远端退款会话ID'),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='原订单ID'),
        sa.Column('merchant', sa.String(length=255), nullable=False, comment='商户店铺域名'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('is_test', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='退款状态: pending/resolved/rejected/invalid'),
        sa.Column('remote_tx_id', sa.String(length=64), nullable=True, comment='原网关交易ID'),
        sa.Column('account_id', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.Text(), nullable=True, comment='重试元数据(JSON)'),
        sa.Column('retry_at', sa.BigInteger(), nullable=True, comment='下次重试时间(epoch ms)'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('refund_id', name='uq_refunds_refund_id'),
    )
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'], unique=False)
    # 调度器按 (status, retry_at) 取最早到期的一条
    op.create_index('ix_refunds_status_retry_at', 'refunds', ['status', 'retry_at'], unique=False)

    # 一次性认领
    op.create_table(
        'progress_guard',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('claim_token', sa.String(length=255), nullable=False, comment='认领令牌'),
        sa.Column('claim_kind', sa.String(length=32), nullable=False, comment='认领类型'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('claim_token', name='uq_progress_guard_claim_token'),
    )

    # 网关侧镜像表，由网关写入，本服务只读
    op.create_table(
        'gateway_transaction',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('tx_ref', sa.String(length=100), nullable=False),
        sa.Column('flw_ref', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('charge_message', sa.String(length=255), nullable=True),
        sa.Column('account_id', sa.String(length=64), nullable=True),
        sa.Column('is_test', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_gateway_transaction_tx_ref', 'gateway_transaction', ['tx_ref'], unique=False)

    op.create_table(
        'gateway_order',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tx_ref', sa.String(length=100), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_gateway_order_tx_ref', 'gateway_order', ['tx_ref'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_gateway_order_tx_ref', table_name='gateway_order')
    op.drop_table('gateway_order')
    op.drop_index('ix_gateway_transaction_tx_ref', table_name='gateway_transaction')
    op.drop_table('gateway_transaction')
    op.drop_table('progress_guard')
    op.drop_index('ix_refunds_status_retry_at', table_name='refunds')
    op.drop_index('ix_refunds_order_id', table_name='refunds')
    op.drop_table('refunds')
    op.drop_index('ix_orders_forward_pending', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_order_id', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_merchant_config_domain', table_name='merchant_config')
    op.drop_table('merchant_config')
