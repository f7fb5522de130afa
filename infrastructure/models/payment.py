"""
对账数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Text, Boolean,
    Index, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MerchantConfigModel(Base):
    """商户配置：会话令牌与网关密钥均为密文"""
    __tablename__ = "merchant_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String(255), unique=True, nullable=False, index=True, comment="商户店铺域名")
    encrypted_session = Column(Text, nullable=True, comment="加密的远端会话令牌")
    encrypted_keys = Column(Text, nullable=True, comment="加密的网关密钥包")
    account_id = Column(String(64), nullable=True, comment="网关账户ID")
    installed = Column(Boolean, nullable=False, default=False, comment="是否已安装")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<MerchantConfigModel(id={self.id}, domain='{self.domain}')>"


class OrderModel(Base):
    """
    订单数据库模型

    所有业务规则都在 domain.payment.entity.Order 中
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(100), nullable=False, index=True, comment="商户订单ID")
    merchant = Column(String(255), nullable=False, comment="商户店铺域名")
    gid = Column(String(255), nullable=False, comment="远端支付会话ID")
    raw_json = Column(Text, nullable=False, comment="创建时的原始请求快照")
    is_test = Column(Boolean, nullable=False, default=False, comment="是否测试环境")
    hosted_link = Column(String(1024), nullable=True, comment="托管支付链接")
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="订单状态: pending/completed/failed/cancelled"
    )
    remote_tx_id = Column(String(64), nullable=True, comment="网关交易ID")
    account_id = Column(String(64), nullable=True, comment="网关账户ID")
    forward_pending = Column(Boolean, nullable=False, default=False, comment="远端会话推进待执行")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("merchant", "order_id", name="uq_orders_merchant_order"),
        Index("ix_orders_forward_pending", "forward_pending"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id={self.id}, merchant='{self.merchant}', "
            f"order_id='{self.order_id}', status='{self.status}')>"
        )


class RefundModel(Base):
    """退款数据库模型"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_id = Column(String(100), unique=True, nullable=False, comment="商户退款ID")
    gid = Column(String(255), nullable=False, comment="远端退款会话ID")
    order_id = Column(String(100), nullable=False, index=True, comment="原订单ID")
    merchant = Column(String(255), nullable=False, comment="商户店铺域名")
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    is_test = Column(Boolean, nullable=False, default=False)
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        comment="退款状态: pending/resolved/rejected/invalid"
    )
    remote_tx_id = Column(String(64), nullable=True, comment="原网关交易ID")
    account_id = Column(String(64), nullable=True)
    # 使用 metadata_json 避免与 SQLAlchemy 的 metadata 冲突
    metadata_json = Column("metadata", Text, nullable=True, comment="重试元数据(JSON)")
    retry_at = Column(BigInteger, nullable=True, comment="下次重试时间(epoch ms)")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_refunds_status_retry_at", "status", "retry_at"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, refund_id='{self.refund_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class ProgressGuardModel(Base):
    """一次性认领记录，只增不改"""
    __tablename__ = "progress_guard"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_token = Column(String(255), unique=True, nullable=False, comment="认领令牌")
    claim_kind = Column(String(32), nullable=False, comment="认领类型")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class GatewayTransactionModel(Base):
    """网关交易镜像（只读，由网关侧写入）"""
    __tablename__ = "gateway_transaction"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    tx_ref = Column(String(100), nullable=False, index=True)
    flw_ref = Column(String(100), nullable=True)
    status = Column(String(40), nullable=False)
    amount = Column(Numeric(precision=15, scale=2), nullable=True)
    currency = Column(String(3), nullable=True)
    charge_message = Column(String(255), nullable=True)
    account_id = Column(String(64), nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)


class GatewayOrderModel(Base):
    """旧版预下单存根（只读）"""
    __tablename__ = "gateway_order"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_ref = Column(String(100), nullable=False, index=True)
