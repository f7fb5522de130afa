"""
对账仓储实现 - 使用SQLAlchemy实现订单/退款/商户配置/网关镜像的数据访问
"""
import json
from typing import Optional, List, Tuple
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import OrderAlreadyExistsException
from domain.payment.entity import (
    Order,
    OrderStatus,
    Refund,
    RefundStatus,
    RefundMeta,
    RefundMetaCorrupted,
    MerchantConfig,
    GatewayTransaction,
    to_decimal,
)
from domain.payment.repository import (
    OrderRepository,
    RefundRepository,
    MerchantConfigRepository,
    GatewayMirrorRepository,
)
from infrastructure.models.payment import (
    OrderModel,
    RefundModel,
    MerchantConfigModel,
    GatewayTransactionModel,
    GatewayOrderModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


def _mirror_to_entity(model: GatewayTransactionModel) -> GatewayTransaction:
    return GatewayTransaction(
        id=str(model.id),
        status=model.status,
        amount=to_decimal(model.amount),
        currency=model.currency,
        tx_ref=model.tx_ref,
        flw_ref=model.flw_ref,
        charge_message=model.charge_message,
        account_id=model.account_id,
    )


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        try:
            raw = json.loads(model.raw_json) if model.raw_json else {}
        except ValueError:
            logger.warning("order_raw_unreadable", order_id=model.order_id, merchant=model.merchant)
            raw = {}
        return Order(
            id=model.id,
            merchant=model.merchant,
            order_id=model.order_id,
            gid=model.gid,
            raw=raw,
            is_test=bool(model.is_test),
            hosted_link=model.hosted_link,
            status=OrderStatus(model.status),
            remote_tx_id=model.remote_tx_id,
            account_id=model.account_id,
            forward_pending=bool(model.forward_pending),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            merchant=entity.merchant,
            order_id=entity.order_id,
            gid=entity.gid,
            raw_json=json.dumps(entity.raw, ensure_ascii=False, default=str),
            is_test=entity.is_test,
            hosted_link=entity.hosted_link,
            status=entity.status.value,
            remote_tx_id=entity.remote_tx_id,
            account_id=entity.account_id,
            forward_pending=entity.forward_pending,
        )

    async def _get_model(self, merchant: str, order_id: str) -> Optional[OrderModel]:
        result = await self.session.execute(
            select(OrderModel).where(
                OrderModel.merchant == merchant,
                OrderModel.order_id == order_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, order: Order) -> Order:
        """创建订单记录"""
        db_order = self._to_model(order)
        try:
            # 使用 SAVEPOINT，冲突时不影响外层事务
            async with self.session.begin_nested():
                self.session.add(db_order)
                await self.session.flush()
        except IntegrityError:
            logger.warning("order_create_conflict", merchant=order.merchant, order_id=order.order_id)
            raise OrderAlreadyExistsException(order.merchant, order.order_id)
        await self.session.refresh(db_order)
        logger.info(
            "order_created",
            merchant=db_order.merchant,
            order_id=db_order.order_id,
            is_test=db_order.is_test,
        )
        return self._to_entity(db_order)

    async def get(self, merchant: str, order_id: str) -> Optional[Order]:
        db_order = await self._get_model(merchant, order_id)
        return self._to_entity(db_order) if db_order else None

    async def get_by_order_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.order_id == order_id).order_by(OrderModel.id.asc()).limit(1)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def update(self, order: Order) -> Order:
        """更新订单记录（raw 快照仅在补写链接时变化）"""
        db_order = await self._get_model(order.merchant, order.order_id)
        if not db_order:
            raise ValueError(f"Order {order.merchant}/{order.order_id} not found")

        db_order.gid = order.gid
        db_order.raw_json = json.dumps(order.raw, ensure_ascii=False, default=str)
        db_order.is_test = order.is_test
        db_order.hosted_link = order.hosted_link
        db_order.status = order.status.value
        db_order.remote_tx_id = order.remote_tx_id
        db_order.account_id = order.account_id
        db_order.forward_pending = order.forward_pending

        await self.session.flush()
        await self.session.refresh(db_order)

        logger.info(
            "order_updated",
            merchant=db_order.merchant,
            order_id=db_order.order_id,
            status=db_order.status,
            forward_pending=db_order.forward_pending,
        )
        return self._to_entity(db_order)

    async def list_forward_pending(self) -> List[Order]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.forward_pending.is_(True)).order_by(OrderModel.id.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_backfill_candidates(self) -> List[Tuple[Order, GatewayTransaction]]:
        result = await self.session.execute(
            select(OrderModel, GatewayTransactionModel)
            .join(GatewayTransactionModel, GatewayTransactionModel.tx_ref == OrderModel.order_id)
            .where(
                OrderModel.status != OrderStatus.COMPLETED.value,
                OrderModel.is_test.is_(False),
                GatewayTransactionModel.status == "successful",
            )
            .order_by(OrderModel.id.asc())
        )
        return [(self._to_entity(o), _mirror_to_entity(t)) for o, t in result.all()]


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体；元数据不可解析时 meta 为 None"""
        try:
            meta: Optional[RefundMeta] = RefundMeta.from_json(model.metadata_json)
        except RefundMetaCorrupted as exc:
            logger.warning("refund_meta_unreadable", refund_id=model.refund_id, error=str(exc))
            meta = None
        return Refund(
            id=model.id,
            refund_id=model.refund_id,
            gid=model.gid,
            order_id=model.order_id,
            merchant=model.merchant,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            is_test=bool(model.is_test),
            status=RefundStatus(model.status),
            remote_tx_id=model.remote_tx_id,
            account_id=model.account_id,
            meta=meta,
            retry_at=model.retry_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        return RefundModel(
            id=entity.id,
            refund_id=entity.refund_id,
            gid=entity.gid,
            order_id=entity.order_id,
            merchant=entity.merchant,
            amount=entity.amount,
            currency=entity.currency,
            is_test=entity.is_test,
            status=entity.status.value,
            remote_tx_id=entity.remote_tx_id,
            account_id=entity.account_id,
            metadata_json=(entity.meta or RefundMeta()).to_json(),
            retry_at=entity.retry_at,
        )

    async def _get_model(self, refund_id: str) -> Optional[RefundModel]:
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.refund_id == refund_id)
        )
        return result.scalar_one_or_none()

    async def create_or_get(self, refund: Refund) -> Tuple[Refund, bool]:
        """插入并回读；refund_id 冲突视为已受理"""
        db_refund = self._to_model(refund)
        try:
            async with self.session.begin_nested():
                self.session.add(db_refund)
                await self.session.flush()
        except IntegrityError:
            existing = await self._get_model(refund.refund_id)
            if existing is None:
                raise
            logger.info("refund_already_logged", refund_id=refund.refund_id)
            return self._to_entity(existing), False

        inserted = await self._get_model(refund.refund_id)
        logger.info(
            "refund_created",
            refund_id=inserted.refund_id,
            order_id=inserted.order_id,
            amount=str(inserted.amount),
        )
        return self._to_entity(inserted), True

    async def get(self, refund_id: str) -> Optional[Refund]:
        db_refund = await self._get_model(refund_id)
        return self._to_entity(db_refund) if db_refund else None

    async def update(self, refund: Refund) -> Refund:
        db_refund = await self._get_model(refund.refund_id)
        if not db_refund:
            raise ValueError(f"Refund {refund.refund_id} not found")

        db_refund.status = refund.status.value
        db_refund.retry_at = refund.retry_at
        if refund.meta is not None:
            db_refund.metadata_json = refund.meta.to_json()

        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info(
            "refund_updated",
            refund_id=db_refund.refund_id,
            status=db_refund.status,
            retry_at=db_refund.retry_at,
        )
        return self._to_entity(db_refund)

    async def next_overdue(self, now_ms: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(
                RefundModel.status == RefundStatus.PENDING.value,
                RefundModel.retry_at.is_not(None),
                RefundModel.retry_at <= now_ms,
            )
            .order_by(RefundModel.retry_at.asc(), RefundModel.id.asc())
            .limit(1)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None


class SQLAlchemyMerchantConfigRepository(MerchantConfigRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: MerchantConfigModel) -> MerchantConfig:
        return MerchantConfig(
            id=model.id,
            domain=model.domain,
            encrypted_session=model.encrypted_session,
            encrypted_keys=model.encrypted_keys,
            account_id=model.account_id,
            installed=bool(model.installed),
        )

    async def _get_model(self, domain: str) -> Optional[MerchantConfigModel]:
        result = await self.session.execute(
            select(MerchantConfigModel).where(MerchantConfigModel.domain == domain)
        )
        return result.scalar_one_or_none()

    async def get(self, domain: str) -> Optional[MerchantConfig]:
        model = await self._get_model(domain)
        return self._to_entity(model) if model else None

    async def save(self, config: MerchantConfig) -> MerchantConfig:
        model = await self._get_model(config.domain)
        if model is None:
            model = MerchantConfigModel(domain=config.domain)
            self.session.add(model)
        model.encrypted_session = config.encrypted_session
        model.encrypted_keys = config.encrypted_keys
        model.account_id = config.account_id
        model.installed = config.installed
        await self.session.flush()
        await self.session.refresh(model)
        logger.info("merchant_config_saved", merchant=model.domain, installed=model.installed)
        return self._to_entity(model)


class SQLAlchemyGatewayMirrorRepository(GatewayMirrorRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_transaction(self, tx_id: str) -> Optional[GatewayTransaction]:
        try:
            pk = int(tx_id)
        except (TypeError, ValueError):
            return None
        result = await self.session.execute(
            select(GatewayTransactionModel).where(GatewayTransactionModel.id == pk)
        )
        model = result.scalar_one_or_none()
        return _mirror_to_entity(model) if model else None

    async def legacy_stub_exists(self, tx_ref: str) -> bool:
        result = await self.session.execute(
            select(GatewayOrderModel.id)
            .where(GatewayOrderModel.tx_ref == tx_ref)
            .order_by(GatewayOrderModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
