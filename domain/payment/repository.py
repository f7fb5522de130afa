"""
对账仓储接口 - 定义订单、退款、商户配置、进度守卫与网关镜像的数据访问抽象
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Tuple

from .entity import Order, Refund, MerchantConfig, GatewayTransaction


class OrderRepository(ABC):
    """订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单；(merchant, order_id) 冲突时抛出 OrderAlreadyExistsException"""
        pass

    @abstractmethod
    async def get(self, merchant: str, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[Order]:
        """仅按订单号查找（退款请求不携带商户）"""
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def list_forward_pending(self) -> List[Order]:
        """已落库但远端会话尚未推进的订单"""
        pass

    @abstractmethod
    async def list_backfill_candidates(self) -> List[Tuple[Order, GatewayTransaction]]:
        """未完成的正式环境订单及其网关成功交易"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create_or_get(self, refund: Refund) -> Tuple[Refund, bool]:
        """原子地插入并回读；refund_id 冲突时返回已有记录与 False"""
        pass

    @abstractmethod
    async def get(self, refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def next_overdue(self, now_ms: int) -> Optional[Refund]:
        """最早到期的一条待重试退款"""
        pass


class MerchantConfigRepository(ABC):
    @abstractmethod
    async def get(self, domain: str) -> Optional[MerchantConfig]:
        pass

    @abstractmethod
    async def save(self, config: MerchantConfig) -> MerchantConfig:
        pass


class ProgressGuardRepository(ABC):
    @abstractmethod
    async def claim(self, claim_token: str, claim_kind: str) -> None:
        """插入一次性认领记录；已被认领时抛出 GuardContention"""
        pass


class GatewayMirrorRepository(ABC):
    """网关侧只读镜像（交易表与旧版订单存根）"""

    @abstractmethod
    async def get_transaction(self, tx_id: str) -> Optional[GatewayTransaction]:
        pass

    @abstractmethod
    async def legacy_stub_exists(self, tx_ref: str) -> bool:
        pass
