"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.ledger import Ledger
from domain.payment.repository import (
    OrderRepository,
    RefundRepository,
    MerchantConfigRepository,
    ProgressGuardRepository,
    GatewayMirrorRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    order_repository: OrderRepository
    refund_repository: RefundRepository
    merchant_repository: MerchantConfigRepository
    progress_guard_repository: ProgressGuardRepository
    gateway_mirror_repository: GatewayMirrorRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.order_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.merchant_repository = None  # type: ignore[assignment]
        self.progress_guard_repository = None  # type: ignore[assignment]
        self.gateway_mirror_repository = None  # type: ignore[assignment]

    @property
    def ledger(self) -> Ledger:
        return Ledger(self.order_repository, self.refund_repository)

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
