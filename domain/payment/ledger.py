"""
账本领域服务 - 订单与退款的权威本地记录

职责：
1. 订单幂等创建（复用待支付链接、拒绝已终结订单）
2. 订单状态写入的终态保护（终态只写一次）
3. 退款幂等创建（插入与回读在同一原子单元内）
4. 退款元数据的结构化合并与终态流转
"""
from __future__ import annotations

from typing import Optional, Tuple

from .entity import Order, OrderStatus, Refund, RefundAttempt, RefundMeta, RefundMetaCorrupted
from .repository import OrderRepository, RefundRepository
from domain.common.exceptions import (
    AlreadyFinalizedException,
    OrderAlreadyExistsException,
    OrderNotFoundException,
    DomainValidationException,
)


class RefundNotFoundException(DomainValidationException):
    def __init__(self, refund_id: str):
        super().__init__(f"refund {refund_id} not found", field="refund_id")


class Ledger:
    def __init__(self, order_repository: OrderRepository, refund_repository: RefundRepository):
        self.order_repository = order_repository
        self.refund_repository = refund_repository

    # ---- orders ----

    async def find_checkout_link(self, merchant: str, order_id: str) -> Optional[str]:
        """
        返回可复用的托管支付链接

        业务规则：
        1. 待支付且已有链接的订单直接复用，避免重复创建支付会话
        2. 已终结订单拒绝再次发起支付
        """
        existing = await self.order_repository.get(merchant, order_id)
        if existing is None:
            return None
        if existing.is_terminal:
            raise AlreadyFinalizedException(order_id, existing.status.value)
        return existing.hosted_link or None

    async def create_order(self, order: Order) -> Order:
        existing = await self.order_repository.get(order.merchant, order.order_id)
        if existing is not None:
            if existing.is_terminal:
                raise AlreadyFinalizedException(order.order_id, existing.status.value)
            if existing.hosted_link:
                return existing
            # 待支付但未生成链接的残留记录，补写链接与快照
            existing.hosted_link = order.hosted_link
            existing.gid = order.gid
            existing.raw = order.raw
            existing.is_test = order.is_test
            return await self.order_repository.update(existing)
        try:
            return await self.order_repository.create(order)
        except OrderAlreadyExistsException:
            # 并发创建：以先写入者为准
            winner = await self.order_repository.get(order.merchant, order.order_id)
            if winner is None:
                raise
            if winner.is_terminal:
                raise AlreadyFinalizedException(order.order_id, winner.status.value)
            return winner

    async def get_order(self, merchant: str, order_id: str) -> Order:
        order = await self.order_repository.get(merchant, order_id)
        if order is None:
            raise OrderNotFoundException(order_id, merchant=merchant)
        return order

    async def apply_order_status(
        self,
        merchant: str,
        order_id: str,
        status: OrderStatus,
        *,
        remote_tx_id: Optional[str] = None,
        account_id: Optional[str] = None,
        forward_pending: bool = False,
    ) -> Tuple[Order, bool]:
        """
        写入订单状态

        终态订单原样返回且 applied=False；调用方应以返回订单的状态为准继续推进远端会话。
        """
        order = await self.get_order(merchant, order_id)
        applied = order.apply_status(status, remote_tx_id=remote_tx_id, account_id=account_id)
        if not applied:
            return order, False
        order.forward_pending = forward_pending
        return await self.order_repository.update(order), True

    async def mark_forwarded(self, merchant: str, order_id: str) -> None:
        order = await self.order_repository.get(merchant, order_id)
        if order is not None and order.forward_pending:
            order.forward_pending = False
            await self.order_repository.update(order)

    # ---- refunds ----

    async def create_refund(self, refund: Refund) -> Tuple[Refund, bool]:
        return await self.refund_repository.create_or_get(refund)

    async def get_refund(self, refund_id: str) -> Refund:
        refund = await self.refund_repository.get(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return refund

    async def merge_refund_meta(
        self,
        refund_id: str,
        *,
        attempt: Optional[RefundAttempt] = None,
        retry_at: Optional[int] = None,
        **fields,
    ) -> Refund:
        """合并元数据，未给出的字段保持不变；可同时设置下次重试时间"""
        refund = await self.get_refund(refund_id)
        if refund.is_terminal:
            return refund
        if refund.meta is None:
            raise RefundMetaCorrupted(f"refund {refund_id} metadata unreadable")
        refund.meta = refund.meta.merge(attempt=attempt, **fields)
        if retry_at is not None:
            refund.schedule_retry(retry_at)
        return await self.refund_repository.update(refund)

    async def resolve_refund(self, refund_id: str) -> Tuple[Refund, bool]:
        refund = await self.get_refund(refund_id)
        if refund.is_terminal:
            return refund, False
        refund.mark_resolved()
        return await self.refund_repository.update(refund), True

    async def reject_refund(self, refund_id: str) -> Tuple[Refund, bool]:
        refund = await self.get_refund(refund_id)
        if refund.is_terminal:
            return refund, False
        refund.mark_rejected()
        return await self.refund_repository.update(refund), True

    async def mark_refund_invalid(self, refund_id: str) -> Tuple[Refund, bool]:
        refund = await self.get_refund(refund_id)
        if refund.is_terminal:
            return refund, False
        refund.mark_invalid()
        return await self.refund_repository.update(refund), True

    async def schedule_refund_retry(self, refund_id: str, at_ms: int) -> Refund:
        refund = await self.get_refund(refund_id)
        if refund.is_terminal:
            return refund
        refund.schedule_retry(at_ms)
        return await self.refund_repository.update(refund)


def default_refund_meta(max_retries: int) -> RefundMeta:
    return RefundMeta(max_retries=max_retries)
