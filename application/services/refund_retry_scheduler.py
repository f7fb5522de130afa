"""
退款定时重试 - 每轮最多认领并重试一条到期的待处理退款

并发控制只依赖 ProgressGuard 的唯一约束：认领令牌由退款号与其当前重试时间组成，
每个重试时间窗口只能被一个进程/轮次认领一次。
"""
from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Callable, Optional

from application.services.reconciliation_service import ReconciliationEngine
from core.logging_config import get_logger
from core.settings import ReconciliationPolicy
from domain.common.exceptions import GuardContention
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Refund, RefundStatus
from shared.codes.payment_codes import CLAIM_KIND_REFUND_RETRY


logger = get_logger(__name__)


def claim_token_for(refund: Refund) -> str:
    return f"{refund.refund_id}-{refund.retry_at}"


def tick_interval_seconds(policy: ReconciliationPolicy, rng: Optional[random.Random] = None) -> float:
    """基础周期加随机抖动，进程启动时计算一次"""
    rng = rng or random.Random()
    jitter = rng.uniform(policy.scheduler_jitter_min_seconds, policy.scheduler_jitter_max_seconds)
    return policy.scheduler_base_seconds + jitter


class RefundRetryScheduler:
    def __init__(
        self,
        engine: ReconciliationEngine,
        uow_factory: Callable[..., AbstractUnitOfWork],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._engine = engine
        self._uow_factory = uow_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def tick(self) -> Optional[RefundStatus]:
        """执行一轮；无到期退款或认领失败时返回 None"""
        now_ms = int(self._clock().timestamp() * 1000)
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.next_overdue(now_ms)
        if refund is None:
            return None

        token = claim_token_for(refund)
        try:
            # 认领独立提交，先于任何副作用
            async with self._uow_factory() as uow:
                await uow.progress_guard_repository.claim(token, CLAIM_KIND_REFUND_RETRY)
        except GuardContention:
            logger.info("refund_retry_tick_skipped", refund_id=refund.refund_id, claim_token=token)
            return None

        try:
            status = await self._engine.retry_refund(refund.refund_id)
        except Exception as exc:
            logger.error("refund_retry_failed", refund_id=refund.refund_id, error=str(exc), exc_info=True)
            await self._engine.postpone_refund(refund.refund_id)
            raise
        logger.info("refund_retry_tick_done", refund_id=refund.refund_id, status=status.value)
        return status
