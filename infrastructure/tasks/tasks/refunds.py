"""Refund retry Celery tasks"""
from __future__ import annotations

import asyncio
from typing import Optional

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger
from infrastructure.context import build_context

logger = get_logger(__name__)


async def run_refund_retry_tick() -> Optional[str]:
    """构建独立上下文执行一轮重试，结束后释放连接"""
    ctx = build_context()
    try:
        status = await ctx.refund_scheduler.tick()
        return status.value if status is not None else None
    finally:
        await ctx.aclose()


@shared_task(name="refunds.retry_overdue", bind=True, base=BaseTask, ignore_result=True)
def retry_overdue_refunds(self) -> Optional[str]:
    """Claim and retry at most one overdue pending refund.

    Not auto-retried: the next beat tick picks the refund up again under a
    fresh claim token.
    """
    status = asyncio.run(run_refund_retry_tick())
    logger.info("refund_retry_task_done", task_id=self.request.id, status=status)
    return status
