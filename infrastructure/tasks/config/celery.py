"""Celery application for the periodic refund retry tick.

Only beat-driven maintenance runs here; the HTTP process never enqueues
work. Broker and result backend come from ``REDIS__URL`` (or the classic
``CELERY_BROKER_URL`` / ``CELERY_RESULT_BACKEND`` variables).
"""
from __future__ import annotations

import os

from celery import Celery

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE, REFUND_RETRY_TASK


logger = get_logger(__name__)

TASK_PACKAGES = ("infrastructure.tasks.tasks",)
REFUND_QUEUE = "refunds"


celery_app = Celery("storefront_reconciler")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 重投递的 tick 会因认领令牌已存在而空转，可以放心 acks_late
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    # 队列不单独声明，由 task_create_missing_queues 按默认队列名自动创建
    task_default_queue=REFUND_QUEUE,
    task_routes={REFUND_RETRY_TASK: {"queue": REFUND_QUEUE}},
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        queue=REFUND_QUEUE,
        beat_entries=sorted(sender.conf.beat_schedule or {}),
    )
