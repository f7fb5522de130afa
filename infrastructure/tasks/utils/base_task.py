"""Common base task for the reconciler's Celery jobs"""
from __future__ import annotations

import time

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Structured lifecycle logging with run duration.

    Retry ticks are never auto-retried by Celery; a failed tick is simply
    followed by the next beat tick, so failures are logged and left at that.
    """

    def before_start(self, task_id, args, kwargs):  # type: ignore[override]
        self._started_at = time.perf_counter()

    def _elapsed(self) -> float | None:
        started = getattr(self, "_started_at", None)
        return None if started is None else round(time.perf_counter() - started, 3)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            duration=self._elapsed(),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            duration=self._elapsed(),
            result=retval,
        )
        super().on_success(retval, task_id, args, kwargs)
