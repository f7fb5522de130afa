"""In-process delayed task queue.

Each scheduled coroutine runs once after its delay inside its own asyncio
task, keyed so a second schedule for the same key is ignored while the first
is still waiting. Callers never await the task. On shutdown waiting tasks are
cancelled; their intent must already be durable elsewhere so a restart can
re-derive them.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from core.logging_config import get_logger


logger = get_logger(__name__)


class DelayedTaskQueue:
    """Keyed, cancellable one-shot timers on the running event loop."""

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    def pending_keys(self) -> list[str]:
        return list(self._tasks)

    def schedule(self, key: str, delay: float, fn: Callable[[], Awaitable[None]]) -> bool:
        if self._closed:
            logger.warning("deferred_task_rejected", key=key, reason="queue_closed")
            return False
        if key in self._tasks:
            logger.info("deferred_task_already_scheduled", key=key)
            return False
        task = asyncio.create_task(self._run(key, max(0.0, float(delay)), fn), name=f"deferred:{key}")
        self._tasks[key] = task
        logger.info("deferred_task_scheduled", key=key, delay=delay)
        return True

    async def _run(self, key: str, delay: float, fn: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(delay)
            await fn()
            logger.info("deferred_task_done", key=key)
        except asyncio.CancelledError:
            logger.info("deferred_task_cancelled", key=key)
            raise
        except Exception as exc:
            # 后台任务无人等待，异常只能在此记录
            logger.error("deferred_task_failed", key=key, error=str(exc), exc_info=True)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """等待当前所有任务执行完毕（测试与优雅退出使用）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("deferred_queue_shutdown", cancelled=len(tasks))
        self._tasks.clear()
