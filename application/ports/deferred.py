"""
Deferred work port: run a coroutine once after a delay, keyed and cancellable.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol, runtime_checkable


@runtime_checkable
class DeferredExecutor(Protocol):
    def schedule(self, key: str, delay: float, fn: Callable[[], Awaitable[None]]) -> bool: ...

    def cancel(self, key: str) -> bool: ...

    async def shutdown(self) -> None: ...
