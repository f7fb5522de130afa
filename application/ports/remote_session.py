"""
Remote session driver port.

Every operation is a best-effort forward: failures (transport, HTTP status,
userErrors on an already-finalized session) are logged by the adapter and
surface as ``None`` / ``False``. The preceding ledger write is the durable
record of intent.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.remote_session import (
    PendRequest,
    RejectRequest,
    ResolveRequest,
    SessionTarget,
)


@runtime_checkable
class RemoteSessionDriver(Protocol):
    async def resolve(self, target: SessionTarget, req: ResolveRequest) -> Optional[str]: ...

    async def pend(self, target: SessionTarget, req: PendRequest) -> Optional[str]: ...

    async def reject(self, target: SessionTarget, req: RejectRequest) -> Optional[str]: ...

    async def configure_payments_app(
        self, target: SessionTarget, *, ready: bool, external_handle: str
    ) -> bool: ...

    async def aclose(self) -> None: ...
