"""
Typed requests for the remote payment/refund session state machine.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from shared.codes.payment_codes import (
    PEND_REASON_BUYER_ACTION_REQUIRED,
    REJECT_CODE_PROCESSING_ERROR,
)

# 远端支付会话挂起的固定有效期
PEND_EXPIRY = timedelta(hours=36)


class SessionKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


@dataclass(frozen=True)
class SessionTarget:
    """The merchant store and its decrypted access token for one forward."""

    shop: str
    access_token: str

    def __repr__(self) -> str:
        return f"SessionTarget(shop={self.shop!r})"


class ResolveRequest(BaseModel):
    kind: SessionKind
    session_id: str


class PendRequest(BaseModel):
    session_id: str
    expires_at: datetime
    reason: str = PEND_REASON_BUYER_ACTION_REQUIRED

    @classmethod
    def expiring_from(cls, session_id: str, now: datetime) -> "PendRequest":
        return cls(session_id=session_id, expires_at=now + PEND_EXPIRY)


class RejectRequest(BaseModel):
    kind: SessionKind
    session_id: str
    merchant_message: str
    code: str = REJECT_CODE_PROCESSING_ERROR
