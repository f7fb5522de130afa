"""
HMAC 签名：入站回调校验与出站退款请求签名
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Optional

from domain.common.exceptions import AuthenticationException
from core.logging_config import get_logger


logger = get_logger(__name__)

CALLBACK_SIGNATURE_HEADER = "x-f4b-hmac"
REFUND_SIGNATURE_HEADER = "x-shopify-app-hmac"


def _part(value: Any) -> str:
    # 与网关侧签名器保持一致：空值序列化为 "null"
    return "null" if value is None else str(value)


def sign(secret: str, *parts: Any) -> str:
    payload = "|".join(_part(p) for p in parts)
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def compute_callback_signature(secret: str, shop: Any, tx_id: Any, tx_ref: Any, account_id: Any) -> str:
    return sign(secret, shop, tx_id, tx_ref, account_id)


def compute_refund_signature(secret: str, account_id: Any, gateway_ref: Any) -> str:
    return sign(secret, account_id, gateway_ref)


class CallbackAuthenticator:
    """校验异步回调签名：shop|tx_id|tx_ref|account_id"""

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret

    def verify(
        self,
        signature: Optional[str],
        *,
        shop: Any,
        tx_id: Any,
        tx_ref: Any,
        account_id: Any,
    ) -> None:
        if not signature:
            logger.warning("callback_signature_missing", shop=shop, tx_ref=tx_ref)
            raise AuthenticationException("missing hmac")
        if not self._secret:
            logger.error("callback_secret_not_configured")
            raise AuthenticationException("hmac missmatch!")
        expected = compute_callback_signature(self._secret, shop, tx_id, tx_ref, account_id)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("callback_signature_mismatch", shop=shop, tx_ref=tx_ref)
            raise AuthenticationException("hmac missmatch!")
