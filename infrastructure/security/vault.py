"""
凭证保险库 - 商户会话令牌与网关密钥的对称加解密

密文使用 Fernet (AES-128-CBC + HMAC-SHA256)；MultiFernet 支持密钥轮换：
第一个密钥用于加密，其余密钥仅用于解密历史数据。
"""
from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from core.logging_config import get_logger


logger = get_logger(__name__)


class VaultDecryptionError(ValueError):
    """密文无法被任何已配置密钥解开"""


def _normalize_fernet_key(secret: str | bytes) -> bytes:
    raw = secret.encode("utf-8") if isinstance(secret, str) else secret
    if len(raw) == 44:
        try:
            if len(base64.urlsafe_b64decode(raw)) == 32:
                return raw
        except ValueError:
            pass
    # 任意长度口令经 SHA-256 派生为 32 字节密钥
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class CredentialVault:
    def __init__(self, primary_key: str, fallback_keys: Optional[Iterable[str]] = None) -> None:
        if not primary_key:
            raise ValueError("encryption key is required")
        keys = [primary_key, *(fallback_keys or [])]
        self._fernet = MultiFernet([Fernet(_normalize_fernet_key(k)) for k in keys])

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.error("vault_decrypt_failed", error_type=type(exc).__name__)
            raise VaultDecryptionError("unable to decrypt credential") from exc

    def encrypt_json(self, data: Any) -> str:
        return self.encrypt(json.dumps(data, ensure_ascii=False, separators=(",", ":")))

    def decrypt_json(self, token: Optional[str]) -> Any:
        if not token:
            return None
        return json.loads(self.decrypt(token))

    def rotate(self, token: str) -> str:
        """用当前主密钥重新加密历史密文"""
        return self._fernet.rotate(token.encode("ascii")).decode("ascii")

