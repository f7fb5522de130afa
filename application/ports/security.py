"""
Security ports: credential encryption at rest and inbound callback verification.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class CredentialCipher(Protocol):
    """Symmetric cipher for merchant credentials; decrypt failures raise ValueError."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, token: str) -> str: ...

    def encrypt_json(self, data: Any) -> str: ...

    def decrypt_json(self, token: Optional[str]) -> Any: ...


@runtime_checkable
class CallbackVerifier(Protocol):
    """Raises AuthenticationException when the signature is absent or wrong."""

    def verify(
        self,
        signature: Optional[str],
        *,
        shop: Any,
        tx_id: Any,
        tx_ref: Any,
        account_id: Any,
    ) -> None: ...
