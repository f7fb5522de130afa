"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import MerchantInfo, PaymentLinkRequest, RefundSubmission
from domain.payment.entity import GatewayTransaction


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway of record for money movement.

    Verification failures of any kind come back as ``None`` (no signal);
    refund submissions come back as a RefundSubmission, never as exceptions.
    """

    async def verify_transaction(
        self,
        tx_id: Optional[str],
        *,
        is_test: bool,
        secret_key: Optional[str],
        tx_ref: Optional[str] = None,
    ) -> Optional[GatewayTransaction]: ...

    async def create_payment_link(
        self, req: PaymentLinkRequest, *, is_test: bool, secret_key: Optional[str]
    ) -> Optional[str]: ...

    async def submit_refund(
        self,
        *,
        amount: Decimal,
        gateway_ref: Optional[str],
        account_id: Optional[str],
        secret_key: Optional[str],
        is_test: bool,
    ) -> RefundSubmission: ...

    async def validate_secret_key(self, key: Optional[str]) -> bool: ...

    async def get_merchant_info(self, public_key: Optional[str]) -> Optional[MerchantInfo]: ...

    async def aclose(self) -> None: ...
