"""
Gateway REST adapter: transaction verification, hosted payment links,
refund submission and merchant key checks.

All failures are caught here, logged with their reference ids and converted
into "no signal" values; nothing upstream ever raises into the engine.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import MerchantInfo, PaymentLinkRequest, RefundSubmission
from application.ports.payment_gateway import PaymentGateway
from core.settings import GatewaySettings, RefundApiSettings
from domain.payment.entity import GatewayTransaction, to_decimal
from infrastructure.external.payments.base import BaseHTTPClient, response_snapshot
from infrastructure.security.signatures import REFUND_SIGNATURE_HEADER, compute_refund_signature


class GatewayClient(BaseHTTPClient, PaymentGateway):
    provider = "flutterwave"

    def __init__(
        self,
        *,
        gateway: GatewaySettings,
        refund_api: RefundApiSettings,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self._gateway = gateway
        self._refund_api = refund_api

    @staticmethod
    def _bearer(secret_key: Optional[str]) -> dict[str, str]:
        return {"Authorization": f"Bearer {secret_key or ''}"}

    async def verify_transaction(
        self,
        tx_id: Optional[str],
        *,
        is_test: bool,
        secret_key: Optional[str],
        tx_ref: Optional[str] = None,
    ) -> Optional[GatewayTransaction]:
        if not tx_id:
            self._log("gateway_verify_skipped", tx_ref=tx_ref, reason="missing_transaction_id")
            return None
        url = f"{self._gateway.base_url(is_test)}/v3/transactions/{tx_id}/verify"
        try:
            resp = await self._request("GET", url, headers=self._bearer(secret_key))
        except httpx.HTTPError as exc:
            self._log_error("gateway_verify_failed", tx_id=tx_id, tx_ref=tx_ref, error=str(exc))
            return None

        if resp.status_code == 404:
            self._log("gateway_transaction_not_found", tx_id=tx_id, tx_ref=tx_ref)
            return None
        if resp.is_error:
            self._log_error(
                "gateway_verify_failed",
                tx_id=tx_id,
                tx_ref=tx_ref,
                status_code=resp.status_code,
                response=response_snapshot(resp),
            )
            return None

        body = response_snapshot(resp)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data:
            self._log("gateway_transaction_not_found", tx_id=tx_id, tx_ref=tx_ref)
            return None

        tx = GatewayTransaction(
            id=str(data.get("id")) if data.get("id") is not None else str(tx_id),
            status=data.get("status"),
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency"),
            tx_ref=data.get("tx_ref"),
            flw_ref=data.get("flw_ref"),
            charge_message=data.get("processor_response") or data.get("chargeResponseMessage"),
            account_id=str(data["account_id"]) if data.get("account_id") is not None else None,
        )
        self._log("gateway_transaction_verified", tx_id=tx.id, tx_ref=tx_ref, status=tx.status)
        return tx

    async def create_payment_link(
        self, req: PaymentLinkRequest, *, is_test: bool, secret_key: Optional[str]
    ) -> Optional[str]:
        url = f"{self._gateway.base_url(is_test)}/v3/payments"
        payload = {
            "tx_ref": req.tx_ref,
            "amount": str(req.amount),
            "currency": req.currency,
            "redirect_url": req.redirect_url,
            "meta": {"integration": "shopify", "shopify_shop": req.shop},
            "customer": {
                "email": req.customer_email,
                "phonenumber": req.customer_phone,
                "name": req.customer_name,
            },
        }
        try:
            resp = await self._request("POST", url, json=payload, headers=self._bearer(secret_key))
        except httpx.HTTPError as exc:
            self._log_error("payment_link_failed", tx_ref=req.tx_ref, currency=req.currency, error=str(exc))
            return None
        body = response_snapshot(resp)
        if resp.is_error:
            self._log_error(
                "payment_link_failed",
                tx_ref=req.tx_ref,
                currency=req.currency,
                status_code=resp.status_code,
                response=body,
            )
            return None
        link = (body.get("data") or {}).get("link") if isinstance(body, dict) else None
        if not link:
            self._log_error("payment_link_missing", tx_ref=req.tx_ref, response=body)
            return None
        self._log("payment_link_created", tx_ref=req.tx_ref)
        return link

    async def submit_refund(
        self,
        *,
        amount: Decimal,
        gateway_ref: Optional[str],
        account_id: Optional[str],
        secret_key: Optional[str],
        is_test: bool,
    ) -> RefundSubmission:
        url = f"{self._refund_api.base_url(is_test)}/cc/gpx/refunds"
        payload = {"amount": str(amount), "ref": gateway_ref, "seckey": secret_key}
        headers = {
            REFUND_SIGNATURE_HEADER: compute_refund_signature(
                self._refund_api.secret or "", account_id, gateway_ref
            )
        }
        try:
            resp = await self._request("POST", url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            self._log_error("refund_submit_failed", gateway_ref=gateway_ref, error=str(exc))
            return RefundSubmission(successful=False, status_code=None, body={"error": str(exc)})

        body = response_snapshot(resp)
        successful = (
            not resp.is_error
            and isinstance(body, dict)
            and body.get("status") == "success"
        )
        if successful:
            self._log("refund_submitted", gateway_ref=gateway_ref, status_code=resp.status_code)
        else:
            self._log_error(
                "refund_submit_failed",
                gateway_ref=gateway_ref,
                status_code=resp.status_code,
                response=body,
            )
        return RefundSubmission(successful=successful, status_code=resp.status_code, body=body)

    async def validate_secret_key(self, key: Optional[str]) -> bool:
        if not key:
            return False
        url = f"{self._gateway.base_url(False)}/v3/transfers/fee"
        try:
            resp = await self._request(
                "GET", url, headers=self._bearer(key), params={"currency": "NGN", "amount": 100}
            )
        except httpx.HTTPError as exc:
            self._log_error("secret_key_validation_failed", error=str(exc))
            return False
        if resp.is_error:
            self._log("secret_key_rejected", status_code=resp.status_code)
            return False
        return True

    async def get_merchant_info(self, public_key: Optional[str]) -> Optional[MerchantInfo]:
        if not public_key:
            return None
        url = f"{self._gateway.base_url(False)}/flwv3-pug/getpaidx/api/mercinfo"
        try:
            resp = await self._request("GET", url, params={"PBFPubKey": public_key})
        except httpx.HTTPError as exc:
            self._log_error("merchant_info_failed", error=str(exc))
            return None
        body = response_snapshot(resp)
        if resp.is_error or not isinstance(body, dict) or not body.get("mn"):
            self._log("merchant_info_unavailable", status_code=resp.status_code)
            return None
        account_id = body.get("id")
        return MerchantInfo(business_name=body["mn"], account_id=str(account_id) if account_id is not None else None)
