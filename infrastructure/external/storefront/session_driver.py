"""
Storefront payments-app GraphQL adapter driving remote payment/refund sessions.

Forwards are best-effort: transport errors, non-2xx responses, GraphQL errors
and ``userErrors`` (typically "session already resolved" when the redirect
and callback paths race) are logged and swallowed.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from application.dtos.remote_session import (
    PendRequest,
    RejectRequest,
    ResolveRequest,
    SessionKind,
    SessionTarget,
)
from application.ports.remote_session import RemoteSessionDriver
from core.settings import StorefrontSettings
from infrastructure.external.payments.base import BaseHTTPClient, response_snapshot


_NEXT_ACTION = """
            nextAction {
              action
              context {
                ... on PaymentSessionActionsRedirect {
                  redirectUrl
                }
              }
            }"""

PAYMENT_SESSION_RESOLVE = """
mutation PaymentSessionResolve($id: ID!) {
  paymentSessionResolve(id: $id) {
    paymentSession {
      id%s
    }
    userErrors { field message }
  }
}
""" % _NEXT_ACTION

PAYMENT_SESSION_PENDING = """
mutation PaymentSessionPending($id: ID!, $pendingExpiresAt: DateTime!, $reason: PaymentSessionStatePendingReason!) {
  paymentSessionPending(id: $id, pendingExpiresAt: $pendingExpiresAt, reason: $reason) {
    paymentSession {
      id%s
    }
    userErrors { field message }
  }
}
""" % _NEXT_ACTION

PAYMENT_SESSION_REJECT = """
mutation PaymentSessionReject($id: ID!, $reason: PaymentSessionRejectionReasonInput!) {
  paymentSessionReject(id: $id, reason: $reason) {
    paymentSession {
      id%s
    }
    userErrors { field message }
  }
}
""" % _NEXT_ACTION

REFUND_SESSION_RESOLVE = """
mutation RefundSessionResolve($id: ID!) {
  refundSessionResolve(id: $id) {
    refundSession { id }
    userErrors { field message }
  }
}
"""

REFUND_SESSION_REJECT = """
mutation RefundSessionReject($id: ID!, $reason: RefundSessionRejectionReasonInput!) {
  refundSessionReject(id: $id, reason: $reason) {
    refundSession { id }
    userErrors { field message }
  }
}
"""

PAYMENTS_APP_CONFIGURE = """
mutation PaymentsAppConfigure($ready: Boolean!, $externalHandle: String) {
  paymentsAppConfigure(ready: $ready, externalHandle: $externalHandle) {
    paymentsAppConfiguration { externalHandle ready }
    userErrors { field message }
  }
}
"""


class StorefrontSessionDriver(BaseHTTPClient, RemoteSessionDriver):
    provider = "shopify"

    def __init__(
        self,
        *,
        storefront: StorefrontSettings,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self._storefront = storefront

    def endpoint(self, shop: str) -> str:
        return f"https://{shop}/payments_apps/api/{self._storefront.api_version}/graphql.json"

    async def _execute(
        self,
        target: SessionTarget,
        operation: str,
        query: str,
        variables: dict[str, Any],
    ) -> Optional[dict]:
        """Run one mutation and return its payload, or None on any failure."""
        try:
            resp = await self._request(
                "POST",
                self.endpoint(target.shop),
                json={"query": query, "variables": variables},
                headers={"X-Shopify-Access-Token": target.access_token},
            )
        except httpx.HTTPError as exc:
            self._log_error("remote_session_call_failed", operation=operation, shop=target.shop,
                            session_id=variables.get("id"), error=str(exc))
            return None

        body = response_snapshot(resp)
        if resp.is_error or not isinstance(body, dict):
            self._log_error("remote_session_call_failed", operation=operation, shop=target.shop,
                            session_id=variables.get("id"), status_code=resp.status_code, response=body)
            return None
        if body.get("errors"):
            self._log_error("remote_session_graphql_errors", operation=operation, shop=target.shop,
                            session_id=variables.get("id"), errors=body["errors"])
            return None

        payload = (body.get("data") or {}).get(operation) or {}
        user_errors = payload.get("userErrors") or []
        if user_errors:
            # Already-finalized sessions land here when two triggers race; benign.
            self._log("remote_session_user_errors", operation=operation, shop=target.shop,
                      session_id=variables.get("id"), user_errors=user_errors)
        else:
            self._log("remote_session_forwarded", operation=operation, shop=target.shop,
                      session_id=variables.get("id"))
        return payload

    @staticmethod
    def _redirect_url(payload: Optional[dict]) -> Optional[str]:
        session = (payload or {}).get("paymentSession") or {}
        context = (session.get("nextAction") or {}).get("context") or {}
        return context.get("redirectUrl") or None

    async def resolve(self, target: SessionTarget, req: ResolveRequest) -> Optional[str]:
        if req.kind is SessionKind.REFUND:
            await self._execute(target, "refundSessionResolve", REFUND_SESSION_RESOLVE, {"id": req.session_id})
            return None
        payload = await self._execute(
            target, "paymentSessionResolve", PAYMENT_SESSION_RESOLVE, {"id": req.session_id}
        )
        return self._redirect_url(payload)

    async def pend(self, target: SessionTarget, req: PendRequest) -> Optional[str]:
        variables = {
            "id": req.session_id,
            "pendingExpiresAt": req.expires_at.isoformat().replace("+00:00", "Z"),
            "reason": req.reason,
        }
        payload = await self._execute(target, "paymentSessionPending", PAYMENT_SESSION_PENDING, variables)
        return self._redirect_url(payload)

    async def reject(self, target: SessionTarget, req: RejectRequest) -> Optional[str]:
        variables = {
            "id": req.session_id,
            "reason": {"code": req.code, "merchantMessage": req.merchant_message},
        }
        if req.kind is SessionKind.REFUND:
            await self._execute(target, "refundSessionReject", REFUND_SESSION_REJECT, variables)
            return None
        payload = await self._execute(target, "paymentSessionReject", PAYMENT_SESSION_REJECT, variables)
        return self._redirect_url(payload)

    async def configure_payments_app(
        self, target: SessionTarget, *, ready: bool, external_handle: str
    ) -> bool:
        payload = await self._execute(
            target,
            "paymentsAppConfigure",
            PAYMENTS_APP_CONFIGURE,
            {"ready": ready, "externalHandle": external_handle},
        )
        return bool(payload) and not payload.get("userErrors")
