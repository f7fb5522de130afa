"""
Payments API routes: checkout init, payer redirect-return, gateway callback.

Keep this thin: reconciliation rules live in the application engine.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response
from fastapi.responses import RedirectResponse

from api.dependencies import get_reconciliation_engine
from application.dtos.payments import CheckoutRequest, CheckoutResult, PaymentCallback
from application.services.reconciliation_service import ReconciliationEngine
from core.response import success_response


router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("", summary="Initiate checkout", response_model=CheckoutResult)
async def initiate_payment(
    payload: CheckoutRequest,
    shop: str = Header(..., alias="shopify-shop-domain"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    # 商店端直接读取 redirect_url，不使用统一响应包装
    return await engine.initiate_checkout(shop, payload)


@router.post("/callback", summary="Gateway async callback")
async def payment_callback(
    payload: PaymentCallback,
    signature: Optional[str] = Header(default=None, alias="x-f4b-hmac"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    scheduled = await engine.handle_payment_callback(payload, signature)
    return success_response(data={"forward_scheduled": scheduled}, message="Callback received!")


@router.get("/{shop}/redirect", summary="Payer redirect-return")
async def payment_redirect(
    shop: str,
    tx_ref: str = Query(...),
    status: Optional[str] = Query(default=None),
    transaction_id: Optional[str] = Query(default=None),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    outcome = await engine.handle_payment_redirect(
        shop, tx_ref=tx_ref, raw_status=status, transaction_id=transaction_id
    )
    if outcome.redirect_url:
        return RedirectResponse(outcome.redirect_url, status_code=302)
    return Response(status_code=200)
