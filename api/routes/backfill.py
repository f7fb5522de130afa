"""
Pending-payments backfill: re-run callback reconciliation for live orders the
gateway already settled.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from api.dependencies import get_reconciliation_engine
from application.services.reconciliation_service import ReconciliationEngine
from core.response import success_response


router = APIRouter(prefix="/pending-payments", tags=["Backfill"])


@router.post("/backfill", summary="Backfill settled payments")
async def backfill_pending_payments(
    token: Optional[str] = Header(default=None, alias="x-backfill-token"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    count = await engine.backfill_pending_payments(token)
    return success_response(data={"transaction_count": count}, message="backfill ran")
