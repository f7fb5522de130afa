"""
Refund API routes.

Refund init always acknowledges with 201 once the order is known; settlement
runs after the response is sent.
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse
from starlette import status as http_status

from api.dependencies import get_reconciliation_engine
from application.dtos.payments import RefundInitRequest
from application.services.reconciliation_service import ReconciliationEngine
from core.response import success_response


router = APIRouter(prefix="/refund", tags=["Refunds"])


@router.post("", summary="Initiate refund", status_code=http_status.HTTP_201_CREATED)
async def initiate_refund(
    payload: RefundInitRequest,
    background_tasks: BackgroundTasks,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    ack = await engine.initiate_refund(payload)
    if ack.created:
        background_tasks.add_task(engine.settle_refund_in_background, payload.id)
    body = success_response(data={"created": ack.created}, message=ack.message)
    return JSONResponse(
        status_code=http_status.HTTP_201_CREATED,
        content=body.model_dump(mode="json"),
        background=background_tasks,
    )
