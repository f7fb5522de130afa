"""
Merchant gateway key settings routes.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_merchant_settings_service
from application.dtos.payments import MerchantKeysUpdate
from application.services.merchant_settings_service import MerchantSettingsService
from core.response import success_response
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


router = APIRouter(prefix="/settings", tags=["Settings"])


@router.post("", summary="Update gateway keys")
async def update_settings(
    payload: MerchantKeysUpdate,
    service: MerchantSettingsService = Depends(get_merchant_settings_service),
):
    redirect_url = await service.update_keys(payload)
    return success_response(data={"redirect_url": redirect_url}, message="API keys updated successfully")


@router.get("", summary="Fetch masked gateway keys")
async def fetch_settings(
    shop: Optional[str] = Query(default=None),
    service: MerchantSettingsService = Depends(get_merchant_settings_service),
):
    if not shop:
        raise BusinessException(
            code=BusinessCode.PARAM_MISSING,
            message="shop is required",
            error_type="ParamMissing",
            field="shop",
        )
    keys = await service.fetch_masked_keys(shop)
    return success_response(data=keys.model_dump(), message="Configured keys retrieved")
