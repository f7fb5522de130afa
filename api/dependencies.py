"""
API依赖项 - 从应用上下文取出服务实例
"""
from fastapi import Depends, Request

from application.services.merchant_settings_service import MerchantSettingsService
from application.services.reconciliation_service import ReconciliationEngine
from infrastructure.context import AppContext


def get_app_context(request: Request) -> AppContext:
    """生命周期内构建的上下文挂在 app.state 上"""
    return request.app.state.context


async def get_reconciliation_engine(ctx: AppContext = Depends(get_app_context)) -> ReconciliationEngine:
    return ctx.reconciliation


async def get_merchant_settings_service(ctx: AppContext = Depends(get_app_context)) -> MerchantSettingsService:
    return ctx.merchant_settings
