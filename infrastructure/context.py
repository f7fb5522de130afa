"""
应用上下文 - 进程启动时构建一次，显式传递给各组件

持有会话工厂、凭证保险库、网关客户端、远端会话驱动、延迟任务队列与配置，
替代模块级的客户端单例。HTTP 进程与 Celery worker 各自构建自己的实例。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from application.ports.payment_gateway import PaymentGateway
from application.ports.remote_session import RemoteSessionDriver
from application.services.merchant_settings_service import MerchantSettingsService
from application.services.reconciliation_service import ReconciliationEngine
from application.services.refund_retry_scheduler import RefundRetryScheduler
from core.config import Settings, settings as app_settings
from core.logging_config import get_logger
from core.settings import ReconciliationSettings, reconciliation_settings
from infrastructure.database import build_engine, build_session_factory
from infrastructure.external.payments.gateway_client import GatewayClient
from infrastructure.external.storefront.session_driver import StorefrontSessionDriver
from infrastructure.security.signatures import CallbackAuthenticator
from infrastructure.security.vault import CredentialVault
from infrastructure.tasks.deferred import DelayedTaskQueue
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork, uow_factory_for


logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    recon: ReconciliationSettings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    uow_factory: Callable[..., SQLAlchemyUnitOfWork]
    vault: CredentialVault
    gateway: PaymentGateway
    driver: RemoteSessionDriver
    deferred: DelayedTaskQueue
    authenticator: CallbackAuthenticator
    reconciliation: ReconciliationEngine
    merchant_settings: MerchantSettingsService
    refund_scheduler: RefundRetryScheduler

    async def aclose(self) -> None:
        await self.deferred.shutdown()
        await self.gateway.aclose()
        await self.driver.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("app_context_closed")


def build_context(
    *,
    settings: Optional[Settings] = None,
    recon: Optional[ReconciliationSettings] = None,
    engine: Optional[AsyncEngine] = None,
    gateway: Optional[PaymentGateway] = None,
    driver: Optional[RemoteSessionDriver] = None,
    deferred: Optional[DelayedTaskQueue] = None,
) -> AppContext:
    """组装上下文；测试可替换任意外部协作者"""
    settings = settings or app_settings
    recon = recon or reconciliation_settings
    engine = engine or build_engine(settings.database.url, echo=settings.database.echo)
    session_factory = build_session_factory(engine)
    uow_factory = uow_factory_for(session_factory)

    timeouts = recon.timeouts.model_dump()
    retry = {"max": recon.retry.max, "base": recon.retry.base_backoff}
    vault = CredentialVault(settings.ENCRYPTION_KEY, settings.ENCRYPTION_KEY_FALLBACKS)
    gateway = gateway or GatewayClient(
        gateway=recon.gateway, refund_api=recon.refund_api, timeouts=timeouts, retry=retry
    )
    driver = driver or StorefrontSessionDriver(storefront=recon.storefront, timeouts=timeouts, retry=retry)
    deferred = deferred or DelayedTaskQueue()
    authenticator = CallbackAuthenticator(recon.gateway.callback_secret)

    reconciliation = ReconciliationEngine(
        uow_factory=uow_factory,
        cipher=vault,
        gateway=gateway,
        driver=driver,
        deferred=deferred,
        authenticator=authenticator,
        policy=recon.policy,
        app_base_url=settings.APP_BASE_URL,
        backfill_token=settings.BACKFILL_TOKEN,
    )
    merchant_settings = MerchantSettingsService(
        uow_factory=uow_factory,
        cipher=vault,
        gateway=gateway,
        driver=driver,
        storefront=recon.storefront,
    )
    return AppContext(
        settings=settings,
        recon=recon,
        engine=engine,
        session_factory=session_factory,
        uow_factory=uow_factory,
        vault=vault,
        gateway=gateway,
        driver=driver,
        deferred=deferred,
        authenticator=authenticator,
        reconciliation=reconciliation,
        merchant_settings=merchant_settings,
        refund_scheduler=RefundRetryScheduler(reconciliation, uow_factory),
    )
