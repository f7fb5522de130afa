"""
商户网关密钥设置：校验、加密保存、配置远端支付应用、返回脱敏密钥
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from application.dtos.payments import MaskedMerchantKeys, MerchantKeysUpdate
from application.dtos.remote_session import SessionTarget
from application.ports.payment_gateway import PaymentGateway
from application.ports.remote_session import RemoteSessionDriver
from application.ports.security import CredentialCipher
from core.logging_config import get_logger
from core.settings import StorefrontSettings
from domain.common.exceptions import BusinessException, MerchantNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import GatewayKeys
from shared.codes import BusinessCode


logger = get_logger(__name__)


def mask_key(key: Optional[str]) -> str:
    """前 12 位 + 12 个星号 + 后 6 位"""
    if not key:
        return ""
    return f"{key[:12]}************{key[-6:]}"


class MerchantSettingsService:
    def __init__(
        self,
        *,
        uow_factory: Callable[..., AbstractUnitOfWork],
        cipher: CredentialCipher,
        gateway: PaymentGateway,
        driver: RemoteSessionDriver,
        storefront: StorefrontSettings,
    ) -> None:
        self._uow_factory = uow_factory
        self._cipher = cipher
        self._gateway = gateway
        self._driver = driver
        self._storefront = storefront

    def settings_redirect_url(self, shop: str) -> str:
        return f"https://{shop}/services/payments_partners/gateways/{self._storefront.api_key}/settings"

    async def update_keys(self, data: MerchantKeysUpdate) -> str:
        """保存密钥并返回商户后台的网关设置地址"""
        async with self._uow_factory(readonly=True) as uow:
            config = await uow.merchant_repository.get(data.shop)
        if config is None:
            raise MerchantNotFoundException(data.shop)

        valid_live, valid_test, info = await asyncio.gather(
            self._gateway.validate_secret_key(data.sk),
            self._gateway.validate_secret_key(data.test_sk),
            self._gateway.get_merchant_info(data.pk),
        )
        if not (valid_live and valid_test):
            logger.info("merchant_keys_rejected", merchant=data.shop,
                        live_valid=valid_live, test_valid=valid_test)
            raise BusinessException(
                code=BusinessCode.PARAM_ERROR,
                message="Unable to validate provided keys",
                error_type="InvalidGatewayKeys",
                details={"merchant": data.shop},
            )

        keys = GatewayKeys(sk=data.sk, pk=data.pk, test_sk=data.test_sk, test_pk=data.test_pk)
        config.encrypted_keys = self._cipher.encrypt_json(keys.to_dict())
        config.account_id = info.account_id if info else None
        async with self._uow_factory() as uow:
            config = await uow.merchant_repository.save(config)
        logger.info("merchant_keys_updated", merchant=data.shop, account_id=config.account_id)

        access_token = None
        if config.encrypted_session:
            try:
                access_token = self._cipher.decrypt(config.encrypted_session)
            except ValueError:
                logger.error("merchant_session_unreadable", merchant=data.shop)
        if access_token:
            await self._driver.configure_payments_app(
                SessionTarget(shop=data.shop, access_token=access_token),
                ready=True,
                external_handle=(info.business_name if info else None) or self._storefront.payments_app_handle,
            )
        else:
            logger.warning("payments_app_configure_skipped", merchant=data.shop, reason="missing_access_token")
        return self.settings_redirect_url(data.shop)

    async def fetch_masked_keys(self, shop: str) -> MaskedMerchantKeys:
        async with self._uow_factory(readonly=True) as uow:
            config = await uow.merchant_repository.get(shop)
        if config is None:
            raise MerchantNotFoundException(shop)
        keys = GatewayKeys()
        if config.encrypted_keys:
            try:
                keys = GatewayKeys.from_dict(self._cipher.decrypt_json(config.encrypted_keys))
            except ValueError:
                logger.error("merchant_keys_unreadable", merchant=shop)
        return MaskedMerchantKeys(
            prodSk=mask_key(keys.sk),
            prodPk=keys.pk or "",
            testSk=mask_key(keys.test_sk),
            testPk=keys.test_pk or "",
        )
