"""
对账引擎（application/services）- 编排状态归一化、账本写入与远端会话推进

入口：
1. 发起结账：复用或创建托管支付链接
2. 支付回跳：网关核验 -> 归一化 -> 落库 -> 推进远端会话 -> 返回跳转地址
3. 异步回调：签名校验 -> 按镜像交易归一化 -> 落库 -> 延迟推进远端会话
4. 退款：幂等登记 -> 前置校验 -> 提交网关 -> 解决或排期重试
5. 补偿：对已在网关成功但本地未完成的订单重跑回调逻辑

所有上游调用失败都在调用点记录并转换为本地状态，只有校验/鉴权/未找到类错误会抛给调用方。
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from application.dtos.payments import (
    CheckoutRequest,
    CheckoutResult,
    PaymentCallback,
    PaymentLinkRequest,
    RedirectOutcome,
    RefundAck,
    RefundInitRequest,
)
from application.dtos.remote_session import (
    PendRequest,
    RejectRequest,
    ResolveRequest,
    SessionKind,
    SessionTarget,
)
from application.ports.deferred import DeferredExecutor
from application.ports.payment_gateway import PaymentGateway
from application.ports.remote_session import RemoteSessionDriver
from application.ports.security import CallbackVerifier, CredentialCipher
from core.logging_config import get_logger
from core.settings import ReconciliationPolicy
from domain.common.exceptions import (
    AuthenticationException,
    BusinessException,
    MerchantNotFoundException,
    OrderNotFoundException,
    UpstreamUnavailableException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    GatewayKeys,
    GatewayTransaction,
    Order,
    OrderStatus,
    Refund,
    RefundAttempt,
    RefundStatus,
)
from domain.payment.ledger import default_refund_meta
from domain.payment.status_resolver import map_channel_status, resolve_order_status
from shared.codes.payment_codes import (
    PAYMENT_MSG_DEFAULT_FAILURE,
    REFUND_MSG_AMOUNT_EXCEEDS_PAID,
    REFUND_MSG_ENVIRONMENT_MISMATCH,
    REFUND_MSG_PAYMENT_NOT_COMPLETED,
    REFUND_MSG_UNABLE_TO_PROCESS,
)


logger = get_logger(__name__)

CHECKOUT_FAILURE_MESSAGE = "An error occured initiating the payment session."
REFUND_ALREADY_LOGGED = "Refund request already logged!"
REFUND_LOGGED = "New refund request logged sucessfully"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MerchantCredentials:
    """单次使用的解密凭证，不落库、不缓存"""

    domain: str
    access_token: Optional[str] = None
    keys: GatewayKeys = field(default_factory=GatewayKeys)
    account_id: Optional[str] = None

    def session_target(self) -> Optional[SessionTarget]:
        if not self.access_token:
            return None
        return SessionTarget(shop=self.domain, access_token=self.access_token)


class ReconciliationEngine:
    def __init__(
        self,
        *,
        uow_factory: Callable[..., AbstractUnitOfWork],
        cipher: CredentialCipher,
        gateway: PaymentGateway,
        driver: RemoteSessionDriver,
        deferred: DeferredExecutor,
        authenticator: CallbackVerifier,
        policy: ReconciliationPolicy,
        app_base_url: str,
        backfill_token: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._cipher = cipher
        self.gateway = gateway
        self.driver = driver
        self.deferred = deferred
        self._authenticator = authenticator
        self.policy = policy
        self._app_base_url = app_base_url.rstrip("/")
        self._backfill_token = backfill_token
        self._clock = clock

    # ---- helpers ----

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def _next_retry_ms(self) -> int:
        return self._now_ms() + int(self.policy.refund_retry_interval_seconds * 1000)

    async def load_credentials(self, merchant: str) -> MerchantCredentials:
        """读取并解密商户凭证；密文损坏时按“未配置”处理并记录"""
        async with self._uow_factory(readonly=True) as uow:
            config = await uow.merchant_repository.get(merchant)
        if config is None:
            raise MerchantNotFoundException(merchant)

        creds = MerchantCredentials(domain=merchant, account_id=config.account_id)
        if config.encrypted_session:
            try:
                creds.access_token = self._cipher.decrypt(config.encrypted_session)
            except ValueError:
                logger.error("merchant_session_unreadable", merchant=merchant)
        if config.encrypted_keys:
            try:
                creds.keys = GatewayKeys.from_dict(self._cipher.decrypt_json(config.encrypted_keys))
            except ValueError:
                logger.error("merchant_keys_unreadable", merchant=merchant)
        return creds

    # ---- checkout ----

    async def initiate_checkout(self, merchant: str, req: CheckoutRequest) -> CheckoutResult:
        async with self._uow_factory(readonly=True) as uow:
            existing_link = await uow.ledger.find_checkout_link(merchant, req.id)
        if existing_link:
            logger.info("checkout_link_reused", merchant=merchant, order_id=req.id)
            return CheckoutResult(redirect_url=existing_link)

        creds = await self.load_credentials(merchant)
        customer = req.customer
        billing = customer.billing_address or {}
        link_req = PaymentLinkRequest(
            tx_ref=req.id,
            amount=req.amount,
            currency=req.currency,
            redirect_url=f"{self._app_base_url}/api/payment/{merchant}/redirect",
            customer_email=customer.email or f"shopify_{customer.phone_number}@flw.email",
            customer_phone=customer.phone_number,
            customer_name=f"{billing.get('given_name') or 'FNAME'} {billing.get('family_name') or 'LNAME'}",
            shop=merchant,
        )
        link = await self.gateway.create_payment_link(
            link_req, is_test=req.test, secret_key=creds.keys.secret_for(req.test)
        )
        if not link:
            raise UpstreamUnavailableException(
                CHECKOUT_FAILURE_MESSAGE, details={"order_id": req.id, "merchant": merchant}
            )

        async with self._uow_factory() as uow:
            order = await uow.ledger.create_order(
                Order(
                    merchant=merchant,
                    order_id=req.id,
                    gid=req.gid,
                    raw=req.model_dump(mode="json"),
                    is_test=req.test,
                    hosted_link=link,
                )
            )
        logger.info("checkout_initiated", merchant=merchant, order_id=req.id, is_test=req.test)
        return CheckoutResult(redirect_url=order.hosted_link or link)

    # ---- remote session forwards ----

    async def _forward_order(
        self, creds: MerchantCredentials, order: Order, *, charge_message: Optional[str] = None
    ) -> Optional[str]:
        """按订单的有效（已落库）状态推进远端支付会话，返回 nextAction 跳转地址"""
        target = creds.session_target()
        if target is None:
            logger.warning("remote_session_forward_skipped", merchant=order.merchant,
                           order_id=order.order_id, reason="missing_access_token")
            return None

        if order.status is OrderStatus.COMPLETED:
            return await self.driver.resolve(
                target, ResolveRequest(kind=SessionKind.PAYMENT, session_id=order.gid)
            )
        if order.status is OrderStatus.PENDING:
            return await self.driver.pend(target, PendRequest.expiring_from(order.gid, self._clock()))
        return await self.driver.reject(
            target,
            RejectRequest(
                kind=SessionKind.PAYMENT,
                session_id=order.gid,
                merchant_message=charge_message or PAYMENT_MSG_DEFAULT_FAILURE,
            ),
        )

    async def _forward_refund(
        self, creds: MerchantCredentials, refund: Refund, *, message: Optional[str] = None
    ) -> None:
        target = creds.session_target()
        if target is None:
            logger.warning("remote_session_forward_skipped", merchant=refund.merchant,
                           refund_id=refund.refund_id, reason="missing_access_token")
            return
        if refund.status is RefundStatus.RESOLVED:
            await self.driver.resolve(target, ResolveRequest(kind=SessionKind.REFUND, session_id=refund.gid))
        elif refund.status is RefundStatus.REJECTED:
            await self.driver.reject(
                target,
                RejectRequest(
                    kind=SessionKind.REFUND,
                    session_id=refund.gid,
                    merchant_message=message or REFUND_MSG_UNABLE_TO_PROCESS,
                ),
            )

    # ---- redirect return ----

    async def handle_payment_redirect(
        self,
        merchant: str,
        *,
        tx_ref: str,
        raw_status: Optional[str],
        transaction_id: Optional[str] = None,
    ) -> RedirectOutcome:
        channel_status = map_channel_status(raw_status)
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.ledger.get_order(merchant, tx_ref)
        creds = await self.load_credentials(merchant)

        tx: Optional[GatewayTransaction] = None
        legacy_stub = False
        if channel_status is not OrderStatus.CANCELLED:
            tx = await self.gateway.verify_transaction(
                transaction_id,
                is_test=order.is_test,
                secret_key=creds.keys.secret_for(order.is_test),
                tx_ref=tx_ref,
            )
            if tx is None:
                async with self._uow_factory(readonly=True) as uow:
                    legacy_stub = await uow.gateway_mirror_repository.legacy_stub_exists(tx_ref)

        status = resolve_order_status(
            channel_status=channel_status,
            transaction=tx,
            legacy_stub_exists=legacy_stub,
            captured_amount=order.amount,
            captured_currency=order.currency,
        )
        async with self._uow_factory() as uow:
            order, applied = await uow.ledger.apply_order_status(
                merchant,
                tx_ref,
                status,
                remote_tx_id=tx.id if tx else None,
                account_id=tx.account_id if tx else None,
            )
        logger.info(
            "payment_redirect_reconciled",
            merchant=merchant,
            order_id=tx_ref,
            raw_status=raw_status,
            resolved_status=status.value,
            effective_status=order.status.value,
            applied=applied,
        )

        if order.status is OrderStatus.CANCELLED:
            return RedirectOutcome(status=order.status.value, redirect_url=order.cancel_url)
        redirect_url = await self._forward_order(
            creds, order, charge_message=tx.charge_message if tx else None
        )
        return RedirectOutcome(status=order.status.value, redirect_url=redirect_url)

    # ---- async callback ----

    async def handle_payment_callback(self, callback: PaymentCallback, signature: Optional[str]) -> bool:
        """返回是否已排期远端推进；鉴权失败、订单不存在时抛出异常"""
        self._authenticator.verify(
            signature,
            shop=callback.shop,
            tx_id=callback.tx_id,
            tx_ref=callback.tx_ref,
            account_id=callback.account_id,
        )
        if self.policy.ignore_failed_callbacks and (callback.status or "").lower() == "failed":
            # 网关自动改路由时会先发 failed，等待重定向或补偿确认
            logger.info("payment_callback_failed_ignored", merchant=callback.shop, order_id=callback.tx_ref)
            return False
        return await self._reconcile_callback(callback)

    async def _reconcile_callback(self, callback: PaymentCallback) -> bool:
        async with self._uow_factory() as uow:
            order = await uow.order_repository.get(callback.shop, callback.tx_ref)
            if order is None:
                logger.error("payment_callback_order_not_found", merchant=callback.shop,
                             order_id=callback.tx_ref, tx_id=callback.tx_id)
                raise OrderNotFoundException(
                    callback.tx_ref, merchant=callback.shop, message="shopify order not found"
                )
            if order.is_terminal:
                logger.info("payment_callback_order_final", merchant=callback.shop,
                            order_id=callback.tx_ref, status=order.status.value)
                return False

            tx = await uow.gateway_mirror_repository.get_transaction(callback.tx_id)
            legacy_stub = False
            if tx is None:
                legacy_stub = await uow.gateway_mirror_repository.legacy_stub_exists(callback.tx_ref)
            status = resolve_order_status(
                channel_status=None,
                transaction=tx,
                legacy_stub_exists=legacy_stub,
                captured_amount=order.amount,
                captured_currency=order.currency,
            )
            order, applied = await uow.ledger.apply_order_status(
                callback.shop,
                callback.tx_ref,
                status,
                remote_tx_id=callback.tx_id,
                account_id=(tx.account_id if tx else None) or callback.account_id,
                forward_pending=True,
            )
        logger.info(
            "payment_callback_reconciled",
            merchant=callback.shop,
            order_id=callback.tx_ref,
            tx_id=callback.tx_id,
            status=order.status.value,
            applied=applied,
        )
        if not applied:
            return False
        self._schedule_forward(order)
        return True

    def _schedule_forward(self, order: Order, delay: Optional[float] = None) -> bool:
        merchant, order_id = order.merchant, order.order_id

        async def _forward() -> None:
            await self.forward_order_decision(merchant, order_id)

        return self.deferred.schedule(
            f"order-forward:{merchant}:{order_id}",
            self.policy.callback_forward_delay_seconds if delay is None else delay,
            _forward,
        )

    async def forward_order_decision(self, merchant: str, order_id: str) -> Optional[str]:
        """推进已落库的订单决策并清除 forward_pending 标记"""
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.ledger.get_order(merchant, order_id)
            tx = None
            if order.remote_tx_id:
                tx = await uow.gateway_mirror_repository.get_transaction(order.remote_tx_id)
        creds = await self.load_credentials(merchant)
        redirect_url = await self._forward_order(
            creds, order, charge_message=tx.charge_message if tx else None
        )
        async with self._uow_factory() as uow:
            await uow.ledger.mark_forwarded(merchant, order_id)
        logger.info("order_decision_forwarded", merchant=merchant, order_id=order_id,
                    status=order.status.value)
        return redirect_url

    async def resume_pending_forwards(self) -> int:
        """进程启动时重新排期上次未发出的延迟推进"""
        async with self._uow_factory(readonly=True) as uow:
            orders = await uow.order_repository.list_forward_pending()
        scheduled = sum(1 for order in orders if self._schedule_forward(order))
        if orders:
            logger.info("pending_forwards_resumed", found=len(orders), scheduled=scheduled)
        return scheduled

    # ---- backfill ----

    async def backfill_pending_payments(self, token: Optional[str]) -> int:
        if not token or not self._backfill_token or not hmac.compare_digest(token, self._backfill_token):
            logger.warning("backfill_token_rejected")
            raise AuthenticationException("invalid token")

        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.order_repository.list_backfill_candidates()
        for order, tx in candidates:
            callback = PaymentCallback(
                tx_id=tx.id,
                tx_ref=order.order_id,
                shop=order.merchant,
                account_id=tx.account_id,
                status=tx.status,
            )
            try:
                await self._reconcile_callback(callback)
            except BusinessException as exc:
                logger.warning("backfill_item_failed", merchant=order.merchant,
                               order_id=order.order_id, error=exc.message)
        logger.info("backfill_ran", transaction_count=len(candidates))
        return len(candidates)

    # ---- refunds ----

    async def initiate_refund(self, req: RefundInitRequest) -> RefundAck:
        """幂等登记退款；只有首次登记的请求需要继续执行结算"""
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_order_id(req.payment_id)
        if order is None:
            raise OrderNotFoundException(
                req.payment_id, message="No corresponding shopify order found for refund request"
            )

        refund = Refund(
            refund_id=req.id,
            gid=req.gid,
            order_id=order.order_id,
            merchant=order.merchant,
            amount=req.amount,
            currency=req.currency,
            is_test=req.test,
            remote_tx_id=order.remote_tx_id,
            account_id=order.account_id,
            meta=default_refund_meta(self.policy.refund_max_retries),
        )
        async with self._uow_factory() as uow:
            refund, created = await uow.ledger.create_refund(refund)
        if not created:
            logger.info("refund_already_logged", refund_id=req.id, order_id=req.payment_id)
            return RefundAck(created=False, message=REFUND_ALREADY_LOGGED)
        logger.info("refund_logged", refund_id=req.id, order_id=req.payment_id, amount=str(req.amount))
        return RefundAck(created=True, message=REFUND_LOGGED)

    async def _reject_refund(self, creds: MerchantCredentials, refund_id: str, message: str) -> RefundStatus:
        async with self._uow_factory() as uow:
            refund, changed = await uow.ledger.reject_refund(refund_id)
        logger.info("refund_rejected", refund_id=refund_id, reason=message, changed=changed)
        if changed:
            await self._forward_refund(creds, refund, message=message)
        return refund.status

    async def _resolve_refund(self, creds: MerchantCredentials, refund_id: str) -> RefundStatus:
        async with self._uow_factory() as uow:
            refund, changed = await uow.ledger.resolve_refund(refund_id)
        logger.info("refund_resolved", refund_id=refund_id, changed=changed)
        if changed:
            await self._forward_refund(creds, refund)
        return refund.status

    async def _submit_refund(
        self,
        creds: MerchantCredentials,
        refund: Refund,
        tx: GatewayTransaction,
        secret_key: str,
        *,
        retry_count: Optional[int] = None,
    ) -> RefundStatus:
        submission = await self.gateway.submit_refund(
            amount=refund.amount,
            gateway_ref=tx.flw_ref,
            account_id=tx.account_id,
            secret_key=secret_key,
            is_test=refund.is_test,
        )
        attempt = RefundAttempt(
            at=self._now_ms(), successful=submission.successful, status_code=submission.status_code
        )
        changes = {
            "refund_api_req_successful": submission.successful,
            "last_api_response_status": submission.status_code,
            "last_api_response_obj": submission.body,
        }
        if retry_count is not None:
            changes["retry_count"] = retry_count

        if submission.successful:
            async with self._uow_factory() as uow:
                await uow.ledger.merge_refund_meta(refund.refund_id, attempt=attempt, **changes)
            return await self._resolve_refund(creds, refund.refund_id)

        async with self._uow_factory() as uow:
            updated = await uow.ledger.merge_refund_meta(
                refund.refund_id, attempt=attempt, retry_at=self._next_retry_ms(), **changes
            )
        if updated.meta is not None and updated.meta.retries_exhausted and retry_count is not None:
            return await self._reject_refund(creds, refund.refund_id, REFUND_MSG_UNABLE_TO_PROCESS)
        logger.info("refund_retry_scheduled", refund_id=refund.refund_id, retry_at=updated.retry_at,
                    status_code=submission.status_code)
        return updated.status

    async def settle_refund(self, refund_id: str) -> RefundStatus:
        """首次登记后的结算流程：前置校验按固定顺序执行，任一不满足即拒绝"""
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.ledger.get_refund(refund_id)
            order = await uow.ledger.get_order(refund.merchant, refund.order_id)
        if refund.is_terminal:
            return refund.status
        creds = await self.load_credentials(refund.merchant)

        if order.status is not OrderStatus.COMPLETED:
            return await self._reject_refund(creds, refund_id, REFUND_MSG_PAYMENT_NOT_COMPLETED)
        if refund.is_test != order.is_test:
            return await self._reject_refund(creds, refund_id, REFUND_MSG_ENVIRONMENT_MISMATCH)

        secret_key = creds.keys.secret_for(refund.is_test)
        if not secret_key:
            # 没有可用密钥既无法核验也无法提交
            return await self._reject_refund(creds, refund_id, REFUND_MSG_UNABLE_TO_PROCESS)
        tx = await self.gateway.verify_transaction(
            refund.remote_tx_id or order.remote_tx_id,
            is_test=refund.is_test,
            secret_key=secret_key,
            tx_ref=order.order_id,
        )
        if tx is None:
            # 无法核验金额，交由定时重试处理
            async with self._uow_factory() as uow:
                await uow.ledger.schedule_refund_retry(refund_id, self._next_retry_ms())
            logger.warning("refund_verification_deferred", refund_id=refund_id, order_id=order.order_id)
            return RefundStatus.PENDING
        if tx.amount is None or refund.amount > tx.amount:
            return await self._reject_refund(creds, refund_id, REFUND_MSG_AMOUNT_EXCEEDS_PAID)

        return await self._submit_refund(creds, refund, tx, secret_key)

    async def settle_refund_in_background(self, refund_id: str) -> None:
        """后台任务入口：响应已返回，异常只能记录并交给定时重试"""
        try:
            await self.settle_refund(refund_id)
        except Exception as exc:
            logger.error("refund_settlement_failed", refund_id=refund_id, error=str(exc), exc_info=True)
            await self.postpone_refund(refund_id)

    async def retry_refund(self, refund_id: str) -> RefundStatus:
        """定时重试：调用方已持有本轮认领"""
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.ledger.get_refund(refund_id)
            order = await uow.order_repository.get(refund.merchant, refund.order_id)
        if refund.is_terminal:
            return refund.status
        if refund.meta is None:
            async with self._uow_factory() as uow:
                refund, _ = await uow.ledger.mark_refund_invalid(refund_id)
            logger.error("refund_marked_invalid", refund_id=refund_id, reason="metadata_unreadable")
            return refund.status

        logger.info("refund_retry_attempt", refund_id=refund_id, gid=refund.gid,
                    retry_count=refund.meta.retry_count, max_retries=refund.meta.max_retries)
        creds = await self.load_credentials(refund.merchant)
        if refund.meta.retries_exhausted:
            return await self._reject_refund(creds, refund_id, REFUND_MSG_UNABLE_TO_PROCESS)
        if refund.meta.refund_api_req_successful:
            return await self._resolve_refund(creds, refund_id)

        secret_key = creds.keys.secret_for(refund.is_test)
        if not secret_key:
            return await self._reject_refund(creds, refund_id, REFUND_MSG_UNABLE_TO_PROCESS)
        tx_id = refund.remote_tx_id or (order.remote_tx_id if order else None)
        tx = await self.gateway.verify_transaction(
            tx_id, is_test=refund.is_test, secret_key=secret_key, tx_ref=refund.order_id
        )
        next_count = refund.meta.retry_count + 1
        if tx is None:
            async with self._uow_factory() as uow:
                updated = await uow.ledger.merge_refund_meta(
                    refund_id, retry_count=next_count, retry_at=self._next_retry_ms()
                )
            if updated.meta is not None and updated.meta.retries_exhausted:
                return await self._reject_refund(creds, refund_id, REFUND_MSG_UNABLE_TO_PROCESS)
            logger.warning("refund_retry_verification_failed", refund_id=refund_id, retry_at=updated.retry_at)
            return updated.status

        return await self._submit_refund(creds, refund, tx, secret_key, retry_count=next_count)

    async def postpone_refund(self, refund_id: str) -> None:
        """异常中断后把退款移到新的重试时间，避免队首被已用认领永久阻塞"""
        async with self._uow_factory() as uow:
            refund = await uow.ledger.schedule_refund_retry(refund_id, self._next_retry_ms())
        logger.warning("refund_retry_postponed", refund_id=refund_id, retry_at=refund.retry_at)
