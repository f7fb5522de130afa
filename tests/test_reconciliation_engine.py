from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import APP_BASE_URL, BACKFILL_TOKEN, CALLBACK_SECRET, SHOP, transaction
from application.dtos.payments import CheckoutRequest, PaymentCallback, RefundInitRequest, RefundSubmission
from application.services.reconciliation_service import REFUND_ALREADY_LOGGED, REFUND_LOGGED
from domain.common.exceptions import (
    AlreadyFinalizedException,
    AuthenticationException,
    MerchantNotFoundException,
    OrderNotFoundException,
    UpstreamUnavailableException,
)
from domain.payment.entity import OrderStatus, RefundStatus
from infrastructure.security.signatures import compute_callback_signature


async def _order(uow_factory, order_id="1001"):
    async with uow_factory(readonly=True) as uow:
        return await uow.order_repository.get(SHOP, order_id)


async def _refund(uow_factory, refund_id="r-1"):
    async with uow_factory(readonly=True) as uow:
        return await uow.refund_repository.get(refund_id)


def _callback(tx_id="9001", tx_ref="1001", status="successful", account_id="acc-1"):
    return PaymentCallback(tx_id=tx_id, tx_ref=tx_ref, shop=SHOP, account_id=account_id, status=status)


def _signature(cb: PaymentCallback) -> str:
    return compute_callback_signature(CALLBACK_SECRET, cb.shop, cb.tx_id, cb.tx_ref, cb.account_id)


def _checkout(order_id="2001", **overrides):
    data = {
        "id": order_id,
        "gid": f"gid://shopify/PaymentSession/{order_id}",
        "amount": "500",
        "currency": "ngn",
        "customer": {"phone_number": "08030000000", "billing_address": {"given_name": "Ada"}},
        "cancel_url": "https://acme.test/cancel",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


# ---- checkout ----

@pytest.mark.asyncio
async def test_checkout_creates_link_and_order(engine, seed, gateway, uow_factory):
    await seed.merchant()
    result = await engine.initiate_checkout(SHOP, _checkout())
    assert result.redirect_url == gateway.link

    req = gateway.link_requests[0]
    assert req.redirect_url == f"{APP_BASE_URL}/api/payment/{SHOP}/redirect"
    assert req.customer_email == "shopify_08030000000@flw.email"
    assert req.customer_name == "Ada LNAME"
    assert req.currency == "NGN"

    order = await _order(uow_factory, "2001")
    assert order.status is OrderStatus.PENDING
    assert order.hosted_link == gateway.link
    assert order.amount == Decimal("500")


@pytest.mark.asyncio
async def test_checkout_reuses_existing_link(engine, seed, gateway):
    await seed.merchant()
    await seed.order("2001")
    result = await engine.initiate_checkout(SHOP, _checkout())
    assert result.redirect_url == "https://checkout.gateway.test/pay/2001"
    assert gateway.link_requests == []


@pytest.mark.asyncio
async def test_checkout_rejects_finalized_order(engine, seed):
    await seed.merchant()
    await seed.order("2001", status=OrderStatus.COMPLETED)
    with pytest.raises(AlreadyFinalizedException):
        await engine.initiate_checkout(SHOP, _checkout())


@pytest.mark.asyncio
async def test_checkout_without_link_records_nothing(engine, seed, gateway, uow_factory):
    await seed.merchant()
    gateway.link = None
    with pytest.raises(UpstreamUnavailableException) as exc_info:
        await engine.initiate_checkout(SHOP, _checkout())
    assert exc_info.value.message == "An error occured initiating the payment session."
    assert await _order(uow_factory, "2001") is None


@pytest.mark.asyncio
async def test_checkout_unknown_merchant(engine):
    with pytest.raises(MerchantNotFoundException):
        await engine.initiate_checkout("nobody.myshopify.com", _checkout())


# ---- redirect return ----

@pytest.mark.asyncio
async def test_redirect_success_completes_and_resolves(engine, seed, gateway, driver, uow_factory):
    await seed.merchant()
    await seed.order()
    gateway.transactions["9001"] = transaction()

    outcome = await engine.handle_payment_redirect(
        SHOP, tx_ref="1001", raw_status="successful", transaction_id="9001"
    )
    assert outcome.status == "completed"
    assert outcome.redirect_url == f"https://{SHOP}/next/resolve"
    assert driver.ops() == ["resolve:payment"]
    assert driver.calls[0][2].session_id == "gid://shopify/PaymentSession/1001"

    order = await _order(uow_factory)
    assert order.status is OrderStatus.COMPLETED
    assert order.remote_tx_id == "9001"
    assert order.account_id == "acc-1"


@pytest.mark.asyncio
async def test_redirect_underpaid_rejects_with_charge_message(engine, seed, gateway, driver):
    await seed.merchant()
    await seed.order()
    gateway.transactions["9001"] = transaction(amount="400", charge_message="Insufficient funds")

    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="successful", transaction_id="9001")
    assert outcome.status == "failed"
    op, _, req = driver.calls[0]
    assert op == "reject:payment"
    assert req.merchant_message == "Insufficient funds"
    assert req.code == "PROCESSING_ERROR"


@pytest.mark.asyncio
async def test_redirect_failed_without_message_uses_default(engine, seed, gateway, driver):
    await seed.merchant()
    await seed.order()
    gateway.transactions["9001"] = transaction(status="failed")
    await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="failed", transaction_id="9001")
    assert driver.calls[0][2].merchant_message == "Payment failed"


@pytest.mark.asyncio
async def test_redirect_cancel_skips_gateway_and_returns_cancel_url(engine, seed, gateway, driver, uow_factory):
    await seed.merchant()
    await seed.order()
    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="cancelled", transaction_id="9001")
    assert outcome.status == "cancelled"
    assert outcome.redirect_url == "https://acme.test/cancel"
    assert gateway.verified == []
    assert driver.calls == []
    assert (await _order(uow_factory)).status is OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_redirect_unverified_with_legacy_stub_pends(engine, seed, driver, clock):
    await seed.merchant()
    await seed.order()
    await seed.legacy_stub("1001")
    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="successful", transaction_id="404")
    assert outcome.status == "pending"
    assert outcome.redirect_url == f"https://{SHOP}/next/pend"
    op, _, req = driver.calls[0]
    assert op == "pend:payment"
    assert req.expires_at == clock.now + timedelta(hours=36)
    assert req.reason == "BUYER_ACTION_REQUIRED"


@pytest.mark.asyncio
async def test_redirect_unverified_without_stub_cancels(engine, seed):
    await seed.merchant()
    await seed.order()
    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="successful", transaction_id="404")
    assert outcome.status == "cancelled"


@pytest.mark.asyncio
async def test_redirect_on_final_order_forwards_recorded_status(engine, seed, gateway, driver, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9002"] = transaction("9002", status="failed")

    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="failed", transaction_id="9002")
    assert outcome.status == "completed"
    assert driver.ops() == ["resolve:payment"]
    assert (await _order(uow_factory)).remote_tx_id == "9001"


@pytest.mark.asyncio
async def test_redirect_unknown_order(engine, seed):
    await seed.merchant()
    with pytest.raises(OrderNotFoundException):
        await engine.handle_payment_redirect(SHOP, tx_ref="missing", raw_status="successful")


@pytest.mark.asyncio
async def test_redirect_without_access_token_still_records(engine, seed, gateway, driver, uow_factory):
    await seed.merchant(token=None)
    await seed.order()
    gateway.transactions["9001"] = transaction()
    outcome = await engine.handle_payment_redirect(SHOP, tx_ref="1001", raw_status="successful", transaction_id="9001")
    assert outcome.redirect_url is None
    assert driver.calls == []
    assert (await _order(uow_factory)).status is OrderStatus.COMPLETED


# ---- async callback ----

@pytest.mark.asyncio
async def test_callback_requires_valid_signature(engine, seed, uow_factory):
    await seed.order()
    cb = _callback()
    with pytest.raises(AuthenticationException):
        await engine.handle_payment_callback(cb, None)
    with pytest.raises(AuthenticationException):
        await engine.handle_payment_callback(cb, "0" * 64)
    assert (await _order(uow_factory)).status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_callback_records_then_forwards_later(engine, seed, driver, deferred, uow_factory, policy):
    await seed.merchant()
    await seed.order()
    await seed.mirror_transaction("9001", "1001")
    policy.callback_forward_delay_seconds = 0.5
    cb = _callback()

    assert await engine.handle_payment_callback(cb, _signature(cb)) is True
    assert driver.calls == []
    order = await _order(uow_factory)
    assert order.status is OrderStatus.COMPLETED
    assert order.forward_pending is True
    assert deferred.pending_keys() == [f"order-forward:{SHOP}:1001"]

    await deferred.drain()
    assert driver.ops() == ["resolve:payment"]
    assert (await _order(uow_factory)).forward_pending is False


@pytest.mark.asyncio
async def test_callback_underpaid_mirror_transaction_fails(engine, seed, driver, deferred, uow_factory):
    await seed.merchant()
    await seed.order()
    await seed.mirror_transaction("9001", "1001", amount="100")
    cb = _callback()
    assert await engine.handle_payment_callback(cb, _signature(cb)) is True
    await deferred.drain()
    assert (await _order(uow_factory)).status is OrderStatus.FAILED
    assert driver.ops() == ["reject:payment"]


@pytest.mark.asyncio
async def test_failed_callback_is_ignored(engine, seed, deferred, uow_factory):
    await seed.order()
    cb = _callback(status="failed")
    assert await engine.handle_payment_callback(cb, _signature(cb)) is False
    assert (await _order(uow_factory)).status is OrderStatus.PENDING
    assert len(deferred) == 0


@pytest.mark.asyncio
async def test_callback_for_unknown_order(engine):
    cb = _callback(tx_ref="missing")
    with pytest.raises(OrderNotFoundException) as exc_info:
        await engine.handle_payment_callback(cb, _signature(cb))
    assert exc_info.value.message == "shopify order not found"


@pytest.mark.asyncio
async def test_callback_on_final_order_is_noop(engine, seed, deferred):
    await seed.order(status=OrderStatus.CANCELLED)
    await seed.mirror_transaction("9001", "1001")
    cb = _callback()
    assert await engine.handle_payment_callback(cb, _signature(cb)) is False
    assert len(deferred) == 0


@pytest.mark.asyncio
async def test_resume_pending_forwards(engine, seed, driver, deferred, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, forward_pending=True)
    await seed.order("1002")
    assert await engine.resume_pending_forwards() == 1
    await deferred.drain()
    assert driver.ops() == ["resolve:payment"]
    assert (await _order(uow_factory)).forward_pending is False


# ---- backfill ----

@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "wrong"])
async def test_backfill_rejects_bad_token(engine, token):
    with pytest.raises(AuthenticationException):
        await engine.backfill_pending_payments(token)


@pytest.mark.asyncio
async def test_backfill_reconciles_settled_live_orders(engine, seed, deferred, uow_factory):
    await seed.merchant()
    await seed.order("1001")
    await seed.order("1002", is_test=True)
    await seed.mirror_transaction("9001", "1001")
    await seed.mirror_transaction("9002", "1002")

    assert await engine.backfill_pending_payments(BACKFILL_TOKEN) == 1
    await deferred.drain()
    assert (await _order(uow_factory, "1001")).status is OrderStatus.COMPLETED
    assert (await _order(uow_factory, "1002")).status is OrderStatus.PENDING


# ---- refunds ----

def _refund_request(refund_id="r-1", payment_id="1001", amount="200", test=False):
    return RefundInitRequest(id=refund_id, gid=f"gid://shopify/RefundSession/{refund_id}",
                             payment_id=payment_id, amount=amount, currency="NGN", test=test)


@pytest.mark.asyncio
async def test_refund_init_is_idempotent(engine, seed):
    await seed.order()
    first = await engine.initiate_refund(_refund_request())
    second = await engine.initiate_refund(_refund_request())
    assert (first.created, first.message) == (True, REFUND_LOGGED)
    assert (second.created, second.message) == (False, REFUND_ALREADY_LOGGED)


@pytest.mark.asyncio
async def test_refund_init_unknown_order(engine):
    with pytest.raises(OrderNotFoundException) as exc_info:
        await engine.initiate_refund(_refund_request(payment_id="missing"))
    assert exc_info.value.message == "No corresponding shopify order found for refund request"


@pytest.mark.asyncio
async def test_refund_for_incomplete_payment_is_rejected(engine, seed, driver, gateway, uow_factory):
    await seed.merchant()
    await seed.order()
    await engine.initiate_refund(_refund_request())

    assert await engine.settle_refund("r-1") is RefundStatus.REJECTED
    op, _, req = driver.calls[0]
    assert op == "reject:refund"
    assert req.merchant_message == "Payment not completed"
    assert gateway.refund_submissions == []
    assert (await _refund(uow_factory)).status is RefundStatus.REJECTED


@pytest.mark.asyncio
async def test_refund_environment_mismatch_is_rejected(engine, seed, driver):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    await engine.initiate_refund(_refund_request(test=True))
    assert await engine.settle_refund("r-1") is RefundStatus.REJECTED
    assert driver.calls[0][2].merchant_message == "Can't refund orders made in different environments"


@pytest.mark.asyncio
async def test_refund_above_paid_amount_is_rejected(engine, seed, gateway, driver):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9001"] = transaction()
    await engine.initiate_refund(_refund_request(amount="600"))
    assert await engine.settle_refund("r-1") is RefundStatus.REJECTED
    assert driver.calls[0][2].merchant_message == "Refund amount greater than amount paid"


@pytest.mark.asyncio
async def test_refund_without_secret_key_is_rejected(engine, seed, gateway, driver, uow_factory):
    await seed.merchant(keys=None)
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9001"] = transaction()
    await engine.initiate_refund(_refund_request())
    assert await engine.settle_refund("r-1") is RefundStatus.REJECTED
    assert driver.calls[0][2].merchant_message == "Unable to process refund"
    # 不核验也不留给定时重试
    assert gateway.verified == []
    assert gateway.refund_submissions == []
    async with uow_factory(readonly=True) as uow:
        refund = await uow.refund_repository.get("r-1")
    assert refund.status is RefundStatus.REJECTED
    assert refund.retry_at is None


@pytest.mark.asyncio
async def test_refund_success_resolves(engine, seed, gateway, driver, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9001"] = transaction()
    await engine.initiate_refund(_refund_request())

    assert await engine.settle_refund("r-1") is RefundStatus.RESOLVED
    submission = gateway.refund_submissions[0]
    assert submission["gateway_ref"] == "FLW-REF-1"
    assert submission["amount"] == Decimal("200")
    assert driver.ops() == ["resolve:refund"]

    refund = await _refund(uow_factory)
    assert refund.status is RefundStatus.RESOLVED
    assert refund.meta.refund_api_req_successful is True
    assert refund.meta.last_api_response_status == 200
    assert len(refund.meta.attempts) == 1


@pytest.mark.asyncio
async def test_refund_submission_failure_schedules_retry(engine, seed, gateway, driver, clock, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9001"] = transaction()
    gateway.refund_results = [RefundSubmission(successful=False, status_code=502, body={"status": "error"})]
    await engine.initiate_refund(_refund_request())

    assert await engine.settle_refund("r-1") is RefundStatus.PENDING
    refund = await _refund(uow_factory)
    assert refund.retry_at == clock.ms() + 300_000
    assert refund.meta.refund_api_req_successful is False
    assert refund.meta.last_api_response_status == 502
    assert refund.meta.retry_count == 0
    assert driver.calls == []


@pytest.mark.asyncio
async def test_refund_unverifiable_is_deferred_to_scheduler(engine, seed, clock, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    await engine.initiate_refund(_refund_request())
    assert await engine.settle_refund("r-1") is RefundStatus.PENDING
    assert (await _refund(uow_factory)).retry_at == clock.ms() + 300_000


@pytest.mark.asyncio
async def test_settle_in_background_postpones_on_crash(engine, seed, gateway, clock, uow_factory):
    await seed.merchant()
    await seed.order(status=OrderStatus.COMPLETED, remote_tx_id="9001")
    gateway.transactions["9001"] = transaction()

    async def crash(**kwargs):
        raise RuntimeError("socket closed")

    gateway.submit_refund = crash
    await engine.initiate_refund(_refund_request())
    await engine.settle_refund_in_background("r-1")
    refund = await _refund(uow_factory)
    assert refund.status is RefundStatus.PENDING
    assert refund.retry_at == clock.ms() + 300_000
