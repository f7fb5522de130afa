"""Pytest bootstrap configuration.

Mandatory environment variables are set before any module that builds
settings at import time is collected.
"""
import os

os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("BACKFILL_TOKEN", "backfill-secret")
os.environ.setdefault("DEBUG", "true")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from application.dtos.payments import MerchantInfo, PaymentLinkRequest, RefundSubmission
from application.dtos.remote_session import PendRequest, RejectRequest, ResolveRequest, SessionTarget
from application.services.reconciliation_service import ReconciliationEngine
from application.services.refund_retry_scheduler import RefundRetryScheduler
from core.settings import ReconciliationPolicy
from domain.payment.entity import (
    GatewayKeys,
    GatewayTransaction,
    MerchantConfig,
    Order,
    OrderStatus,
    Refund,
    RefundMeta,
)
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.models.payment import GatewayOrderModel, GatewayTransactionModel
from infrastructure.security.signatures import CallbackAuthenticator
from infrastructure.security.vault import CredentialVault
from infrastructure.tasks.deferred import DelayedTaskQueue
from infrastructure.unit_of_work import uow_factory_for


SHOP = "acme.myshopify.com"
ACCESS_TOKEN = "shpat_test_access_token"
CALLBACK_SECRET = "callback-secret"
BACKFILL_TOKEN = "backfill-secret"
APP_BASE_URL = "https://recon.test"
LIVE_KEYS = GatewayKeys(
    sk="FLWSECK-1234567890abcdef1234-X",
    pk="FLWPUBK-1234567890abcdef1234-X",
    test_sk="FLWSECK_TEST-1234567890abcdef-X",
    test_pk="FLWPUBK_TEST-1234567890abcdef-X",
)
START = datetime(2025, 10, 19, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def ms(self) -> int:
        return int(self.now.timestamp() * 1000)


class FakeGateway:
    """In-memory gateway double; every call is recorded."""

    def __init__(self):
        self.transactions: dict[str, GatewayTransaction] = {}
        self.link: Optional[str] = "https://checkout.gateway.test/pay/abc"
        self.link_requests: list[PaymentLinkRequest] = []
        self.verified: list[Optional[str]] = []
        self.refund_results: list[RefundSubmission] = []
        self.refund_submissions: list[dict] = []
        self.valid_keys: set[str] = set()
        self.merchant_info: Optional[MerchantInfo] = None

    async def verify_transaction(self, tx_id, *, is_test, secret_key, tx_ref=None):
        self.verified.append(tx_id)
        # 空密钥时网关返回 401，真实客户端据此返回 None
        if not tx_id or not secret_key:
            return None
        return self.transactions.get(tx_id)

    async def create_payment_link(self, req, *, is_test, secret_key):
        self.link_requests.append(req)
        return self.link

    async def submit_refund(self, *, amount, gateway_ref, account_id, secret_key, is_test):
        self.refund_submissions.append(
            {"amount": amount, "gateway_ref": gateway_ref, "account_id": account_id, "secret_key": secret_key}
        )
        if self.refund_results:
            return self.refund_results.pop(0)
        return RefundSubmission(successful=True, status_code=200, body={"status": "success"})

    async def validate_secret_key(self, key):
        return key in self.valid_keys

    async def get_merchant_info(self, public_key):
        return self.merchant_info

    async def aclose(self):
        return None


class FakeDriver:
    """Remote session double returning a per-operation nextAction URL."""

    def __init__(self):
        self.calls: list[tuple[str, SessionTarget, object]] = []

    def ops(self) -> list[str]:
        return [op for op, _, _ in self.calls]

    async def resolve(self, target: SessionTarget, req: ResolveRequest):
        self.calls.append((f"resolve:{req.kind.value}", target, req))
        return f"https://{target.shop}/next/resolve"

    async def pend(self, target: SessionTarget, req: PendRequest):
        self.calls.append(("pend:payment", target, req))
        return f"https://{target.shop}/next/pend"

    async def reject(self, target: SessionTarget, req: RejectRequest):
        self.calls.append((f"reject:{req.kind.value}", target, req))
        return f"https://{target.shop}/next/reject"

    async def configure_payments_app(self, target, *, ready, external_handle):
        self.calls.append(("configure", target, {"ready": ready, "external_handle": external_handle}))
        return True

    async def aclose(self):
        return None


class Seeder:
    """Writes fixture rows through the same repositories the services use."""

    def __init__(self, uow_factory, vault: CredentialVault):
        self.uow_factory = uow_factory
        self.vault = vault

    async def merchant(self, domain: str = SHOP, *, token: Optional[str] = ACCESS_TOKEN,
                       keys: Optional[GatewayKeys] = LIVE_KEYS, account_id: str = "acc-1"):
        config = MerchantConfig(
            domain=domain,
            encrypted_session=self.vault.encrypt(token) if token else None,
            encrypted_keys=self.vault.encrypt_json(keys.to_dict()) if keys else None,
            account_id=account_id,
            installed=True,
        )
        async with self.uow_factory() as uow:
            return await uow.merchant_repository.save(config)

    async def order(self, order_id: str = "1001", *, merchant: str = SHOP, amount: str = "500",
                    currency: str = "NGN", is_test: bool = False, status: OrderStatus = OrderStatus.PENDING,
                    remote_tx_id: Optional[str] = None, cancel_url: Optional[str] = "https://acme.test/cancel",
                    forward_pending: bool = False):
        order = Order(
            merchant=merchant,
            order_id=order_id,
            gid=f"gid://shopify/PaymentSession/{order_id}",
            raw={"id": order_id, "amount": amount, "currency": currency, "test": is_test, "cancel_url": cancel_url},
            is_test=is_test,
            hosted_link=f"https://checkout.gateway.test/pay/{order_id}",
            status=status,
            remote_tx_id=remote_tx_id,
            forward_pending=forward_pending,
        )
        async with self.uow_factory() as uow:
            return await uow.order_repository.create(order)

    async def mirror_transaction(self, tx_id: str, tx_ref: str, *, status: str = "successful",
                                 amount: str = "500", currency: str = "NGN", account_id: str = "acc-1",
                                 flw_ref: str = "FLW-REF-1", is_test: bool = False):
        async with self.uow_factory() as uow:
            uow.session.add(GatewayTransactionModel(
                id=int(tx_id), tx_ref=tx_ref, flw_ref=flw_ref, status=status, amount=Decimal(amount),
                currency=currency, account_id=account_id, is_test=is_test,
            ))

    async def legacy_stub(self, tx_ref: str):
        async with self.uow_factory() as uow:
            uow.session.add(GatewayOrderModel(tx_ref=tx_ref))

    async def refund(self, refund_id: str = "r-1", *, order_id: str = "1001", amount: str = "200",
                     is_test: bool = False, remote_tx_id: Optional[str] = "9001",
                     meta: Optional[RefundMeta] = None, retry_at: Optional[int] = None):
        refund = Refund(
            refund_id=refund_id,
            gid=f"gid://shopify/RefundSession/{refund_id}",
            order_id=order_id,
            merchant=SHOP,
            amount=Decimal(amount),
            currency="NGN",
            is_test=is_test,
            remote_tx_id=remote_tx_id,
            account_id="acc-1",
            meta=meta or RefundMeta(),
            retry_at=retry_at,
        )
        async with self.uow_factory() as uow:
            refund, _ = await uow.refund_repository.create_or_get(refund)
        return refund


def transaction(tx_id: str = "9001", *, status: str = "successful", amount: str = "500",
                currency: str = "NGN", charge_message: Optional[str] = None) -> GatewayTransaction:
    return GatewayTransaction(
        id=tx_id,
        status=status,
        amount=Decimal(amount),
        currency=currency,
        tx_ref="1001",
        flw_ref="FLW-REF-1",
        charge_message=charge_message,
        account_id="acc-1",
    )


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'recon.db'}", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(db_engine):
    return uow_factory_for(build_session_factory(db_engine))


@pytest.fixture
def vault():
    return CredentialVault("test-encryption-key")


@pytest.fixture
def seed(uow_factory, vault):
    return Seeder(uow_factory, vault)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
async def deferred():
    queue = DelayedTaskQueue()
    yield queue
    await queue.shutdown()


@pytest.fixture
def policy():
    return ReconciliationPolicy(callback_forward_delay_seconds=0)


@pytest.fixture
def engine(uow_factory, vault, gateway, driver, deferred, policy, clock):
    return ReconciliationEngine(
        uow_factory=uow_factory,
        cipher=vault,
        gateway=gateway,
        driver=driver,
        deferred=deferred,
        authenticator=CallbackAuthenticator(CALLBACK_SECRET),
        policy=policy,
        app_base_url=APP_BASE_URL,
        backfill_token=BACKFILL_TOKEN,
        clock=clock,
    )


@pytest.fixture
def scheduler(engine, uow_factory, clock):
    return RefundRetryScheduler(engine, uow_factory, clock=clock)
