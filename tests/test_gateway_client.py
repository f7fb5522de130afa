import json
from decimal import Decimal

import httpx
import pytest
import respx

from application.dtos.payments import PaymentLinkRequest
from core.settings import GatewaySettings, RefundApiSettings
from infrastructure.external.payments.gateway_client import GatewayClient
from infrastructure.security.signatures import REFUND_SIGNATURE_HEADER, compute_refund_signature


GATEWAY = "https://gw.test"
TEST_GATEWAY = "https://gw-sandbox.test"
REFUND_API = "https://refunds.test"


@pytest.fixture
async def client():
    c = GatewayClient(
        gateway=GatewaySettings(api_url=GATEWAY, test_api_url=TEST_GATEWAY),
        refund_api=RefundApiSettings(api_url=REFUND_API, test_api_url=REFUND_API, secret="refund-secret"),
        retry={"max": 0, "base": 0.0},
    )
    yield c
    await c.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_verify_transaction_maps_fields(client):
    route = respx.get(f"{GATEWAY}/v3/transactions/9001/verify").mock(
        return_value=httpx.Response(200, json={
            "status": "success",
            "data": {
                "id": 9001, "status": "successful", "amount": 500, "currency": "NGN",
                "tx_ref": "1001", "flw_ref": "FLW-1", "processor_response": "Approved",
                "account_id": 77,
            },
        })
    )
    tx = await client.verify_transaction("9001", is_test=False, secret_key="sk-live", tx_ref="1001")
    assert route.called
    assert route.calls.last.request.headers["Authorization"] == "Bearer sk-live"
    assert tx.id == "9001"
    assert tx.amount == Decimal("500")
    assert tx.flw_ref == "FLW-1"
    assert tx.charge_message == "Approved"
    assert tx.account_id == "77"


@pytest.mark.asyncio
@respx.mock
async def test_verify_uses_sandbox_for_test_orders(client):
    route = respx.get(f"{TEST_GATEWAY}/v3/transactions/9001/verify").mock(
        return_value=httpx.Response(200, json={"data": {"id": 9001, "status": "successful"}})
    )
    assert (await client.verify_transaction("9001", is_test=True, secret_key="sk-test")).status == "successful"
    assert route.called


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, body", [(404, None), (500, "boom"), (200, {"data": None})])
async def test_verify_failures_are_no_signal(client, status_code, body):
    with respx.mock:
        kwargs = {"json": body} if isinstance(body, dict) else {"text": body or ""}
        respx.get(f"{GATEWAY}/v3/transactions/9001/verify").mock(
            return_value=httpx.Response(status_code, **kwargs)
        )
        assert await client.verify_transaction("9001", is_test=False, secret_key="sk") is None


@pytest.mark.asyncio
@respx.mock
async def test_verify_transport_error_is_no_signal(client):
    respx.get(f"{GATEWAY}/v3/transactions/9001/verify").mock(side_effect=httpx.ConnectError("down"))
    assert await client.verify_transaction("9001", is_test=False, secret_key="sk") is None


@pytest.mark.asyncio
async def test_verify_without_id_skips_call(client):
    assert await client.verify_transaction(None, is_test=False, secret_key="sk") is None


@pytest.mark.asyncio
@respx.mock
async def test_create_payment_link(client):
    route = respx.post(f"{GATEWAY}/v3/payments").mock(
        return_value=httpx.Response(200, json={"status": "success", "data": {"link": "https://pay.test/x"}})
    )
    req = PaymentLinkRequest(
        tx_ref="1001", amount=Decimal("500"), currency="NGN", redirect_url="https://recon.test/r",
        customer_email="a@b.c", customer_name="FNAME LNAME", shop="acme.myshopify.com",
    )
    assert await client.create_payment_link(req, is_test=False, secret_key="sk") == "https://pay.test/x"
    body = json.loads(route.calls.last.request.content)
    assert body["tx_ref"] == "1001"
    assert body["meta"]["shopify_shop"] == "acme.myshopify.com"

    route.mock(return_value=httpx.Response(400, json={"status": "error"}))
    assert await client.create_payment_link(req, is_test=False, secret_key="sk") is None


@pytest.mark.asyncio
@respx.mock
async def test_submit_refund_signs_request(client):
    route = respx.post(f"{REFUND_API}/cc/gpx/refunds").mock(
        return_value=httpx.Response(200, json={"status": "success"})
    )
    result = await client.submit_refund(
        amount=Decimal("200"), gateway_ref="FLW-1", account_id="acc-1", secret_key="sk", is_test=False
    )
    assert result.successful is True
    assert result.status_code == 200
    request = route.calls.last.request
    assert request.headers[REFUND_SIGNATURE_HEADER] == compute_refund_signature("refund-secret", "acc-1", "FLW-1")
    assert json.loads(request.content) == {"amount": "200", "ref": "FLW-1", "seckey": "sk"}


@pytest.mark.asyncio
@respx.mock
async def test_submit_refund_failure_is_recorded_not_raised(client):
    respx.post(f"{REFUND_API}/cc/gpx/refunds").mock(return_value=httpx.Response(502, json={"status": "error"}))
    result = await client.submit_refund(
        amount=Decimal("200"), gateway_ref="FLW-1", account_id="acc-1", secret_key="sk", is_test=False
    )
    assert result.successful is False
    assert result.status_code == 502
    assert result.body == {"status": "error"}


@pytest.mark.asyncio
@respx.mock
async def test_validate_secret_key_and_merchant_info(client):
    respx.get(f"{GATEWAY}/v3/transfers/fee").mock(
        side_effect=lambda request: httpx.Response(
            200 if request.headers["Authorization"] == "Bearer good" else 401
        )
    )
    respx.get(f"{GATEWAY}/flwv3-pug/getpaidx/api/mercinfo").mock(
        return_value=httpx.Response(200, json={"mn": "Acme Stores", "id": 42})
    )
    assert await client.validate_secret_key("good") is True
    assert await client.validate_secret_key("bad") is False
    assert await client.validate_secret_key("") is False
    info = await client.get_merchant_info("pk")
    assert info.business_name == "Acme Stores"
    assert info.account_id == "42"
