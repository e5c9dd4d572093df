import json

import httpx
import pytest

from shared.errors import ErrorKind
from services.payments.gateway import KhaltiGateway


def gateway_with(settings, handler):
    return KhaltiGateway(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_initiate_posts_order_and_return_urls(settings):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"pidx": "abc", "payment_url": "https://pay.khalti.com/?pidx=abc"})

    result = await gateway_with(settings, handler).initiate(2500, "order-1", "Lamp")

    assert result.ok
    assert result.value.pidx == "abc"
    assert result.value.payment_url == "https://pay.khalti.com/?pidx=abc"
    assert seen["url"] == "https://a.khalti.com/api/v2/epayment/initiate/"
    assert seen["auth"] == "Key test-khalti-key"
    assert seen["body"] == {
        "return_url": "http://localhost:5173/payment-success",
        "website_url": "http://localhost:5173",
        "amount": 2500,
        "purchase_order_id": "order-1",
        "purchase_order_name": "Lamp",
    }


@pytest.mark.asyncio
async def test_missing_secret_is_a_configuration_error(settings):
    def handler(request):
        raise AssertionError("no request expected")

    settings = settings.model_copy(update={"KHALTI_SECRET_KEY": None})
    result = await gateway_with(settings, handler).lookup("abc")

    assert result.error.kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_provider_error_body_is_passed_through(settings):
    def handler(request):
        return httpx.Response(400, json={"amount": ["Amount should be greater than Rs. 10"]})

    result = await gateway_with(settings, handler).initiate(500, "o", "n")

    assert result.error.kind == ErrorKind.UPSTREAM
    assert result.error.message == {"amount": ["Amount should be greater than Rs. 10"]}


@pytest.mark.asyncio
async def test_initiate_without_pidx_fails(settings):
    result = await gateway_with(settings, lambda request: httpx.Response(200, json={})).initiate(1000, "o", "n")
    assert result.error.kind == ErrorKind.UPSTREAM


@pytest.mark.asyncio
async def test_transport_failure_is_upstream(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await gateway_with(settings, handler).lookup("abc")

    assert result.error.kind == ErrorKind.UPSTREAM


@pytest.mark.asyncio
async def test_lookup_reports_status(settings):
    def handler(request):
        assert json.loads(request.content) == {"pidx": "abc"}
        return httpx.Response(200, json={"pidx": "abc", "status": "Completed", "total_amount": 1000})

    result = await gateway_with(settings, handler).lookup("abc")

    assert result.value.status == "Completed"
    assert result.value.raw["total_amount"] == 1000


@pytest.mark.asyncio
async def test_lookup_without_status_is_unknown(settings):
    result = await gateway_with(settings, lambda request: httpx.Response(200, json={"pidx": "abc"})).lookup("abc")
    assert result.value.status == "Unknown"
