"""Mercado Pago client: parsing, retry policy and error mapping."""

from decimal import Decimal

import httpx
import pytest

from tablepay.services.provider.client import (
    MercadoPagoClient,
    ProviderError,
    ProviderPaymentNotFound,
    ProviderUnavailable,
)

PAYMENT = {
    "id": 123456,
    "status": "approved",
    "status_detail": "accredited",
    "transaction_amount": 25.5,
    "payment_type_id": "credit_card",
    "external_reference": "order-1",
    "metadata": {"order_id": "order-1"},
}


def make_client(handler, **kwargs):
    kwargs.setdefault("max_retries", 3)
    return MercadoPagoClient(
        "https://provider.test",
        "token-1",
        backoff_seconds=0,
        mock_payments=kwargs.pop("mock_payments", False),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_fetches_and_parses_payment():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=PAYMENT)

    client = make_client(handler)
    payment = await client.get_payment("123456")
    await client.close()

    assert payment.id == "123456"
    assert payment.status == "approved"
    assert payment.amount == Decimal("25.5")
    assert payment.order_reference == "order-1"
    assert seen[0].url.path == "/v1/payments/123456"
    assert seen[0].headers["authorization"] == "Bearer token-1"


async def test_order_reference_falls_back_to_external_reference():
    payload = dict(PAYMENT, metadata=None)
    client = make_client(lambda request: httpx.Response(200, json=payload))

    payment = await client.get_payment("123456")

    assert payment.order_reference == "order-1"


async def test_retries_transient_failures_then_succeeds():
    responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, json=PAYMENT)]
    calls = []

    def handler(request):
        calls.append(request)
        return responses[len(calls) - 1]

    payment = await make_client(handler).get_payment("123456")

    assert payment.status == "approved"
    assert len(calls) == 3


async def test_transport_errors_exhaust_into_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await make_client(handler, max_retries=2).get_payment("1")
    assert len(calls) == 2


async def test_not_found_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"message": "not found"})

    with pytest.raises(ProviderPaymentNotFound):
        await make_client(handler).get_payment("1")
    assert len(calls) == 1


async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"message": "invalid token"})

    with pytest.raises(ProviderError) as excinfo:
        await make_client(handler).get_payment("1")
    assert excinfo.value.status_code == 401
    assert not isinstance(excinfo.value, ProviderUnavailable)
    assert len(calls) == 1


async def test_mock_payments_skip_the_network():
    def handler(request):
        raise AssertionError("network must not be used")

    payment = await make_client(handler, mock_payments=True).get_payment("mock_abc")

    assert payment.status == "approved"
