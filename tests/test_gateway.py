"""Tests for the payment gateway backends."""

import json
from decimal import Decimal

import httpx
import pytest

from photo_escrow.config import settings
from photo_escrow.exceptions import PaymentCaptureError, PayoutGatewayError
from photo_escrow.services.gateway import (
    HttpPaymentGateway,
    LogPaymentGateway,
    get_payment_gateway,
)


def _gateway(handler) -> HttpPaymentGateway:  # type: ignore[no-untyped-def]
    return HttpPaymentGateway(
        "https://gateway.test/", "sk_test", 5, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_payout_sends_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"reference": "po_123"})

    reference = await _gateway(handler).payout(Decimal("45.00"), "photog-1", "tx-1")

    assert reference == "po_123"
    request = seen[0]
    assert request.url == "https://gateway.test/payouts"
    assert request.headers["Idempotency-Key"] == "payout:tx-1"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert json.loads(request.content) == {"amount": "45.00", "account": "photog-1"}


@pytest.mark.asyncio
async def test_already_processed_key_is_success() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"reference": "rf_existing"})

    assert await _gateway(handler).refund(Decimal("50.00"), "buyer-1", "tx-1") == "rf_existing"


@pytest.mark.asyncio
async def test_server_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    with pytest.raises(PayoutGatewayError) as exc:
        await _gateway(handler).payout(Decimal("45.00"), "photog-1", "tx-1")
    assert exc.value.details == {"status_code": 503}


@pytest.mark.asyncio
async def test_timeout_maps_to_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(PayoutGatewayError) as exc:
        await _gateway(handler).payout(Decimal("45.00"), "photog-1", "tx-1")
    assert exc.value.error_code == "timeout"


@pytest.mark.asyncio
async def test_connection_error_maps_to_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PayoutGatewayError) as exc:
        await _gateway(handler).refund(Decimal("50.00"), "buyer-1", "tx-1")
    assert exc.value.error_code == "connection_error"


@pytest.mark.asyncio
async def test_capture_declined() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"error": "card_declined"})

    with pytest.raises(PaymentCaptureError):
        await _gateway(handler).capture("tx-1", Decimal("50.00"))


@pytest.mark.asyncio
async def test_capture_returns_reference() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/captures"
        return httpx.Response(200, json={"reference": "cap_1"})

    assert await _gateway(handler).capture("tx-1", Decimal("50.00")) == "cap_1"


@pytest.mark.asyncio
async def test_log_gateway_returns_references() -> None:
    gateway = LogPaymentGateway()
    assert (await gateway.capture("tx-1", Decimal("1.00"))).startswith("cap_")
    assert (await gateway.payout(Decimal("1.00"), "a", "k")).startswith("po_")
    assert (await gateway.refund(Decimal("1.00"), "a", "k")).startswith("rf_")


def test_backend_selection() -> None:
    assert isinstance(get_payment_gateway(), LogPaymentGateway)
    object.__setattr__(settings, "payment_gateway_backend", "http")
    object.__setattr__(settings, "payment_gateway_url", "https://gateway.test")
    assert isinstance(get_payment_gateway(), HttpPaymentGateway)


@pytest.mark.asyncio
async def test_operations_use_distinct_idempotency_keys() -> None:
    keys: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers["Idempotency-Key"])
        return httpx.Response(201, json={"reference": "ref"})

    gateway = _gateway(handler)
    await gateway.capture("tx-1", Decimal("50.00"))
    await gateway.payout(Decimal("45.00"), "photog-1", "tx-1")
    await gateway.refund(Decimal("50.00"), "buyer-1", "tx-1")

    assert keys == ["capture:tx-1", "payout:tx-1", "refund:tx-1"]


@pytest.mark.asyncio
async def test_conflict_without_reference_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"error": "idempotency key already used"})

    with pytest.raises(PayoutGatewayError) as exc:
        await _gateway(handler).payout(Decimal("45.00"), "photog-1", "tx-1")
    assert exc.value.error_code == "malformed_response"
    assert exc.value.details == {"status_code": 409}


@pytest.mark.asyncio
async def test_non_json_success_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>OK</html>")

    with pytest.raises(PayoutGatewayError) as exc:
        await _gateway(handler).refund(Decimal("50.00"), "buyer-1", "tx-1")
    assert exc.value.error_code == "malformed_response"


@pytest.mark.asyncio
async def test_capture_without_reference_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "ok"})

    with pytest.raises(PaymentCaptureError):
        await _gateway(handler).capture("tx-1", Decimal("50.00"))
