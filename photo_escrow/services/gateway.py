"""Payment gateway capability.

Supports two backends:
- HTTP via httpx (production) — every call carries an Idempotency-Key header
- Log-only (development / testing) — logs the call and returns a synthetic reference

Set PAYMENT_GATEWAY_BACKEND=http and configure PAYMENT_GATEWAY_* settings for production.
"""

import logging
import uuid
from decimal import Decimal
from typing import Protocol

import httpx

from photo_escrow.config import settings
from photo_escrow.exceptions import PaymentCaptureError, PayoutGatewayError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def capture(self, transaction_id: str, amount: Decimal) -> str: ...

    async def payout(self, amount: Decimal, account: str, idempotency_key: str) -> str: ...

    async def refund(self, amount: Decimal, account: str, idempotency_key: str) -> str: ...


class LogPaymentGateway:
    """Development gateway — logs instead of moving money."""

    async def capture(self, transaction_id: str, amount: Decimal) -> str:
        logger.info("GATEWAY capture tx=%s amount=%s", transaction_id, amount)
        return f"cap_{uuid.uuid4().hex[:16]}"

    async def payout(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        logger.info("GATEWAY payout account=%s amount=%s key=%s", account, amount, idempotency_key)
        return f"po_{uuid.uuid4().hex[:16]}"

    async def refund(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        logger.info("GATEWAY refund account=%s amount=%s key=%s", account, amount, idempotency_key)
        return f"rf_{uuid.uuid4().hex[:16]}"


def _reference(resp: httpx.Response) -> str | None:
    """The gateway's reference from a JSON reply, or None if the body has none."""
    try:
        body = resp.json()
    except ValueError:
        return None
    reference = body.get("reference") if isinstance(body, dict) else None
    return reference if isinstance(reference, str) and reference else None


class HttpPaymentGateway:
    """Production gateway — JSON over HTTPS.

    Idempotency keys are scoped by operation (``capture:``, ``payout:``,
    ``refund:``) since the gateway deduplicates per account, not per path.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, body: dict, idempotency_key: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            return await client.post(
                f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Idempotency-Key": idempotency_key,
                },
                json=body,
            )

    async def capture(self, transaction_id: str, amount: Decimal) -> str:
        try:
            resp = await self._post(
                "/captures",
                {"transaction_id": transaction_id, "amount": str(amount)},
                f"capture:{transaction_id}",
            )
        except httpx.RequestError as e:
            logger.error("Capture for %s failed to reach gateway: %s", transaction_id, e)
            raise PaymentCaptureError("Failed to reach payment gateway") from e

        if resp.status_code not in (200, 201):
            logger.error("Capture for %s returned %d: %s", transaction_id, resp.status_code, resp.text[:500])
            raise PaymentCaptureError(
                f"Payment capture failed (status {resp.status_code})",
                details={"status_code": resp.status_code},
            )
        reference = _reference(resp)
        if reference is None:
            logger.error("Capture for %s returned no reference: %s", transaction_id, resp.text[:500])
            raise PaymentCaptureError(
                "Payment gateway returned a malformed capture response",
                details={"status_code": resp.status_code},
            )
        return reference

    async def _send_money(self, operation: str, amount: Decimal, account: str, idempotency_key: str) -> str:
        try:
            resp = await self._post(
                f"/{operation}s",
                {"amount": str(amount), "account": account},
                f"{operation}:{idempotency_key}",
            )
        except httpx.TimeoutException as e:
            raise PayoutGatewayError("Payment gateway timed out", error_code="timeout") from e
        except httpx.RequestError as e:
            raise PayoutGatewayError(f"Payment gateway unreachable: {e}", error_code="connection_error") from e

        if resp.status_code not in (200, 201, 409):
            raise PayoutGatewayError(
                f"Payment gateway returned {resp.status_code}: {resp.text[:200]}",
                details={"status_code": resp.status_code},
            )
        # 409 means the gateway already processed this key and echoes its reference
        reference = _reference(resp)
        if reference is None:
            raise PayoutGatewayError(
                f"Payment gateway returned {resp.status_code} without a reference: {resp.text[:200]}",
                error_code="malformed_response",
                details={"status_code": resp.status_code},
            )
        return reference

    async def payout(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        return await self._send_money("payout", amount, account, idempotency_key)

    async def refund(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        return await self._send_money("refund", amount, account, idempotency_key)


def get_payment_gateway() -> PaymentGateway:
    if settings.payment_gateway_backend == "http":
        return HttpPaymentGateway(
            settings.payment_gateway_url,
            settings.payment_gateway_api_key,
            settings.payment_gateway_timeout_seconds,
        )
    return LogPaymentGateway()
