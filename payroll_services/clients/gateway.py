"""
HTTP payment gateway.

Transfers are ``POST /v1/transfers`` with an ``Idempotency-Key`` header;
status lookups are ``GET /v1/transfers/{idempotency_key}``. Amounts travel
as integer strings in the asset's smallest unit.

Error mapping:
    timeout, transport error, 408, 429, 5xx  -> RetryableGatewayError
    other 4xx                                -> NonRetryableGatewayError
                                                (reason code from the body)
    404 on a status lookup                   -> GatewayStatus.UNKNOWN
"""

from __future__ import annotations

import re
from typing import Any

import httpx

from payroll_config.schema import GatewaySettings
from payroll_kernel.exceptions import NonRetryableGatewayError, RetryableGatewayError
from payroll_kernel.logging_config import get_logger
from payroll_services.ports import GatewayReceipt, GatewayStatus

logger = get_logger("clients.gateway")

TRANSFERS_PATH = "/v1/transfers"
RETRYABLE_STATUSES = {408, 429}


def _error_body(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), error.get("message", "")
    return None, str(body)[:200]


def _receipt(body: dict[str, Any]) -> GatewayReceipt:
    try:
        status = GatewayStatus(str(body.get("status", "")).lower())
    except ValueError:
        status = GatewayStatus.UNKNOWN
    return GatewayReceipt(status=status, tx_id=body.get("tx_id"), message=body.get("message"))


class HttpPaymentGateway:
    """JSON transfer API client implementing the PaymentGateway port."""

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or GatewaySettings()
        self._account_pattern = re.compile(self.settings.account_pattern)
        self.client = client or httpx.Client(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
        )
        if api_key:
            self.client.headers["Authorization"] = f"Bearer {api_key}"

    def close(self) -> None:
        self.client.close()

    def validate_account(self, account: str) -> bool:
        return bool(account) and self._account_pattern.fullmatch(account) is not None

    def submit(
        self,
        destination_account: str,
        amount: int,
        memo: str,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayReceipt:
        try:
            response = self.client.post(
                TRANSFERS_PATH,
                json={
                    "destination": destination_account,
                    "amount": str(int(amount)),
                    "memo": memo,
                },
                headers={"Idempotency-Key": idempotency_key},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise RetryableGatewayError("timeout", str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise RetryableGatewayError("transport_error", str(exc)) from exc

        self._raise_for_error(response)
        receipt = _receipt(response.json())
        logger.debug("gateway_transfer_accepted", extra={
            "idempotency_key": idempotency_key,
            "gateway_status": receipt.status.value,
        })
        return receipt

    def query_status(self, idempotency_key: str) -> GatewayReceipt:
        try:
            response = self.client.get(f"{TRANSFERS_PATH}/{idempotency_key}")
        except httpx.TimeoutException as exc:
            raise RetryableGatewayError("timeout", str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise RetryableGatewayError("transport_error", str(exc)) from exc

        if response.status_code == 404:
            return GatewayReceipt(status=GatewayStatus.UNKNOWN)
        self._raise_for_error(response)
        return _receipt(response.json())

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        code, message = _error_body(response)
        if status in RETRYABLE_STATUSES or status >= 500:
            raise RetryableGatewayError(code or f"http_{status}", message)
        raise NonRetryableGatewayError(code or "rejected", message)
