"""Tests for HttpPaymentGateway error mapping and request shape."""

import json

import httpx
import pytest

from payroll_kernel.exceptions import NonRetryableGatewayError, RetryableGatewayError
from payroll_services.clients.gateway import HttpPaymentGateway
from payroll_services.ports import GatewayStatus

KEY = "payout_12345678_" + "a" * 32


def _gateway(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
    return HttpPaymentGateway(api_key="gw-key", client=client)


def _submit(gateway):
    return gateway.submit(
        destination_account="0.0.1001",
        amount=500000000,
        memo="Payroll run",
        idempotency_key=KEY,
        timeout=5.0,
    )


class TestValidateAccount:

    @pytest.mark.parametrize("account,valid", [
        ("0.0.1001", True),
        ("0.0.", False),
        ("1001", False),
        ("", False),
        ("0.0.1001 ", False),
    ])
    def test_pattern(self, account, valid):
        assert _gateway(lambda r: httpx.Response(200)).validate_account(account) is valid


class TestSubmit:

    def test_request_shape_and_confirmed_receipt(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "CONFIRMED", "tx_id": "0.0.2@1717.1"})

        receipt = _submit(_gateway(handler))

        assert receipt.status == GatewayStatus.CONFIRMED
        assert receipt.tx_id == "0.0.2@1717.1"
        request = requests[0]
        assert request.url.path == "/v1/transfers"
        assert request.headers["Idempotency-Key"] == KEY
        assert request.headers["Authorization"] == "Bearer gw-key"
        assert json.loads(request.content) == {
            "destination": "0.0.1001",
            "amount": "500000000",
            "memo": "Payroll run",
        }

    def test_pending_receipt(self):
        receipt = _submit(_gateway(lambda r: httpx.Response(202, json={"status": "submitted"})))
        assert receipt.status == GatewayStatus.SUBMITTED

    def test_unrecognised_status_is_unknown(self):
        receipt = _submit(_gateway(lambda r: httpx.Response(200, json={"status": "weird"})))
        assert receipt.status == GatewayStatus.UNKNOWN

    @pytest.mark.parametrize("status,reason", [(408, "http_408"), (429, "http_429"), (503, "http_503")])
    def test_retryable_statuses(self, status, reason):
        with pytest.raises(RetryableGatewayError) as exc_info:
            _submit(_gateway(lambda r: httpx.Response(status)))
        assert exc_info.value.reason_code == reason

    def test_rejection_carries_reason_code(self):
        body = {"error": {"code": "below_network_minimum", "message": "amount too small"}}

        with pytest.raises(NonRetryableGatewayError) as exc_info:
            _submit(_gateway(lambda r: httpx.Response(422, json=body)))

        assert exc_info.value.reason_code == "below_network_minimum"
        assert exc_info.value.gateway_message == "amount too small"

    def test_rejection_without_body(self):
        with pytest.raises(NonRetryableGatewayError) as exc_info:
            _submit(_gateway(lambda r: httpx.Response(400, text="bad")))
        assert exc_info.value.reason_code == "rejected"

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(RetryableGatewayError) as exc_info:
            _submit(_gateway(handler))
        assert exc_info.value.reason_code == "timeout"

    def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RetryableGatewayError) as exc_info:
            _submit(_gateway(handler))
        assert exc_info.value.reason_code == "transport_error"


class TestQueryStatus:

    def test_known_transfer(self):
        def handler(request):
            assert request.url.path == f"/v1/transfers/{KEY}"
            return httpx.Response(200, json={"status": "confirmed", "tx_id": "tx-1"})

        receipt = _gateway(handler).query_status(KEY)
        assert receipt.status == GatewayStatus.CONFIRMED
        assert receipt.tx_id == "tx-1"

    def test_unknown_transfer(self):
        receipt = _gateway(lambda r: httpx.Response(404)).query_status(KEY)
        assert receipt.status == GatewayStatus.UNKNOWN

    def test_server_error(self):
        with pytest.raises(RetryableGatewayError):
            _gateway(lambda r: httpx.Response(500)).query_status(KEY)
