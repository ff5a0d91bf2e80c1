"""Tests for the eWAY gateway client (HTTP layer mocked)."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from paybridge.errors import GatewayTransientError
from paybridge.services.gateway import EwayGatewayClient, to_minor_units


def _client(status_code=200, body=None, side_effect=None):
    http = MagicMock()
    if side_effect is not None:
        http.request.side_effect = side_effect
    else:
        resp = MagicMock(status_code=status_code)
        if isinstance(body, Exception):
            resp.json.side_effect = body
        else:
            resp.json.return_value = body or {}
        http.request.return_value = resp
    client = EwayGatewayClient("key", "pass", "https://api.sandbox.ewaypayments.com/", http=http)
    return client, http


class TestRequest:
    """What goes over the wire."""

    def test_token_payment_body(self):
        client, http = _client(body={"TransactionID": 1, "TransactionStatus": True, "ResponseCode": "00"})
        client.charge("918273645501", Decimal("29.99"), "aud", "PB-20240103-ABCD1234", transaction_type="Recurring")

        method, url = http.request.call_args[0]
        body = http.request.call_args[1]["json"]
        assert method == "POST"
        assert url == "https://api.sandbox.ewaypayments.com/Transaction"
        assert body["Method"] == "TokenPayment"
        assert body["TransactionType"] == "Recurring"
        assert body["Customer"]["TokenCustomerID"] == "918273645501"
        assert body["Payment"]["TotalAmount"] == 2999
        assert body["Payment"]["CurrencyCode"] == "AUD"
        assert body["Payment"]["InvoiceReference"] == "PB-20240103-ABCD1234"
        assert http.request.call_args[1]["timeout"] == 20
        assert http.auth == ("key", "pass")

    def test_minor_units_rounding(self):
        assert to_minor_units("10.005") == 1001
        assert to_minor_units(Decimal("0.10")) == 10

    def test_credentials_required(self):
        with pytest.raises(ValueError):
            EwayGatewayClient("", "pass", "https://example.test")

    def test_from_config(self, app):
        client = EwayGatewayClient.from_config(app.config)
        assert client.endpoint == "https://api.sandbox.ewaypayments.com"
        assert client.timeout == app.config["GATEWAY_TIMEOUT_SECONDS"]


class TestResponses:
    """Response mapping to ChargeResult."""

    def test_approved(self):
        client, _ = _client(body={
            "TransactionID": 11223344, "TransactionStatus": True,
            "ResponseCode": "00", "ResponseMessage": "A2000", "BeagleScore": 0,
        })
        result = client.charge("tok", "29.99", "AUD", "PB-1")
        assert result.status == "approved"
        assert result.gateway_transaction_id == "11223344"
        assert result.code == "00"

    def test_approved_by_code_only(self):
        client, _ = _client(body={"TransactionID": 5, "ResponseCode": "08"})
        assert client.charge("tok", "1.00", "AUD", "PB-1").status == "approved"

    def test_declined(self):
        client, _ = _client(body={
            "TransactionID": 11223345, "TransactionStatus": False,
            "ResponseCode": "05", "ResponseMessage": "D4405",
        })
        result = client.charge("tok", "29.99", "AUD", "PB-1")
        assert result.status == "declined"
        assert result.message == "D4405"

    def test_no_verdict_is_pending(self):
        client, _ = _client(body={"TransactionID": 11223346})
        result = client.charge("tok", "29.99", "AUD", "PB-1")
        assert result.is_pending
        assert result.gateway_transaction_id == "11223346"

    def test_gateway_errors_are_failed(self):
        client, _ = _client(body={"Errors": "V6022"})
        result = client.charge("tok", "29.99", "AUD", "PB-1")
        assert result.status == "failed"
        assert result.gateway_transaction_id is None

    def test_client_error_without_json(self):
        client, _ = _client(status_code=401, body=ValueError("no json"))
        assert client.charge("tok", "29.99", "AUD", "PB-1").status == "failed"


class TestTransientErrors:
    """Network trouble becomes GatewayTransientError."""

    @pytest.mark.parametrize("error", [requests.Timeout("read timed out"), requests.ConnectionError("reset")])
    def test_network_errors(self, error):
        client, _ = _client(side_effect=error)
        with pytest.raises(GatewayTransientError):
            client.charge("tok", "29.99", "AUD", "PB-1")

    def test_server_error(self):
        client, _ = _client(status_code=503, body={})
        with pytest.raises(GatewayTransientError):
            client.charge("tok", "29.99", "AUD", "PB-1")

    def test_non_json_success_response(self):
        client, _ = _client(status_code=200, body=ValueError("html"))
        with pytest.raises(GatewayTransientError):
            client.charge("tok", "29.99", "AUD", "PB-1")
