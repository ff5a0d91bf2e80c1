"""Payment gateway client.

The engine only depends on GatewayClient.charge(); the transport behind it
is a thin signed-HTTP client. EwayGatewayClient talks to the eWAY Rapid
API (sandbox or production endpoint, HTTP basic auth) with `requests`.

Error mapping:
- Timeout / connection error / HTTP 5xx -> GatewayTransientError (retryable;
  the charge may or may not have gone through, so the transaction stays pending)
- Gateway-side validation errors / HTTP 4xx -> ChargeResult(status="failed")
- TransactionStatus false -> ChargeResult(status="declined")
- No verdict in the response -> ChargeResult(status="pending"), the
  outcome arrives later by webhook
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

import requests

from paybridge.errors import GatewayTransientError

logger = logging.getLogger(__name__)

# eWAY "ResponseCode" values that mean the bank approved the charge.
APPROVED_RESPONSE_CODES = {"00", "08", "10", "11", "16"}


@dataclass(frozen=True)
class ChargeResult:
    status: str  # approved | declined | failed | pending
    gateway_transaction_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def is_pending(self):
        return self.status == "pending"


class GatewayClient(Protocol):
    def charge(self, token, amount, currency, reference, transaction_type="Purchase"):
        """Charge a stored token. Returns ChargeResult or raises GatewayTransientError."""
        ...


def to_minor_units(amount):
    """29.99 -> 2999 (the gateway takes integer cents)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class EwayGatewayClient:
    """eWAY Rapid API token-payment client."""

    USER_AGENT = "paybridge/1.0"

    def __init__(self, api_key, password, endpoint, timeout=20, http=None):
        if not api_key or not password:
            raise ValueError("Gateway API credentials not configured")
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.auth = (api_key, password)
        self.http.headers.update({
            "Content-Type": "application/json",
            "User-Agent": self.USER_AGENT,
        })

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config["GATEWAY_API_KEY"],
            password=config["GATEWAY_PASSWORD"],
            endpoint=config["GATEWAY_ENDPOINT"],
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 20),
        )

    def charge(self, token, amount, currency, reference, transaction_type="Purchase"):
        body = {
            "Customer": {"TokenCustomerID": token},
            "Payment": {
                "TotalAmount": to_minor_units(amount),
                "CurrencyCode": currency.upper(),
                "InvoiceNumber": reference,
                "InvoiceReference": reference,
            },
            "Method": "TokenPayment",
            "TransactionType": transaction_type,
        }
        data = self._request("POST", "/Transaction", body)
        return self._parse_charge_response(data)

    def _parse_charge_response(self, data):
        txn_id = data.get("TransactionID")
        txn_id = str(txn_id) if txn_id not in (None, "", 0) else None
        code = data.get("ResponseCode")
        message = data.get("ResponseMessage")

        errors = data.get("Errors")
        if errors:
            return ChargeResult("failed", txn_id, code or "ERR", str(errors), data)

        status = data.get("TransactionStatus")
        if status is None and code is None:
            return ChargeResult("pending", txn_id, None, message, data)

        if status is True or (status is None and code in APPROVED_RESPONSE_CODES):
            return ChargeResult("approved", txn_id, code, message, data)
        return ChargeResult("declined", txn_id, code, message, data)

    def _request(self, method, path, body=None):
        url = f"{self.endpoint}{path}"
        logger.debug(f"Gateway request {method} {path}")
        try:
            resp = self.http.request(method, url, json=body, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise GatewayTransientError(f"Gateway unreachable: {e}") from e

        if resp.status_code >= 500:
            raise GatewayTransientError(f"Gateway HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                return {"Errors": f"HTTP {resp.status_code}"}
            raise GatewayTransientError("Gateway returned a non-JSON response")

        if resp.status_code >= 400 and not data.get("Errors"):
            data["Errors"] = f"HTTP {resp.status_code}"
        return data
