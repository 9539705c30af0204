"""
payment_gateway.py - Payment Gateway Contract and Paystack Client

The checkout flow only needs two calls from the gateway: create a payment intent
(initialize) and look up a transaction (verify). PaymentGateway is that contract;
PaystackGateway implements it over the Paystack REST API with httpx. Tests substitute
a fake.

Amounts are sent in minor units (kobo for NGN).
"""

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"


class PaystackError(Exception):
    """Base exception for Paystack API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_data: Optional[dict] = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


def to_kobo(amount: float) -> int:
    """Convert a major-unit amount to minor units, rounding half up."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(value * 100)


def sign_payload(raw_body: bytes, secret: str) -> str:
    """HMAC-SHA512 hex digest Paystack sends in x-paystack-signature."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(raw_body, secret), signature)


class PaymentGateway(Protocol):
    def initialize(
        self,
        reference: str,
        email: str,
        amount: int,
        currency: str,
        callback_url: str,
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Create a payment intent. Returns {status, data: {authorization_url, reference}}."""
        ...

    def verify(self, reference: str) -> Dict[str, Any]:
        """Look up a transaction. Returns {status, data: {status}}."""
        ...


class PaystackGateway:
    """Sync client for the Paystack Transaction API."""

    def __init__(self, secret_key: str, base_url: str = PAYSTACK_BASE_URL, timeout: float = 30.0):
        if not secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, endpoint: str, json_data: Optional[dict] = None) -> dict:
        """Make a request to Paystack API."""
        url = f"{self.base_url}{endpoint}"

        with httpx.Client(timeout=self.timeout) as client:
            response = client.request(method=method, url=url, headers=self._headers, json=json_data)

        try:
            data = response.json()
        except ValueError:
            raise PaystackError("Invalid response from Paystack", status_code=response.status_code)

        if not response.is_success:
            logger.error(f"Paystack API error: {response.status_code} - {data}")
            raise PaystackError(
                message=data.get("message", "Unknown Paystack error"),
                status_code=response.status_code,
                response_data=data,
            )
        return data

    def initialize(
        self,
        reference: str,
        email: str,
        amount: int,
        currency: str,
        callback_url: str,
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        logger.info(f"Initializing Paystack transaction {reference} for {amount} {currency}")
        return self._request(
            "POST",
            "/transaction/initialize",
            json_data={
                "reference": reference,
                "email": email,
                "amount": amount,
                "currency": currency,
                "callback_url": callback_url,
                "metadata": metadata,
            },
        )

    def verify(self, reference: str) -> Dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}")
