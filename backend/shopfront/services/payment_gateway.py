# Overview: HTTP clients for the payment providers (Paystack card checkout, Daraja M-Pesa STK push).

"""
Payment Provider Clients

WHY: Payment initiation, webhook verification and status polling all talk
to third-party HTTP APIs. Keeping the wire details here lets the services
work with small result objects and lets tests swap the transport.

DESIGN:
- One httpx.Client per call, explicit timeout, optional injected transport
  (httpx.MockTransport in tests).
- Provider failures come back as results with success=False and an error
  message; only programming errors raise.
- Amounts arrive in cents. Paystack takes the minor unit; Daraja takes
  whole shillings (rounded half-up).

SECURITY:
- Secret key, consumer secret and the STK password are never logged.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from ..time_utils import daraja_timestamp

logger = logging.getLogger(__name__)


DARAJA_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

# STK ResultCode values
STK_RESULT_SUCCESS = "0"
STK_RESULT_CANCELLED = "1032"
STK_RESULT_TIMEOUT = "1037"

_RECEIPT_RE = re.compile(r"[A-Z0-9]{10,}")


@dataclass
class PaymentResult:
    success: bool
    reference: str | None = None
    authorization_url: str | None = None
    message: str | None = None
    error: str | None = None


@dataclass
class VerificationResult:
    success: bool
    status: str  # success | failed | pending | abandoned ...
    data: dict = field(default_factory=dict)


@dataclass
class StkStatusResult:
    success: bool
    status: str | None = None  # success | cancelled | pending | failed
    message: str | None = None
    error: str | None = None
    receipt_number: str | None = None


def format_phone_number(phone: str | None) -> str:
    """
    Normalize a Kenyan mobile number to 254XXXXXXXXX.

    Strips non-digits, then: 254... kept, 0... -> 254..., 7.../1... -> 2547.../2541....
    Anything else is returned digits-only, unchanged.
    """
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("254"):
        return digits
    if digits.startswith("0"):
        return f"254{digits[1:]}"
    if digits.startswith("7") or digits.startswith("1"):
        return f"254{digits}"
    return digits


def cents_to_whole_units(amount_cents: int) -> int:
    return (amount_cents + 50) // 100


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# =============================================================================
# PAYSTACK
# =============================================================================

class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.paystack.co",
        currency: str = "KES",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    def initialize(self, order_id: str, amount_cents: int, email: str, *, now_ms: int | None = None) -> PaymentResult:
        """Start a card checkout; the customer completes it at authorization_url."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        payload = {
            "email": email,
            "amount": amount_cents,
            "currency": self.currency,
            "reference": f"order_{order_id}_{now_ms}",
            "metadata": {
                "order_id": order_id,
                "custom_fields": [
                    {"display_name": "Order ID", "variable_name": "order_id", "value": order_id},
                ],
            },
        }
        try:
            with self._client() as client:
                response = client.post("/transaction/initialize", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Paystack initialize failed for order=%s: %s", order_id, exc)
            return PaymentResult(success=False, error="Failed to initialize payment")

        data = _json(response)
        if data.get("status") and isinstance(data.get("data"), dict):
            return PaymentResult(
                success=True,
                reference=data["data"].get("reference"),
                authorization_url=data["data"].get("authorization_url"),
                message=data.get("message") or "Payment initialized successfully",
            )
        logger.warning("Paystack initialize rejected for order=%s: %s", order_id, data.get("message"))
        return PaymentResult(success=False, error=data.get("message") or "Payment initialization failed")

    def verify(self, reference: str) -> VerificationResult:
        try:
            with self._client() as client:
                response = client.get(f"/transaction/verify/{reference}")
        except httpx.HTTPError as exc:
            logger.error("Paystack verify failed for reference=%s: %s", reference, exc)
            return VerificationResult(success=False, status="failed")

        data = _json(response)
        body = data.get("data") if isinstance(data.get("data"), dict) else {}
        if data.get("status") and body.get("status") == "success":
            return VerificationResult(success=True, status="success", data=body)
        return VerificationResult(success=False, status=body.get("status") or "failed", data=body)


# =============================================================================
# DARAJA (M-PESA)
# =============================================================================

class DarajaClient:
    def __init__(
        self,
        *,
        consumer_key: str,
        consumer_secret: str,
        passkey: str,
        business_shortcode: str,
        callback_url: str,
        environment: str = "sandbox",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.business_shortcode = business_shortcode
        self.callback_url = callback_url
        self.base_url = DARAJA_URLS.get(environment, DARAJA_URLS["sandbox"])
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return all([self.consumer_key, self.consumer_secret, self.passkey, self.business_shortcode])

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _password(self, timestamp: str) -> str:
        raw = f"{self.business_shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def _access_token(self, client: httpx.Client) -> str:
        response = client.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        response.raise_for_status()
        token = _json(response).get("access_token")
        if not token:
            raise httpx.HTTPStatusError("No access token in response", request=response.request, response=response)
        return token

    def stk_push(self, phone: str, amount_cents: int, order_id: str, *, now: datetime | None = None) -> PaymentResult:
        if not self.configured:
            logger.error("Missing Daraja configuration")
            return PaymentResult(success=False, error="Payment configuration missing (Daraja)")

        timestamp = daraja_timestamp(now)
        payload = {
            "BusinessShortCode": self.business_shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": cents_to_whole_units(amount_cents),
            "PartyA": phone,
            "PartyB": self.business_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": f"Order {order_id[:8]}",
            "TransactionDesc": f"Payment for Order {order_id}",
        }
        logger.info("Sending STK push for order=%s amount=%s", order_id, payload["Amount"])

        try:
            with self._client() as client:
                token = self._access_token(client)
                response = client.post(
                    "/mpesa/stkpush/v1/processrequest",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Daraja STK push failed for order=%s: %s", order_id, exc)
            return PaymentResult(success=False, error="Failed to initiate M-Pesa payment")

        data = _json(response)
        if str(data.get("ResponseCode")) == "0":
            return PaymentResult(
                success=True,
                reference=data.get("CheckoutRequestID"),
                message=data.get("CustomerMessage"),
            )
        return PaymentResult(success=False, error=data.get("errorMessage") or "STK Push failed")

    def query_status(self, checkout_request_id: str, *, now: datetime | None = None) -> StkStatusResult:
        if not self.configured:
            logger.error("Missing Daraja configuration")
            return StkStatusResult(success=False, error="Payment configuration missing (Daraja)")

        timestamp = daraja_timestamp(now)
        payload = {
            "BusinessShortCode": self.business_shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            with self._client() as client:
                token = self._access_token(client)
                response = client.post(
                    "/mpesa/stkpushquery/v1/query",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Daraja STK query failed for %s: %s", checkout_request_id, exc)
            return StkStatusResult(success=False, error="Failed to query M-Pesa payment status")

        data = _json(response)
        if str(data.get("ResponseCode")) != "0":
            return StkStatusResult(
                success=False,
                error=data.get("ResponseDescription") or data.get("errorMessage") or "Failed to query payment status",
            )

        result_code = str(data.get("ResultCode", ""))
        description = data.get("ResultDesc") or ""
        if result_code == STK_RESULT_SUCCESS:
            match = _RECEIPT_RE.search(description)
            return StkStatusResult(
                success=True,
                status="success",
                message=description or "Payment successful",
                receipt_number=match.group(0) if match else None,
            )
        if result_code == STK_RESULT_CANCELLED:
            return StkStatusResult(success=True, status="cancelled", message=description or "Payment cancelled by user")
        if result_code == STK_RESULT_TIMEOUT:
            return StkStatusResult(
                success=True,
                status="pending",
                message=description or "Waiting for user to complete payment",
            )
        return StkStatusResult(success=True, status="failed", message=description or "Payment failed")


# =============================================================================
# GATEWAY FACADE
# =============================================================================

class PaymentGateway:
    """
    What the services see: one object per app, stored in app.extensions.

    Methods mirror the provider operations the order flow needs.
    """

    def __init__(self, paystack: PaystackClient, daraja: DarajaClient):
        self.paystack = paystack
        self.daraja = daraja

    @classmethod
    def from_config(cls, config: Any, *, transport: httpx.BaseTransport | None = None) -> "PaymentGateway":
        timeout = float(config.get("PAYMENT_HTTP_TIMEOUT", 30.0))
        paystack = PaystackClient(
            config.get("PAYSTACK_SECRET_KEY", ""),
            base_url=config.get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            currency=config.get("CURRENCY", "KES"),
            timeout=timeout,
            transport=transport,
        )
        daraja = DarajaClient(
            consumer_key=config.get("DARAJA_CONSUMER_KEY", ""),
            consumer_secret=config.get("DARAJA_CONSUMER_SECRET", ""),
            passkey=config.get("DARAJA_PASSKEY", ""),
            business_shortcode=config.get("DARAJA_BUSINESS_SHORTCODE", ""),
            callback_url=config.get("DARAJA_CALLBACK_URL", ""),
            environment=config.get("DARAJA_ENV", "sandbox"),
            timeout=timeout,
            transport=transport,
        )
        return cls(paystack, daraja)

    def initiate_mpesa_payment(self, order_id: str, amount_cents: int, phone: str) -> PaymentResult:
        return self.daraja.stk_push(format_phone_number(phone), amount_cents, order_id)

    def initiate_card_payment(self, order_id: str, amount_cents: int, email: str) -> PaymentResult:
        return self.paystack.initialize(order_id, amount_cents, email)

    def verify_payment(self, reference: str) -> VerificationResult:
        return self.paystack.verify(reference)

    def query_stk_status(self, checkout_request_id: str) -> StkStatusResult:
        return self.daraja.query_status(checkout_request_id)
