"""
Provider client tests against httpx.MockTransport (no network).
"""

import json
from datetime import datetime

import httpx
import pytest

from shopfront.services.payment_gateway import (
    DarajaClient,
    PaymentGateway,
    PaystackClient,
    cents_to_whole_units,
    format_phone_number,
)


ORDER_ID = "3f2b8c1e-9a4d-4e7f-b5c6-1d2e3f4a5b6c"


def _daraja(handler, **overrides):
    settings = {
        "consumer_key": "key",
        "consumer_secret": "secret",
        "passkey": "passkey",
        "business_shortcode": "174379",
        "callback_url": "https://shop.example.com/api/payments/callback/mpesa",
        "transport": httpx.MockTransport(handler),
    }
    settings.update(overrides)
    return DarajaClient(**settings)


def _daraja_handler(seen, *, push=None, query=None):
    def handler(request):
        seen.append(request)
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            return httpx.Response(200, json=push)
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(200, json=query)
        return httpx.Response(404)
    return handler


@pytest.mark.parametrize("raw,expected", [
    ("0712345678", "254712345678"),
    ("+254 712 345 678", "254712345678"),
    ("712345678", "254712345678"),
    ("0112345678", "254112345678"),
    ("112345678", "254112345678"),
    ("", ""),
    (None, ""),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_whole_units_round_half_up():
    assert cents_to_whole_units(400000) == 4000
    assert cents_to_whole_units(85050) == 851
    assert cents_to_whole_units(85049) == 850


class TestPaystack:

    def test_initialize(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {"authorization_url": "https://checkout.paystack.com/abc", "reference": "order_x_1"},
            })

        client = PaystackClient("sk_test", transport=httpx.MockTransport(handler))
        result = client.initialize(ORDER_ID, 400000, "jane@example.com", now_ms=1700000000000)

        assert result.success is True
        assert result.authorization_url == "https://checkout.paystack.com/abc"
        body = json.loads(seen[0].content)
        assert body["amount"] == 400000
        assert body["currency"] == "KES"
        assert body["reference"] == f"order_{ORDER_ID}_1700000000000"
        assert body["metadata"]["order_id"] == ORDER_ID
        assert seen[0].headers["Authorization"] == "Bearer sk_test"

    def test_initialize_rejected(self):
        handler = lambda request: httpx.Response(400, json={"status": False, "message": "Invalid key"})
        client = PaystackClient("sk_bad", transport=httpx.MockTransport(handler))

        result = client.initialize(ORDER_ID, 100, "jane@example.com")

        assert result.success is False
        assert result.error == "Invalid key"

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        client = PaystackClient("sk_test", transport=httpx.MockTransport(handler))
        assert client.initialize(ORDER_ID, 100, "jane@example.com").error == "Failed to initialize payment"
        assert client.verify("ref").success is False

    @pytest.mark.parametrize("status,expected", [("success", True), ("abandoned", False), ("failed", False)])
    def test_verify(self, status, expected):
        handler = lambda request: httpx.Response(200, json={
            "status": True,
            "data": {"status": status, "amount": 400000, "reference": "ref"},
        })
        client = PaystackClient("sk_test", transport=httpx.MockTransport(handler))

        result = client.verify("ref")

        assert result.success is expected
        assert result.status == status
        assert result.data["amount"] == 400000


class TestDaraja:

    def test_stk_push(self):
        seen = []
        handler = _daraja_handler(seen, push={
            "ResponseCode": "0",
            "CheckoutRequestID": "ws_CO_123",
            "CustomerMessage": "Success. Request accepted for processing",
        })
        client = _daraja(handler)

        result = client.stk_push("254712345678", 85050, ORDER_ID, now=datetime(2026, 3, 1, 12, 0, 0))

        assert result.success is True
        assert result.reference == "ws_CO_123"
        push = json.loads(seen[1].content)
        assert push["Amount"] == 851
        assert push["Timestamp"] == "20260301120000"
        assert push["PhoneNumber"] == "254712345678"
        assert push["AccountReference"] == f"Order {ORDER_ID[:8]}"
        assert seen[1].headers["Authorization"] == "Bearer tok"

    def test_stk_push_rejected(self):
        handler = _daraja_handler([], push={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"})
        result = _daraja(handler).stk_push("254000", 100, ORDER_ID)
        assert result.success is False
        assert result.error == "Bad Request - Invalid PhoneNumber"

    def test_missing_configuration(self):
        seen = []
        client = _daraja(_daraja_handler(seen), passkey="")

        assert client.stk_push("254712345678", 100, ORDER_ID).error == "Payment configuration missing (Daraja)"
        assert client.query_status("ws_CO_1").success is False
        assert seen == []

    def test_oauth_failure(self):
        client = _daraja(lambda request: httpx.Response(401, json={"errorMessage": "Invalid credentials"}))
        result = client.stk_push("254712345678", 100, ORDER_ID)
        assert result.error == "Failed to initiate M-Pesa payment"

    @pytest.mark.parametrize("code,status", [
        ("0", "success"),
        ("1032", "cancelled"),
        ("1037", "pending"),
        ("1", "failed"),
        ("2001", "failed"),
    ])
    def test_query_result_codes(self, code, status):
        handler = _daraja_handler([], query={
            "ResponseCode": "0",
            "ResultCode": code,
            "ResultDesc": "The service request is processed successfully. QJK1ABC2DE" if code == "0" else "Other",
        })

        result = _daraja(handler).query_status("ws_CO_1")

        assert result.success is True
        assert result.status == status
        if code == "0":
            assert result.receipt_number == "QJK1ABC2DE"

    def test_query_not_accepted(self):
        handler = _daraja_handler([], query={"ResponseCode": "1", "ResponseDescription": "The transaction is being processed"})
        result = _daraja(handler).query_status("ws_CO_1")
        assert result.success is False
        assert result.error == "The transaction is being processed"


def test_gateway_from_config_formats_phone():
    seen = []
    handler = _daraja_handler(seen, push={"ResponseCode": "0", "CheckoutRequestID": "ws_CO_9"})
    config = {
        "DARAJA_CONSUMER_KEY": "key",
        "DARAJA_CONSUMER_SECRET": "secret",
        "DARAJA_PASSKEY": "passkey",
        "DARAJA_BUSINESS_SHORTCODE": "174379",
        "DARAJA_ENV": "production",
    }
    gateway = PaymentGateway.from_config(config, transport=httpx.MockTransport(handler))

    result = gateway.initiate_mpesa_payment(ORDER_ID, 100000, "0712 345 678")

    assert result.reference == "ws_CO_9"
    assert seen[1].url.host == "api.safaricom.co.ke"
    assert json.loads(seen[1].content)["PartyA"] == "254712345678"
