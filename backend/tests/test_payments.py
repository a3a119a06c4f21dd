"""
Payment initiation tests.

Verifies:
- method-specific contact requirements
- only pending orders can be paid
- stock is reserved before the provider is called and given back when the
  provider refuses
- the charge is the order total, whatever the client sends
- per-address rate limiting
"""

import pytest
import sqlalchemy as sa

from shopfront.extensions import db
from shopfront.models import InventoryRecord, InventoryReservation, Order
from shopfront.services.payment_gateway import PaymentResult

from conftest import make_product, order_payload


def _place_order(client, headers, *lines):
    response = client.post("/api/orders/create", json=order_payload(*lines), headers=headers)
    assert response.status_code == 200
    return response.json["order_id"]


def _initiate(client, order_id, method="mpesa", amount=4000, **contact):
    if method == "mpesa":
        contact.setdefault("phone", "0712345678")
    else:
        contact.setdefault("email", "jane@example.com")
    body = {"order_id": order_id, "amount": amount, "method": method}
    body.update({k: v for k, v in contact.items() if v is not None})
    return client.post("/api/payments/initiate", json=body)


def _record(product):
    db.session.expire_all()
    return db.session.query(InventoryRecord).filter_by(product_id=product.id, size="", color="").one()


def _order(order_id):
    db.session.expire_all()
    return db.session.get(Order, order_id)


@pytest.fixture
def order_id(client, customer_headers, tee, hoodie):
    """2 x tee @ 1000 + 1 x hoodie @ 2000 = KES 4,000."""
    return _place_order(client, customer_headers, (tee, 2, 1000), (hoodie, 1, 2000))


# =============================================================================
# INPUT
# =============================================================================


class TestInitiateInput:

    def test_mpesa_requires_phone(self, client, order_id, gateway):
        response = _initiate(client, order_id, phone=None)

        assert response.status_code == 400
        assert response.json["error"] == "Phone number required for M-Pesa payment"
        assert gateway.calls == []

    def test_card_requires_email(self, client, order_id, gateway):
        response = _initiate(client, order_id, method="card", email=None)

        assert response.status_code == 400
        assert response.json["error"] == "Email required for card payment"
        assert gateway.calls == []

    def test_unknown_method(self, client, order_id):
        response = _initiate(client, order_id, method="bitcoin", phone="0712345678")
        assert response.status_code == 400
        assert "method" in response.json["details"]

    def test_invalid_order_id(self, client, db_session):
        response = _initiate(client, "not-a-uuid")
        assert response.status_code == 400
        assert "order_id" in response.json["details"]

    def test_unknown_order(self, client, db_session):
        response = _initiate(client, "00000000-0000-4000-8000-000000000000")
        assert response.status_code == 404
        assert response.json["error"] == "Order not found"


# =============================================================================
# ORDER STATE
# =============================================================================


class TestInitiateOrderState:

    def test_completed_order_refused(self, client, admin_headers, order_id, gateway):
        client.put("/api/orders/update", json={"order_id": order_id, "status": "completed"}, headers=admin_headers)

        response = _initiate(client, order_id)

        assert response.status_code == 400
        assert response.json["error"] == "Order is not pending payment"
        assert response.json["currentStatus"] == "completed"
        assert gateway.calls == []

    def test_second_initiation_refused(self, client, order_id, tee):
        assert _initiate(client, order_id).status_code == 200
        response = _initiate(client, order_id)

        assert response.status_code == 400
        assert response.json["currentStatus"] == "processing"
        assert _record(tee).reserved_quantity == 2


# =============================================================================
# RESERVATION AROUND THE PROVIDER CALL
# =============================================================================


class TestInitiateReservation:

    def test_mpesa_success(self, client, order_id, gateway, tee, hoodie):
        response = _initiate(client, order_id)

        assert response.status_code == 200
        assert response.json["success"] is True
        assert response.json["reference"] == f"ws_CO_{order_id[:8]}"

        order = _order(order_id)
        assert order.status == "processing"
        assert order.payment_method == "mpesa"
        assert order.payment_reference == f"ws_CO_{order_id[:8]}"

        assert _record(tee).reserved_quantity == 2
        assert _record(hoodie).reserved_quantity == 1
        reservations = db.session.query(InventoryReservation).filter_by(order_id=order_id).all()
        assert len(reservations) == 2
        assert {r.status for r in reservations} == {"ACTIVE"}

    def test_card_success_returns_checkout_url(self, client, order_id, gateway):
        response = _initiate(client, order_id, method="card")

        assert response.status_code == 200
        assert response.json["authorization_url"] == "https://checkout.paystack.com/test"
        assert gateway.calls == [("card", order_id, 400000, "jane@example.com")]
        assert _order(order_id).payment_method == "card"

    def test_provider_is_charged_order_total(self, client, order_id, gateway):
        response = _initiate(client, order_id, amount=1)

        assert response.status_code == 200
        assert gateway.calls == [("mpesa", order_id, 400000, "0712345678")]

    def test_insufficient_stock(self, client, customer_headers, gateway, tee):
        scarce = make_product("Scarce", 100000, stock=1)
        order_id = _place_order(client, customer_headers, (tee, 2, 1000), (scarce, 2, 1000))

        response = _initiate(client, order_id, amount=3000)

        assert response.status_code == 400
        assert "Insufficient stock" in response.json["error"]
        assert response.json["product_id"] == scarce.id
        assert gateway.calls == []
        for product in (tee, scarce):
            record = _record(product)
            assert record.reserved_quantity == 0
            assert record.reserved_quantity <= record.stock_quantity
        assert _order(order_id).status == "pending"

    def test_provider_refusal_releases_stock(self, client, order_id, gateway, tee, hoodie):
        gateway.mpesa_result = PaymentResult(success=False, error="Invalid PhoneNumber")

        response = _initiate(client, order_id)

        assert response.status_code == 400
        assert response.json["error"] == "Invalid PhoneNumber"
        assert _record(tee).reserved_quantity == 0
        assert _record(hoodie).reserved_quantity == 0
        order = _order(order_id)
        assert order.status == "pending"
        assert order.payment_reference is None

    def test_retry_after_refusal(self, client, order_id, gateway, tee):
        gateway.mpesa_result = PaymentResult(success=False, error="Invalid PhoneNumber")
        _initiate(client, order_id)
        gateway.mpesa_result = None

        response = _initiate(client, order_id)

        assert response.status_code == 200
        assert _record(tee).reserved_quantity == 2

    def test_provider_exception_releases_stock(self, client, order_id, gateway, tee):
        gateway.initiate_exception = RuntimeError("connection reset")

        response = _initiate(client, order_id)

        assert response.status_code == 500
        assert response.json["error"] == "Internal server error"
        assert _record(tee).reserved_quantity == 0

    def test_order_cancelled_during_provider_call(self, client, order_id, gateway, tee, monkeypatch):
        def cancel_then_accept(order_id, amount_cents, phone):
            db.session.execute(sa.update(Order).where(Order.id == order_id).values(status="cancelled"))
            db.session.commit()
            return PaymentResult(success=True, reference="ws_CO_late", message="accepted")

        monkeypatch.setattr(gateway, "initiate_mpesa_payment", cancel_then_accept)

        response = _initiate(client, order_id)

        assert response.status_code == 409
        assert response.json["currentStatus"] == "cancelled"
        assert _record(tee).reserved_quantity == 0
        order = _order(order_id)
        assert order.payment_reference is None
        assert {r.status for r in db.session.query(InventoryReservation).filter_by(order_id=order_id)} == {"RELEASED"}


# =============================================================================
# RATE LIMIT
# =============================================================================


class TestInitiateRateLimit:

    def test_sixth_request_is_limited(self, client, db_session, gateway):
        for _ in range(5):
            response = _initiate(client, "00000000-0000-4000-8000-000000000000")
            assert response.status_code == 404

        response = _initiate(client, "00000000-0000-4000-8000-000000000000")

        assert response.status_code == 429
        assert response.json["error"] == "Too many requests. Please try again later."

    def test_budget_is_per_address(self, client, db_session):
        headers = {"X-Forwarded-For": "203.0.113.7"}
        body = {"order_id": "00000000-0000-4000-8000-000000000000", "amount": 10, "method": "mpesa", "phone": "0712"}
        for _ in range(5):
            client.post("/api/payments/initiate", json=body, headers=headers)

        assert client.post("/api/payments/initiate", json=body, headers=headers).status_code == 429
        assert client.post("/api/payments/initiate", json=body).status_code == 404
