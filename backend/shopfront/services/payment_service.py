# Overview: Service-layer operations for payment initiation; reserves stock, then hands off to the provider.

"""
Payment Initiation Service

WHY: Checkout must not sell stock it cannot deliver. Stock for every line is
held (reserved) before the customer is sent to M-Pesa or the card page, and
given back if the provider refuses.

FLOW:
1. Validate input; method-specific contact is required
   (phone for mpesa, email for card).
2. Order must exist (404) and be pending (400, with currentStatus).
3. Reserve every line (inventory_service.reserve_order_items). A shortfall
   on any line releases the lines already held and fails with
   "Insufficient stock for product <id>".
4. Call the provider. Reservations are already committed; no database
   transaction stays open across the network call.
5. Provider success: order -> processing, payment_reference and
   payment_method stored. Provider failure: reservations released, order
   stays pending, provider error returned (400).

The charge is always for the order total. A client-sent amount that
disagrees is logged, not trusted.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Order
from ..models.orders import ORDER_PENDING, ORDER_PROCESSING, PAYMENT_METHOD_CARD, PAYMENT_METHOD_MPESA
from ..validation import (
    NotFoundError,
    ValidationError,
    merge_errors,
    parse_choice,
    parse_uuid,
    require_json_object,
    to_cents,
)
from . import inventory_service
from .concurrency import conditional_update
from .inventory_service import InsufficientStockError

logger = logging.getLogger(__name__)


INITIATE_METHODS = (PAYMENT_METHOD_MPESA, PAYMENT_METHOD_CARD)


class PaymentError(Exception):
    """Raised for payment operation errors."""

    def __init__(self, message: str, status_code: int = 400, extra: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.extra = extra or {}

    def to_dict(self) -> dict:
        return {"error": str(self), **self.extra}


def _parse_initiate(payload) -> dict:
    payload = require_json_object(payload)
    errors: dict = {}

    def _grab(field, fn, *args):
        try:
            return fn(*args)
        except ValidationError as exc:
            errors.update(exc.details or {field: str(exc)})
            return None

    order_id = _grab("order_id", parse_uuid, payload.get("order_id"), "order_id")
    amount_cents = _grab("amount", to_cents, payload.get("amount"), "amount")
    if amount_cents is not None and amount_cents <= 0:
        errors["amount"] = "must be > 0"
    method = _grab("method", parse_choice, payload.get("method"), "method", INITIATE_METHODS)

    phone = payload.get("phone")
    email = payload.get("email")
    if phone is not None and not isinstance(phone, str):
        errors["phone"] = "must be a string"
    if email is not None and (not isinstance(email, str) or "@" not in email):
        errors["email"] = "must be a valid email"

    merge_errors(errors)
    return {
        "order_id": order_id,
        "amount_cents": amount_cents,
        "method": method,
        "phone": (phone or "").strip() or None,
        "email": (email or "").strip() or None,
    }


def initiate_payment(payload, *, gateway) -> dict:
    """
    Start payment for a pending order.

    Returns {"success", "reference", "authorization_url", "message"}.
    Raises ValidationError / NotFoundError / PaymentError.
    """
    request = _parse_initiate(payload)
    method = request["method"]

    if method == PAYMENT_METHOD_MPESA and not request["phone"]:
        raise PaymentError("Phone number required for M-Pesa payment")
    if method == PAYMENT_METHOD_CARD and not request["email"]:
        raise PaymentError("Email required for card payment")

    order = db.session.get(Order, request["order_id"])
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != ORDER_PENDING:
        raise PaymentError("Order is not pending payment", extra={"currentStatus": order.status})

    if request["amount_cents"] != order.total_cents:
        logger.warning(
            "Payment amount mismatch for order=%s: requested=%s total=%s",
            order.id, request["amount_cents"], order.total_cents,
        )

    order_id = order.id
    amount_cents = order.total_cents

    try:
        inventory_service.reserve_order_items(order)
    except InsufficientStockError as exc:
        raise PaymentError(str(exc), extra={"product_id": exc.product_id})

    try:
        if method == PAYMENT_METHOD_MPESA:
            result = gateway.initiate_mpesa_payment(order_id, amount_cents, request["phone"])
        else:
            result = gateway.initiate_card_payment(order_id, amount_cents, request["email"])
    except Exception:
        inventory_service.release_order_reservations(order_id, reason="payment provider error")
        raise

    if not result.success:
        logger.warning("Payment initiation failed for order=%s: %s", order_id, result.error)
        inventory_service.release_order_reservations(order_id, reason="payment initiation failed")
        raise PaymentError(result.error or "Payment initiation failed")

    changed = conditional_update(
        Order,
        Order.id == order_id,
        Order.status == ORDER_PENDING,
        values={
            "status": ORDER_PROCESSING,
            "payment_reference": result.reference,
            "payment_method": method,
        },
    )
    db.session.commit()
    if changed != 1:
        logger.warning("Order %s was no longer pending when storing payment reference", order_id)
        inventory_service.release_order_reservations(order_id, reason="order left pending during initiation")
        current = db.session.get(Order, order_id)
        raise PaymentError(
            "Order is not pending payment",
            status_code=409,
            extra={"currentStatus": current.status if current else None},
        )

    logger.info("Payment initiated order=%s method=%s reference=%s", order_id, method, result.reference)
    return {
        "success": True,
        "reference": result.reference,
        "authorization_url": result.authorization_url,
        "message": result.message,
    }
