# Overview: Service-layer operations for payment reconciliation; webhooks, callbacks and status polling.

"""
Payment Reconciliation Service

WHY: Providers confirm payments asynchronously. Whatever channel the
confirmation arrives on (Paystack webhook, M-Pesa STK callback, a client
polling status), the order must end up finalized exactly once.

FINALIZATION:
- success: order -> completed, stock deducted once per line
  (inventory_service.commit_order_reservations), success Transaction
- failure: order -> failed / pending / cancelled (per channel), held stock
  released, failed Transaction

IDEMPOTENCY:
- Transaction rows are upserted by provider_reference.
- Deduction is guarded per order line by InventoryReservation status, so a
  replayed webhook or duplicate callback deducts nothing.
- A completed order is never moved back by a later failure notice.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db, get_payment_gateway
from ..models import Employee, Order, Transaction
from ..models.auth import ROLE_SELLER
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_PENDING,
    PAYMENT_METHOD_MPESA,
    TXN_FAILED,
    TXN_PENDING,
    TXN_SUCCESS,
)
from ..ids import format_order_number, is_uuid
from ..time_utils import to_utc_z
from ..validation import NotFoundError, ValidationError, require_json_object
from . import inventory_service
from .concurrency import conditional_update
from .payment_gateway import STK_RESULT_CANCELLED

logger = logging.getLogger(__name__)


PROVIDER_PAYSTACK = "paystack"
PROVIDER_MPESA = "mpesa"

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Callback received"}


class ReconciliationError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# SHARED FINALIZATION
# =============================================================================

def upsert_transaction(
    *,
    order_id: str,
    provider: str,
    reference: str,
    amount_cents: int,
    status: str,
    metadata: dict | None = None,
) -> Transaction:
    """Insert or update the Transaction keyed by provider_reference. Commits."""
    def _apply(txn: Transaction) -> None:
        txn.order_id = order_id
        txn.payment_provider = provider
        txn.amount_cents = amount_cents
        txn.status = status
        txn.provider_metadata = metadata

    txn = db.session.query(Transaction).filter_by(provider_reference=reference).first()
    if txn is None:
        txn = Transaction(provider_reference=reference)
        _apply(txn)
        db.session.add(txn)
        try:
            db.session.commit()
            return txn
        except IntegrityError:
            # Concurrent delivery inserted it first
            db.session.rollback()
            txn = db.session.query(Transaction).filter_by(provider_reference=reference).one()

    _apply(txn)
    db.session.commit()
    return txn


def _mark_completed(order_id: str, payment_reference: str | None = None) -> None:
    values = {"status": ORDER_COMPLETED}
    if payment_reference:
        values["payment_reference"] = payment_reference
    conditional_update(Order, Order.id == order_id, values=values)
    db.session.commit()


def _mark_unpaid(order_id: str, status: str, *, reason: str) -> bool:
    """
    Move a not-yet-completed order to status and release its held stock.

    Returns False (and changes nothing) if the order is already completed.
    """
    changed = conditional_update(
        Order,
        Order.id == order_id,
        Order.status != ORDER_COMPLETED,
        values={"status": status},
    )
    db.session.commit()
    if changed != 1:
        logger.warning("Ignoring %s for completed order=%s", reason, order_id)
        return False
    inventory_service.release_order_reservations(order_id, reason=reason)
    return True


def _finalize_success(order: Order) -> int:
    db.session.refresh(order)
    deducted = inventory_service.commit_order_reservations(order)
    logger.info("Order %s completed; %s line(s) deducted", order.id, deducted)
    return deducted


# =============================================================================
# PAYSTACK
# =============================================================================

def reconcile_transaction(reference: str, order_id: str, gateway=None) -> bool:
    """
    Verify a Paystack reference and mark the order paid.

    Returns False when the provider does not confirm the payment, the order
    is unknown, or the store fails.
    """
    gateway = gateway or get_payment_gateway()

    verification = gateway.verify_payment(reference)
    if not verification.success:
        logger.warning("Paystack did not confirm reference=%s (status=%s)", reference, verification.status)
        return False

    if not is_uuid(order_id) or db.session.get(Order, order_id) is None:
        logger.error("Reconcile for unknown order=%s reference=%s", order_id, reference)
        return False

    try:
        _mark_completed(order_id, reference)
        upsert_transaction(
            order_id=order_id,
            provider=PROVIDER_PAYSTACK,
            reference=reference,
            amount_cents=int(verification.data.get("amount") or 0),
            status=TXN_SUCCESS,
            metadata=verification.data,
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Reconcile failed for order=%s reference=%s", order_id, reference)
        return False
    return True


def _event_metadata(data: dict) -> dict:
    metadata = data.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def handle_paystack_event(payload, *, gateway=None, reconcile=None) -> dict:
    """
    Process one Paystack webhook event.

    charge.success -> reconcile once, then deduct each line once
    charge.failed  -> order failed, stock released, failed Transaction
    anything else  -> acknowledged, no action
    """
    payload = require_json_object(payload)
    event = payload.get("event")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = data.get("reference")

    if event == "charge.success":
        order_id = _event_metadata(data).get("order_id")
        if not order_id:
            raise ReconciliationError("Order ID not found in metadata", 400)

        reconcile = reconcile or reconcile_transaction
        if gateway is not None:
            reconciled = reconcile(reference, order_id, gateway=gateway)
        else:
            reconciled = reconcile(reference, order_id)
        if not reconciled:
            raise ReconciliationError("Failed to reconcile transaction", 500)

        order = db.session.get(Order, order_id)
        if order is not None:
            _finalize_success(order)
        return {"success": True}

    if event == "charge.failed":
        order = None
        order_id = _event_metadata(data).get("order_id")
        if order_id and is_uuid(order_id):
            order = db.session.get(Order, order_id)
        if order is None and reference:
            order = db.session.query(Order).filter_by(payment_reference=reference).first()
        if order is None:
            raise ReconciliationError("Order not found for transaction", 400)

        if _mark_unpaid(order.id, ORDER_FAILED, reason="card payment failed") and reference:
            upsert_transaction(
                order_id=order.id,
                provider=PROVIDER_PAYSTACK,
                reference=reference,
                amount_cents=int(data.get("amount") or 0),
                status=TXN_FAILED,
                metadata=data,
            )
        return {"success": True}

    logger.info("Ignoring Paystack event %r", event)
    return {"received": True}


# =============================================================================
# M-PESA
# =============================================================================

def _callback_items(stk: dict) -> dict:
    items = (stk.get("CallbackMetadata") or {}).get("Item") or []
    return {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}


def _major_to_cents(value, default: int) -> int:
    try:
        return int(round(float(value) * 100))
    except (TypeError, ValueError):
        return default


def handle_mpesa_callback(payload) -> dict:
    """
    Process an STK push result. The returned body is always an
    acknowledgement; Safaricom retries anything else.
    """
    body = payload.get("Body") if isinstance(payload, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        logger.error("Invalid M-Pesa callback structure")
        return dict(MPESA_ACK)

    checkout_id = stk.get("CheckoutRequestID")
    try:
        result_code = int(stk.get("ResultCode"))
    except (TypeError, ValueError):
        logger.error("M-Pesa callback without a usable ResultCode for %s", checkout_id)
        return dict(MPESA_ACK)
    result_desc = stk.get("ResultDesc")

    order = None
    if checkout_id:
        order = db.session.query(Order).filter_by(payment_reference=checkout_id).first()
    if order is None:
        logger.error("No order for CheckoutRequestID=%s", checkout_id)
        return dict(MPESA_ACK)

    if result_code == 0 and order.status == ORDER_COMPLETED:
        logger.info("Duplicate M-Pesa success callback for order=%s", order.id)
        return {"ResultCode": 0, "ResultDesc": "Already processed"}

    base_metadata = {
        "CheckoutRequestID": checkout_id,
        "MerchantRequestID": stk.get("MerchantRequestID"),
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }

    if result_code == 0:
        items = _callback_items(stk)
        receipt = items.get("MpesaReceiptNumber")
        _mark_completed(order.id)
        _finalize_success(order)
        upsert_transaction(
            order_id=order.id,
            provider=PROVIDER_MPESA,
            reference=str(receipt) if receipt else checkout_id,
            amount_cents=_major_to_cents(items.get("Amount"), order.total_cents),
            status=TXN_SUCCESS,
            metadata={
                **base_metadata,
                "MpesaReceiptNumber": receipt,
                "TransactionDate": str(items["TransactionDate"]) if items.get("TransactionDate") else None,
                "PhoneNumber": str(items["PhoneNumber"]) if items.get("PhoneNumber") else None,
            },
        )
        return {"ResultCode": 0, "ResultDesc": "Success"}

    # 1032: customer cancelled; anything else stays retryable
    status = ORDER_CANCELLED if str(result_code) == STK_RESULT_CANCELLED else ORDER_PENDING
    logger.info("M-Pesa payment failed for order=%s code=%s (%s)", order.id, result_code, result_desc)
    if _mark_unpaid(order.id, status, reason=f"mpesa result {result_code}"):
        upsert_transaction(
            order_id=order.id,
            provider=PROVIDER_MPESA,
            reference=checkout_id,
            amount_cents=order.total_cents,
            status=TXN_FAILED,
            metadata=base_metadata,
        )
    return dict(MPESA_ACK)


def check_payment_status(payload, *, gateway) -> dict:
    """
    Ask Daraja where an STK push stands and finalize the order if it settled.
    """
    payload = require_json_object(payload)
    order_id = payload.get("order_id")
    checkout_id = payload.get("checkout_request_id")

    if order_id:
        if not is_uuid(order_id):
            raise ValidationError("Invalid request data", {"order_id": "must be a valid UUID"})
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        checkout_id = order.payment_reference
    elif checkout_id:
        order = db.session.query(Order).filter_by(payment_reference=checkout_id).first()
        if order is None:
            raise NotFoundError("Order not found for checkout request ID")
    else:
        raise ValidationError("Either order_id or checkout_request_id is required")

    if order.payment_method != PAYMENT_METHOD_MPESA:
        raise ValidationError("This endpoint only supports M-Pesa payments")

    if order.status == ORDER_COMPLETED:
        return {"status": "success", "order_status": ORDER_COMPLETED, "message": "Payment completed successfully"}
    if order.status in (ORDER_FAILED, ORDER_CANCELLED):
        return {"status": "failed", "order_status": order.status, "message": "Payment failed or was cancelled"}
    if not checkout_id:
        raise ValidationError("Checkout request ID not found for this order")

    result = gateway.query_stk_status(checkout_id)
    if not result.success:
        raise ReconciliationError(result.error or "Failed to query payment status", 500)

    order_status = order.status
    if result.status == "success":
        _mark_completed(order.id)
        _finalize_success(order)
        upsert_transaction(
            order_id=order.id,
            provider=PROVIDER_MPESA,
            reference=result.receipt_number or checkout_id,
            amount_cents=order.total_cents,
            status=TXN_SUCCESS,
            metadata={"CheckoutRequestID": checkout_id, "ResultDesc": result.message},
        )
        order_status = ORDER_COMPLETED
    elif result.status in ("failed", "cancelled"):
        target = ORDER_CANCELLED if result.status == "cancelled" else ORDER_FAILED
        if _mark_unpaid(order.id, target, reason=f"mpesa status {result.status}"):
            order_status = target

    return {
        "status": result.status or "pending",
        "order_status": order_status,
        "message": result.message,
        "receipt_number": result.receipt_number,
    }


# =============================================================================
# QUERIES
# =============================================================================

def _fallback_reference(order: Order) -> str:
    prefix = {"cash": "CASH", "mpesa": "MPESA"}.get(order.payment_method or "", "CARD")
    return f"{prefix}-{order.id[:6].upper()}"


def list_transactions(employee: Employee) -> list[dict]:
    """
    Payment history: recorded Transactions plus orders paid without one
    (cash/POS). Sellers only see their own orders' payments.
    """
    txn_query = db.session.query(Transaction, Order).join(Order, Order.id == Transaction.order_id)
    order_query = db.session.query(Order).filter(Order.payment_method.isnot(None))
    if employee.role == ROLE_SELLER:
        txn_query = txn_query.filter(Order.seller_id == employee.id)
        order_query = order_query.filter(Order.seller_id == employee.id)

    by_order: dict[str, dict] = {}
    for txn, order in txn_query.order_by(Transaction.created_at.desc()).all():
        if order.id in by_order:
            continue
        by_order[order.id] = {
            "id": txn.id,
            "reference": txn.provider_reference,
            "order_id": order.id,
            "order_number": format_order_number(order.id),
            "amount_cents": txn.amount_cents,
            "method": order.payment_method or "card",
            "status": txn.status if txn.status in (TXN_SUCCESS, TXN_FAILED) else TXN_PENDING,
            "created_at": txn.created_at,
        }

    for order in order_query.all():
        if order.id in by_order:
            continue
        status = TXN_PENDING
        if order.status == ORDER_COMPLETED:
            status = TXN_SUCCESS
        elif order.status in (ORDER_CANCELLED, "refunded"):
            status = TXN_FAILED
        by_order[order.id] = {
            "id": order.id,
            "reference": order.payment_reference or _fallback_reference(order),
            "order_id": order.id,
            "order_number": format_order_number(order.id),
            "amount_cents": order.total_cents,
            "method": order.payment_method,
            "status": status,
            "created_at": order.created_at,
        }

    rows = sorted(by_order.values(), key=lambda row: row["created_at"], reverse=True)
    for row in rows:
        row["created_at"] = to_utc_z(row["created_at"])
    return rows
