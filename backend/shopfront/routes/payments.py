# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/shopfront/routes/payments.py
"""
Payment API Routes

WHY: Checkout hands off to M-Pesa (STK push) or Paystack (card), and the
providers report back asynchronously.

ENDPOINTS:
- POST /api/payments/initiate        public, rate limited per client address
- POST /api/payments/paystack        Paystack webhook
- POST /api/payments/callback/mpesa  Daraja STK callback; always 200
- POST /api/payments/status          poll an STK push
- GET  /api/payments/transactions    employees; sellers see their own orders

SECURITY:
- Provider errors are returned as messages; internals never are
- Gateway and limiter come from app.extensions
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import get_payment_gateway, get_rate_limiter
from ..services import payment_service
from ..services import reconciliation_service
from ..services.payment_service import PaymentError
from ..services.reconciliation_service import ReconciliationError
from ..services.rate_limit_service import client_address
from ..validation import NotFoundError, ValidationError
from ..decorators import require_auth, require_role


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# INITIATION
# =============================================================================

@payments_bp.post("/initiate")
def initiate_payment_route():
    """
    Reserve stock and start payment for a pending order.

    Request body:
    {
        "order_id": "<uuid>",
        "amount": 4000,
        "method": "mpesa" | "card",
        "phone": "0712345678",        (mpesa)
        "email": "buyer@example.com"  (card)
    }

    Returns:
        200: {"success", "reference", "authorization_url", "message"}
        400: Invalid input, order not pending, insufficient stock, provider refusal
        404: Order not found
        409: Order changed state while the provider was being called
        429: Rate limited
        500: Server error
    """
    if not get_rate_limiter().hit(f"payment:{client_address(request)}"):
        return jsonify({"error": "Too many requests. Please try again later."}), 429

    try:
        result = payment_service.initiate_payment(
            request.get_json(silent=True),
            gateway=get_payment_gateway(),
        )
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PROVIDER NOTIFICATIONS
# =============================================================================

@payments_bp.post("/paystack")
def paystack_webhook_route():
    try:
        result = reconciliation_service.handle_paystack_event(request.get_json(silent=True))
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except ReconciliationError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Paystack webhook processing failed")
        return jsonify({"error": "Webhook processing failed"}), 500


@payments_bp.post("/callback/mpesa")
def mpesa_callback_route():
    """Safaricom retries anything but a 200, so every outcome is acknowledged."""
    try:
        result = reconciliation_service.handle_mpesa_callback(request.get_json(silent=True))
    except Exception:
        current_app.logger.exception("M-Pesa callback processing failed")
        result = {"ResultCode": 0, "ResultDesc": "Callback received"}
    return jsonify(result), 200


@payments_bp.post("/status")
def payment_status_route():
    try:
        result = reconciliation_service.check_payment_status(
            request.get_json(silent=True),
            gateway=get_payment_gateway(),
        )
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ReconciliationError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check payment status")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("/transactions")
@require_auth
@require_role()
def list_transactions_route():
    try:
        transactions = reconciliation_service.list_transactions(g.current_employee)
        return jsonify({"transactions": transactions}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch transactions")
        return jsonify({"error": "Failed to fetch transactions"}), 500
