# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

# backend/shopfront/routes/orders.py
"""
Order API Routes

- POST /api/orders/create   any signed-in user (checkout or till)
- PUT  /api/orders/update   employees
- GET  /api/orders          employees; sellers see their own orders
- GET  /api/orders/<id>     employees; same scoping
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..services.order_service import OrderError
from ..validation import NotFoundError, ValidationError
from ..time_utils import parse_iso_datetime
from ..decorators import require_auth, require_role


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/create")
@require_auth
def create_order_route():
    """
    Create an order from a cart.

    Request body:
    {
        "items": [
            {"product_id": "<uuid>", "quantity": 2, "price": 1000, "size": "M", "color": "red"},
            {"product_data": {"name": "Custom tee", "price": 1500, "size": "L"}, "quantity": 1, "price": 1500}
        ],
        "customer_info": {"name": "...", "email": "...", "phone": "...", "address": "..."},
        "sale_type": "online" | "pos",
        "seller_id": "<employee uuid>",      (optional, POS)
        "social_platform": "tiktok" | ...   (required for POS)
    }

    Returns:
        200: {"order_id": "<uuid>"}
        400: Invalid input / unknown product or seller
        401: Not signed in
        500: Persistence failure
    """
    try:
        order = order_service.create_order(
            request.get_json(silent=True),
            purchaser=g.current_user,
            actor_employee=g.current_employee,
            commission_rate_bps=current_app.config["COMMISSION_RATE_BPS"],
        )
        return jsonify({"order_id": order.id}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except OrderError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/update")
@require_auth
@require_role()
def update_order_route():
    try:
        result = order_service.update_order(request.get_json(silent=True))
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
@require_role()
def list_orders_route():
    """
    Orders for one UTC day (default today), newest first.

    Query params:
    - date: ISO date, e.g. 2026-03-01
    """
    try:
        day = parse_iso_datetime(request.args.get("date"))
    except ValueError:
        return jsonify({"error": "date must be an ISO-8601 date"}), 400

    try:
        orders = order_service.list_orders(g.current_employee, day=day)
        return jsonify({"orders": orders}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch orders")
        return jsonify({"error": "Failed to fetch orders"}), 500


@orders_bp.get("/<order_id>")
@require_auth
@require_role()
def get_order_route(order_id: str):
    try:
        order = order_service.get_order(order_id, g.current_employee)
        return jsonify({"order": order.to_dict(include_items=True)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to fetch order")
        return jsonify({"error": "Internal server error"}), 500
