# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

# backend/shopfront/routes/inventory.py
"""
Inventory API Routes

- GET  /api/inventory         employees
- POST /api/inventory/update  admin/manager: set absolute stock per scope
- POST /api/inventory/deduct  any employee: direct POS sale of one line

POS lines are rung up one at a time through /deduct and never reserve;
only unreserved stock can be sold this way, so a till sale cannot take
units held by an in-flight online checkout.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_ADMIN, ROLE_MANAGER
from ..services import inventory_service
from ..services import order_service
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    merge_errors,
    optional_str,
    parse_int,
    parse_uuid,
    require_json_object,
)
from ..decorators import require_auth, require_role


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("")
@require_auth
@require_role()
def list_inventory_route():
    try:
        return jsonify({"inventory": inventory_service.list_inventory()}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch inventory")
        return jsonify({"error": "Failed to fetch inventory"}), 500


@inventory_bp.post("/update")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def update_inventory_route():
    """
    Set stock levels for a product.

    Request body:
    {
        "product_id": "<uuid>",
        "stock_quantity": 10,
        "size_stocks": {"M": 4, "L": 6},                 (optional)
        "color_stocks": {"red": 3, "blue": {"M": 2}}     (optional)
    }

    Returns:
        200: {"success": true, "inventory": {...general record...}}
        400: Invalid input
        404: Unknown product
        409: New stock below reserved quantity
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        product_id = parse_uuid(data.get("product_id"), "product_id")
        record = inventory_service.set_product_stock(
            product_id,
            stock_quantity=data.get("stock_quantity", 0),
            size_stocks=data.get("size_stocks"),
            color_stocks=data.get("color_stocks"),
        )
        return jsonify({"success": True, "inventory": record.to_dict()}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update inventory")
        return jsonify({"error": "Failed to update inventory"}), 500


def _parse_deduct(payload) -> dict:
    payload = require_json_object(payload)
    errors: dict = {}
    parsed: dict = {}
    for field, fn, args, kwargs in (
        ("product_id", parse_uuid, (payload.get("product_id"), "product_id"), {}),
        ("quantity", parse_int, (payload.get("quantity"), "quantity"), {"minimum": 1}),
        ("size", optional_str, (payload.get("size"), "size"), {}),
        ("color", optional_str, (payload.get("color"), "color"), {}),
    ):
        try:
            parsed[field] = fn(*args, **kwargs)
        except ValidationError as exc:
            errors.update(exc.details or {field: str(exc)})

    order_id = payload.get("order_id")
    parsed["order_id"] = None
    if order_id is not None:
        try:
            parsed["order_id"] = parse_uuid(order_id, "order_id")
        except ValidationError as exc:
            errors.update(exc.details)
    merge_errors(errors)
    return parsed


@inventory_bp.post("/deduct")
@require_auth
@require_role()
def deduct_inventory_route():
    """
    Sell one line at the till.

    Request body:
    {"product_id": "<uuid>", "quantity": 1, "size": "M", "color": "red", "order_id": "<uuid>"}

    order_id (optional) attributes that order to the calling employee.
    """
    try:
        data = _parse_deduct(request.get_json(silent=True))
        product_id, quantity = data["product_id"], data["quantity"]

        available = inventory_service.get_available(product_id, data["size"], data["color"])
        if available < quantity:
            return jsonify({
                "error": f"Insufficient inventory. Available: {available}, Requested: {quantity}",
                "available": available,
                "requested": quantity,
            }), 400

        ok = inventory_service.deduct(
            product_id, quantity, data["size"], data["color"], from_reserved=False,
        )
        if not ok:
            # Lost a race between the check and the update
            return jsonify({
                "error": "Failed to deduct stock. Stock changed during the sale; please try again.",
                "available": inventory_service.get_available(product_id, data["size"], data["color"]),
                "requested": quantity,
            }), 400

        if data["order_id"]:
            order_service.assign_seller(data["order_id"], g.current_employee)

        current_app.logger.info(
            "POS deduct product=%s qty=%s by employee=%s", product_id, quantity, g.current_employee.id,
        )
        return jsonify({"success": True, "message": "Stock deducted successfully"}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except Exception:
        current_app.logger.exception("Failed to deduct inventory")
        return jsonify({"error": "Internal server error"}), 500
