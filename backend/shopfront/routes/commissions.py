# Overview: Flask API routes for commissions operations; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..ids import is_uuid
from ..models import Employee
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_SELLER
from ..services import commission_service
from ..services.commission_service import CommissionError
from ..validation import NotFoundError, ValidationError
from ..decorators import require_auth, require_role


commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


@commissions_bp.post("/mark-paid")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def mark_paid_route():
    """
    Close one seller's commission period.

    Request body: {"employee_id": "<uuid>"}

    Returns:
        200: {"success", "message", "payment_date"}
        400: Invalid input, or employee is not a seller
        404: Employee not found
    """
    try:
        result = commission_service.mark_commissions_paid(request.get_json(silent=True))
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except CommissionError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark commissions paid")
        return jsonify({"error": "Failed to mark commissions as paid"}), 500


@commissions_bp.post("/mark-paid-all")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def mark_paid_all_route():
    try:
        return jsonify(commission_service.mark_all_commissions_paid()), 200
    except Exception:
        current_app.logger.exception("Failed to mark all commissions paid")
        return jsonify({"error": "Failed to mark commissions as paid"}), 500


@commissions_bp.get("/summary")
@require_auth
@require_role()
def summary_route():
    """
    Commission totals.

    Sellers get their own summary. Admins and managers may pass
    ?employee_id=<uuid> to view any seller.
    """
    try:
        employee = g.current_employee
        requested = request.args.get("employee_id")
        if requested and requested != employee.id:
            if employee.role == ROLE_SELLER:
                return jsonify({"error": "Forbidden"}), 403
            if not is_uuid(requested):
                return jsonify({"error": "employee_id must be a valid UUID"}), 400
            employee = db.session.get(Employee, requested)
            if employee is None:
                return jsonify({"error": "Employee not found"}), 404

        return jsonify(commission_service.commission_summary(employee)), 200
    except Exception:
        current_app.logger.exception("Failed to build commission summary")
        return jsonify({"error": "Internal server error"}), 500
