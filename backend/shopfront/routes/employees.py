# Overview: Flask API routes for staff records; admin only.

from flask import Blueprint, request, jsonify, current_app

from ..models.auth import ROLE_ADMIN
from ..services import auth_service
from ..validation import ConflictError, NotFoundError, ValidationError, require_json_object
from ..decorators import require_auth, require_role


employees_bp = Blueprint("employees", __name__, url_prefix="/api/employees")


@employees_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_employees_route():
    try:
        employees = [e.to_dict() for e in auth_service.list_employees()]
        return jsonify({"employees": employees}), 200
    except Exception:
        current_app.logger.exception("Failed to list employees")
        return jsonify({"error": "Internal server error"}), 500


@employees_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_employee_route():
    """
    Grant a staff role to an existing account.

    Request body: {"email": "staff@example.com", "role": "admin" | "manager" | "seller"}

    Returns:
        200: {"employee": {...}}
        400: Invalid input
        404: No account with this email
        409: Account is already an employee
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        email = data.get("email")
        if not isinstance(email, str) or "@" not in email:
            raise ValidationError("Invalid request data", {"email": "must be a valid email"})

        employee = auth_service.create_employee(email, data.get("role"))
        return jsonify({"employee": employee.to_dict()}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create employee")
        return jsonify({"error": "Failed to create employee"}), 500
