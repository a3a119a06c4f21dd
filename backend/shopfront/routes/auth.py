# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/shopfront/routes/auth.py
"""
Authentication API routes

- POST /api/auth/login   email + password -> bearer token
- POST /api/auth/logout  revokes the presented token
- GET  /api/auth/me      current user and staff record
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services.rate_limit_service import client_address
from ..decorators import require_auth, bearer_token


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate(email, password)
        if not user:
            current_app.logger.info("Failed login for %s", auth_service.normalize_email(email))
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=client_address(request),
        )

        return jsonify({
            "user": user.to_dict(),
            "employee": user.employee.to_dict() if user.employee else None,
            "token": token,
            "expires_at": session.expires_at.isoformat() + "Z",
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    try:
        token = bearer_token()
        if not token:
            return jsonify({"error": "Authorization header required"}), 401

        if not session_service.revoke_session(token):
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    employee = g.current_employee
    return jsonify({
        "user": g.current_user.to_dict(),
        "employee": employee.to_dict() if employee else None,
        "role": employee.role if employee else None,
    }), 200
