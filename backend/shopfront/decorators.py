# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a live session.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User
    - g.current_employee: The caller's Employee record, or None for customers
    - g.session_context: The full SessionContext

    Returns 401 if the header is missing or the token is invalid, expired,
    revoked, or belongs to a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            return jsonify({"error": "Unauthorized"}), 401

        context = session_service.validate_session(token)
        if not context:
            return jsonify({"error": "Unauthorized"}), 401

        g.current_user = context.user
        g.current_employee = context.employee
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the caller to be an employee, optionally with one of `roles`.

    No roles given means any employee. Use after @require_auth.
    Returns 403 when the caller has no Employee record or the wrong role.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Unauthorized"}), 401

            employee = g.get("current_employee")
            if employee is None or (roles and employee.role not in roles):
                current_app.logger.info(
                    "Forbidden: user=%s role=%s path=%s",
                    g.current_user.id,
                    employee.role if employee else None,
                    request.path,
                )
                return jsonify({"error": "Forbidden"}), 403

            return f(*args, **kwargs)

        return decorated_function

    return decorator
