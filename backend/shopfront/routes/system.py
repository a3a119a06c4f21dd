# backend/shopfront/routes/system.py
"""
System health endpoint.

Checks the database and the payment configuration so a deploy with a
broken DATABASE_URL or missing provider credentials is visible at once.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db, get_payment_gateway
from ..models import InventoryReservation, Order, SessionToken
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        active_sessions = db.session.query(SessionToken).filter(SessionToken.revoked_at.is_(None)).count()
        active_reservations = db.session.query(InventoryReservation).filter_by(status="ACTIVE").count()

        return {
            "status": "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {
                "orders": order_count,
                "active_sessions": active_sessions,
                "active_reservations": active_reservations,
            }
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Database error"
        }


def check_payment_config_health() -> dict:
    """
    Degraded (not unhealthy) when a provider is unconfigured: the other
    payment method and POS sales still work.
    """
    start_time = time.time()
    gateway = get_payment_gateway()
    paystack_ready = bool(getattr(getattr(gateway, "paystack", None), "secret_key", None))
    daraja = getattr(gateway, "daraja", None)
    daraja_ready = bool(daraja is not None and daraja.configured)

    details = {"paystack_configured": paystack_ready, "daraja_configured": daraja_ready}
    missing = [name for name, ready in (("paystack", paystack_ready), ("daraja", daraja_ready)) if not ready]
    if missing:
        return {
            "status": "degraded",
            "latency_ms": _elapsed_ms(start_time),
            "warning": f"Missing payment configuration: {', '.join(missing)}",
            "details": details,
        }
    return {"status": "healthy", "latency_ms": _elapsed_ms(start_time), "details": details}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    payment_health = check_payment_config_health()

    all_checks = [database_health, payment_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": _elapsed_ms(start_time),
        "checks": {
            "database": database_health,
            "payments": payment_health,
        }
    }

    return response, http_status
