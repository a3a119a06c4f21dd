# Overview: Flask extension instances plus the app-scoped payment collaborators.

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

PAYMENT_GATEWAY_KEY = "payment_gateway"
RATE_LIMITER_KEY = "rate_limiter"


def init_payment_extensions(app, *, gateway=None, rate_limiter=None) -> None:
    """
    Register the payment gateway and rate limiter on the app.

    Handlers look these up per request instead of importing module-level
    clients, so tests (and alternative deployments) can swap them in.
    """
    from .services.payment_gateway import PaymentGateway
    from .services.rate_limit_service import SlidingWindowRateLimiter

    if gateway is None:
        gateway = PaymentGateway.from_config(app.config)
    if rate_limiter is None:
        rate_limiter = SlidingWindowRateLimiter(
            max_requests=app.config["PAYMENT_RATE_LIMIT"],
            window_seconds=app.config["PAYMENT_RATE_WINDOW_SECONDS"],
        )

    app.extensions[PAYMENT_GATEWAY_KEY] = gateway
    app.extensions[RATE_LIMITER_KEY] = rate_limiter


def get_payment_gateway():
    return current_app.extensions[PAYMENT_GATEWAY_KEY]


def get_rate_limiter():
    return current_app.extensions[RATE_LIMITER_KEY]
