"""
Pytest fixtures for shopfront backend tests.

Provides an in-memory database, a test client, staff/customer accounts,
catalog products with stock, and a fake payment gateway wired in through
app.extensions.
"""

import pytest
from shopfront import create_app
from shopfront.config import Config
from shopfront.extensions import db, init_payment_extensions
from shopfront.models import Employee, Product
from shopfront.services.auth_service import create_user, create_employee
from shopfront.services import inventory_service
from shopfront.services.payment_gateway import PaymentResult, StkStatusResult, VerificationResult
from shopfront.services.rate_limit_service import SlidingWindowRateLimiter


PASSWORD = "Password123!"


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BCRYPT_ROUNDS = 4
    COMMISSION_RATE_BPS = 300
    PAYMENT_RATE_LIMIT = 5
    PAYMENT_RATE_WINDOW_SECONDS = 60
    PAYSTACK_SECRET_KEY = ""
    DARAJA_CONSUMER_KEY = ""


class FakeGateway:
    """
    Stands in for PaymentGateway. Records every call; results are set per test.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = []
        self.mpesa_result = None
        self.card_result = None
        self.initiate_exception = None
        self.verification = VerificationResult(success=True, status="success", data={"amount": 400000})
        self.stk_status = StkStatusResult(success=True, status="pending", message="The transaction is being processed")

    def initiate_mpesa_payment(self, order_id, amount_cents, phone):
        self.calls.append(("mpesa", order_id, amount_cents, phone))
        if self.initiate_exception:
            raise self.initiate_exception
        return self.mpesa_result or PaymentResult(
            success=True,
            reference=f"ws_CO_{order_id[:8]}",
            message="Success. Request accepted for processing",
        )

    def initiate_card_payment(self, order_id, amount_cents, email):
        self.calls.append(("card", order_id, amount_cents, email))
        if self.initiate_exception:
            raise self.initiate_exception
        return self.card_result or PaymentResult(
            success=True,
            reference=f"order_{order_id}_1700000000000",
            authorization_url="https://checkout.paystack.com/test",
            message="Authorization URL created",
        )

    def verify_payment(self, reference):
        self.calls.append(("verify", reference))
        return self.verification

    def query_stk_status(self, checkout_request_id):
        self.calls.append(("stk_status", checkout_request_id))
        return self.stk_status


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)
    init_payment_extensions(
        app,
        gateway=FakeGateway(),
        rate_limiter=SlidingWindowRateLimiter(max_requests=5, window_seconds=60),
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        app.extensions["rate_limiter"].reset()
        app.extensions["payment_gateway"].reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app, db_session):
    return app.extensions["payment_gateway"]


def make_staff(email: str, role: str, full_name: str | None = None) -> Employee:
    create_user(email, PASSWORD, full_name=full_name or role.title())
    return create_employee(email, role)


@pytest.fixture(scope='function')
def admin(db_session):
    return make_staff("admin@shopfront.test", "admin")


@pytest.fixture(scope='function')
def manager(db_session):
    return make_staff("manager@shopfront.test", "manager")


@pytest.fixture(scope='function')
def seller(db_session):
    return make_staff("seller@shopfront.test", "seller")


@pytest.fixture(scope='function')
def other_seller(db_session):
    return make_staff("seller2@shopfront.test", "seller")


@pytest.fixture(scope='function')
def customer(db_session):
    return create_user("buyer@example.com", PASSWORD, full_name="Buyer")


def make_product(name: str, price_cents: int, stock: int = 0, **stocks) -> Product:
    product = Product(name=name, price_cents=price_cents)
    db.session.add(product)
    db.session.commit()
    inventory_service.set_product_stock(product.id, stock_quantity=stock, **stocks)
    return product


@pytest.fixture(scope='function')
def tee(db_session):
    """KES 1,000 tee with 10 in general stock."""
    return make_product("Logo Tee", 100000, stock=10)


@pytest.fixture(scope='function')
def hoodie(db_session):
    """KES 2,000 hoodie with 5 in general stock."""
    return make_product("Hoodie", 200000, stock=5)


def get_auth_token(client, email: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, "admin@shopfront.test"))


@pytest.fixture(scope='function')
def manager_headers(client, manager):
    return auth_headers(get_auth_token(client, "manager@shopfront.test"))


@pytest.fixture(scope='function')
def seller_headers(client, seller):
    return auth_headers(get_auth_token(client, "seller@shopfront.test"))


@pytest.fixture(scope='function')
def customer_headers(client, customer):
    return auth_headers(get_auth_token(client, "buyer@example.com"))


def order_payload(*lines, sale_type="online", **extra) -> dict:
    """
    Build an /api/orders/create body. Each line is (product, quantity, price_major).
    """
    payload = {
        "items": [
            {"product_id": product.id, "quantity": quantity, "price": price}
            for product, quantity, price in lines
        ],
        "customer_info": {
            "name": "Jane Wanjiku",
            "email": "jane@example.com",
            "phone": "0712345678",
            "address": "Moi Avenue, Nairobi",
        },
        "sale_type": sale_type,
    }
    payload.update(extra)
    return payload
