from __future__ import annotations

from ..extensions import db
from ..ids import new_uuid, format_order_number
from ..time_utils import to_utc_z, utcnow


# =============================================================================
# ORDER ENUMS
# =============================================================================

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

SALE_TYPE_ONLINE = "online"
SALE_TYPE_POS = "pos"
SALE_TYPES = (SALE_TYPE_ONLINE, SALE_TYPE_POS)

PAYMENT_METHOD_MPESA = "mpesa"
PAYMENT_METHOD_CARD = "card"
PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHODS = (PAYMENT_METHOD_MPESA, PAYMENT_METHOD_CARD, PAYMENT_METHOD_CASH)

SOCIAL_PLATFORMS = ("tiktok", "instagram", "whatsapp", "walkin")

TXN_PENDING = "pending"
TXN_SUCCESS = "success"
TXN_FAILED = "failed"
TXN_REVERSED = "reversed"


class Order(db.Model):
    """
    Customer order (online checkout or POS sale).

    STATUS FLOW:
    - online: pending -> processing (payment initiated) -> completed | failed
    - pos: created completed
    - admin update may also set cancelled / refunded

    Customer contact is snapshotted on the order; the purchaser's User row
    may change later without rewriting history.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_seller_created", "seller_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
    seller_id = db.Column(db.String(36), db.ForeignKey("employees.id"), nullable=True)

    sale_type = db.Column(db.String(16), nullable=False, default=SALE_TYPE_ONLINE)
    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING)

    total_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    social_platform = db.Column(db.String(16), nullable=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    customer_address = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    seller = db.relationship("Employee")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} total_cents={self.total_cents}>"

    @property
    def order_number(self) -> str:
        return format_order_number(self.id)

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "seller_id": self.seller_id,
            "sale_type": self.sale_type,
            "status": self.status,
            "total_cents": self.total_cents,
            "commission_cents": self.commission_cents,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "social_platform": self.social_platform,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
                "address": self.customer_address,
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Order line. Immutable once written."""
    __tablename__ = "order_items"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)

    # Cart order; reservation and compensation walk lines in this order
    position = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    size = db.Column(db.String(16), nullable=True)
    color = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "size": self.size,
            "color": self.color,
        }


class Transaction(db.Model):
    """
    Provider-side payment record.

    Keyed by provider_reference so webhook retries and duplicate callbacks
    update the same row instead of inserting a second one.
    """
    __tablename__ = "transactions"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)

    payment_provider = db.Column(db.String(16), nullable=False)  # paystack | mpesa
    provider_reference = db.Column(db.String(128), nullable=False, unique=True)

    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=TXN_PENDING)

    # "metadata" is reserved on declarative classes
    provider_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_provider": self.payment_provider,
            "provider_reference": self.provider_reference,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "metadata": self.provider_metadata,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
