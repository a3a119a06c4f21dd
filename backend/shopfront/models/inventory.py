from __future__ import annotations

from ..extensions import db
from ..ids import new_uuid
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product.

    Custom products are created ad hoc at the till for items not in the
    catalog; they start with zero stock.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_status_name", "status", "name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)

    category_id = db.Column(db.String(36), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="active")
    is_custom = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "category_id": self.category_id,
            "status": self.status,
            "is_custom": self.is_custom,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryRecord(db.Model):
    """
    Stock counter for one (product, size, color) scope.

    SCOPES:
    - general:     size="",  color=""
    - size only:   size="M", color=""
    - color only:  size="",  color="red"
    - size+color:  size="M", color="red"

    Empty string means "not scoped on this axis" so the unique constraint
    holds for the general record too (NULLs never collide).

    INVARIANTS (also enforced by CHECK constraints):
    - 0 <= reserved_quantity <= stock_quantity
    - available = stock_quantity - reserved_quantity, never negative

    Rows are never deleted; a scope that goes away is zeroed.
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size", "color", name="uq_inventory_product_size_color"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_inventory_stock_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_nonneg"),
        db.CheckConstraint("reserved_quantity <= stock_quantity", name="ck_inventory_reserved_le_stock"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)

    size = db.Column(db.String(16), nullable=False, default="")
    color = db.Column(db.String(64), nullable=False, default="")

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    # Bumped on every conditional update; doubles as the ORM version counter
    version_id = db.Column(db.Integer, nullable=False, default=1)

    last_updated = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("inventory_records", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available(self) -> int:
        return max(0, (self.stock_quantity or 0) - (self.reserved_quantity or 0))

    @property
    def scope(self) -> str:
        if self.size and self.color:
            return "size_color"
        if self.size:
            return "size"
        if self.color:
            return "color"
        return "general"

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord product_id={self.product_id} size={self.size!r} "
            f"color={self.color!r} stock={self.stock_quantity} reserved={self.reserved_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size": self.size or None,
            "color": self.color or None,
            "scope": self.scope,
            "stock_quantity": self.stock_quantity,
            "reserved_quantity": self.reserved_quantity,
            "available": self.available,
            "last_updated": to_utc_z(self.last_updated),
        }


class InventoryReservation(db.Model):
    """
    One hold per order line while payment is in flight.

    LIFECYCLE:
    - ACTIVE: reserved_quantity on the record includes this quantity
    - COMMITTED: payment confirmed, stock and reserved were both deducted
    - RELEASED: payment failed/cancelled/abandoned, reserved was given back

    order_item_id is unique, so repeated initiate/confirm/cancel calls for
    the same line cannot reserve, deduct or release twice.
    """
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        db.UniqueConstraint("order_item_id", name="uq_reservation_order_item"),
        db.Index("ix_reservations_status_created", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.String(36), db.ForeignKey("order_items.id"), nullable=False)
    inventory_record_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    release_reason = db.Column(db.String(255), nullable=True)

    inventory_record = db.relationship("InventoryRecord")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "inventory_record_id": self.inventory_record_id,
            "quantity": self.quantity,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "committed_at": to_utc_z(self.committed_at),
            "released_at": to_utc_z(self.released_at),
            "release_reason": self.release_reason,
        }
