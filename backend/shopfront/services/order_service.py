# Overview: Service-layer operations for orders; creation, admin updates, and seller-scoped queries.

"""
Order Service

WHY: Turns a cart (catalog lines and ad-hoc till items) into an order that
payment can act on, and gives staff a narrow way to correct it afterwards.

CREATE FLOW (each stage commits on its own):
1. Validate everything up front; field errors are collected and reported
   together (ValidationError.details).
2. Custom products: Product(is_custom=True) + zero-stock inventory.
3. Order row: pending (online) or completed (POS, paid at the till).
4. Order items. If this fails the order row is deleted (best-effort) and
   the request fails; a failed cleanup is only logged.
5. Purchaser's name/phone are refreshed from customer_info.

COMMISSION:
- POS sale with a seller whose role is not admin:
  commission = total * COMMISSION_RATE_BPS / 10000, half-up to the cent.
- Everything else: 0.

POS orders never touch inventory here; the till deducts each line through
/api/inventory/deduct as it rings it up.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Employee, Order, OrderItem, Product, User
from ..models.auth import ROLE_ADMIN, ROLE_SELLER
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_REFUNDED,
    PAYMENT_METHODS,
    SALE_TYPE_ONLINE,
    SALE_TYPE_POS,
    SALE_TYPES,
    SOCIAL_PLATFORMS,
)
from ..time_utils import start_of_day, utcnow
from ..validation import (
    NotFoundError,
    ValidationError,
    merge_errors,
    parse_choice,
    parse_int,
    parse_uuid,
    require_json_object,
    to_cents,
)
from ..ids import is_uuid
from . import inventory_service
from .concurrency import conditional_update

logger = logging.getLogger(__name__)


# Statuses staff may set through the update endpoint
UPDATABLE_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_COMPLETED, ORDER_CANCELLED, ORDER_REFUNDED)

# Columns added after the first schema; an older database may not have them
OPTIONAL_ORDER_COLUMNS = ("seller_id", "social_platform")


class OrderError(Exception):
    """Raised when an order cannot be persisted."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


def compute_commission_cents(total_cents: int, rate_bps: int) -> int:
    """Half-up integer rounding of total * rate_bps / 10000."""
    return (total_cents * rate_bps + 5_000) // 10_000


def is_commission_eligible(seller: Employee | None) -> bool:
    return seller is not None and seller.role != ROLE_ADMIN


# =============================================================================
# INPUT PARSING
# =============================================================================

def _collect(errors: dict, path: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except ValidationError as exc:
        errors[path] = next(iter(exc.details.values()), str(exc)) if exc.details else str(exc)
        return None


def _positive_price(value, path: str) -> int:
    cents = to_cents(value, path)
    if cents <= 0:
        raise ValidationError(f"{path} must be > 0", {path: "must be > 0"})
    return cents


def _text(value, path: str, *, required: bool, max_length: int = 255) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{path} is required", {path: "is required"})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{path} must be a string", {path: "must be a string"})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{path} too long", {path: f"exceeds max length {max_length}"})
    return value


def _email(value, path: str) -> str:
    email = _text(value, path, required=True)
    local, _, domain = email.partition("@")
    if not local or "." not in domain:
        raise ValidationError(f"{path} must be a valid email", {path: "must be a valid email"})
    return email


def _parse_line(index: int, raw, errors: dict) -> dict | None:
    prefix = f"items.{index}"
    if not isinstance(raw, dict):
        errors[prefix] = "must be an object"
        return None

    line = {
        "quantity": _collect(errors, f"{prefix}.quantity", parse_int, raw.get("quantity"), f"{prefix}.quantity", minimum=1),
        "price_cents": _collect(errors, f"{prefix}.price", _positive_price, raw.get("price"), f"{prefix}.price"),
    }

    if "product_data" in raw and raw.get("product_id") is None:
        data = raw.get("product_data")
        if not isinstance(data, dict):
            errors[f"{prefix}.product_data"] = "must be an object"
            return None
        p = f"{prefix}.product_data"
        line["product_data"] = {
            "name": _collect(errors, f"{p}.name", _text, data.get("name"), f"{p}.name", required=True),
            "price_cents": _collect(errors, f"{p}.price", _positive_price, data.get("price"), f"{p}.price"),
            "size": _collect(errors, f"{p}.size", _text, data.get("size"), f"{p}.size", required=False, max_length=16),
            "description": _collect(
                errors, f"{p}.description", _text, data.get("description"), f"{p}.description",
                required=False, max_length=10_000,
            ),
            "category_id": None,
        }
        if data.get("category_id") is not None:
            line["product_data"]["category_id"] = _collect(
                errors, f"{p}.category_id", parse_uuid, data.get("category_id"), f"{p}.category_id"
            )
        line["size"] = line["product_data"]["size"]
        line["color"] = None
        return line

    line["product_id"] = _collect(errors, f"{prefix}.product_id", parse_uuid, raw.get("product_id"), f"{prefix}.product_id")
    line["size"] = _collect(errors, f"{prefix}.size", _text, raw.get("size"), f"{prefix}.size", required=False, max_length=16)
    line["color"] = _collect(errors, f"{prefix}.color", _text, raw.get("color"), f"{prefix}.color", required=False, max_length=64)
    return line


def parse_create_payload(payload) -> dict:
    payload = require_json_object(payload)
    errors: dict = {}

    items_raw = payload.get("items")
    lines = []
    if not isinstance(items_raw, list) or not items_raw:
        errors["items"] = "must be a non-empty list"
    else:
        for index, raw in enumerate(items_raw):
            lines.append(_parse_line(index, raw, errors))

    customer_raw = payload.get("customer_info")
    customer = {}
    if not isinstance(customer_raw, dict):
        errors["customer_info"] = "is required"
    else:
        customer = {
            "name": _collect(errors, "customer_info.name", _text, customer_raw.get("name"), "customer_info.name", required=True),
            "email": _collect(errors, "customer_info.email", _email, customer_raw.get("email"), "customer_info.email"),
            "phone": _collect(
                errors, "customer_info.phone", _text, customer_raw.get("phone"), "customer_info.phone",
                required=True, max_length=32,
            ),
            "address": _collect(
                errors, "customer_info.address", _text, customer_raw.get("address"), "customer_info.address",
                required=True, max_length=10_000,
            ),
        }

    sale_type = payload.get("sale_type") or SALE_TYPE_ONLINE
    sale_type = _collect(errors, "sale_type", parse_choice, sale_type, "sale_type", SALE_TYPES)

    seller_id = payload.get("seller_id")
    if seller_id is not None:
        seller_id = _collect(errors, "seller_id", parse_uuid, seller_id, "seller_id")

    social_platform = payload.get("social_platform")
    if social_platform is not None:
        social_platform = _collect(errors, "social_platform", parse_choice, social_platform, "social_platform", SOCIAL_PLATFORMS)
    elif sale_type == SALE_TYPE_POS:
        errors["social_platform"] = "Social platform is required for POS sales"

    merge_errors(errors)
    return {
        "lines": lines,
        "customer": customer,
        "sale_type": sale_type,
        "seller_id": seller_id,
        "social_platform": social_platform,
    }


# =============================================================================
# ORDER CREATION
# =============================================================================

def _resolve_seller(sale_type: str, seller_id: str | None, actor_employee: Employee | None) -> Employee | None:
    if sale_type != SALE_TYPE_POS:
        return None
    if seller_id:
        seller = db.session.get(Employee, seller_id)
        if seller is None:
            raise ValidationError("Unknown seller", {"seller_id": "not found"})
        return seller
    if actor_employee is None:
        logger.warning("POS order without an employee record for the caller")
    return actor_employee


def _check_products_exist(lines: list[dict]) -> None:
    wanted = {line["product_id"] for line in lines if "product_id" in line}
    if not wanted:
        return
    found = {
        row[0]
        for row in db.session.query(Product.id).filter(Product.id.in_(wanted)).all()
    }
    errors = {
        f"items.{index}.product_id": "product not found"
        for index, line in enumerate(lines)
        if "product_id" in line and line["product_id"] not in found
    }
    if errors:
        raise ValidationError("Unknown product", errors)


def _create_custom_products(lines: list[dict]) -> None:
    """Insert ad-hoc products and their zero-stock inventory; sets line["product_id"]."""
    custom = [line for line in lines if "product_data" in line]
    if not custom:
        return
    try:
        for line in custom:
            data = line["product_data"]
            product = Product(
                name=data["name"],
                description=data["description"],
                price_cents=data["price_cents"],
                category_id=data["category_id"],
                status="active",
                is_custom=True,
            )
            db.session.add(product)
            db.session.flush()
            inventory_service.create_custom_product_inventory(product, data["size"])
            line["product_id"] = product.id
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to create custom products")
        raise OrderError("Failed to create custom products")


def create_order(
    payload,
    *,
    purchaser: User,
    actor_employee: Employee | None = None,
    commission_rate_bps: int = 300,
) -> Order:
    """
    Create an order from a cart payload.

    Raises ValidationError (400) for bad input or unknown products/sellers,
    OrderError (500) when a persistence stage fails.
    """
    parsed = parse_create_payload(payload)
    lines = parsed["lines"]
    sale_type = parsed["sale_type"]

    _check_products_exist(lines)
    seller = _resolve_seller(sale_type, parsed["seller_id"], actor_employee)

    _create_custom_products(lines)

    total_cents = sum(line["price_cents"] * line["quantity"] for line in lines)
    commission_cents = 0
    if sale_type == SALE_TYPE_POS and is_commission_eligible(seller):
        commission_cents = compute_commission_cents(total_cents, commission_rate_bps)

    customer = parsed["customer"]
    order = Order(
        user_id=purchaser.id,
        seller_id=seller.id if seller else None,
        sale_type=sale_type,
        status=ORDER_COMPLETED if sale_type == SALE_TYPE_POS else ORDER_PENDING,
        total_cents=total_cents,
        commission_cents=commission_cents,
        social_platform=parsed["social_platform"],
        customer_name=customer["name"],
        customer_email=customer["email"],
        customer_phone=customer["phone"],
        customer_address=customer["address"],
    )
    try:
        db.session.add(order)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to create order")
        raise OrderError("Failed to create order")

    order_id = order.id
    try:
        for position, line in enumerate(lines):
            db.session.add(OrderItem(
                order_id=order_id,
                position=position,
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_price_cents=line["price_cents"],
                size=line["size"],
                color=line["color"],
            ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to create order items for order=%s", order_id)
        _delete_order_best_effort(order_id)
        raise OrderError("Failed to create order items")

    _refresh_purchaser(purchaser, customer)

    logger.info(
        "Order created id=%s sale_type=%s total_cents=%s commission_cents=%s",
        order_id, sale_type, total_cents, commission_cents,
    )
    return order


def _delete_order_best_effort(order_id: str) -> None:
    try:
        db.session.execute(sa.delete(OrderItem).where(OrderItem.order_id == order_id))
        db.session.execute(sa.delete(Order).where(Order.id == order_id))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Cleanup of order=%s failed", order_id)


def _refresh_purchaser(user: User, customer: dict) -> None:
    try:
        user.full_name = customer["name"]
        user.phone = customer["phone"]
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not update purchaser profile user=%s", user.id)


# =============================================================================
# STAFF UPDATES
# =============================================================================

def _live_order_columns() -> set[str]:
    return {col["name"] for col in sa.inspect(db.engine).get_columns(Order.__tablename__)}


def update_order(payload) -> dict:
    """
    Patch status / payment_method / seller_id / social_platform.

    Optional columns missing from the live schema are skipped and reported
    in "warning" instead of failing the whole update. Cancelling an order
    releases any stock it still holds.
    """
    payload = require_json_object(payload)
    errors: dict = {}
    order_id = _collect(errors, "order_id", parse_uuid, payload.get("order_id"), "order_id")

    patch: dict = {}
    if payload.get("status") is not None:
        patch["status"] = _collect(errors, "status", parse_choice, payload["status"], "status", UPDATABLE_STATUSES)
    if payload.get("payment_method") is not None:
        patch["payment_method"] = _collect(
            errors, "payment_method", parse_choice, payload["payment_method"], "payment_method", PAYMENT_METHODS
        )
    if payload.get("seller_id") is not None:
        patch["seller_id"] = _collect(errors, "seller_id", parse_uuid, payload["seller_id"], "seller_id")
    if payload.get("social_platform") is not None:
        patch["social_platform"] = _collect(
            errors, "social_platform", parse_choice, payload["social_platform"], "social_platform", SOCIAL_PLATFORMS
        )
    merge_errors(errors)

    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")

    if "seller_id" in patch and db.session.get(Employee, patch["seller_id"]) is None:
        raise ValidationError("Unknown seller", {"seller_id": "not found"})

    live = _live_order_columns()
    skipped = [name for name in OPTIONAL_ORDER_COLUMNS if name in patch and name not in live]
    for name in skipped:
        patch.pop(name)

    if patch:
        conditional_update(Order, Order.id == order_id, values={**patch, "updated_at": utcnow()})
        db.session.commit()
        logger.info("Order %s updated: %s", order_id, sorted(patch))

    if patch.get("status") == ORDER_CANCELLED:
        inventory_service.release_order_reservations(order_id, reason="order cancelled")

    result = {"success": True}
    if skipped:
        result["warning"] = f"Columns not present in database, skipped: {', '.join(skipped)}"
    return result


def assign_seller(order_id: str, employee: Employee) -> bool:
    """Attribute an order to the employee ringing it up. False if the order is unknown."""
    if not is_uuid(order_id):
        return False
    changed = conditional_update(Order, Order.id == order_id, values={"seller_id": employee.id})
    db.session.commit()
    return changed == 1


# =============================================================================
# QUERIES
# =============================================================================

def _scoped_query(employee: Employee):
    query = db.session.query(Order)
    if employee.role == ROLE_SELLER:
        query = query.filter(Order.seller_id == employee.id)
    return query


def list_orders(employee: Employee, *, day: datetime | None = None) -> list[dict]:
    """
    Orders created on `day` (UTC, default today), newest first.

    Sellers only see orders attributed to them.
    """
    start = start_of_day(day or utcnow())
    end = start + timedelta(days=1)
    orders = (
        _scoped_query(employee)
        .filter(Order.created_at >= start, Order.created_at < end)
        .order_by(Order.created_at.desc())
        .all()
    )

    user_ids = {o.user_id for o in orders if o.user_id}
    seller_ids = {o.seller_id for o in orders if o.seller_id}
    users = {u.id: u for u in db.session.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
    sellers = (
        {e.id: e for e in db.session.query(Employee).filter(Employee.id.in_(seller_ids)).all()}
        if seller_ids else {}
    )

    result = []
    for order in orders:
        data = order.to_dict()
        purchaser = users.get(order.user_id)
        seller = sellers.get(order.seller_id)
        data["customer_display"] = (purchaser.full_name if purchaser else None) or order.customer_name or "Guest Customer"
        data["seller_code"] = seller.employee_code if seller else None
        data["seller_role"] = seller.role if seller else None
        result.append(data)
    return result


def get_order(order_id: str, employee: Employee) -> Order:
    if not is_uuid(order_id):
        raise NotFoundError("Order not found")
    order = _scoped_query(employee).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order
