# Overview: Service-layer operations for inventory; reserve / deduct / release with scope resolution.

# backend/shopfront/services/inventory_service.py

"""
Inventory Invariants & Reservation Lifecycle (authoritative)

Scopes:
- Stock lives in InventoryRecord rows keyed by (product_id, size, color).
- "" on an axis means "not scoped on that axis"; ("", "") is the general record.
- A line item resolves to the most specific EXISTING record:
    size+color -> size -> color -> general
    size only  -> size -> general
    color only -> color -> general
    neither    -> general
  No matching record means the operation fails (returns False).

Counters:
- reserve:  reserved += q        iff stock - reserved >= q
- deduct:   stock -= q, reserved -= min(reserved, q)   iff stock >= q
            (direct POS sale: stock -= q iff stock - reserved >= q)
- release:  reserved -= q, floor 0
- Each is ONE conditional UPDATE (compare-and-swap). There is no
  read-then-write window, so two checkouts racing for the last unit cannot
  both win. CHECK constraints on the table are the backstop.
- available = max(0, stock - reserved) always.

Order-level lifecycle (InventoryReservation rows, one per order line):
- reserve_order_items: ACTIVE rows; failure at line k releases lines 1..k-1.
- commit_order_reservations: ACTIVE -> COMMITTED (deducts); COMMITTED lines
  are skipped, so duplicate webhooks/callbacks deduct nothing.
- release_order_reservations: ACTIVE -> RELEASED.
- release_stale_reservations: operator sweep for abandoned checkouts.

Failure semantics:
- Store errors in reserve/deduct/release are logged and reported as False.
  The reserve path treats False as insufficient stock and compensates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import InventoryRecord, InventoryReservation, Order, OrderItem, Product
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from .concurrency import conditional_update, run_with_retry

logger = logging.getLogger(__name__)


SIZE_KEYS = ("S", "M", "L", "XL", "2XL", "3XL", "4XL", "5XL")

# Custom products created at the till get a size record only for these
CUSTOM_PRODUCT_SIZES = ("S", "M", "L", "XL")

RESERVATION_ACTIVE = "ACTIVE"
RESERVATION_COMMITTED = "COMMITTED"
RESERVATION_RELEASED = "RELEASED"


class InventoryError(Exception):
    """Raised for inventory operation errors."""
    pass


class InsufficientStockError(InventoryError):
    def __init__(self, product_id: str, available: int | None = None, requested: int | None = None):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.available = available
        self.requested = requested


# =============================================================================
# SCOPE RESOLUTION
# =============================================================================

def _norm(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _candidate_scopes(size: str, color: str) -> list[tuple[str, str]]:
    if size and color:
        return [(size, color), (size, ""), ("", color), ("", "")]
    if size:
        return [(size, ""), ("", "")]
    if color:
        return [("", color), ("", "")]
    return [("", "")]


def resolve_record(product_id: str, size=None, color=None) -> InventoryRecord | None:
    """Most specific existing record for the requested variant, or None."""
    size, color = _norm(size), _norm(color)
    for scope_size, scope_color in _candidate_scopes(size, color):
        record = db.session.query(InventoryRecord).filter_by(
            product_id=product_id,
            size=scope_size,
            color=scope_color,
        ).first()
        if record is not None:
            return record
    return None


def get_available(product_id: str, size=None, color=None) -> int:
    record = resolve_record(product_id, size, color)
    if record is None:
        return 0
    return record.available


# =============================================================================
# ATOMIC COUNTER UPDATES
# =============================================================================

def _reserve_stmt(record_id: int, quantity: int) -> int:
    R = InventoryRecord
    return conditional_update(
        R,
        R.id == record_id,
        R.stock_quantity - R.reserved_quantity >= quantity,
        values={"reserved_quantity": R.reserved_quantity + quantity},
    )


def _deduct_stmt(record_id: int, quantity: int, *, from_reserved: bool) -> int:
    R = InventoryRecord
    if from_reserved:
        # stock >= q is exactly the condition under which the new reserved
        # (floored at 0) still fits in the new stock
        return conditional_update(
            R,
            R.id == record_id,
            R.stock_quantity >= quantity,
            values={
                "stock_quantity": R.stock_quantity - quantity,
                "reserved_quantity": case(
                    (R.reserved_quantity > quantity, R.reserved_quantity - quantity),
                    else_=0,
                ),
            },
        )
    return conditional_update(
        R,
        R.id == record_id,
        R.stock_quantity - R.reserved_quantity >= quantity,
        values={"stock_quantity": R.stock_quantity - quantity},
    )


def _release_stmt(record_id: int, quantity: int) -> int:
    R = InventoryRecord
    return conditional_update(
        R,
        R.id == record_id,
        values={
            "reserved_quantity": case(
                (R.reserved_quantity > quantity, R.reserved_quantity - quantity),
                else_=0,
            ),
        },
    )


def _mutate(action: str, product_id: str, quantity: int, size, color, stmt, commit: bool) -> bool:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", {"quantity": "must be > 0"})

    def _op():
        record = resolve_record(product_id, size, color)
        if record is None:
            logger.warning(
                "No inventory record for %s product=%s size=%r color=%r",
                action, product_id, size, color,
            )
            return False
        changed = stmt(record.id, quantity)
        if commit:
            db.session.commit()
        return changed == 1

    try:
        ok = run_with_retry(_op)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Inventory %s failed for product=%s qty=%s", action, product_id, quantity)
        return False

    if not ok:
        logger.info("Inventory %s refused for product=%s qty=%s", action, product_id, quantity)
    return ok


def reserve(product_id: str, quantity: int, size=None, color=None, *, commit: bool = True) -> bool:
    """Hold `quantity` units on the resolved scope. False if not enough is available."""
    return _mutate("reserve", product_id, quantity, size, color, _reserve_stmt, commit)


def deduct(
    product_id: str,
    quantity: int,
    size=None,
    color=None,
    *,
    from_reserved: bool = True,
    commit: bool = True,
) -> bool:
    """
    Permanently remove `quantity` units.

    from_reserved=True finalizes a held sale (stock and reserved both drop).
    from_reserved=False is a direct POS sale that never reserved: only
    unreserved stock may be taken.
    """
    def _stmt(record_id, qty):
        return _deduct_stmt(record_id, qty, from_reserved=from_reserved)

    return _mutate("deduct", product_id, quantity, size, color, _stmt, commit)


def release(product_id: str, quantity: int, size=None, color=None, *, commit: bool = True) -> bool:
    """Give back a hold. reserved never goes below zero."""
    return _mutate("release", product_id, quantity, size, color, _release_stmt, commit)


# =============================================================================
# ORDER-LEVEL RESERVATIONS
# =============================================================================

def _reservation_for(item: OrderItem) -> InventoryReservation | None:
    return db.session.query(InventoryReservation).filter_by(order_item_id=item.id).first()


def _hold_line(item: OrderItem, now: datetime) -> InventoryReservation | None:
    """
    Reserve one order line and record it. Commits on success.

    Returns the ACTIVE reservation, or None when stock is insufficient or the
    store failed (both are "cannot reserve" for the caller).
    """
    try:
        record = resolve_record(item.product_id, item.size, item.color)
        if record is None or _reserve_stmt(record.id, item.quantity) != 1:
            db.session.rollback()
            return None

        reservation = _reservation_for(item)
        if reservation is None:
            reservation = InventoryReservation(
                order_id=item.order_id,
                order_item_id=item.id,
                created_at=now,
            )
            db.session.add(reservation)
        # Re-initiation after a failed attempt reuses the RELEASED row
        reservation.inventory_record_id = record.id
        reservation.quantity = item.quantity
        reservation.status = RESERVATION_ACTIVE
        reservation.created_at = now
        reservation.released_at = None
        reservation.release_reason = None
        db.session.commit()
        return reservation
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Reservation failed for order_item=%s", item.id)
        return None


def _claim(reservation: InventoryReservation, from_status: str, values: dict) -> bool:
    """
    Move a reservation out of from_status with a guarded UPDATE.

    Only the caller whose UPDATE changes the row may touch the inventory
    counters for it; a concurrent confirmation or cancel gets False.
    """
    return conditional_update(
        InventoryReservation,
        InventoryReservation.id == reservation.id,
        InventoryReservation.status == from_status,
        values=values,
    ) == 1


def _release_reservation(reservation: InventoryReservation, reason: str, now: datetime) -> bool:
    claimed = _claim(reservation, RESERVATION_ACTIVE, {
        "status": RESERVATION_RELEASED,
        "released_at": now,
        "release_reason": reason,
    })
    if not claimed:
        return False
    _release_stmt(reservation.inventory_record_id, reservation.quantity)
    return True


def reserve_order_items(order: Order, *, now: datetime | None = None) -> list[InventoryReservation]:
    """
    Reserve stock for every line on the order, all or nothing.

    Lines already holding an ACTIVE or COMMITTED reservation are left alone.
    If line k cannot be reserved, the reservations made for lines 1..k-1 in
    this call are released (best-effort, failures logged) and
    InsufficientStockError is raised naming line k's product.
    """
    now = now or utcnow()
    made: list[InventoryReservation] = []

    for item in order.items:
        existing = _reservation_for(item)
        if existing is not None and existing.status in (RESERVATION_ACTIVE, RESERVATION_COMMITTED):
            continue

        reservation = _hold_line(item, now)
        if reservation is None:
            available = get_available(item.product_id, item.size, item.color)
            _compensate(made, reason=f"insufficient stock for product {item.product_id}")
            raise InsufficientStockError(item.product_id, available=available, requested=item.quantity)
        made.append(reservation)

    return made


def _compensate(reservations: list[InventoryReservation], *, reason: str) -> None:
    now = utcnow()
    for reservation in reversed(reservations):
        try:
            if _release_reservation(reservation, reason, now):
                db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Compensating release failed for reservation=%s", reservation.id)


def release_order_reservations(order_id: str, *, reason: str) -> int:
    """Release every ACTIVE reservation on the order. Returns how many were released."""
    now = utcnow()
    released = 0
    active = db.session.query(InventoryReservation).filter_by(
        order_id=order_id,
        status=RESERVATION_ACTIVE,
    ).all()
    for reservation in active:
        try:
            if _release_reservation(reservation, reason, now):
                db.session.commit()
                released += 1
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Release failed for reservation=%s", reservation.id)
    if released:
        logger.info("Released %s reservation(s) for order=%s (%s)", released, order_id, reason)
    return released


def commit_order_reservations(order: Order) -> int:
    """
    Deduct stock for every line of a paid order, exactly once per line.

    - ACTIVE reservation: stock and reserved both drop, row -> COMMITTED
    - COMMITTED: already deducted, skipped
    - missing/RELEASED (e.g. swept before the late confirmation): direct
      deduct from available stock, recorded as COMMITTED

    The reservation row is claimed (guarded status UPDATE, or the unique
    order_item_id insert) before the counters move, in the same transaction.
    Overlapping confirmations for one order therefore deduct each line once.

    A line that cannot be deducted is logged and left for manual follow-up;
    the payment has already been taken.
    Returns the number of lines deducted by this call.
    """
    now = utcnow()
    deducted = 0
    for item in order.items:
        reservation = _reservation_for(item)
        if reservation is not None and reservation.status == RESERVATION_COMMITTED:
            continue
        try:
            committed = {"status": RESERVATION_COMMITTED, "committed_at": now}
            if reservation is not None and reservation.status == RESERVATION_ACTIVE:
                if not _claim(reservation, RESERVATION_ACTIVE, committed):
                    logger.info("Reservation for item=%s already settled elsewhere", item.id)
                    continue
                changed = _deduct_stmt(reservation.inventory_record_id, reservation.quantity, from_reserved=True)
            else:
                record = resolve_record(item.product_id, item.size, item.color)
                if record is None:
                    changed = 0
                elif reservation is None:
                    db.session.add(InventoryReservation(
                        order_id=order.id,
                        order_item_id=item.id,
                        inventory_record_id=record.id,
                        quantity=item.quantity,
                        created_at=now,
                        **committed,
                    ))
                    db.session.flush()
                    changed = _deduct_stmt(record.id, item.quantity, from_reserved=False)
                elif _claim(reservation, RESERVATION_RELEASED, dict(
                    committed,
                    inventory_record_id=record.id,
                    quantity=item.quantity,
                )):
                    changed = _deduct_stmt(record.id, item.quantity, from_reserved=False)
                else:
                    logger.info("Reservation for item=%s already settled elsewhere", item.id)
                    continue

            if changed != 1:
                db.session.rollback()
                logger.error(
                    "Could not deduct stock for order=%s item=%s product=%s qty=%s",
                    order.id, item.id, item.product_id, item.quantity,
                )
                continue

            db.session.commit()
            deducted += 1
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Deduction failed for order=%s item=%s", order.id, item.id)

    return deducted


def release_stale_reservations(older_than: timedelta, *, now: datetime | None = None) -> int:
    """
    Release ACTIVE reservations created before now - older_than.

    Abandoned checkouts otherwise hold stock forever. A late payment
    confirmation for a swept order still deducts (directly) when it arrives.
    """
    cutoff = (now or utcnow()) - older_than
    stale = (
        db.session.query(InventoryReservation)
        .filter(
            InventoryReservation.status == RESERVATION_ACTIVE,
            InventoryReservation.created_at < cutoff,
        )
        .all()
    )
    order_ids = sorted({r.order_id for r in stale})
    total = 0
    for order_id in order_ids:
        total += release_order_reservations(order_id, reason="stale reservation sweep")
    return total


# =============================================================================
# STOCK SETUP
# =============================================================================

def ensure_record(product_id: str, size: str = "", color: str = "") -> InventoryRecord:
    """Get or add (no commit) the record for an exact scope."""
    record = db.session.query(InventoryRecord).filter_by(
        product_id=product_id, size=size, color=color
    ).first()
    if record is None:
        record = InventoryRecord(
            product_id=product_id,
            size=size,
            color=color,
            stock_quantity=0,
            reserved_quantity=0,
        )
        db.session.add(record)
    return record


def _non_negative(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", {field: "must be a non-negative integer"})
    return value


def _desired_scopes(stock_quantity, size_stocks, color_stocks) -> dict[tuple[str, str], int]:
    desired = {("", ""): _non_negative(stock_quantity, "stock_quantity")}

    if size_stocks is not None:
        if not isinstance(size_stocks, dict):
            raise ValidationError("size_stocks must be an object", {"size_stocks": "must be an object"})
        for size, qty in size_stocks.items():
            if size not in SIZE_KEYS:
                raise ValidationError(f"Invalid size: {size}", {f"size_stocks.{size}": "invalid size"})
            desired[(size, "")] = _non_negative(qty, f"size_stocks.{size}")

    if color_stocks is not None:
        if not isinstance(color_stocks, dict):
            raise ValidationError("color_stocks must be an object", {"color_stocks": "must be an object"})
        for color, value in color_stocks.items():
            color_key = _norm(color)
            if not color_key:
                raise ValidationError("color names cannot be blank", {"color_stocks": "blank color"})
            if isinstance(value, dict):
                for size, qty in value.items():
                    if size not in SIZE_KEYS:
                        raise ValidationError(
                            f"Invalid size: {size}",
                            {f"color_stocks.{color_key}.{size}": "invalid size"},
                        )
                    desired[(size, color_key)] = _non_negative(qty, f"color_stocks.{color_key}.{size}")
            else:
                desired[("", color_key)] = _non_negative(value, f"color_stocks.{color_key}")

    return desired


def set_product_stock(
    product_id: str,
    stock_quantity: int = 0,
    size_stocks: dict | None = None,
    color_stocks: dict | None = None,
) -> InventoryRecord:
    """
    Set absolute stock levels for a product's scopes.

    - general record always set to stock_quantity
    - size_stocks {"M": 4}: size-only scopes; omitted sizes are zeroed
    - color_stocks {"red": 3} (color-only) or {"red": {"M": 2}} (size+color);
      omitted color scopes are zeroed
    - a family that is not supplied (None) is left untouched

    Refuses (ConflictError) to put any scope's stock below its reserved count.
    Records are never deleted.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")

    desired = _desired_scopes(stock_quantity, size_stocks, color_stocks)

    existing = db.session.query(InventoryRecord).filter_by(product_id=product_id).all()
    for record in existing:
        key = (record.size, record.color)
        if key in desired:
            continue
        if record.color and color_stocks is not None:
            desired[key] = 0
        elif record.size and not record.color and size_stocks is not None:
            desired[key] = 0

    R = InventoryRecord
    try:
        for (size, color), qty in desired.items():
            record = ensure_record(product_id, size, color)
            if record.id is None:
                record.stock_quantity = qty
                db.session.flush()
                continue
            changed = conditional_update(
                R,
                R.id == record.id,
                R.reserved_quantity <= qty,
                values={"stock_quantity": qty},
            )
            if changed != 1:
                raise ConflictError(
                    f"Cannot set stock below reserved quantity for size={size or '-'} color={color or '-'}"
                )
        db.session.commit()
    except (ConflictError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Stock set for product=%s scopes=%s", product_id, len(desired))
    return db.session.query(InventoryRecord).filter_by(product_id=product_id, size="", color="").one()


def create_custom_product_inventory(product: Product, size: str | None) -> None:
    """Zero-stock general record, plus a size record for the common sizes. No commit."""
    ensure_record(product.id)
    size = _norm(size)
    if size in CUSTOM_PRODUCT_SIZES:
        ensure_record(product.id, size=size)


# =============================================================================
# READ SURFACES
# =============================================================================

def list_inventory() -> list[dict]:
    """General records with product names and their variant scopes."""
    rows = (
        db.session.query(InventoryRecord, Product)
        .join(Product, Product.id == InventoryRecord.product_id)
        .order_by(InventoryRecord.last_updated.desc(), InventoryRecord.id.desc())
        .all()
    )

    variants: dict[str, list[dict]] = {}
    general: list[tuple[InventoryRecord, Product]] = []
    for record, product in rows:
        if record.size or record.color:
            variants.setdefault(record.product_id, []).append(record.to_dict())
        else:
            general.append((record, product))

    result = []
    for record, product in general:
        data = record.to_dict()
        data["product_name"] = product.name or "Unknown Product"
        data["category_id"] = product.category_id
        data["variants"] = variants.get(record.product_id, [])
        result.append(data)
    return result


def _size_order(size: str) -> int:
    return SIZE_KEYS.index(size) if size in SIZE_KEYS else len(SIZE_KEYS)


def list_product_sizes(product_id: str) -> list[dict]:
    records = db.session.query(InventoryRecord).filter(
        InventoryRecord.product_id == product_id,
        InventoryRecord.size != "",
        InventoryRecord.color == "",
    ).all()
    records.sort(key=lambda r: (_size_order(r.size), r.size))
    return [
        {
            "size": r.size,
            "available": r.available,
            "stock_quantity": r.stock_quantity,
            "reserved_quantity": r.reserved_quantity,
        }
        for r in records
    ]


def list_color_stocks(product_id: str) -> list[dict]:
    records = db.session.query(InventoryRecord).filter(
        InventoryRecord.product_id == product_id,
        InventoryRecord.color != "",
    ).order_by(InventoryRecord.color).all()
    return [
        {
            "color": r.color,
            "size": r.size or None,
            "stock_quantity": r.stock_quantity,
            "reserved_quantity": r.reserved_quantity,
            "available": r.available,
        }
        for r in records
    ]
