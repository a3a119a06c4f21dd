# Overview: Service-layer operations for seller commissions; payout boundaries and summaries.

"""
Commission Service

WHY: Sellers earn a percentage of their POS sales. Payouts happen outside
the system; all we track is when a seller was last paid, so "unpaid" means
"completed orders created after that moment".

PAYOUT BOUNDARY:
- mark_commissions_paid stamps Employee.last_commission_payment_date.
- The stamp is strictly later than every order already counted, so an
  order is never both paid and unpaid. Orders created afterwards start the
  next unpaid period.
- No ledger: marking twice just moves the boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func

from ..extensions import db
from ..models import Employee, Order
from ..models.auth import ROLE_SELLER
from ..models.orders import ORDER_COMPLETED
from ..time_utils import to_utc_z, utcnow, week_window_start
from ..validation import NotFoundError, parse_uuid, require_json_object

logger = logging.getLogger(__name__)


class CommissionError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def _payment_boundary(seller_ids: list[str], now: datetime) -> datetime:
    """now, pushed past the newest order already attributed to these sellers."""
    if not seller_ids:
        return now
    newest = (
        db.session.query(func.max(Order.created_at))
        .filter(Order.seller_id.in_(seller_ids))
        .scalar()
    )
    if newest is not None:
        newest = newest.replace(tzinfo=None)
        if newest >= now:
            return newest + timedelta(microseconds=1)
    return now


def mark_commissions_paid(payload, *, now: datetime | None = None) -> dict:
    """
    Close the current commission period for one seller.

    Raises NotFoundError for an unknown employee and CommissionError when
    the employee is not a seller.
    """
    payload = require_json_object(payload)
    employee_id = parse_uuid(payload.get("employee_id"), "employee_id")

    employee = db.session.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Employee not found")
    if employee.role != ROLE_SELLER:
        raise CommissionError("Commissions can only be marked as paid for sellers")

    paid_at = _payment_boundary([employee.id], now or utcnow())
    employee.last_commission_payment_date = paid_at
    db.session.commit()

    logger.info("Commissions marked paid for employee=%s at %s", employee.id, paid_at.isoformat())
    return {
        "success": True,
        "message": "Commissions marked as paid successfully",
        "payment_date": to_utc_z(paid_at),
    }


def mark_all_commissions_paid(*, now: datetime | None = None) -> dict:
    sellers = db.session.query(Employee).filter(Employee.role == ROLE_SELLER).all()
    paid_at = _payment_boundary([s.id for s in sellers], now or utcnow())
    for seller in sellers:
        seller.last_commission_payment_date = paid_at
    db.session.commit()

    count = len(sellers)
    logger.info("Commissions marked paid for %s seller(s)", count)
    return {
        "success": True,
        "message": f"Commissions marked as paid for {count} seller(s)",
        "payment_date": to_utc_z(paid_at),
        "count": count,
    }


def commission_summary(employee: Employee, *, now: datetime | None = None) -> dict:
    """
    Totals over the employee's completed orders.

    Unpaid commission counts orders created after last_commission_payment_date
    (all of them if the seller was never paid).
    """
    now = now or utcnow()
    base = db.session.query(Order).filter(
        Order.seller_id == employee.id,
        Order.status == ORDER_COMPLETED,
    )

    def _sums(query):
        total, commission, count = query.with_entities(
            func.coalesce(func.sum(Order.total_cents), 0),
            func.coalesce(func.sum(Order.commission_cents), 0),
            func.count(Order.id),
        ).one()
        return int(total), int(commission), int(count)

    total_sales, total_commission, order_count = _sums(base)
    week_sales, week_commission, _ = _sums(base.filter(Order.created_at >= week_window_start(now)))

    unpaid_query = base
    if employee.last_commission_payment_date is not None:
        unpaid_query = base.filter(Order.created_at > employee.last_commission_payment_date)
    _, unpaid_commission, unpaid_orders = _sums(unpaid_query)

    return {
        "employee_id": employee.id,
        "employee_code": employee.employee_code,
        "total_sales_cents": total_sales,
        "total_commission_cents": total_commission,
        "order_count": order_count,
        "week_sales_cents": week_sales,
        "week_commission_cents": week_commission,
        "unpaid_commission_cents": unpaid_commission,
        "unpaid_order_count": unpaid_orders,
        "last_commission_payment_date": to_utc_z(employee.last_commission_payment_date),
    }
