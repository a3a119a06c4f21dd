from __future__ import annotations

import uuid


def new_uuid() -> str:
    return str(uuid.uuid4())


def is_uuid(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def format_order_number(order_id: str | None, prefix: str = "ORD") -> str:
    """
    Short, readable order number derived from the UUID.

    Last six hex characters, uppercased: "ORD-A3B2C1".
    """
    if not order_id:
        return "N/A"
    clean = order_id.replace("-", "").upper()
    return f"{prefix}-{clean[-6:]}"
