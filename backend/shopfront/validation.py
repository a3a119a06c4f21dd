from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .ids import is_uuid


# Maximum price: KES 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """
    400-level input problem.

    details maps field path -> message, e.g. {"items.0.quantity": "must be > 0"}.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": str(self)}
        if self.details:
            body["details"] = self.details
        return body


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., stock below reserved)."""


class NotFoundError(LookupError):
    """404-level: referenced row does not exist."""


def require_json_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """
    Strict integer parsing: rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})
    else:
        raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})

    if minimum is not None and parsed < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", {field: f"must be >= {minimum}"})
    return parsed


def to_cents(value: Any, field: str = "price") -> int:
    """
    Convert a major-unit amount (KES) to integer cents, half-up.

    Accepts int, float or numeric string; rejects negatives and bools.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", {field: "must be a number"})
    try:
        # str() first so 0.1 stays 0.1 instead of its binary expansion
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", {field: "must be a number"})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", {field: "must be a number"})
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0", {field: "must be >= 0"})

    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents > MAX_PRICE_CENTS:
        raise ValidationError(
            f"{field} cannot exceed {MAX_PRICE_CENTS / 100:,.2f}",
            {field: "too large"},
        )
    return cents


def parse_choice(value: Any, field: str, choices) -> str:
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(
            f"{field} must be one of: {', '.join(choices)}",
            {field: f"must be one of: {', '.join(choices)}"},
        )
    return value


def parse_uuid(value: Any, field: str) -> str:
    if not is_uuid(value):
        raise ValidationError(f"{field} must be a valid UUID", {field: "must be a valid UUID"})
    return value


def optional_str(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", {field: "must be a string"})
    value = value.strip()
    if max_length and len(value) > max_length:
        raise ValidationError(
            f"{field} exceeds max length {max_length}",
            {field: f"exceeds max length {max_length}"},
        )
    return value or None


def merge_errors(errors: dict) -> None:
    """Raise one ValidationError carrying every collected field error."""
    if errors:
        raise ValidationError("Invalid request data", errors)
